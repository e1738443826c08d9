"""
Exit management engine.

Seven rules evaluated in priority order, first match wins:
1. Stop loss              (critical)
2. Profit target          (medium)
3. Trailing stop          (high)
4. Time-based exit        (low)
5. Technical exit         (medium)
6. Macro circuit breaker  (critical)
7. Strategy-specific exit (varies)

analyze_exit is a pure function of (position, quote, context, strategy).
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from .schemas import ExitSignal, ExitType, MarketContext, Position, PositionSide, StockQuote, Urgency
from .strategy.strategies import DEFAULT_STRATEGY, StrategyType

logger = logging.getLogger("arena_trader.exits")

STOP_LOSS_PERCENT = -8.0
DEFAULT_PROFIT_TARGET = 10.0
DEFAULT_MAX_HOLDING_DAYS = 30

PROFIT_TARGETS: Dict[StrategyType, float] = {
    StrategyType.MOMENTUM_BREAKOUT: 7,
    StrategyType.MEAN_REVERSION: 5,
    StrategyType.TREND_FOLLOWING: 15,
    StrategyType.VALUE_QUALITY: 20,
    StrategyType.VOLATILITY_ARBITRAGE: 5,
    StrategyType.CONTRARIAN_SENTIMENT: 12,
}

MAX_HOLDING_DAYS: Dict[StrategyType, int] = {
    StrategyType.MOMENTUM_BREAKOUT: 5,
    StrategyType.MEAN_REVERSION: 10,
    StrategyType.TREND_FOLLOWING: 40,
    StrategyType.VALUE_QUALITY: 90,
    StrategyType.VOLATILITY_ARBITRAGE: 3,
    StrategyType.CONTRARIAN_SENTIMENT: 21,
}

DEFAULT_FORCED_URGENCIES = (Urgency.CRITICAL.value, Urgency.HIGH.value)

# (should_exit, reason)
RuleResult = Tuple[bool, str]
NO_EXIT: RuleResult = (False, "")


def get_profit_target(strategy: StrategyType, days_held: int) -> float:
    target = PROFIT_TARGETS.get(strategy, DEFAULT_PROFIT_TARGET)
    if days_held > 30 and target < 15:
        target += 3
    return target


def get_trailing_stop(gain_percent: float) -> float:
    """Trailing distance in percent; tighter as gains grow."""
    if gain_percent > 25:
        return 8
    if gain_percent > 15:
        return 6
    if gain_percent > 10:
        return 5
    return 3


def favorable_drawdown(position: Position) -> float:
    """Percent pullback from the best price since entry (the low, for shorts)."""
    price = position.current_price
    if position.side == PositionSide.SHORT.value:
        trough = min(position.peak_price or position.entry_price, position.entry_price, price)
        return (price - trough) / trough * 100 if trough else 0.0
    peak = max(position.peak_price or position.entry_price, position.entry_price, price)
    return (peak - price) / peak * 100 if peak else 0.0


def check_time_based_exit(strategy: StrategyType, days_held: int, pnl_percent: float) -> RuleResult:
    max_days = MAX_HOLDING_DAYS.get(strategy, DEFAULT_MAX_HOLDING_DAYS)
    if days_held > max_days and pnl_percent < 3:
        return True, f"TIME EXIT: Held {days_held} days (max {max_days}) without meaningful gain"
    if strategy == StrategyType.MOMENTUM_BREAKOUT and days_held >= 3 and pnl_percent < 0:
        return True, "TIME EXIT: Momentum not playing out after 3 days"
    if strategy == StrategyType.VOLATILITY_ARBITRAGE and days_held >= 2 and pnl_percent < 1:
        return True, "TIME EXIT: Vol trade not working after 2 days"
    return NO_EXIT


def check_technical_exit(
    price: float,
    stock: StockQuote,
    pnl_percent: float,
    side: str = PositionSide.LONG.value,
) -> RuleResult:
    """Trend breaks and RSI extremes, mirrored for shorts (adverse moves are up)."""
    ma30 = stock.ma30 if stock.ma30 is not None else price
    ma7 = stock.ma7 if stock.ma7 is not None else price
    rsi = stock.rsi if stock.rsi is not None else 50.0

    if side == PositionSide.SHORT.value:
        if price > ma30 and pnl_percent < -3:
            above = (price - ma30) / ma30 * 100
            return True, f"TECHNICAL: Broke above MA30 ({above:.1f}% above) against the short"
        if price > ma7 and pnl_percent < -5:
            return True, "TECHNICAL: Broke above MA7 with -5% loss - downtrend broken"
        if rsi < 25 and pnl_percent > 8:
            return True, f"TECHNICAL: RSI {rsi:.0f} extreme oversold - cover and take profits"
        if rsi > 78 and pnl_percent < -6:
            return True, f"TECHNICAL: RSI {rsi:.0f} squeeze - cover before further damage"
        return NO_EXIT

    if price < ma30 and pnl_percent < -3:
        below = (price - ma30) / ma30 * 100
        return True, f"TECHNICAL: Broke below MA30 ({below:.1f}% below) with losses"
    if price < ma7 and pnl_percent < -5:
        return True, "TECHNICAL: Broke below MA7 with -5% loss - trend broken"
    if rsi > 78 and pnl_percent > 8:
        return True, f"TECHNICAL: RSI {rsi:.0f} extreme overbought - take profits"
    if rsi < 25 and pnl_percent < -6:
        return True, f"TECHNICAL: RSI {rsi:.0f} oversold capitulation - exit before further damage"
    return NO_EXIT


def check_macro_circuit_breaker(context: MarketContext) -> RuleResult:
    spy, vix = context.spy_trend, context.vix
    if vix.level > 35:
        return True, f"MACRO CIRCUIT BREAKER: VIX {vix.level:.0f} extreme fear - reduce all exposure"
    if spy.week_change < -8 and spy.regime == "bearish":
        return True, f"MACRO CIRCUIT BREAKER: SPY down {abs(spy.week_change):.1f}% - bearish regime"
    if spy.regime == "bearish" and vix.level > 25 and spy.month_change < -5:
        return True, "MACRO CIRCUIT BREAKER: Bearish regime + elevated VIX - risk off"
    return NO_EXIT


def check_strategy_specific_exit(
    strategy: StrategyType,
    price: float,
    stock: StockQuote,
    context: MarketContext,
    pnl_percent: float,
    side: str = PositionSide.LONG.value,
) -> Optional[Tuple[str, Urgency, float]]:
    """Returns (reason, urgency, confidence) when the strategy's own thesis is done.

    Price-direction rules are mirrored for shorts; the volatility rule is not.
    """
    short = side == PositionSide.SHORT.value
    rsi = stock.rsi if stock.rsi is not None else 50.0
    ma7 = stock.ma7 if stock.ma7 is not None else stock.price
    rs = stock.relative_strength or 0.0
    week = stock.week_trend or 0.0

    if strategy == StrategyType.MOMENTUM_BREAKOUT:
        fading = rsi > 50 if short else rsi < 50
        if fading and pnl_percent > 3:
            return (
                f"MOMENTUM: RSI {rsi:.0f} momentum fading - lock in {pnl_percent:.1f}% gain",
                Urgency.MEDIUM,
                75,
            )
    elif strategy == StrategyType.MEAN_REVERSION:
        normalized = 40 < rsi < 50 if short else 50 < rsi < 60
        if normalized and pnl_percent > 2:
            return f"MEAN REVERSION: RSI {rsi:.0f} normalized - reversion complete", Urgency.MEDIUM, 80
    elif strategy == StrategyType.TREND_FOLLOWING:
        broken = (rs > 2 and price > ma7) if short else (rs < -2 and price < ma7)
        if broken:
            return "TREND: Relative strength reversed + crossed MA7 - trend broken", Urgency.HIGH, 85
    elif strategy == StrategyType.VALUE_QUALITY:
        if short:
            distance = (price - stock.low52w) / stock.low52w * 100 if stock.low52w else 100.0
        else:
            distance = (stock.high52w - price) / stock.high52w * 100 if stock.high52w else 100.0
        if distance < 3 and pnl_percent > 10:
            extreme = "lows" if short else "highs"
            return f"VALUE: Stock reached 52w {extreme} - value play complete", Urgency.LOW, 70
    elif strategy == StrategyType.VOLATILITY_ARBITRAGE:
        if context.vix.level < 16 and pnl_percent > 2:
            return f"VOL: VIX {context.vix.level:.1f} normalized - arbitrage complete", Urgency.MEDIUM, 85
    elif strategy == StrategyType.CONTRARIAN_SENTIMENT:
        reversed_move = week < -8 if short else week > 8
        if reversed_move and pnl_percent > 5:
            return f"CONTRARIAN: {week:+.1f}% this week - sentiment reversed", Urgency.MEDIUM, 75
    return None


def analyze_exit(
    position: Position,
    stock: StockQuote,
    context: MarketContext,
    strategy: StrategyType = DEFAULT_STRATEGY,
    now: Optional[datetime] = None,
) -> ExitSignal:
    """Single exit verdict for one position."""
    strategy = StrategyType(strategy)
    pnl = position.unrealized_pnl_percent
    price = position.current_price
    days_held = position.days_held(now)

    def exit_signal(exit_type: ExitType, urgency: Urgency, confidence: float, reason: str) -> ExitSignal:
        return ExitSignal(
            symbol=position.symbol,
            should_exit=True,
            exit_type=exit_type,
            urgency=urgency,
            confidence=confidence,
            reasoning=[reason],
        )

    if pnl < STOP_LOSS_PERCENT:
        return exit_signal(
            ExitType.STOP_LOSS, Urgency.CRITICAL, 95, f"STOP LOSS: Down {abs(pnl):.1f}% - cut losses"
        )

    if pnl >= get_profit_target(strategy, days_held):
        return exit_signal(
            ExitType.PROFIT_TARGET, Urgency.MEDIUM, 85, f"PROFIT TARGET: Up {pnl:.1f}% - take profits"
        )

    if pnl > 5:
        distance = get_trailing_stop(pnl)
        drawdown = favorable_drawdown(position)
        if drawdown > distance:
            return exit_signal(
                ExitType.TRAILING_STOP,
                Urgency.HIGH,
                80,
                f"TRAILING STOP: Up {pnl:.1f}% but pulled back {drawdown:.1f}% from highs",
            )

    should_exit, reason = check_time_based_exit(strategy, days_held, pnl)
    if should_exit:
        return exit_signal(ExitType.TIME_BASED, Urgency.LOW, 60, reason)

    should_exit, reason = check_technical_exit(price, stock, pnl, position.side)
    if should_exit:
        return exit_signal(ExitType.TECHNICAL, Urgency.MEDIUM, 75, reason)

    should_exit, reason = check_macro_circuit_breaker(context)
    if should_exit:
        return exit_signal(ExitType.MACRO, Urgency.CRITICAL, 90, reason)

    specific = check_strategy_specific_exit(strategy, price, stock, context, pnl, position.side)
    if specific:
        reason, urgency, confidence = specific
        return exit_signal(ExitType.STRATEGY_SPECIFIC, urgency, confidence, reason)

    return ExitSignal(symbol=position.symbol)


def analyze_all_exits(
    positions: List[Position],
    stocks: List[StockQuote],
    context: MarketContext,
    strategy: StrategyType = DEFAULT_STRATEGY,
    now: Optional[datetime] = None,
) -> List[ExitSignal]:
    by_symbol = {s.symbol: s for s in stocks}
    signals = []
    for position in positions:
        stock = by_symbol.get(position.symbol)
        if stock is None:
            signals.append(ExitSignal(symbol=position.symbol, reasoning=["Stock data not found"]))
            continue
        signals.append(analyze_exit(position, stock, context, strategy, now))
    return signals


URGENCY_SECTIONS = [
    (Urgency.CRITICAL, "### CRITICAL EXITS (Immediate)"),
    (Urgency.HIGH, "### HIGH PRIORITY EXITS"),
    (Urgency.MEDIUM, "### MEDIUM PRIORITY EXITS"),
    (Urgency.LOW, "### CONSIDER EXITS (Optional)"),
]


def generate_exit_summary(signals: List[ExitSignal]) -> str:
    """Markdown summary of exit recommendations grouped by urgency, critical first."""
    exits = [s for s in signals if s.should_exit]
    if not exits:
        return "\n## Exit Management\nNo immediate exits required. All positions within parameters.\n"

    lines = ["", "## Exit Management - IMMEDIATE ACTION REQUIRED", ""]
    for urgency, heading in URGENCY_SECTIONS:
        group = [s for s in exits if s.urgency == urgency.value]
        if not group:
            continue
        lines.append(heading)
        for signal in group:
            lines.append(f"**{signal.symbol}** ({signal.exit_type})")
            lines.extend(f"- {r}" for r in signal.reasoning)
            lines.append("")
    return "\n".join(lines) + "\n"


def calculate_exit_price(signal: ExitSignal, price: float) -> float:
    """Expected fill price for an exit, allowing for urgency slippage."""
    if signal.exit_type == ExitType.STOP_LOSS.value:
        return price * 0.995
    if signal.exit_type == ExitType.TRAILING_STOP.value:
        return price * 0.998
    if signal.exit_type in (ExitType.TECHNICAL.value, ExitType.MACRO.value):
        return price * 0.997
    return price


def is_forced_exit(signal: ExitSignal, urgencies: Iterable[str] = DEFAULT_FORCED_URGENCIES) -> bool:
    return signal.should_exit and signal.urgency in set(urgencies)
