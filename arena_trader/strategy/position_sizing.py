"""
Position sizing with the Kelly Criterion.

Sizes a new position from:
- the agent's realized win/loss history (or a confidence-based cold start)
- decision confidence
- stock volatility against a 20% baseline
- open position count
- risk tolerance tier
then applies hard floor/ceiling/cash constraints. Market conditions are a
separate, composable post-adjustment.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from ..config import RiskTolerance
from ..schemas import AgentPerformance, AgentStats, PositionSizeResult, Trade, TradeAction

logger = logging.getLogger("arena_trader.strategy.position_sizing")

BASE_VOLATILITY = 0.20
TRADING_DAYS_PER_YEAR = 252

RISK_MULTIPLIERS = {
    RiskTolerance.CONSERVATIVE: 0.5,   # half Kelly
    RiskTolerance.MODERATE: 0.75,      # three-quarter Kelly
    RiskTolerance.AGGRESSIVE: 1.0,     # full Kelly
}

CLOSING_ACTIONS = (TradeAction.SELL.value, TradeAction.BUY_TO_COVER.value)


@dataclass
class PositionSizeInput:
    cash_available: float
    account_value: float
    confidence: float                       # 0-100
    stock_volatility: float = BASE_VOLATILITY  # annualized
    portfolio_volatility: float = 0.1
    agent_performance: AgentPerformance = field(default_factory=AgentPerformance)
    current_position_count: int = 0
    max_position_percent: float = 30.0
    risk_tolerance: RiskTolerance = RiskTolerance.MODERATE
    min_trades: int = 10
    min_position_pct: float = 0.05
    cold_start_cap: float = 0.15


def calculate_position_size(inp: PositionSizeInput) -> PositionSizeResult:
    """Kelly-based dollar size; a zero size means no trade."""
    reasoning: List[str] = []
    perf = inp.agent_performance
    confidence = inp.confidence

    # 1. Base Kelly
    kelly_fraction = 0.0
    if perf.total_trades >= inp.min_trades:
        win_rate = perf.win_rate
        avg_win = abs(perf.avg_win_percent)
        avg_loss = abs(perf.avg_loss_percent)
        if avg_loss > 0:
            win_loss_ratio = avg_win / avg_loss
            if win_loss_ratio > 0:
                kelly_fraction = (win_rate * win_loss_ratio - (1 - win_rate)) / win_loss_ratio
            else:
                kelly_fraction = -(1 - win_rate)
            reasoning.append(
                f"Kelly base: {kelly_fraction * 100:.1f}% (win rate {win_rate * 100:.0f}%, "
                f"avg win/loss {win_loss_ratio:.2f}x)"
            )
        else:
            # No recorded losses: the edge tends to the win rate as b grows
            kelly_fraction = win_rate
            reasoning.append(f"Kelly base: {kelly_fraction * 100:.1f}% (no losing trades in history)")
    else:
        kelly_fraction = confidence / 100 * inp.cold_start_cap
        reasoning.append(
            f"Insufficient history ({perf.total_trades} trades) - using conservative sizing "
            f"{kelly_fraction * 100:.1f}%"
        )

    # 2. Confidence scaling, 0.3x to 1.0x
    adjusted = kelly_fraction * (0.3 + 0.7 * confidence / 100)
    reasoning.append(f"Confidence adjustment ({confidence:.0f}%): {adjusted * 100:.1f}%")

    # 3. Volatility
    ratio = inp.stock_volatility / BASE_VOLATILITY
    if ratio > 1.5:
        reduction = min(0.5, (ratio - 1) * 0.3)
        adjusted *= 1 - reduction
        reasoning.append(
            f"High volatility ({inp.stock_volatility * 100:.0f}%) - reduced by {reduction * 100:.0f}%"
        )
    elif ratio < 0.8:
        bonus = min(0.2, (1 - ratio) * 0.15)
        adjusted *= 1 + bonus
        reasoning.append(f"Low volatility - increased by {bonus * 100:.0f}%")

    # 4. Diversification
    count = inp.current_position_count
    if count >= 8:
        adjusted *= 0.7
        reasoning.append(f"High position count ({count}) - reduced to maintain diversification")
    elif count >= 5:
        adjusted *= 0.85
        reasoning.append(f"Moderate position count ({count}) - slight reduction")
    elif count <= 2:
        adjusted *= 1.1
        reasoning.append(f"Low position count ({count}) - can size up")

    # 5. Risk tolerance
    tolerance = RiskTolerance(inp.risk_tolerance)
    multiplier = RISK_MULTIPLIERS[tolerance]
    adjusted *= multiplier
    reasoning.append(f"Risk tolerance ({tolerance.value}): {multiplier}x Kelly")

    # 6. Hard constraints
    adjusted = max(0.0, min(adjusted, inp.max_position_percent / 100))
    if adjusted <= 0:
        reasoning.append("Negative edge detected - NO TRADE")
        return PositionSizeResult(
            position_size=0.0,
            position_percent=0.0,
            kelly_fraction=kelly_fraction,
            adjusted_kelly=0.0,
            reasoning=reasoning,
            confidence=0.0,
        )

    if adjusted < inp.min_position_pct:
        adjusted = inp.min_position_pct
        reasoning.append(f"Increased to minimum {inp.min_position_pct * 100:.0f}% for meaningful position")

    position_size = inp.account_value * adjusted
    if position_size > inp.cash_available:
        position_size = max(0.0, inp.cash_available)
        adjusted = position_size / inp.account_value if inp.account_value > 0 else 0.0
        reasoning.append(f"Limited by available cash: ${inp.cash_available:.0f}")

    position_percent = position_size / inp.account_value * 100 if inp.account_value > 0 else 0.0
    reasoning.append(f"Final position: ${position_size:.0f} ({position_percent:.1f}% of account)")

    return PositionSizeResult(
        position_size=position_size,
        position_percent=position_percent,
        kelly_fraction=kelly_fraction,
        adjusted_kelly=adjusted,
        reasoning=reasoning,
        confidence=confidence,
    )


def adjust_for_market_conditions(
    result: PositionSizeResult,
    regime: str,
    vix_level: float,
    portfolio_beta: float = 1.0,
) -> PositionSizeResult:
    """Scale a sized result by regime, VIX and portfolio beta factors."""
    multiplier = 1.0
    extra: List[str] = []

    if regime == "bearish":
        multiplier *= 0.6
        extra.append("Bearish market: reduced position by 40%")
    elif regime == "neutral":
        multiplier *= 0.85
        extra.append("Neutral market: slight reduction")
    else:
        extra.append("Bullish market: full sizing allowed")

    if vix_level > 25:
        multiplier *= 0.7
        extra.append(f"High VIX ({vix_level:.0f}): reduced position by 30%")
    elif vix_level > 20:
        multiplier *= 0.85
        extra.append(f"Elevated VIX ({vix_level:.0f}): slight reduction")

    if portfolio_beta > 1.3:
        multiplier *= 0.85
        extra.append(f"High portfolio beta ({portfolio_beta:.2f}): slight reduction")

    return result.model_copy(
        update={
            "position_size": result.position_size * multiplier,
            "position_percent": result.position_percent * multiplier,
            "adjusted_kelly": result.adjusted_kelly * multiplier,
            "reasoning": [*result.reasoning, *extra],
        }
    )


def trade_return_percent(trade: Trade) -> float:
    """Realized return of a closing trade against its cost basis."""
    if trade.realized_pnl is None:
        return 0.0
    cost_basis = trade.total - trade.realized_pnl if trade.action == TradeAction.SELL.value else trade.total + trade.realized_pnl
    if cost_basis <= 0:
        return 0.0
    return trade.realized_pnl / cost_basis * 100


def calculate_agent_performance(trades: List[Trade]) -> AgentPerformance:
    """Win/loss statistics over closing trades (SELL and BUY_TO_COVER)."""
    closed = [t for t in trades if t.action in CLOSING_ACTIONS]
    if not closed:
        return AgentPerformance()

    pnls = np.array([t.realized_pnl or 0.0 for t in closed])
    returns = np.array([trade_return_percent(t) for t in closed])
    winners = pnls > 0
    losers = pnls < 0

    sharpe = 0.0
    if len(closed) >= 2:
        std = float(np.std(returns))
        if std > 0:
            sharpe = float(np.mean(returns) / std * np.sqrt(TRADING_DAYS_PER_YEAR))

    return AgentPerformance(
        total_trades=len(closed),
        winning_trades=int(winners.sum()),
        losing_trades=int(losers.sum()),
        total_pnl=float(pnls.sum()),
        avg_win_percent=float(returns[winners].mean()) if winners.any() else 0.0,
        avg_loss_percent=float(np.abs(returns[losers]).mean()) if losers.any() else 0.0,
        win_rate=float(winners.sum() / len(closed)),
        sharpe_ratio=sharpe,
    )


def calculate_agent_stats(trades: List[Trade], limit: int = 100) -> AgentStats:
    """Dollar win/loss summary over the most recent `limit` trades."""
    recent = sorted(trades, key=lambda t: t.timestamp, reverse=True)[:limit]
    if not recent:
        return AgentStats()
    wins = [t.realized_pnl for t in recent if (t.realized_pnl or 0) > 0]
    losses = [t.realized_pnl for t in recent if (t.realized_pnl or 0) < 0]
    return AgentStats(
        win_rate=len(wins) / len(recent) * 100,
        total_trades=len(recent),
        avg_win=sum(wins) / len(wins) if wins else 0.0,
        avg_loss=sum(losses) / len(losses) if losses else 0.0,
        best_trade=max(wins) if wins else 0.0,
        worst_trade=min(losses) if losses else 0.0,
    )


def get_position_size_summary(result: PositionSizeResult) -> str:
    if result.is_no_trade:
        return "NO TRADE RECOMMENDED - Negative edge detected or insufficient conditions"
    lines = [
        "## Recommended Position Size",
        f"**Amount**: ${result.position_size:.0f} ({result.position_percent:.1f}% of account)",
        f"**Kelly Fraction**: {result.kelly_fraction * 100:.1f}% -> Adjusted to {result.adjusted_kelly * 100:.1f}%",
        "",
        "**Sizing Logic**:",
    ]
    lines.extend(f"- {r}" for r in result.reasoning)
    return "\n".join(lines) + "\n"


def estimate_volatility(month_trend: Optional[float]) -> float:
    """Month-trend proxy for annualized volatility when no price history exists."""
    return abs(month_trend) / 100 if month_trend else BASE_VOLATILITY
