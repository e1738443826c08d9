"""
Market context analysis.

Macro view shared by every agent in a cycle:
- S&P 500 (SPY) trend and regime
- VIX interpretation
- Sector rotation relative to SPY
"""
import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .indicators import relative_strength
from .market_data import MarketDataProvider
from .schemas import MarketContext, SectorPerformance, SpyTrend, StockQuote, VixReading

logger = logging.getLogger("arena_trader.market_context")

SECTOR_MAPPING: Dict[str, List[str]] = {
    "tech": ["AAPL", "MSFT", "NVDA", "GOOGL", "META"],
    "financials": ["JPM", "BAC", "V", "MA"],
    "energy": ["XOM", "CVX"],
    "healthcare": ["UNH", "JNJ", "LLY"],
    "consumer": ["WMT", "PG", "KO", "COST"],
}

# (upper bound, interpretation, sentiment), checked in order
VIX_BANDS: List[Tuple[float, str, str]] = [
    (12, "low_volatility", "risk_on"),
    (16, "normal", "risk_on"),
    (20, "elevated", "cautious"),
    (30, "high_fear", "risk_off"),
]

SECTOR_LEAD_THRESHOLD = 2.0


def build_spy_trend(price: float, daily_change: float = 0.0, history: Sequence[float] = ()) -> SpyTrend:
    """Moving averages, week/month change and regime for SPY (history newest first)."""
    ma7 = ma30 = ma90 = price
    week_change = month_change = 0.0

    if history:
        week = np.asarray(history[:7], dtype=float)
        month = np.asarray(history[:30], dtype=float)
        quarter = np.asarray(history[:90], dtype=float)
        ma7 = float(week.mean())
        week_change = (price - week[-1]) / week[-1] * 100
        ma30 = float(month.mean())
        month_change = (price - month[-1]) / month[-1] * 100
        ma90 = float(quarter.mean())

    # A flat series (no history) is neutral, not bearish
    if price > ma30 and price > ma90 and ma30 > ma90:
        regime = "bullish"
    elif price < ma30 and price < ma90 and ma30 < ma90:
        regime = "bearish"
    else:
        regime = "neutral"

    return SpyTrend(
        price=price,
        daily_change=daily_change,
        ma7=ma7,
        ma30=ma30,
        ma90=ma90,
        week_change=week_change,
        month_change=month_change,
        regime=regime,
    )


def interpret_vix(level: float) -> VixReading:
    for upper, interpretation, sentiment in VIX_BANDS:
        if level < upper:
            return VixReading(level=level, interpretation=interpretation, sentiment=sentiment)
    return VixReading(level=level, interpretation="extreme_fear", sentiment="risk_off")


def calculate_sector_rotation(stocks: List[StockQuote], spy_trend: SpyTrend) -> List[SectorPerformance]:
    sectors = []
    for sector, symbols in SECTOR_MAPPING.items():
        members = [s for s in stocks if s.symbol in symbols]
        if not members:
            sectors.append(SectorPerformance(sector=sector))
            continue
        avg_change = float(np.mean([s.change_percent for s in members]))
        week_trend = float(np.mean([s.week_trend or 0.0 for s in members]))
        month_trend = float(np.mean([s.month_trend or 0.0 for s in members]))
        rs = month_trend - spy_trend.month_change
        if rs > SECTOR_LEAD_THRESHOLD:
            status = "leading"
        elif rs < -SECTOR_LEAD_THRESHOLD:
            status = "lagging"
        else:
            status = "inline"
        sectors.append(
            SectorPerformance(
                sector=sector,
                avg_change=avg_change,
                week_trend=week_trend,
                month_trend=month_trend,
                relative_strength=rs,
                status=status,
            )
        )
    return sectors


def leading_and_lagging(sectors: List[SectorPerformance]) -> Tuple[Optional[str], Optional[str]]:
    if not sectors:
        return None, None
    ranked = sorted(sectors, key=lambda s: s.relative_strength, reverse=True)
    return ranked[0].sector, ranked[-1].sector


def calculate_relative_strength(stocks: List[StockQuote], spy_trend: SpyTrend) -> List[StockQuote]:
    return [s.model_copy(update={"relative_strength": relative_strength(s, spy_trend.month_change)}) for s in stocks]


def generate_market_summary(context: MarketContext) -> str:
    spy = context.spy_trend
    parts = [f"Market is {spy.regime.upper()}"]

    if spy.month_change > 5:
        parts.append("with strong upward momentum")
    elif spy.month_change > 2:
        parts.append("with moderate upward momentum")
    elif spy.month_change < -5:
        parts.append("with strong downward pressure")
    elif spy.month_change < -2:
        parts.append("with moderate downward pressure")
    else:
        parts.append("trading sideways")

    parts.append(f"Volatility is {context.vix.interpretation.replace('_', ' ')} (VIX {context.vix.level:.0f})")

    if context.leading_sector and context.lagging_sector:
        parts.append(f"{context.leading_sector} leading, {context.lagging_sector} lagging")

    return ". ".join(parts) + "."


async def fetch_spy_trend(market_data: MarketDataProvider) -> SpyTrend:
    try:
        spy = await market_data.get_quote("SPY")
        if spy is None:
            raise ValueError("no SPY quote")
        history = await market_data.get_price_history("SPY", 90)
        return build_spy_trend(spy.price, spy.change_percent, history)
    except Exception as e:
        logger.error(f"Error fetching SPY trend: {e}")
        return SpyTrend()


async def fetch_vix(market_data: MarketDataProvider) -> VixReading:
    try:
        vix = await market_data.get_quote("VIX")
        if vix is None:
            raise ValueError("no VIX quote")
        return interpret_vix(vix.price)
    except Exception as e:
        logger.error(f"Error fetching VIX: {e}")
        return VixReading()


async def get_market_context(market_data: MarketDataProvider, stocks: List[StockQuote]) -> MarketContext:
    """Build the cycle's market context. Missing SPY/VIX data falls back to neutral defaults."""
    logger.info("Analyzing market context...")
    spy_trend = await fetch_spy_trend(market_data)
    vix = await fetch_vix(market_data)
    sectors = calculate_sector_rotation(stocks, spy_trend)
    leading, lagging = leading_and_lagging(sectors)

    context = MarketContext(
        spy_trend=spy_trend,
        vix=vix,
        sector_rotation=sectors,
        leading_sector=leading,
        lagging_sector=lagging,
    )
    context.summary = generate_market_summary(context)

    logger.info(
        f"  SPY: {spy_trend.regime.upper()} ({spy_trend.daily_change:+.2f}% today, "
        f"{spy_trend.month_change:+.2f}% month)"
    )
    logger.info(f"  VIX: {vix.level:.1f} ({vix.interpretation}) -> {vix.sentiment.upper()}")
    if leading and lagging:
        logger.info(f"  Leading sector: {leading.upper()}, lagging sector: {lagging.upper()}")
    return context
