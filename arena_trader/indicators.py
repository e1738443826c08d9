"""
Technical fields derived from daily price and volume history.

All history arguments are newest first.
"""
import logging
from typing import Dict, List, Optional, Sequence

import numpy as np

from .schemas import StockQuote

logger = logging.getLogger("arena_trader.indicators")

TRADING_DAYS_PER_YEAR = 252
RSI_PERIOD = 14


def percent_change(current: float, base: float) -> Optional[float]:
    if not base:
        return None
    return (current - base) / base * 100


def trend(price: float, history: Sequence[float], days: int) -> Optional[float]:
    """Percent change from the oldest close in the window to the current price."""
    window = list(history[:days])
    if len(window) < 2:
        return None
    return percent_change(price, window[-1])


def moving_average(history: Sequence[float], days: int) -> Optional[float]:
    window = np.asarray(history[:days], dtype=float)
    if window.size == 0:
        return None
    return float(window.mean())


def calculate_rsi(history: Sequence[float], period: int = RSI_PERIOD) -> Optional[float]:
    """
    Simple-average RSI over the most recent `period` price changes.

    Returns None with fewer than `period` prices and 100 when there were no
    losses in the window.
    """
    if len(history) < period:
        return None
    # Oldest to newest so that diffs are forward changes
    prices = np.asarray(history[: period + 1], dtype=float)[::-1]
    changes = np.diff(prices)
    avg_gain = changes[changes > 0].sum() / period
    avg_loss = -changes[changes < 0].sum() / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return float(100 - (100 / (1 + rs)))


def calculate_volatility(history: Sequence[float], days: int = 30, min_prices: int = 5) -> Optional[float]:
    """Annualized volatility: population std of daily returns times sqrt(252)."""
    window = np.asarray(history[:days], dtype=float)[::-1]
    if window.size < min_prices:
        return None
    returns = np.diff(window) / window[:-1]
    return float(np.std(returns) * np.sqrt(TRADING_DAYS_PER_YEAR))


def volume_stats(volume: float, volumes: Sequence[float], days: int = 7) -> Dict[str, Optional[float]]:
    window = np.asarray([v for v in volumes[:days] if v is not None], dtype=float)
    if window.size == 0:
        return {"avg_volume": None, "volume_trend": None}
    avg_volume = float(window.mean())
    volume_trend = percent_change(volume, avg_volume) if volume else None
    return {"avg_volume": avg_volume, "volume_trend": volume_trend}


def relative_strength(stock: StockQuote, spy_month_change: float) -> float:
    """Stock month trend minus the index month change, in percentage points."""
    return (stock.month_trend or 0.0) - spy_month_change


def enrich_stock(
    stock: StockQuote,
    history: Sequence[float],
    volumes: Optional[Sequence[float]] = None,
) -> StockQuote:
    """Return a copy of the quote with its derived technical fields filled in."""
    if not history:
        return stock

    fields = {
        "week_trend": trend(stock.price, history, 7),
        "month_trend": trend(stock.price, history, 30),
        "ma7": moving_average(history, 7),
        "ma30": moving_average(history, 30),
        "ma90": moving_average(history, 90),
        "high52w": float(np.max(history[:90])),
        "low52w": float(np.min(history[:90])),
        "rsi": calculate_rsi(history),
        "volatility": calculate_volatility(history),
    }
    if volumes:
        fields.update(volume_stats(stock.volume, volumes))
    return stock.model_copy(update=fields)


def enrich_stocks(
    stocks: List[StockQuote],
    histories: Dict[str, List[float]],
    volumes: Optional[Dict[str, List[float]]] = None,
) -> List[StockQuote]:
    volumes = volumes or {}
    enriched = [enrich_stock(s, histories.get(s.symbol, []), volumes.get(s.symbol)) for s in stocks]
    with_history = sum(1 for s in stocks if histories.get(s.symbol))
    logger.info(f"Enriched {with_history}/{len(stocks)} stocks with historical technicals")
    return enriched
