"""
Market data provider contract.

Quote retrieval and caching belong to an external service; the trading core
only needs current quotes and a newest-first closing-price history.
"""
from typing import Dict, List, Optional, Protocol, runtime_checkable

from .schemas import StockQuote


@runtime_checkable
class MarketDataProvider(Protocol):
    async def get_quote(self, symbol: str) -> Optional[StockQuote]:
        ...

    async def get_price_history(self, symbol: str, days: int = 90) -> List[float]:
        """Closing prices, newest first."""
        ...

    async def get_volume_history(self, symbol: str, days: int = 30) -> List[float]:
        """Daily volumes, newest first."""
        ...


class InMemoryMarketData:
    """Provider backed by dictionaries, for paper runs and tests."""

    def __init__(
        self,
        quotes: Optional[Dict[str, StockQuote]] = None,
        history: Optional[Dict[str, List[float]]] = None,
        volumes: Optional[Dict[str, List[float]]] = None,
    ):
        self.quotes: Dict[str, StockQuote] = dict(quotes or {})
        self.history: Dict[str, List[float]] = dict(history or {})
        self.volumes: Dict[str, List[float]] = dict(volumes or {})

    def set_price(self, symbol: str, price: float, **fields) -> None:
        self.quotes[symbol] = StockQuote(symbol=symbol, price=price, **fields)

    async def get_quote(self, symbol: str) -> Optional[StockQuote]:
        quote = self.quotes.get(symbol)
        return quote.model_copy() if quote else None

    async def get_price_history(self, symbol: str, days: int = 90) -> List[float]:
        return list(self.history.get(symbol, []))[:days]

    async def get_volume_history(self, symbol: str, days: int = 30) -> List[float]:
        return list(self.volumes.get(symbol, []))[:days]
