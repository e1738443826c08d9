"""
Shared httpx plumbing for REST brokerage adapters.
"""
import logging
from abc import abstractmethod
from typing import Any, Dict, Optional

import httpx

from ..errors import BrokerExecutionFailed
from ..schemas import ExecutionResult
from .base import Broker
from .fulfillment import OrderUpdate, fulfill_order

logger = logging.getLogger("arena_trader.brokers.http")


class HttpBroker(Broker):
    """Broker whose calls go over a lazily created httpx.AsyncClient."""

    base_url: str = ""
    timeout: float = 30.0

    def __init__(self, client: Optional[httpx.AsyncClient] = None, **kwargs):
        super().__init__(**kwargs)
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}

    async def _send(self, method: str, endpoint: str, base: Optional[str] = None, **kwargs) -> httpx.Response:
        """Authenticated request; raises httpx errors for the caller to classify."""
        base = base if base is not None else self.base_url
        url = f"{base}{endpoint}"
        headers = {**(await self._headers()), **kwargs.pop("headers", {})}
        operation = f"{method} {endpoint}"
        try:
            response = await self.client.request(method, url, headers=headers, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            self.tracker.record_error(self.name, operation, e)
            raise BrokerExecutionFailed(
                self.name, f"API error: {e.response.status_code} - {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            self.tracker.record_error(self.name, operation, e)
            raise BrokerExecutionFailed(self.name, f"{type(e).__name__}: {e}") from e
        self.tracker.record_success(self.name, operation)
        return response

    async def _request(self, method: str, endpoint: str, base: Optional[str] = None, **kwargs) -> Any:
        response = await self._send(method, endpoint, base=base, **kwargs)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            self.tracker.record_error(self.name, f"{method} {endpoint}", e)
            raise BrokerExecutionFailed(self.name, f"Invalid JSON from {endpoint}: {response.text[:200]}") from e

    @abstractmethod
    async def _reference_price(self, symbol: str) -> float:
        """Last trade price, used as the slippage reference."""

    @abstractmethod
    async def _submit_order(self, side: str, symbol: str, quantity: float) -> str:
        """Place a market order and return the broker order id."""

    @abstractmethod
    async def _fetch_order(self, order_id: str) -> Any:
        ...

    @staticmethod
    @abstractmethod
    def extract_fill(payload: Any) -> OrderUpdate:
        ...

    async def _execute(self, side: str, symbol: str, quantity: float) -> ExecutionResult:
        logger.info(f"[{self.name}] Executing {side.upper()}: {quantity} shares of {symbol}")
        try:
            reference_price = await self._reference_price(symbol)
        except Exception as e:
            logger.error(f"[{self.name}] Quote for {symbol} failed: {e}")
            return ExecutionResult.failed(
                f"{self.name} quote failed: {e}", requested_quantity=quantity, broker=self.name
            )

        return await fulfill_order(
            broker=self.name,
            symbol=symbol,
            requested_quantity=quantity,
            reference_price=reference_price,
            submit=lambda: self._submit_order(side, symbol, quantity),
            fetch_status=self._fetch_order,
            extract_fill=self.extract_fill,
            policy=self.policy,
            tracker=self.tracker,
            track_calls=False,
        )

    async def submit_buy(self, symbol: str, quantity: float, agent_id: str) -> ExecutionResult:
        return await self._execute("buy", symbol, quantity)

    async def submit_sell(self, symbol: str, quantity: float, agent_id: str) -> ExecutionResult:
        return await self._execute("sell", symbol, quantity)
