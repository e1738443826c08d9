"""
Webull OpenAPI adapter (app key/secret client-credentials token).
"""
import logging
import time
from typing import Any, Dict, Optional

import httpx

from ..errors import BrokerExecutionFailed
from ..schemas import AccountSnapshot, BrokerPosition
from .fulfillment import OrderState, OrderUpdate
from .http import HttpBroker

logger = logging.getLogger("arena_trader.brokers.webull")

API_URL = "https://ustrade-openapi.webull.com"
TOKEN_REFRESH_MARGIN_SEC = 300


class WebullBroker(HttpBroker):
    name = "Webull"
    base_url = API_URL

    def __init__(self, app_key: str, app_secret: str, account_id: str, **kwargs):
        super().__init__(**kwargs)
        if not all([app_key, app_secret, account_id]):
            raise ValueError("Webull credentials not configured (WEBULL_APP_KEY, WEBULL_APP_SECRET, WEBULL_ACCOUNT_ID)")
        self.app_key = app_key
        self.app_secret = app_secret
        self.account_id = account_id
        self.access_token: Optional[str] = None
        self.token_expires_at = 0.0

    async def _ensure_token(self) -> str:
        if self.access_token and time.time() < self.token_expires_at - TOKEN_REFRESH_MARGIN_SEC:
            return self.access_token
        try:
            response = await self.client.post(
                f"{API_URL}/api/v1/oauth/token",
                json={
                    "app_key": self.app_key,
                    "app_secret": self.app_secret,
                    "grant_type": "client_credentials",
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            self.tracker.record_error(self.name, "token", e)
            raise BrokerExecutionFailed(self.name, f"token refresh failed: {e}") from e
        data = response.json()
        self.access_token = data["access_token"]
        self.token_expires_at = time.time() + float(data.get("expires_in", 3600))
        logger.info("[Webull] Access token refreshed")
        return self.access_token

    async def _headers(self) -> Dict[str, str]:
        token = await self._ensure_token()
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _reference_price(self, symbol: str) -> float:
        data = (await self._request("GET", "/api/v1/quote", params={"symbol": symbol})).get("data") or {}
        price = data.get("last_price") or data.get("ask_price")
        if not price:
            raise ValueError(f"No Webull quote for {symbol}")
        return float(price)

    async def _submit_order(self, side: str, symbol: str, quantity: float) -> str:
        data = await self._request(
            "POST",
            "/api/v1/trade/order",
            json={
                "account_id": self.account_id,
                "symbol": symbol,
                "action": side.upper(),
                "order_type": "MARKET",
                "quantity": quantity,
                "time_in_force": "DAY",
            },
        )
        order_id = (data.get("data") or {}).get("order_id")
        if not order_id:
            raise ValueError("Failed to place Webull order - no order ID returned")
        return str(order_id)

    async def _fetch_order(self, order_id: str) -> Any:
        return await self._request("GET", f"/api/v1/trade/order/{order_id}")

    @staticmethod
    def extract_fill(payload: Any) -> OrderUpdate:
        order = (payload or {}).get("data") or {}
        status = order.get("status")
        if status == "FILLED":
            return OrderUpdate(
                state=OrderState.FILLED,
                filled_price=float(order.get("avg_fill_price") or 0),
                filled_quantity=float(order.get("filled_quantity") or 0),
            )
        if status in ("REJECTED", "FAILED"):
            return OrderUpdate(state=OrderState.REJECTED, reason=order.get("reject_reason") or f"Order {status}")
        if status == "CANCELLED":
            return OrderUpdate(state=OrderState.CANCELLED, reason="Order CANCELLED")
        return OrderUpdate(state=OrderState.POLLING)

    async def get_account(self) -> AccountSnapshot:
        account = (await self._request("GET", f"/api/v1/account/{self.account_id}")).get("data") or {}
        positions = (await self._request("GET", f"/api/v1/account/{self.account_id}/positions")).get("data") or []
        return AccountSnapshot(
            account_value=float(account.get("total_value") or 0),
            cash_balance=float(account.get("cash_balance") or 0),
            positions=[
                BrokerPosition(
                    symbol=p["symbol"],
                    quantity=float(p.get("quantity") or 0),
                    avg_entry_price=float(p.get("avg_price") or 0),
                    market_value=float(p.get("market_value") or 0),
                )
                for p in positions
            ],
        )

    async def is_market_open(self) -> bool:
        try:
            status = (await self._request("GET", "/api/v1/market/status")).get("data") or {}
        except BrokerExecutionFailed as e:
            logger.error(f"[Webull] Failed to check market status: {e}")
            return False
        return status.get("is_open") is True or status.get("state") == "OPEN"

    async def cancel_all_orders(self) -> Optional[str]:
        try:
            data = await self._request(
                "GET", "/api/v1/trade/orders", params={"account_id": self.account_id, "status": "OPEN"}
            )
            orders = data.get("data") or []
            for order in orders:
                if order.get("order_id"):
                    await self._request("DELETE", f"/api/v1/trade/order/{order['order_id']}")
            logger.info(f"[Webull] Cancelled {len(orders)} open orders")
            return None
        except BrokerExecutionFailed as e:
            return str(e)
