"""
Charles Schwab adapter (Trader API v1 with a pre-issued refresh token).
"""
import base64
import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from ..errors import BrokerExecutionFailed
from ..schemas import AccountSnapshot, BrokerPosition
from .fulfillment import OrderState, OrderUpdate
from .http import HttpBroker

logger = logging.getLogger("arena_trader.brokers.schwab")

API_URL = "https://api.schwabapi.com"
TOKEN_REFRESH_MARGIN_SEC = 300


class SchwabBroker(HttpBroker):
    name = "Schwab"
    base_url = API_URL

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        account_id: str,
        refresh_token: str,
        **kwargs,
    ):
        super().__init__(**kwargs)
        if not all([client_id, client_secret, account_id, refresh_token]):
            raise ValueError(
                "Schwab credentials not configured "
                "(SCHWAB_CLIENT_ID, SCHWAB_CLIENT_SECRET, SCHWAB_ACCOUNT_ID, SCHWAB_REFRESH_TOKEN)"
            )
        self.client_id = client_id
        self.client_secret = client_secret
        self.account_id = account_id
        self.refresh_token = refresh_token
        self.access_token: Optional[str] = None
        self.token_expires_at = 0.0

    async def _ensure_token(self) -> str:
        """Exchange the refresh token when the access token is missing or about to expire."""
        if self.access_token and time.time() < self.token_expires_at - TOKEN_REFRESH_MARGIN_SEC:
            return self.access_token

        basic = base64.b64encode(f"{self.client_id}:{self.client_secret}".encode()).decode()
        try:
            response = await self.client.post(
                f"{API_URL}/v1/oauth/token",
                headers={
                    "Authorization": f"Basic {basic}",
                    "Content-Type": "application/x-www-form-urlencoded",
                },
                data={"grant_type": "refresh_token", "refresh_token": self.refresh_token},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            self.tracker.record_error(self.name, "token", e)
            raise BrokerExecutionFailed(self.name, f"token refresh failed: {e}") from e

        data = response.json()
        self.access_token = data["access_token"]
        self.token_expires_at = time.time() + float(data.get("expires_in", 1800))
        if data.get("refresh_token"):
            self.refresh_token = data["refresh_token"]
        logger.info("[Schwab] Access token refreshed")
        return self.access_token

    async def _headers(self) -> Dict[str, str]:
        token = await self._ensure_token()
        return {"Authorization": f"Bearer {token}", "Accept": "application/json"}

    async def _reference_price(self, symbol: str) -> float:
        data = await self._request("GET", "/marketdata/v1/quotes", params={"symbols": symbol})
        quote = (data.get(symbol) or {}).get("quote") or {}
        price = quote.get("lastPrice") or quote.get("askPrice")
        if not price:
            raise ValueError(f"No Schwab quote for {symbol}")
        return float(price)

    async def _submit_order(self, side: str, symbol: str, quantity: float) -> str:
        payload = {
            "orderType": "MARKET",
            "session": "NORMAL",
            "duration": "DAY",
            "orderStrategyType": "SINGLE",
            "orderLegCollection": [
                {
                    "instruction": side.upper(),
                    "quantity": int(quantity),
                    "instrument": {"symbol": symbol, "assetType": "EQUITY"},
                }
            ],
        }
        response = await self._send("POST", f"/trader/v1/accounts/{self.account_id}/orders", json=payload)
        location = response.headers.get("Location", "")
        order_id = location.rstrip("/").split("/")[-1] if location else ""
        if not order_id:
            raise ValueError("Schwab did not return an order location")
        return order_id

    async def _fetch_order(self, order_id: str) -> Any:
        return await self._request("GET", f"/trader/v1/accounts/{self.account_id}/orders/{order_id}")

    @staticmethod
    def extract_fill(payload: Any) -> OrderUpdate:
        order = payload or {}
        status = order.get("status")
        if status == "FILLED":
            activities = order.get("orderActivityCollection") or [{}]
            legs = activities[0].get("executionLegs") or [{}]
            return OrderUpdate(
                state=OrderState.FILLED,
                filled_price=float(legs[0].get("price") or 0),
                filled_quantity=float(order.get("filledQuantity") or 0),
            )
        if status in ("REJECTED", "EXPIRED"):
            return OrderUpdate(state=OrderState.REJECTED, reason=order.get("statusDescription") or f"Order {status}")
        if status == "CANCELED":
            return OrderUpdate(state=OrderState.CANCELLED, reason="Order CANCELED")
        return OrderUpdate(state=OrderState.POLLING)

    async def get_account(self) -> AccountSnapshot:
        data = await self._request("GET", f"/trader/v1/accounts/{self.account_id}", params={"fields": "positions"})
        account = data.get("securitiesAccount") or {}
        balances = account.get("currentBalances") or {}
        positions = []
        for pos in account.get("positions") or []:
            quantity = float(pos.get("longQuantity") or 0)
            if quantity <= 0:
                continue
            positions.append(
                BrokerPosition(
                    symbol=pos["instrument"]["symbol"],
                    quantity=quantity,
                    avg_entry_price=float(pos.get("averagePrice") or 0),
                    market_value=float(pos.get("marketValue") or 0),
                )
            )
        return AccountSnapshot(
            account_value=float(balances.get("liquidationValue") or 0),
            cash_balance=float(balances.get("cashBalance") or 0),
            positions=positions,
        )

    async def is_market_open(self) -> bool:
        today = datetime.utcnow().date().isoformat()
        try:
            data = await self._request("GET", "/marketdata/v1/markets", params={"markets": "equity", "date": today})
        except BrokerExecutionFailed as e:
            logger.error(f"[Schwab] Failed to check market status: {e}")
            return False
        equity = data.get("equity") or {}
        if "isOpen" in equity:
            return equity["isOpen"] is True
        # Keyed by product code, e.g. {"EQ": {...}}
        return any(isinstance(v, dict) and v.get("isOpen") is True for v in equity.values())

    async def cancel_all_orders(self) -> Optional[str]:
        try:
            orders = await self._request("GET", f"/trader/v1/accounts/{self.account_id}/orders")
            cancelled = 0
            for order in orders or []:
                if order.get("status") in ("WORKING", "PENDING_ACTIVATION", "QUEUED"):
                    await self._request("DELETE", f"/trader/v1/accounts/{self.account_id}/orders/{order['orderId']}")
                    cancelled += 1
            logger.info(f"[Schwab] Cancelled {cancelled} open orders")
            return None
        except BrokerExecutionFailed as e:
            return str(e)
