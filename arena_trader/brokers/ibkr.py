"""
Interactive Brokers adapter via the Client Portal Web API gateway.
"""
import logging
from datetime import time as dt_time
from typing import Any, Dict, Optional

import httpx

from ..errors import BrokerExecutionFailed
from ..market_hours import MarketSession
from ..schemas import AccountSnapshot, BrokerPosition
from .fulfillment import OrderState, OrderUpdate
from .http import HttpBroker

logger = logging.getLogger("arena_trader.brokers.ibkr")

# Snapshot field ids: 31 last, 84 bid, 86 ask
LAST_FIELD, BID_FIELD, ASK_FIELD = "31", "84", "86"


class InteractiveBrokersBroker(HttpBroker):
    name = "Interactive Brokers"

    def __init__(self, account_id: str, gateway_url: str = "https://localhost:5000/v1/api", **kwargs):
        super().__init__(**kwargs)
        if not account_id:
            raise ValueError("IBKR account not configured (IBKR_ACCOUNT_ID)")
        self.account_id = account_id
        self.base_url = gateway_url.rstrip("/")
        self.session = MarketSession(open_time=dt_time(9, 30), close_time=dt_time(16, 0))
        self._conids: Dict[str, int] = {}

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            # The local gateway serves a self-signed certificate
            self._client = httpx.AsyncClient(timeout=self.timeout, verify=False)
        return self._client

    async def _ensure_session(self) -> None:
        status = await self._request("POST", "/iserver/auth/status")
        if not status.get("authenticated"):
            raise BrokerExecutionFailed(
                self.name, "session not authenticated; log in through the Client Portal Gateway"
            )
        await self._request("POST", "/tickle")

    async def _conid(self, symbol: str) -> int:
        if symbol in self._conids:
            return self._conids[symbol]
        results = await self._request("GET", "/iserver/secdef/search", params={"symbol": symbol})
        for contract in results or []:
            sections = contract.get("sections") or []
            if any(s.get("secType") == "STK" for s in sections) or contract.get("secType") == "STK":
                self._conids[symbol] = int(contract["conid"])
                return self._conids[symbol]
        raise ValueError(f"No IBKR stock contract for {symbol}")

    async def _reference_price(self, symbol: str) -> float:
        await self._ensure_session()
        conid = await self._conid(symbol)
        snapshot = await self._request(
            "GET",
            "/iserver/marketdata/snapshot",
            params={"conids": str(conid), "fields": f"{LAST_FIELD},{BID_FIELD},{ASK_FIELD}"},
        )
        quote = (snapshot or [{}])[0]
        for field_id in (LAST_FIELD, BID_FIELD, ASK_FIELD):
            value = quote.get(field_id)
            if value:
                return float(str(value).lstrip("C").lstrip("H"))
        raise ValueError(f"No IBKR snapshot price for {symbol}")

    async def _submit_order(self, side: str, symbol: str, quantity: float) -> str:
        conid = await self._conid(symbol)
        payload = {
            "orders": [
                {
                    "conid": conid,
                    "secType": f"{conid}:STK",
                    "orderType": "MKT",
                    "side": side.upper(),
                    "quantity": quantity,
                    "tif": "DAY",
                }
            ]
        }
        response = await self._request("POST", f"/iserver/account/{self.account_id}/orders", json=payload)
        first = (response or [{}])[0]
        if first.get("order_id"):
            return str(first["order_id"])
        if first.get("id"):
            # Precautionary message that must be confirmed before the order is live
            confirmed = await self._request("POST", f"/iserver/reply/{first['id']}", json={"confirmed": True})
            order_id = (confirmed or [{}])[0].get("order_id")
            if order_id:
                return str(order_id)
        raise ValueError("Failed to place IBKR order - no order ID returned")

    async def _fetch_order(self, order_id: str) -> Any:
        return await self._request("GET", f"/iserver/account/order/status/{order_id}")

    @staticmethod
    def extract_fill(payload: Any) -> OrderUpdate:
        status = (payload or {}).get("order_status") or (payload or {}).get("status")
        if status == "Filled":
            return OrderUpdate(
                state=OrderState.FILLED,
                filled_price=float(payload.get("average_price") or payload.get("avgPrice") or 0),
                filled_quantity=float(payload.get("cum_fill") or payload.get("filledQuantity") or 0),
            )
        if status in ("Rejected", "Inactive"):
            return OrderUpdate(state=OrderState.REJECTED, reason=payload.get("text") or f"Order {status}")
        if status == "Cancelled":
            return OrderUpdate(state=OrderState.CANCELLED, reason="Order Cancelled")
        return OrderUpdate(state=OrderState.POLLING)

    async def get_account(self) -> AccountSnapshot:
        await self._request("GET", "/portfolio/accounts")
        summary = await self._request("GET", f"/portfolio/{self.account_id}/summary")
        positions = await self._request("GET", f"/portfolio/{self.account_id}/positions/0")

        def summary_value(key: str) -> float:
            entry = summary.get(key) if isinstance(summary, dict) else None
            if isinstance(entry, dict):
                return float(entry.get("amount") or 0)
            return float(entry or 0)

        return AccountSnapshot(
            account_value=summary_value("netliquidation"),
            cash_balance=summary_value("totalcashvalue"),
            positions=[
                BrokerPosition(
                    symbol=p.get("ticker") or p.get("contractDesc") or "UNKNOWN",
                    quantity=abs(float(p.get("position") or 0)),
                    avg_entry_price=float(p.get("avgPrice") or p.get("mktPrice") or 0),
                    market_value=float(p.get("mktValue") or 0),
                )
                for p in positions or []
            ],
        )

    async def is_market_open(self) -> bool:
        return self.session.is_open()

    async def cancel_all_orders(self) -> Optional[str]:
        try:
            data = await self._request("GET", "/iserver/account/orders")
            orders = (data or {}).get("orders") or []
            for order in orders:
                if order.get("orderId"):
                    await self._request("DELETE", f"/iserver/account/{self.account_id}/order/{order['orderId']}")
            logger.info(f"[IBKR] Cancelled {len(orders)} orders")
            return None
        except BrokerExecutionFailed as e:
            return str(e)
