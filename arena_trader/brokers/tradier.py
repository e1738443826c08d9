"""
Tradier adapter (bearer token; sandbox or production).
"""
import logging
from typing import Any, Dict, List, Optional

from ..errors import BrokerExecutionFailed
from ..schemas import AccountSnapshot, BrokerPosition
from .fulfillment import OrderState, OrderUpdate
from .http import HttpBroker

logger = logging.getLogger("arena_trader.brokers.tradier")

SANDBOX_URL = "https://sandbox.tradier.com/v1"
PRODUCTION_URL = "https://api.tradier.com/v1"


def _as_list(value: Any) -> List[Dict[str, Any]]:
    """Tradier returns a bare object for one item and "null" for none."""
    if not value or value == "null":
        return []
    if isinstance(value, dict):
        return [value]
    return list(value)


class TradierBroker(HttpBroker):
    name = "Tradier"

    def __init__(self, access_token: str, account_id: str, sandbox: bool = True, **kwargs):
        super().__init__(**kwargs)
        if not access_token or not account_id:
            raise ValueError("Tradier credentials not configured (TRADIER_ACCESS_TOKEN, TRADIER_ACCOUNT_ID)")
        self.access_token = access_token
        self.account_id = account_id
        self.base_url = SANDBOX_URL if sandbox else PRODUCTION_URL

    async def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }

    async def _reference_price(self, symbol: str) -> float:
        data = await self._request("GET", "/markets/quotes", params={"symbols": symbol})
        quotes = _as_list(data.get("quotes", {}).get("quote"))
        if not quotes or quotes[0].get("last") is None:
            raise ValueError(f"No Tradier quote for {symbol}")
        return float(quotes[0]["last"])

    async def _submit_order(self, side: str, symbol: str, quantity: float) -> str:
        data = await self._request(
            "POST",
            f"/accounts/{self.account_id}/orders",
            data={
                "class": "equity",
                "symbol": symbol,
                "side": side,
                "quantity": str(int(quantity)),
                "type": "market",
                "duration": "day",
            },
        )
        order = data.get("order") or {}
        if not order.get("id"):
            raise ValueError(f"Tradier did not return an order id: {data}")
        return str(order["id"])

    async def _fetch_order(self, order_id: str) -> Any:
        return await self._request("GET", f"/accounts/{self.account_id}/orders/{order_id}")

    @staticmethod
    def extract_fill(payload: Any) -> OrderUpdate:
        order = (payload or {}).get("order") or {}
        status = order.get("status")
        if status == "filled":
            return OrderUpdate(
                state=OrderState.FILLED,
                filled_price=float(order.get("avg_fill_price") or 0),
                filled_quantity=float(order.get("exec_quantity") or 0),
            )
        if status in ("rejected", "expired", "error"):
            return OrderUpdate(state=OrderState.REJECTED, reason=order.get("reason_description") or f"Order {status}")
        if status == "canceled":
            return OrderUpdate(state=OrderState.CANCELLED, reason="Order canceled")
        return OrderUpdate(state=OrderState.POLLING)

    async def get_account(self) -> AccountSnapshot:
        balances = (await self._request("GET", f"/accounts/{self.account_id}/balances")).get("balances", {})
        positions_data = await self._request("GET", f"/accounts/{self.account_id}/positions")
        positions = _as_list((positions_data.get("positions") or {}).get("position"))
        return AccountSnapshot(
            account_value=float(balances.get("total_equity") or 0),
            cash_balance=float(balances.get("total_cash") or 0),
            positions=[
                BrokerPosition(
                    symbol=p["symbol"],
                    quantity=float(p.get("quantity") or 0),
                    avg_entry_price=(float(p.get("cost_basis") or 0) / float(p["quantity"])) if p.get("quantity") else 0.0,
                )
                for p in positions
            ],
        )

    async def is_market_open(self) -> bool:
        try:
            data = await self._request("GET", "/markets/clock")
            return (data.get("clock") or {}).get("state") == "open"
        except BrokerExecutionFailed as e:
            logger.error(f"[Tradier] Failed to check market status: {e}")
            return False

    async def cancel_all_orders(self) -> Optional[str]:
        try:
            data = await self._request("GET", f"/accounts/{self.account_id}/orders")
            listing = data.get("orders")
            orders = _as_list(listing.get("order")) if isinstance(listing, dict) else []
            cancelled = 0
            for order in orders:
                if order.get("status") in ("open", "pending", "partially_filled"):
                    await self._request("DELETE", f"/accounts/{self.account_id}/orders/{order['id']}")
                    cancelled += 1
            logger.info(f"[Tradier] Cancelled {cancelled} open orders")
            return None
        except BrokerExecutionFailed as e:
            return str(e)
