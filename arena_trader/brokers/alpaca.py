"""
Alpaca adapter built on alpaca-py (paper or live account per agent).
"""
import asyncio
import logging
from typing import Any, Optional

from alpaca.common.exceptions import APIError
from alpaca.data.historical import StockHistoricalDataClient
from alpaca.data.requests import StockLatestTradeRequest
from alpaca.trading.client import TradingClient
from alpaca.trading.enums import OrderSide, TimeInForce
from alpaca.trading.requests import MarketOrderRequest

from ..schemas import AccountSnapshot, BrokerPosition, ExecutionResult
from .base import Broker
from .fulfillment import OrderState, OrderUpdate, fulfill_order

logger = logging.getLogger("arena_trader.brokers.alpaca")


def _status_value(status: Any) -> str:
    return str(getattr(status, "value", status) or "").lower()


def extract_alpaca_fill(order: Any) -> OrderUpdate:
    """Map an alpaca-py Order onto the shared state machine."""
    status = _status_value(order.status)
    if status == "filled":
        return OrderUpdate(
            state=OrderState.FILLED,
            filled_price=float(order.filled_avg_price or 0),
            filled_quantity=float(order.filled_qty or 0),
        )
    if status in ("rejected", "expired"):
        return OrderUpdate(state=OrderState.REJECTED, reason=f"Order {status} by Alpaca")
    if status in ("canceled", "cancelled"):
        return OrderUpdate(state=OrderState.CANCELLED, reason="Order canceled at Alpaca")
    return OrderUpdate(state=OrderState.POLLING)


class AlpacaBroker(Broker):
    """Alpaca Markets via alpaca-py. Blocking SDK calls run in a worker thread."""

    name = "Alpaca"

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        paper: bool = True,
        trading_client: Optional[TradingClient] = None,
        data_client: Optional[StockHistoricalDataClient] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        if not api_key or not secret_key:
            raise ValueError("Alpaca API credentials not configured")
        self.paper = paper
        self.client = trading_client or TradingClient(api_key=api_key, secret_key=secret_key, paper=paper)
        self.data_client = data_client or StockHistoricalDataClient(api_key=api_key, secret_key=secret_key)

    async def _latest_price(self, symbol: str) -> float:
        request = StockLatestTradeRequest(symbol_or_symbols=symbol)
        trades = await asyncio.to_thread(self.data_client.get_stock_latest_trade, request)
        trade = trades[symbol]
        return float(trade.price)

    async def _execute(self, side: OrderSide, symbol: str, quantity: float) -> ExecutionResult:
        try:
            reference_price = await self._latest_price(symbol)
            self.tracker.record_success(self.name, "quote")
        except Exception as e:
            self.tracker.record_error(self.name, "quote", e)
            logger.error(f"[Alpaca] Quote for {symbol} failed: {e}")
            return ExecutionResult.failed(f"Alpaca quote failed: {e}", requested_quantity=quantity, broker=self.name)

        async def submit() -> str:
            request = MarketOrderRequest(
                symbol=symbol,
                qty=quantity,
                side=side,
                time_in_force=TimeInForce.DAY,
            )
            order = await asyncio.to_thread(self.client.submit_order, order_data=request)
            return str(order.id)

        async def fetch_status(order_id: str) -> Any:
            return await asyncio.to_thread(self.client.get_order_by_id, order_id)

        logger.info(f"[Alpaca] {side.value.upper()} {quantity} {symbol} @ ~${reference_price:.2f}")
        return await fulfill_order(
            broker=self.name,
            symbol=symbol,
            requested_quantity=quantity,
            reference_price=reference_price,
            submit=submit,
            fetch_status=fetch_status,
            extract_fill=extract_alpaca_fill,
            policy=self.policy,
            tracker=self.tracker,
        )

    async def submit_buy(self, symbol: str, quantity: float, agent_id: str) -> ExecutionResult:
        return await self._execute(OrderSide.BUY, symbol, quantity)

    async def submit_sell(self, symbol: str, quantity: float, agent_id: str) -> ExecutionResult:
        return await self._execute(OrderSide.SELL, symbol, quantity)

    async def get_account(self) -> AccountSnapshot:
        account = await asyncio.to_thread(self.client.get_account)
        positions = await asyncio.to_thread(self.client.get_all_positions)
        return AccountSnapshot(
            account_value=float(account.equity or 0),
            cash_balance=float(account.cash or 0),
            positions=[
                BrokerPosition(
                    symbol=p.symbol,
                    quantity=float(p.qty),
                    avg_entry_price=float(p.avg_entry_price),
                    market_value=float(p.market_value or 0),
                )
                for p in positions
            ],
        )

    async def is_market_open(self) -> bool:
        try:
            clock = await asyncio.to_thread(self.client.get_clock)
        except APIError as e:
            self.tracker.record_error(self.name, "clock", e)
            logger.error(f"[Alpaca] Market clock API error: {e}")
            return False
        except Exception as e:
            # alpaca-py lets requests errors through on network failures
            self.tracker.record_error(self.name, "clock", e)
            logger.error(f"[Alpaca] Failed to check market status: {type(e).__name__}: {e}")
            return False
        self.tracker.record_success(self.name, "clock")
        return bool(clock.is_open)

    async def cancel_all_orders(self) -> Optional[str]:
        try:
            await asyncio.to_thread(self.client.cancel_orders)
        except APIError as e:
            self.tracker.record_error(self.name, "cancel_all", e)
            return f"Alpaca cancel failed: {e}"
        except Exception as e:
            self.tracker.record_error(self.name, "cancel_all", e)
            logger.error(f"[Alpaca] Cancel all orders failed: {type(e).__name__}: {e}")
            return f"Alpaca cancel failed: {type(e).__name__}: {e}"
        self.tracker.record_success(self.name, "cancel_all")
        logger.info("[Alpaca] Cancelled all open orders")
        return None
