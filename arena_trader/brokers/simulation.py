"""
Realistic execution simulator, used when no live brokerage is configured.

Rules, in order: market-hours gate, latency, bid/ask spread, partial
fills, commission.
"""
import asyncio
import logging
import math
import random
import time
import uuid
from datetime import datetime
from typing import Awaitable, Callable, Optional

from ..config import TradingConfig
from ..errors import BrokerExecutionFailed
from ..market_data import MarketDataProvider
from ..market_hours import MarketSession
from ..schemas import AccountSnapshot, ExecutionResult, OrderStatus
from .base import Broker

logger = logging.getLogger("arena_trader.brokers.simulation")


class ExecutionSimulator:
    """Applies spread, latency and partial-fill effects to a market price."""

    def __init__(
        self,
        config: TradingConfig,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.utcnow,
        session: Optional[MarketSession] = None,
    ):
        self.config = config
        self.rng = rng or random.Random()
        self.sleep = sleep
        self.clock = clock
        self.session = session or MarketSession.from_strings(
            config.market_timezone, config.market_open, config.market_close
        )

    def is_market_open(self) -> bool:
        return self.session.is_open(self.clock())

    def calculate_spread(self, price: float, symbol: str) -> float:
        # Longer tickers stand in for less liquid small caps
        base_bps = self.config.large_cap_spread_bps if len(symbol) <= 4 else self.config.small_cap_spread_bps
        random_factor = self.rng.uniform(0.5, 1.5)
        return price * (base_bps / 10000) * random_factor

    def calculate_partial_fill(self, quantity: float, price: float) -> float:
        if quantity * price < self.config.partial_fill_threshold:
            return quantity
        fill_rate = self.rng.uniform(0.8, 1.0)
        return max(1, math.floor(quantity * fill_rate))

    def calculate_commission(self, quantity: float, price: float) -> float:
        return self.config.commission_per_trade

    async def simulate_latency(self) -> float:
        delay_ms = self.rng.uniform(self.config.latency_min_ms, self.config.latency_max_ms)
        await self.sleep(delay_ms / 1000)
        return delay_ms

    async def execute(self, side: str, symbol: str, quantity: float, market_price: float) -> ExecutionResult:
        start = time.monotonic()

        if not self.is_market_open():
            return ExecutionResult.failed(
                self.session.closed_message(),
                requested_quantity=quantity,
                broker="Simulation",
                execution_time_ms=(time.monotonic() - start) * 1000,
            )

        latency_ms = await self.simulate_latency()

        spread = self.calculate_spread(market_price, symbol)
        executed_price = market_price + spread if side == "buy" else market_price - spread
        executed_quantity = self.calculate_partial_fill(quantity, market_price)
        commission = self.calculate_commission(executed_quantity, executed_price)
        slippage = abs(executed_price - market_price) * executed_quantity

        if executed_quantity < quantity:
            logger.info(f"[Simulation] Partial fill {symbol}: {executed_quantity}/{quantity}")

        return ExecutionResult(
            success=True,
            executed_price=executed_price,
            executed_quantity=executed_quantity,
            requested_quantity=quantity,
            commission=commission,
            slippage=slippage,
            execution_time_ms=max(latency_ms, (time.monotonic() - start) * 1000),
            order_id=f"sim-{uuid.uuid4().hex[:12]}",
            order_status=OrderStatus.FILLED,
            broker="Simulation",
        )

    async def execute_buy(self, symbol: str, quantity: float, market_price: float) -> ExecutionResult:
        return await self.execute("buy", symbol, quantity, market_price)

    async def execute_sell(self, symbol: str, quantity: float, market_price: float) -> ExecutionResult:
        return await self.execute("sell", symbol, quantity, market_price)


class SimulationBroker(Broker):
    """Broker port backed by the execution simulator."""

    name = "Simulation"

    def __init__(self, simulator: ExecutionSimulator, market_data: MarketDataProvider, **kwargs):
        super().__init__(**kwargs)
        self.simulator = simulator
        self.market_data = market_data

    async def _reference_price(self, symbol: str) -> float:
        quote = await self.market_data.get_quote(symbol)
        if quote is None or quote.price <= 0:
            raise ValueError(f"No quote available for {symbol}")
        return quote.price

    async def _submit(self, side: str, symbol: str, quantity: float) -> ExecutionResult:
        logger.info(f"[Simulation] Executing {side.upper()}: {quantity} shares of {symbol}")
        if not self.simulator.is_market_open():
            # Gate before any price lookup
            return ExecutionResult.failed(
                self.simulator.session.closed_message(), requested_quantity=quantity, broker=self.name
            )
        try:
            price = await self._reference_price(symbol)
        except Exception as e:
            logger.error(f"[Simulation] Simulated {side} failed: {e}")
            return ExecutionResult.failed(str(e), requested_quantity=quantity, broker=self.name)
        return await self.simulator.execute(side, symbol, quantity, price)

    async def submit_buy(self, symbol: str, quantity: float, agent_id: str) -> ExecutionResult:
        return await self._submit("buy", symbol, quantity)

    async def submit_sell(self, symbol: str, quantity: float, agent_id: str) -> ExecutionResult:
        return await self._submit("sell", symbol, quantity)

    async def get_account(self) -> AccountSnapshot:
        raise BrokerExecutionFailed(self.name, "simulated account state lives in the store, not the broker")

    async def is_market_open(self) -> bool:
        return self.simulator.is_market_open()

    async def cancel_all_orders(self) -> Optional[str]:
        logger.info("[Simulation] No orders to cancel in simulation mode")
        return None
