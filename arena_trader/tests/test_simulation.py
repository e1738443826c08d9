"""
Execution simulator and market hours tests.
"""
import random
from datetime import datetime, timedelta

import pytest

from arena_trader.brokers.simulation import ExecutionSimulator, SimulationBroker
from arena_trader.errors import BrokerExecutionFailed
from arena_trader.market_data import InMemoryMarketData
from arena_trader.market_hours import MarketSession, format_duration, get_market_status
from arena_trader.tracking import ApiCallTracker


@pytest.fixture
def market_data():
    md = InMemoryMarketData()
    md.set_price("AAPL", 150.0)
    md.set_price("NVDA", 100.0)
    return md


class TestMarketSession:
    def test_weekday_open(self):
        session = MarketSession()
        assert session.is_open(datetime(2024, 1, 10, 15, 0)) is True

    def test_early_morning_closed(self):
        session = MarketSession()
        assert session.is_open(datetime(2024, 1, 10, 8, 0)) is False

    def test_weekend_closed(self):
        session = MarketSession()
        # Saturday 11:00 ET
        assert session.is_open(datetime(2024, 1, 13, 16, 0)) is False

    def test_open_window_starts_at_925(self):
        session = MarketSession()
        assert session.is_open(datetime(2024, 1, 10, 14, 25)) is True
        assert session.is_open(datetime(2024, 1, 10, 14, 24)) is False

    def test_next_open_skips_weekend(self):
        session = MarketSession()
        nxt = session.next_open(datetime(2024, 1, 12, 22, 0))  # Friday 17:00 ET
        assert nxt.weekday() == 0
        assert (nxt.hour, nxt.minute) == (9, 25)

    def test_closed_message(self):
        assert MarketSession().closed_message() == "Market is closed. Trading hours: 9:25 AM - 4:00 PM ET, Mon-Fri"

    def test_market_status(self):
        status = get_market_status(MarketSession(), datetime(2024, 1, 10, 8, 0))
        assert status["is_open"] is False
        assert status["status"].startswith("CLOSED")
        assert status["next_close"] == "2024-01-10T16:00:00-05:00"

    def test_format_duration(self):
        assert format_duration(timedelta(minutes=90)) == "1h 30m"
        assert format_duration(timedelta(hours=50)) == "2d 2h"


class TestExecutionSimulator:
    """Spread, partial fill and market-hours rules."""

    @pytest.mark.asyncio
    async def test_closed_market_rejects(self, config, closed_clock, market_data, no_sleep):
        """An order at 3:00 AM exchange time fails with a market-closed error."""
        simulator = ExecutionSimulator(config, rng=random.Random(1), sleep=no_sleep, clock=closed_clock)
        broker = SimulationBroker(simulator, market_data, tracker=ApiCallTracker())
        result = await broker.submit_buy("AAPL", 10, "agent-1")
        assert result.success is False
        assert "Market is closed" in result.error
        assert result.broker == "Simulation"

    @pytest.mark.asyncio
    async def test_large_order_partially_fills(self, simulator):
        """$80,000 orders fill between 80% and 100% of requested, never above."""
        for _ in range(20):
            result = await simulator.execute("buy", "NVDA", 800, 100.0)
            assert result.success is True
            assert 640 <= result.executed_quantity <= 800
            assert result.requested_quantity == 800

    @pytest.mark.asyncio
    async def test_small_order_fills_completely(self, simulator):
        result = await simulator.execute("buy", "AAPL", 10, 150.0)
        assert result.executed_quantity == 10

    @pytest.mark.asyncio
    async def test_buy_pays_spread_sell_receives_less(self, simulator):
        buy = await simulator.execute("buy", "AAPL", 10, 150.0)
        sell = await simulator.execute("sell", "AAPL", 10, 150.0)
        assert buy.executed_price > 150.0
        assert sell.executed_price < 150.0
        # Large caps: at most 1.5 bps
        assert buy.executed_price - 150.0 <= 150.0 * 1.5 / 10000 + 1e-9

    @pytest.mark.asyncio
    async def test_small_cap_spread_is_wider(self, config):
        sim = ExecutionSimulator(config, rng=random.Random(0))
        large = sim.calculate_spread(100.0, "AAPL")
        sim.rng = random.Random(0)
        small = sim.calculate_spread(100.0, "ABCDE")
        assert small == pytest.approx(large * 3)

    @pytest.mark.asyncio
    async def test_latency_within_bounds(self, simulator):
        result = await simulator.execute("buy", "AAPL", 1, 150.0)
        assert 100 <= result.execution_time_ms

    @pytest.mark.asyncio
    async def test_broker_uses_quote_price(self, simulator, market_data):
        broker = SimulationBroker(simulator, market_data, tracker=ApiCallTracker())
        result = await broker.submit_sell("AAPL", 3, "agent-1")
        assert result.success is True
        assert result.executed_price == pytest.approx(150.0, rel=1e-3)

    @pytest.mark.asyncio
    async def test_broker_missing_quote(self, simulator, market_data):
        broker = SimulationBroker(simulator, market_data, tracker=ApiCallTracker())
        result = await broker.submit_buy("ZZZZ", 1, "agent-1")
        assert result.success is False
        assert "No quote" in result.error

    @pytest.mark.asyncio
    async def test_simulated_account_lives_in_store(self, simulator, market_data):
        broker = SimulationBroker(simulator, market_data, tracker=ApiCallTracker())
        with pytest.raises(BrokerExecutionFailed):
            await broker.get_account()
        assert await broker.cancel_all_orders() is None
        assert await broker.is_market_open() is True
