"""
End-to-end trading cycle tests on the simulator with scripted decisions.
"""
import random
from datetime import datetime, timedelta

import pytest

from arena_trader.brokers import BrokerFactory, ExecutionSimulator
from arena_trader.config import TradingConfig, TradingMode
from arena_trader.decision import ScriptedDecisionProvider
from arena_trader.logger import TradingLogger
from arena_trader.market_data import InMemoryMarketData
from arena_trader.orchestrator import TradingOrchestrator, account_value
from arena_trader.schemas import Agent, Position, PositionSide
from arena_trader.store import InMemoryStore
from arena_trader.tracking import ApiCallTracker

# Matches the open_clock fixture (Wednesday 10:00 ET)
MARKET_OPEN_NOW = datetime(2024, 1, 10, 15, 0)


@pytest.fixture
def market_data():
    md = InMemoryMarketData()
    md.set_price("AAPL", 150.0, name="Apple Inc.")
    md.set_price("KO", 60.0, name="Coca-Cola")
    return md


@pytest.fixture
def provider():
    return ScriptedDecisionProvider()


@pytest.fixture
def build(tmp_path, market_data, provider, open_clock, no_sleep):
    def _build(agents, store=None, **overrides):
        config = TradingConfig(
            log_dir=str(tmp_path / "logs"),
            poll_interval_sec=0,
            poll_max_attempts=3,
            tradable_symbols=["AAPL", "KO"],
            **overrides,
        )
        tracker = ApiCallTracker()
        store = store or InMemoryStore(agents)
        simulator = ExecutionSimulator(config, rng=random.Random(7), sleep=no_sleep, clock=open_clock)
        orchestrator = TradingOrchestrator(
            config,
            store,
            market_data,
            provider,
            broker_factory=BrokerFactory(config, market_data, tracker=tracker, simulator=simulator),
            trading_logger=TradingLogger(config),
            tracker=tracker,
            clock=open_clock,
        )
        return orchestrator, store

    return _build


def held(agent_id, symbol="AAPL", entry=148.0, quantity=10, side=PositionSide.LONG):
    return Position(
        agent_id=agent_id,
        symbol=symbol,
        side=side,
        quantity=quantity,
        entry_price=entry,
        current_price=entry,
        opened_at=MARKET_OPEN_NOW - timedelta(days=1),
    )


class TestBuyAndSell:
    @pytest.mark.asyncio
    async def test_buy_opens_position_and_debits_cash(self, build, provider, agent):
        provider.queue(agent.id, {"action": "BUY", "symbol": "AAPL", "confidence": 0.8, "reasoning": "Breakout"})
        orchestrator, store = build([agent])

        result = await orchestrator.run_cycle()

        assert result.errors == []
        assert result.agents_processed == 1
        assert result.trades_executed == 1

        [trade] = store.trades
        assert trade.action == "BUY"
        assert trade.quantity >= 1
        assert trade.quantity * 150.0 <= 1200
        assert trade.price == pytest.approx(150.0, rel=1e-3)
        assert trade.total == pytest.approx(trade.price * trade.quantity)

        [position] = await store.list_positions(agent.id)
        assert position.side == "LONG"
        assert position.quantity == trade.quantity
        assert position.entry_price == pytest.approx(trade.price)

        updated = await store.get_agent(agent.id)
        assert updated.cash_balance == pytest.approx(10000 - trade.total)
        assert updated.account_value == pytest.approx(10000)

    @pytest.mark.asyncio
    async def test_buy_averages_into_existing_long(self, build, provider, agent):
        provider.queue(agent.id, {"action": "BUY", "symbol": "AAPL", "confidence": 0.8})
        orchestrator, store = build([agent.model_copy(update={"cash_balance": 8520.0})])
        await store.create_position(held(agent.id, entry=148.0))

        await orchestrator.run_cycle()

        [trade] = store.trades
        [position] = await store.list_positions(agent.id)
        assert position.quantity == 10 + trade.quantity
        expected = (148.0 * 10 + trade.price * trade.quantity) / position.quantity
        assert position.entry_price == pytest.approx(expected)

    @pytest.mark.asyncio
    async def test_cash_capped_buy_leaves_room_for_buffer(self, build, provider, market_data, agent):
        """A size capped at cash buys fewer shares instead of failing the cash check."""
        market_data.set_price("AAPL", 100.0)
        market_data.set_price("SPY", 500.0)
        market_data.history["SPY"] = [499.0 - i for i in range(90)]
        provider.queue(agent.id, {"action": "BUY", "symbol": "AAPL", "confidence": 1.0})
        orchestrator, store = build([agent.model_copy(update={"cash_balance": 1000.0})])
        await store.create_position(held(agent.id, symbol="KO", entry=60.0, quantity=150))

        result = await orchestrator.run_cycle()

        assert result.vetoes == []
        assert result.trades_executed == 1
        [trade] = store.trades
        assert trade.symbol == "AAPL"
        assert trade.quantity == 9
        assert (await store.get_agent(agent.id)).cash_balance == pytest.approx(1000.0 - trade.total)

    @pytest.mark.asyncio
    async def test_partial_sell_realizes_pnl(self, build, provider, agent):
        provider.queue(agent.id, {"action": "SELL", "symbol": "AAPL", "quantity": 4, "confidence": 0.7})
        orchestrator, store = build([agent.model_copy(update={"cash_balance": 8520.0})])
        await store.create_position(held(agent.id, entry=148.0))

        result = await orchestrator.run_cycle()

        assert result.trades_executed == 1
        [trade] = store.trades
        assert trade.action == "SELL"
        assert trade.quantity == 4
        assert trade.realized_pnl == pytest.approx((trade.price - 148.0) * 4)
        assert trade.realized_pnl > 0

        [position] = await store.list_positions(agent.id)
        assert position.quantity == 6
        assert (await store.get_agent(agent.id)).cash_balance == pytest.approx(8520.0 + trade.total)

    @pytest.mark.asyncio
    async def test_sell_without_position_is_vetoed(self, build, provider, agent):
        provider.queue(agent.id, {"action": "SELL", "symbol": "KO", "confidence": 0.9})
        orchestrator, store = build([agent])

        result = await orchestrator.run_cycle()

        assert result.trades_executed == 0
        assert result.vetoes == ["GPT-4o Mini: No LONG position in KO to sell"]
        assert store.decision_records[0].vetoed_reason == "No LONG position in KO to sell"


class TestShorts:
    @pytest.mark.asyncio
    async def test_short_then_cover(self, build, provider, agent):
        provider.queue(
            agent.id,
            {"action": "SELL_SHORT", "symbol": "KO", "quantity": 10, "confidence": 0.8},
            {"action": "BUY_TO_COVER", "symbol": "KO", "confidence": 0.8},
        )
        orchestrator, store = build([agent])

        await orchestrator.run_cycle()
        [short] = await store.list_positions(agent.id)
        assert short.side == "SHORT"
        assert short.quantity == 10
        opened = store.trades[0]
        assert (await store.get_agent(agent.id)).cash_balance == pytest.approx(10000 + opened.total)

        result = await orchestrator.run_cycle()
        assert result.trades_executed == 1
        assert await store.list_positions(agent.id) == []

        cover = store.trades[1]
        assert cover.action == "BUY_TO_COVER"
        assert cover.realized_pnl == pytest.approx((opened.price - cover.price) * 10)
        assert (await store.get_agent(agent.id)).cash_balance == pytest.approx(10000 + opened.total - cover.total)

    @pytest.mark.asyncio
    async def test_short_averages_into_existing_short(self, build, provider, agent):
        provider.queue(agent.id, {"action": "SELL_SHORT", "symbol": "KO", "quantity": 10, "confidence": 0.8})
        orchestrator, store = build([agent])
        await store.create_position(held(agent.id, symbol="KO", entry=62.0, side=PositionSide.SHORT))

        result = await orchestrator.run_cycle()

        assert result.vetoes == []
        [trade] = store.trades
        [short] = await store.list_positions(agent.id)
        assert short.side == "SHORT"
        assert short.quantity == 20
        assert short.entry_price == pytest.approx((62.0 * 10 + trade.price * 10) / 20)
        assert (await store.get_agent(agent.id)).cash_balance == pytest.approx(10000 + trade.total)

    @pytest.mark.asyncio
    async def test_short_needs_confidence(self, build, provider, agent):
        provider.queue(agent.id, {"action": "SELL_SHORT", "symbol": "KO", "quantity": 10, "confidence": 0.5})
        orchestrator, store = build([agent])

        result = await orchestrator.run_cycle()

        assert store.trades == []
        assert result.vetoes == ["GPT-4o Mini: Confidence 50% is below minimum threshold of 60%"]

    def test_account_value_subtracts_short_liability(self):
        positions = [held("a", entry=100.0), held("a", symbol="KO", entry=60.0, side=PositionSide.SHORT)]
        assert account_value(1000.0, positions) == pytest.approx(1000 + 1000 - 600)


class TestForcedExits:
    @pytest.mark.asyncio
    async def test_stop_loss_closes_without_asking_provider(self, build, provider, agent):
        provider.queue(agent.id, {"action": "BUY", "symbol": "KO", "confidence": 0.9})
        orchestrator, store = build([agent.model_copy(update={"cash_balance": 8300.0})])
        await store.create_position(held(agent.id, entry=170.0))

        result = await orchestrator.run_cycle()

        assert provider.requests == []
        assert result.forced_exits == 1
        assert result.trades_executed == 1
        assert await store.list_positions(agent.id) == []

        [trade] = store.trades
        assert trade.action == "SELL"
        assert trade.exit_reason.startswith("STOP LOSS: Down 11.8%")
        assert trade.realized_pnl == pytest.approx((trade.price - 170.0) * 10)

        record = store.decision_records[0]
        assert record.decision.action == "SELL"
        assert record.decision.confidence == pytest.approx(0.95)

    @pytest.mark.asyncio
    async def test_short_stop_loss_covers(self, build, provider, agent):
        orchestrator, store = build([agent])
        await store.create_position(held(agent.id, symbol="KO", entry=54.0, side=PositionSide.SHORT))

        result = await orchestrator.run_cycle()

        assert result.forced_exits == 1
        assert store.trades[0].action == "BUY_TO_COVER"
        assert store.trades[0].realized_pnl < 0


class TestModesAndFailures:
    @pytest.mark.asyncio
    async def test_shadow_mode_records_without_ordering(self, build, provider, agent):
        provider.queue(agent.id, {"action": "BUY", "symbol": "AAPL", "confidence": 0.8})
        orchestrator, store = build([agent], trading_mode=TradingMode.SHADOW)

        result = await orchestrator.run_cycle()

        assert result.trades_executed == 0
        assert result.vetoes == ["GPT-4o Mini: SHADOW mode: order not submitted"]
        assert store.trades == []
        assert (await store.get_agent(agent.id)).cash_balance == 10000
        assert store.decision_records[0].vetoed_reason == "SHADOW mode: order not submitted"

    @pytest.mark.asyncio
    async def test_unknown_symbol_is_vetoed(self, build, provider, agent):
        provider.queue(agent.id, {"action": "BUY", "symbol": "TSLA", "confidence": 0.8})
        orchestrator, _ = build([agent])

        result = await orchestrator.run_cycle()

        assert result.vetoes == ["GPT-4o Mini: No market data for symbol 'TSLA'"]

    @pytest.mark.asyncio
    async def test_size_too_small_is_not_a_veto(self, build, provider, agent):
        provider.queue(agent.id, {"action": "BUY", "symbol": "AAPL", "confidence": 0.8})
        orchestrator, store = build([agent.model_copy(update={"cash_balance": 100.0})])

        result = await orchestrator.run_cycle()

        assert result.vetoes == []
        assert store.trades == []
        assert store.decision_records[0].vetoed_reason.startswith("Position size $")

    @pytest.mark.asyncio
    async def test_emergency_stop_halts_remaining_agents(self, build, provider, agent):
        second = Agent(id="agent-2", name="Claude Haiku", model="claude-haiku", cash_balance=10000, account_value=10000)
        for a in (agent, second):
            provider.queue(a.id, {"action": "BUY", "symbol": "AAPL", "confidence": 0.8})
        orchestrator, store = build([agent, second])
        orchestrator.safety.emergency_stop("broker outage")

        result = await orchestrator.run_cycle()

        assert result.halted is True
        assert result.halt_reason == "EMERGENCY STOP: broker outage"
        assert result.agents_skipped == ["Claude Haiku"]
        assert store.trades == []
        assert len(store.performance_snapshots) == 2

    @pytest.mark.asyncio
    async def test_agent_failure_is_isolated(self, build, provider, agent):
        class FlakyLedger(InMemoryStore):
            async def list_trades(self, agent_id=None, since=None):
                if agent_id == "bad":
                    raise RuntimeError("ledger offline")
                return await super().list_trades(agent_id, since)

        broken = Agent(id="bad", name="Broken", cash_balance=10000, account_value=10000)
        provider.queue(agent.id, {"action": "BUY", "symbol": "AAPL", "confidence": 0.8})
        orchestrator, store = build([broken, agent], store=FlakyLedger([broken, agent]))

        result = await orchestrator.run_cycle()

        assert result.errors == ["Broken: ledger offline"]
        assert result.agents_processed == 1
        assert result.trades_executed == 1

    @pytest.mark.asyncio
    async def test_parallel_agents(self, build, provider, agent):
        second = Agent(id="agent-2", name="Claude Haiku", model="claude-haiku", cash_balance=10000, account_value=10000)
        for a in (agent, second):
            provider.queue(a.id, {"action": "BUY", "symbol": "KO", "confidence": 0.8})
        orchestrator, store = build([agent, second], parallel_agents=True)

        result = await orchestrator.run_cycle()

        assert result.agents_processed == 2
        assert result.trades_executed == 2
        assert {t.agent_id for t in store.trades} == {"agent-1", "agent-2"}


class TestAuditTrail:
    @pytest.mark.asyncio
    async def test_records_and_csv(self, build, provider, agent):
        provider.queue(agent.id, {"action": "BUY", "symbol": "AAPL", "confidence": 0.8, "reasoning": "Breakout"})
        orchestrator, store = build([agent])

        await orchestrator.run_cycle()

        [record] = store.decision_records
        assert record.execution.success is True
        assert {s["symbol"] for s in record.market_snapshot} == {"AAPL", "KO"}

        [snapshot] = store.performance_snapshots
        assert snapshot.position_count == 1

        trading_logger = orchestrator.trading_logger
        assert trading_logger.get_recent_decisions()[0]["executed"] == "True"
        assert trading_logger.get_recent_trades()[0]["broker"] == "Simulation"
        assert trading_logger.get_equity_history()[0]["agent_id"] == agent.id

    @pytest.mark.asyncio
    async def test_hold_is_recorded(self, build, agent):
        orchestrator, store = build([agent])
        result = await orchestrator.run_cycle()
        assert result.trades_executed == 0
        assert store.decision_records[0].decision.action == "HOLD"

    @pytest.mark.asyncio
    async def test_status(self, build, agent):
        orchestrator, _ = build([agent])
        status = await orchestrator.get_status()
        assert status["can_execute"] is True
        assert status["safety"]["system_status"] == "ok"
        await orchestrator.aclose()
