"""
Trading cycle orchestrator.

One cycle:
  market snapshot -> market context -> per agent:
  sync positions -> exit engine (forced exits) or decision provider
  -> sizing (BUY) -> safety gate -> broker -> ledger writes
then one performance snapshot per agent.

Agent sessions are serialized by a per-agent lock. A failure inside one agent
is logged and recorded; a SystemHalt skips every remaining agent.
"""
import asyncio
import logging
import math
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from .brokers.base import Broker
from .brokers.factory import BrokerFactory
from .config import TradingConfig
from .decision import DecisionProvider, request_decision
from .errors import (
    BrokerExecutionFailed,
    InsufficientFunds,
    OrderTimedOut,
    SystemHalt,
    ValidationRejected,
)
from .exits import analyze_all_exits, generate_exit_summary, is_forced_exit
from .indicators import enrich_stocks
from .logger import TradingLogger
from .market_context import calculate_relative_strength, get_market_context
from .market_data import MarketDataProvider
from .safety import CASH_BUFFER, SafetyEngine, cash_check, validate_exit_parameters
from .schemas import (
    Agent,
    AgentContext,
    AgentPerformance,
    CycleResult,
    Decision,
    DecisionRecord,
    ExecutionResult,
    ExitSignal,
    MarketContext,
    PerformanceSnapshot,
    Position,
    PositionSide,
    StockQuote,
    Trade,
    TradeAction,
)
from .store import Store
from .strategy.position_sizing import (
    PositionSizeInput,
    adjust_for_market_conditions,
    calculate_agent_performance,
    calculate_position_size,
    estimate_volatility,
    get_position_size_summary,
)
from .strategy.strategies import risk_tolerance_for_agent, strategy_for_agent
from .tracking import ApiCallTracker

logger = logging.getLogger("arena_trader.orchestrator")

HISTORY_DAYS = 90
VOLUME_DAYS = 30


@dataclass
class TradeOutcome:
    """What happened to one decision: a fill, a veto, or nothing."""
    execution: Optional[ExecutionResult] = None
    trade: Optional[Trade] = None
    vetoed_reason: Optional[str] = None

    @property
    def executed(self) -> bool:
        return self.trade is not None


def account_value(cash: float, positions: List[Position]) -> float:
    """Cash plus long market value, less the cost to cover shorts."""
    value = cash
    for p in positions:
        if p.side == PositionSide.SHORT.value:
            value -= p.market_value
        else:
            value += p.market_value
    return value


class TradingOrchestrator:
    """Runs trading cycles across every agent in the store."""

    def __init__(
        self,
        config: TradingConfig,
        store: Store,
        market_data: MarketDataProvider,
        decision_provider: DecisionProvider,
        broker_factory: Optional[BrokerFactory] = None,
        safety: Optional[SafetyEngine] = None,
        trading_logger: Optional[TradingLogger] = None,
        tracker: Optional[ApiCallTracker] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.config = config
        self.store = store
        self.market_data = market_data
        self.decision_provider = decision_provider
        self.broker_factory = broker_factory or BrokerFactory(config, market_data, tracker=tracker)
        self.trading_logger = trading_logger
        self.clock = clock
        self.safety = safety or SafetyEngine(config, store, tracker=tracker, clock=clock, audit=trading_logger)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

        logger.info(f"Orchestrator initialized - {config.get_mode_description()}")

    async def run_cycle(self) -> CycleResult:
        """Run one complete cycle. Never raises; failures land in the result."""
        start_time = time.time()
        result = CycleResult(started_at=self.clock())

        try:
            logger.info("=== CYCLE START ===")

            logger.info("[1/4] Fetching market data...")
            stocks = await self._fetch_stocks()

            logger.info("[2/4] Building market context...")
            context = await get_market_context(self.market_data, stocks)
            stocks = calculate_relative_strength(stocks, context.spy_trend)
            result.market_summary = context.summary

            logger.info("[3/4] Processing agents...")
            agents = await self.store.list_agents()
            if self.config.parallel_agents:
                await asyncio.gather(*(self._run_agent(a, stocks, context, result) for a in agents))
            else:
                for agent in agents:
                    await self._run_agent(agent, stocks, context, result)

            logger.info("[4/4] Recording performance snapshots...")
            await self._record_snapshots()

        except Exception as e:
            logger.error(f"Cycle error: {e}", exc_info=True)
            result.errors.append(str(e))

        result.duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"=== CYCLE COMPLETE ({result.duration_ms:.0f}ms): {result.agents_processed} agents, "
            f"{result.trades_executed} trades, {result.forced_exits} forced exits, "
            f"{len(result.vetoes)} vetoes, {len(result.errors)} errors ==="
        )
        return result

    async def _fetch_stocks(self) -> List[StockQuote]:
        quotes: List[StockQuote] = []
        histories: Dict[str, List[float]] = {}
        volumes: Dict[str, List[float]] = {}
        for symbol in self.config.tradable_symbols:
            try:
                quote = await self.market_data.get_quote(symbol)
                if quote is None:
                    logger.warning(f"No quote for {symbol}, skipping")
                    continue
                quotes.append(quote)
                histories[symbol] = await self.market_data.get_price_history(symbol, HISTORY_DAYS)
                volumes[symbol] = await self.market_data.get_volume_history(symbol, VOLUME_DAYS)
            except Exception as e:
                logger.warning(f"Failed to fetch market data for {symbol}: {e}")
        logger.info(f"Fetched {len(quotes)}/{len(self.config.tradable_symbols)} quotes")
        return enrich_stocks(quotes, histories, volumes)

    async def _run_agent(
        self,
        agent: Agent,
        stocks: List[StockQuote],
        context: MarketContext,
        result: CycleResult,
    ) -> None:
        if result.halted:
            result.agents_skipped.append(agent.name)
            return
        try:
            async with self._locks[agent.id]:
                await self._process_agent(agent, stocks, context, result)
            result.agents_processed += 1
        except SystemHalt as e:
            if result.halted:
                result.agents_skipped.append(agent.name)
                return
            logger.critical(f"SYSTEM HALT during {agent.name}: {e}. Skipping remaining agents.")
            result.halted = True
            result.halt_reason = str(e)
        except Exception as e:
            logger.error(f"Error processing agent {agent.name}: {e}", exc_info=True)
            result.errors.append(f"{agent.name}: {e}")

    async def _process_agent(
        self,
        agent: Agent,
        stocks: List[StockQuote],
        context: MarketContext,
        result: CycleResult,
    ) -> None:
        logger.info(f"--- {agent.name} ---")
        quotes = {s.symbol: s for s in stocks}
        agent, positions = await self._sync_positions(agent, quotes)
        broker = self.broker_factory.get_broker(agent.broker, agent.name)

        performance = calculate_agent_performance(await self.store.list_trades(agent_id=agent.id))
        signals = analyze_all_exits(positions, stocks, context, strategy_for_agent(agent), now=self.clock())
        forced = [s for s in signals if is_forced_exit(s, self.config.forced_exit_urgencies)]

        if forced:
            logger.info(f"{agent.name}: {len(forced)} forced exit(s), skipping new decisions")
            for signal in forced:
                await self._forced_exit(agent, broker, positions, signal, quotes, stocks, result)
            return

        agent_context = AgentContext(
            agent=agent,
            stocks=stocks,
            market_context=context,
            positions=positions,
            exit_signals=signals,
            exit_summary=generate_exit_summary(signals),
            performance=performance,
        )
        decision = await request_decision(self.decision_provider, agent, agent_context)
        outcome = await self._handle(
            agent, broker, decision, positions, quotes, context, performance, result
        )
        await self._record_decision(agent, decision, stocks, outcome)

    async def _sync_positions(self, agent: Agent, quotes: Dict[str, StockQuote]) -> Tuple[Agent, List[Position]]:
        """Mark positions to the cycle snapshot and refresh account value."""
        current = await self.store.get_agent(agent.id) or agent
        positions = await self.store.list_positions(current.id)
        for position in positions:
            quote = quotes.get(position.symbol)
            if quote is None:
                continue
            position.mark_to_market(quote.price)
            await self.store.update_position(position)
        updated = await self.store.update_agent(
            current.id, current.cash_balance, account_value(current.cash_balance, positions)
        )
        return updated, positions

    async def _handle(
        self,
        agent: Agent,
        broker: Broker,
        decision: Decision,
        positions: List[Position],
        quotes: Dict[str, StockQuote],
        context: MarketContext,
        performance: AgentPerformance,
        result: CycleResult,
        exit_reason: Optional[str] = None,
    ) -> TradeOutcome:
        """Dispatch a decision, translating taxonomy errors into an outcome. SystemHalt propagates."""
        action = decision.action
        if action == TradeAction.HOLD.value:
            return TradeOutcome()

        try:
            if not decision.symbol or decision.symbol not in quotes:
                raise ValidationRejected(
                    f"No market data for symbol {decision.symbol!r}", severity="warning", agent_id=agent.id
                )
            quote = quotes[decision.symbol]
            if action == TradeAction.BUY.value:
                outcome = await self._buy(agent, broker, decision, positions, quote, context, performance, result)
            elif action == TradeAction.SELL.value:
                outcome = await self._sell(agent, broker, decision, positions, quote, result, exit_reason)
            elif action == TradeAction.SELL_SHORT.value:
                outcome = await self._sell_short(agent, broker, decision, positions, quote, result)
            else:
                outcome = await self._buy_to_cover(agent, broker, decision, positions, quote, result, exit_reason)
        except (ValidationRejected, InsufficientFunds) as e:
            logger.warning(f"{agent.name} {action} {decision.symbol} rejected: {e}")
            result.vetoes.append(f"{agent.name}: {e}")
            return TradeOutcome(vetoed_reason=str(e))
        except OrderTimedOut as e:
            logger.warning(f"{agent.name} {action} {decision.symbol}: {e}; order left working at broker")
            result.errors.append(f"{agent.name}: {e}")
            return TradeOutcome(vetoed_reason=str(e))
        except BrokerExecutionFailed as e:
            logger.error(f"{agent.name} {action} {decision.symbol} via {e.broker} failed: {e.reason}")
            result.errors.append(f"{agent.name}: {e}")
            return TradeOutcome(vetoed_reason=str(e))

        if outcome.executed:
            result.trades_executed += 1
        return outcome

    async def _gate(
        self,
        agent: Agent,
        action: str,
        symbol: str,
        quantity: float,
        price: float,
        result: CycleResult,
    ) -> None:
        if result.halted:
            raise SystemHalt(result.halt_reason or "System halted", agent_id=agent.id, symbol=symbol)
        check = await self.safety.validate_trade(agent, action, symbol, quantity, price)
        if check.allowed:
            return
        if check.halt_system:
            raise SystemHalt(check.reason or "System halted", agent_id=agent.id, symbol=symbol)
        raise ValidationRejected(check.reason or "Safety veto", severity=check.severity, agent_id=agent.id, symbol=symbol)

    async def _execute(self, broker: Broker, agent: Agent, side: str, symbol: str, quantity: float) -> ExecutionResult:
        if not self.config.can_execute_orders():
            raise ValidationRejected(
                f"{self.config.trading_mode.upper()} mode: order not submitted",
                severity="info",
                agent_id=agent.id,
                symbol=symbol,
            )
        submit = broker.submit_buy if side == "buy" else broker.submit_sell
        execution = await submit(symbol, quantity, agent.id)
        if execution.success:
            logger.info(
                f"[{execution.broker or broker.name}] {side.upper()} {execution.executed_quantity:g} {symbol} "
                f"@ ${execution.executed_price:.2f} ({execution.execution_time_ms:.0f}ms)"
            )
            return execution
        if execution.is_pending:
            raise OrderTimedOut(execution.broker or broker.name, execution.order_id, agent_id=agent.id, symbol=symbol)
        raise BrokerExecutionFailed(
            execution.broker or broker.name, execution.error or "unknown error", agent_id=agent.id, symbol=symbol
        )

    @staticmethod
    def _find(positions: List[Position], symbol: str, side: PositionSide) -> Optional[Position]:
        return next((p for p in positions if p.symbol == symbol and p.side == side.value), None)

    @staticmethod
    def _check_exit_parameters(agent: Agent, decision: Decision, price: float) -> None:
        check = validate_exit_parameters(
            decision.action, price, decision.target_price, decision.stop_loss, decision.confidence
        )
        if not check.allowed:
            raise ValidationRejected(check.reason, severity=check.severity, agent_id=agent.id, symbol=decision.symbol)

    async def _buy(
        self,
        agent: Agent,
        broker: Broker,
        decision: Decision,
        positions: List[Position],
        quote: StockQuote,
        context: MarketContext,
        performance: AgentPerformance,
        result: CycleResult,
    ) -> TradeOutcome:
        cfg = self.config
        symbol, price = quote.symbol, quote.price

        sizing = calculate_position_size(
            PositionSizeInput(
                cash_available=agent.cash_balance,
                account_value=agent.account_value,
                confidence=decision.confidence * 100,
                stock_volatility=quote.volatility if quote.volatility is not None else estimate_volatility(quote.month_trend),
                portfolio_volatility=0.15 if positions else 0.1,
                agent_performance=performance,
                current_position_count=len(positions),
                max_position_percent=cfg.max_position_percent,
                risk_tolerance=risk_tolerance_for_agent(agent),
                min_trades=cfg.kelly_min_trades,
                min_position_pct=cfg.kelly_floor_pct,
                cold_start_cap=cfg.cold_start_kelly_cap,
            )
        )
        sizing = adjust_for_market_conditions(sizing, context.regime, context.vix.level)
        logger.debug(get_position_size_summary(sizing))

        # Leave room for the cash buffer so a cash-capped size still fits
        affordable = min(sizing.position_size, agent.cash_balance / CASH_BUFFER)
        quantity = math.floor(affordable / price) if price > 0 else 0
        if quantity <= 0:
            reason = sizing.reasoning[-1] if sizing.is_no_trade else (
                f"Position size ${sizing.position_size:.2f} buys no whole shares of {symbol} at ${price:.2f}"
            )
            logger.info(f"{agent.name} BUY {symbol}: no trade ({reason})")
            return TradeOutcome(vetoed_reason=reason)

        self._check_exit_parameters(agent, decision, price)

        estimated_cost = quantity * price
        if not cash_check(agent.cash_balance, estimated_cost, CASH_BUFFER):
            raise InsufficientFunds(estimated_cost * CASH_BUFFER, agent.cash_balance, agent_id=agent.id, symbol=symbol)

        await self._gate(agent, TradeAction.BUY.value, symbol, quantity, price, result)
        execution = await self._execute(broker, agent, "buy", symbol, quantity)

        filled = execution.executed_quantity
        fill_price = execution.executed_price
        total_cost = fill_price * filled + execution.commission

        existing = self._find(positions, symbol, PositionSide.LONG)
        if existing:
            new_quantity = existing.quantity + filled
            averaged = (existing.entry_price * existing.quantity + fill_price * filled) / new_quantity
            position = existing.model_copy(update={"quantity": new_quantity, "entry_price": averaged})
            position.mark_to_market(price)
            await self.store.update_position(position)
        else:
            await self.store.create_position(
                Position(
                    agent_id=agent.id,
                    symbol=symbol,
                    name=quote.name,
                    side=PositionSide.LONG,
                    quantity=filled,
                    entry_price=fill_price,
                    current_price=fill_price,
                    peak_price=fill_price,
                    opened_at=self.clock(),
                )
            )

        trade = await self._record_trade(
            agent, TradeAction.BUY, symbol, filled, fill_price, total_cost, execution, decision
        )
        await self._adjust_cash(agent.id, -total_cost)
        return TradeOutcome(execution=execution, trade=trade)

    async def _sell(
        self,
        agent: Agent,
        broker: Broker,
        decision: Decision,
        positions: List[Position],
        quote: StockQuote,
        result: CycleResult,
        exit_reason: Optional[str] = None,
    ) -> TradeOutcome:
        symbol = quote.symbol
        position = self._find(positions, symbol, PositionSide.LONG)
        if position is None:
            raise ValidationRejected(f"No LONG position in {symbol} to sell", severity="info", agent_id=agent.id, symbol=symbol)
        quantity = min(decision.quantity or position.quantity, position.quantity)

        await self._gate(agent, TradeAction.SELL.value, symbol, quantity, quote.price, result)
        execution = await self._execute(broker, agent, "sell", symbol, quantity)

        sold = execution.executed_quantity
        fill_price = execution.executed_price
        proceeds = fill_price * sold - execution.commission
        realized = (fill_price - position.entry_price) * sold - execution.commission

        await self._reduce_position(position, sold)
        trade = await self._record_trade(
            agent, TradeAction.SELL, symbol, sold, fill_price, proceeds, execution, decision,
            realized_pnl=realized, exit_reason=exit_reason,
        )
        await self._adjust_cash(agent.id, proceeds)
        logger.info(f"{agent.name} realized ${realized:+.2f} on {symbol}")
        return TradeOutcome(execution=execution, trade=trade)

    async def _sell_short(
        self,
        agent: Agent,
        broker: Broker,
        decision: Decision,
        positions: List[Position],
        quote: StockQuote,
        result: CycleResult,
    ) -> TradeOutcome:
        symbol, price = quote.symbol, quote.price
        quantity = math.floor(decision.quantity or 0)
        if quantity <= 0:
            raise ValidationRejected("SELL_SHORT requires a quantity", severity="warning", agent_id=agent.id, symbol=symbol)

        self._check_exit_parameters(agent, decision, price)

        collateral = price * quantity
        if not cash_check(agent.cash_balance, collateral):
            raise InsufficientFunds(collateral, agent.cash_balance, agent_id=agent.id, symbol=symbol)

        await self._gate(agent, TradeAction.SELL_SHORT.value, symbol, quantity, price, result)
        execution = await self._execute(broker, agent, "sell", symbol, quantity)

        shorted = execution.executed_quantity
        fill_price = execution.executed_price
        proceeds = fill_price * shorted - execution.commission

        existing = self._find(positions, symbol, PositionSide.SHORT)
        if existing:
            new_quantity = existing.quantity + shorted
            averaged = (existing.entry_price * existing.quantity + fill_price * shorted) / new_quantity
            position = existing.model_copy(update={"quantity": new_quantity, "entry_price": averaged})
            position.mark_to_market(price)
            await self.store.update_position(position)
        else:
            await self.store.create_position(
                Position(
                    agent_id=agent.id,
                    symbol=symbol,
                    name=quote.name,
                    side=PositionSide.SHORT,
                    quantity=shorted,
                    entry_price=fill_price,
                    current_price=fill_price,
                    peak_price=fill_price,
                    opened_at=self.clock(),
                )
            )

        trade = await self._record_trade(
            agent, TradeAction.SELL_SHORT, symbol, shorted, fill_price, proceeds, execution, decision
        )
        await self._adjust_cash(agent.id, proceeds)
        return TradeOutcome(execution=execution, trade=trade)

    async def _buy_to_cover(
        self,
        agent: Agent,
        broker: Broker,
        decision: Decision,
        positions: List[Position],
        quote: StockQuote,
        result: CycleResult,
        exit_reason: Optional[str] = None,
    ) -> TradeOutcome:
        symbol, price = quote.symbol, quote.price
        position = self._find(positions, symbol, PositionSide.SHORT)
        if position is None:
            raise ValidationRejected(f"No SHORT position in {symbol} to cover", severity="info", agent_id=agent.id, symbol=symbol)
        quantity = position.quantity

        cover_cost = price * quantity
        if not cash_check(agent.cash_balance, cover_cost):
            raise InsufficientFunds(cover_cost, agent.cash_balance, agent_id=agent.id, symbol=symbol)

        await self._gate(agent, TradeAction.BUY_TO_COVER.value, symbol, quantity, price, result)
        execution = await self._execute(broker, agent, "buy", symbol, quantity)

        covered = execution.executed_quantity
        fill_price = execution.executed_price
        total_cost = fill_price * covered + execution.commission
        realized = (position.entry_price - fill_price) * covered - execution.commission

        await self._reduce_position(position, covered)
        trade = await self._record_trade(
            agent, TradeAction.BUY_TO_COVER, symbol, covered, fill_price, total_cost, execution, decision,
            realized_pnl=realized, exit_reason=exit_reason,
        )
        await self._adjust_cash(agent.id, -total_cost)
        logger.info(f"{agent.name} realized ${realized:+.2f} covering {symbol}")
        return TradeOutcome(execution=execution, trade=trade)

    async def _forced_exit(
        self,
        agent: Agent,
        broker: Broker,
        positions: List[Position],
        signal: ExitSignal,
        quotes: Dict[str, StockQuote],
        stocks: List[StockQuote],
        result: CycleResult,
    ) -> None:
        """Close a flagged position without consulting the decision provider or sizing."""
        position = next((p for p in positions if p.symbol == signal.symbol), None)
        if position is None:
            return
        action = TradeAction.BUY_TO_COVER if position.side == PositionSide.SHORT.value else TradeAction.SELL
        reason = "; ".join(signal.reasoning)
        decision = Decision(
            action=action,
            symbol=position.symbol,
            quantity=position.quantity,
            confidence=min(1.0, signal.confidence / 100),
            reasoning=reason,
        )
        logger.info(f"{agent.name} forced {action.value} {position.symbol} [{signal.urgency}]: {reason}")
        # Re-read cash: earlier exits in this loop have moved it
        current = await self.store.get_agent(agent.id) or agent
        outcome = await self._handle(
            current, broker, decision, positions, quotes, MarketContext(), AgentPerformance(), result,
            exit_reason=reason,
        )
        if outcome.executed:
            result.forced_exits += 1
        await self._record_decision(current, decision, stocks, outcome)

    async def _reduce_position(self, position: Position, quantity: float) -> None:
        if quantity >= position.quantity:
            await self.store.delete_position(position.id)
        else:
            await self.store.update_position(position.model_copy(update={"quantity": position.quantity - quantity}))

    async def _record_trade(
        self,
        agent: Agent,
        action: TradeAction,
        symbol: str,
        quantity: float,
        price: float,
        total: float,
        execution: ExecutionResult,
        decision: Decision,
        realized_pnl: Optional[float] = None,
        exit_reason: Optional[str] = None,
    ) -> Trade:
        trade = await self.store.create_trade(
            Trade(
                agent_id=agent.id,
                action=action,
                symbol=symbol,
                quantity=quantity,
                price=price,
                total=total,
                commission=execution.commission,
                realized_pnl=realized_pnl,
                reasoning=decision.reasoning,
                confidence=decision.confidence,
                exit_reason=exit_reason,
                timestamp=self.clock(),
            )
        )
        if self.trading_logger:
            self.trading_logger.log_trade(trade, execution)
        return trade

    async def _adjust_cash(self, agent_id: str, delta: float) -> Agent:
        agent = await self.store.get_agent(agent_id)
        if agent is None:
            raise KeyError(f"Agent {agent_id} not found")
        cash = agent.cash_balance + delta
        positions = await self.store.list_positions(agent_id)
        return await self.store.update_agent(agent_id, cash, account_value(cash, positions))

    async def _record_decision(
        self,
        agent: Agent,
        decision: Decision,
        stocks: List[StockQuote],
        outcome: TradeOutcome,
    ) -> None:
        await self.store.create_decision_record(
            DecisionRecord(
                agent_id=agent.id,
                decision=decision,
                portfolio_value=agent.account_value,
                cash_balance=agent.cash_balance,
                market_snapshot=[
                    {"symbol": s.symbol, "price": s.price, "change": s.change_percent} for s in stocks
                ],
                execution=outcome.execution,
                vetoed_reason=outcome.vetoed_reason,
                timestamp=self.clock(),
            )
        )
        if self.trading_logger:
            self.trading_logger.log_decision(agent, decision, outcome.execution, outcome.vetoed_reason)

    async def _record_snapshots(self) -> None:
        for agent in await self.store.list_agents():
            positions = await self.store.list_positions(agent.id)
            snapshot = await self.store.create_performance_snapshot(
                PerformanceSnapshot(
                    agent_id=agent.id,
                    account_value=agent.account_value,
                    cash_balance=agent.cash_balance,
                    position_count=len(positions),
                    timestamp=self.clock(),
                )
            )
            if self.trading_logger:
                self.trading_logger.log_equity(snapshot)

    async def get_status(self) -> dict:
        """Current mode, execution permission and safety state."""
        return {
            "mode": self.config.trading_mode,
            "description": self.config.get_mode_description(),
            "can_execute": self.config.can_execute_orders(),
            "parallel_agents": self.config.parallel_agents,
            "safety": await self.safety.get_safety_status(),
        }

    async def aclose(self) -> None:
        await self.broker_factory.aclose()
