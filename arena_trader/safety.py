"""
Safety limits and circuit breakers.

Ordered pre-trade veto pipeline; the first failing check wins:
1. Manual approval / emergency stop
2. Single trade value
3. Agent daily realized loss
4. Pattern day trades (BUY only)
5. Cash and account ceiling (BUY only)
6. System-wide daily realized loss   -> SYSTEM HALT
7. Consecutive upstream API errors   -> SYSTEM HALT

The engine never raises; store failures become a critical veto.
"""
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from .config import TradingConfig
from .schemas import Agent, SafetyCheck, Severity, Trade, TradeAction
from .store import Store
from .tracking import ApiCallTracker, get_api_tracker

logger = logging.getLogger("arena_trader.safety")

DAY_TRADE_WINDOW_DAYS = 5
MIN_DECISION_CONFIDENCE = 0.6
CASH_BUFFER = 1.01


def cash_check(cash: float, cost: float, buffer: float = 1.0) -> bool:
    """The one cash sufficiency rule: cost (with buffer) must fit in cash."""
    return cost * buffer <= cash


def count_day_trades(trades: List[Trade]) -> int:
    """
    Count BUY-then-SELL round trips of the same symbol on the same UTC day.

    Each BUY pairs with at most one later SELL.
    """
    bought_by_day: Dict[str, Set[str]] = defaultdict(set)
    day_trades = 0
    for trade in sorted(trades, key=lambda t: t.timestamp):
        day = trade.timestamp.date().isoformat()
        if trade.action == TradeAction.BUY.value:
            bought_by_day[day].add(trade.symbol)
        elif trade.action == TradeAction.SELL.value and trade.symbol in bought_by_day[day]:
            day_trades += 1
            bought_by_day[day].discard(trade.symbol)
    return day_trades


def validate_exit_parameters(
    action: str,
    current_price: float,
    target_price: Optional[float] = None,
    stop_loss: Optional[float] = None,
    confidence: Optional[float] = None,
) -> SafetyCheck:
    """Reject decisions whose target/stop sit on the wrong side of the price."""
    if confidence is not None:
        if confidence < 0 or confidence > 1:
            return SafetyCheck(
                allowed=False,
                reason=f"Confidence {confidence} must be between 0 and 1",
                severity=Severity.WARNING,
            )
        if confidence < MIN_DECISION_CONFIDENCE:
            return SafetyCheck(
                allowed=False,
                reason=f"Confidence {confidence * 100:.0f}% is below minimum threshold of 60%",
                severity=Severity.INFO,
            )

    if action == TradeAction.BUY.value:
        if target_price and target_price <= current_price:
            return SafetyCheck(
                allowed=False,
                reason=(
                    f"Target price ${target_price:.2f} must be ABOVE current price "
                    f"${current_price:.2f} for LONG positions"
                ),
                severity=Severity.WARNING,
            )
        if stop_loss and stop_loss >= current_price:
            return SafetyCheck(
                allowed=False,
                reason=(
                    f"Stop loss ${stop_loss:.2f} must be BELOW current price "
                    f"${current_price:.2f} for LONG positions"
                ),
                severity=Severity.WARNING,
            )

    if action == TradeAction.SELL_SHORT.value:
        if target_price and target_price >= current_price:
            return SafetyCheck(
                allowed=False,
                reason=(
                    f"Target price ${target_price:.2f} must be BELOW current price "
                    f"${current_price:.2f} for SHORT positions"
                ),
                severity=Severity.WARNING,
            )
        if stop_loss and stop_loss <= current_price:
            return SafetyCheck(
                allowed=False,
                reason=(
                    f"Stop loss ${stop_loss:.2f} must be ABOVE current price "
                    f"${current_price:.2f} for SHORT positions"
                ),
                severity=Severity.WARNING,
            )

    return SafetyCheck(allowed=True)


class SafetyEngine:
    """Pre-trade validator enforcing per-agent and system-wide risk ceilings."""

    def __init__(
        self,
        config: TradingConfig,
        store: Store,
        tracker: Optional[ApiCallTracker] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        audit: Optional[Any] = None,
    ):
        self.config = config
        self.store = store
        self.tracker = tracker or get_api_tracker()
        self.clock = clock
        self.audit = audit
        self.emergency_reason: Optional[str] = None

    def _start_of_day(self) -> datetime:
        now = self.clock()
        return now.replace(hour=0, minute=0, second=0, microsecond=0)

    async def get_agent_daily_pnl(self, agent_id: str) -> float:
        trades = await self.store.list_trades(agent_id=agent_id, since=self._start_of_day())
        return sum(t.realized_pnl or 0.0 for t in trades)

    async def get_total_daily_pnl(self) -> float:
        trades = await self.store.list_trades(since=self._start_of_day())
        return sum(t.realized_pnl or 0.0 for t in trades)

    async def count_day_trades_last_5_days(self, agent_id: str) -> int:
        since = self.clock() - timedelta(days=DAY_TRADE_WINDOW_DAYS)
        return count_day_trades(await self.store.list_trades(agent_id=agent_id, since=since))

    async def validate_trade(
        self,
        agent: Agent,
        action: str,
        symbol: str,
        quantity: float,
        price: float,
    ) -> SafetyCheck:
        """Run every check in order. Vetoes are logged, never raised."""
        try:
            check = await self._run_checks(agent, action, symbol, quantity, price)
        except Exception as e:
            logger.error(f"Safety check for {agent.name} {action} {symbol} failed: {e}", exc_info=True)
            check = SafetyCheck(
                allowed=False,
                reason=f"Safety check failed: {e}",
                severity=Severity.CRITICAL,
            )
        if not check.allowed:
            self.log_violation(agent, check.reason or "", check.severity)
        return check

    async def _run_checks(self, agent: Agent, action: str, symbol: str, quantity: float, price: float) -> SafetyCheck:
        cfg = self.config
        trade_value = quantity * price

        # 1. Manual approval or emergency stop
        if self.emergency_reason:
            return SafetyCheck(
                allowed=False,
                reason=f"EMERGENCY STOP: {self.emergency_reason}",
                severity=Severity.CRITICAL,
                halt_system=True,
            )
        if cfg.require_manual_approval:
            return SafetyCheck(allowed=False, reason="Manual approval required for all trades", severity=Severity.INFO)

        # 2. Single trade value
        if trade_value > cfg.max_single_trade_value:
            return SafetyCheck(
                allowed=False,
                reason=f"Trade value ${trade_value:.2f} exceeds limit of ${cfg.max_single_trade_value:.0f}",
                severity=Severity.WARNING,
            )

        # 3. Agent daily loss
        daily_pnl = await self.get_agent_daily_pnl(agent.id)
        if daily_pnl < -cfg.max_daily_loss_per_agent:
            return SafetyCheck(
                allowed=False,
                reason=(
                    f"Agent {agent.name} has lost ${abs(daily_pnl):.2f} today "
                    f"(limit: ${cfg.max_daily_loss_per_agent:.0f})"
                ),
                severity=Severity.CRITICAL,
            )

        is_buy = action == TradeAction.BUY.value

        # 4. Pattern day trades
        if cfg.pdt_checks_enabled and is_buy:
            day_trades = await self.count_day_trades_last_5_days(agent.id)
            if day_trades >= cfg.max_day_trades:
                return SafetyCheck(
                    allowed=False,
                    reason=(
                        f"Agent {agent.name} has made {day_trades} day trades in last 5 days "
                        f"(PDT limit: {cfg.max_day_trades})"
                    ),
                    severity=Severity.CRITICAL,
                )

        # 5. Cash and account ceiling
        if is_buy:
            current = await self.store.get_agent(agent.id)
            if current is None:
                return SafetyCheck(allowed=False, reason=f"Agent {agent.name} not found", severity=Severity.CRITICAL)
            if not cash_check(current.cash_balance, trade_value, CASH_BUFFER):
                return SafetyCheck(
                    allowed=False,
                    reason=(
                        f"Trade value ${trade_value:.2f} (with {(CASH_BUFFER - 1) * 100:.0f}% buffer) "
                        f"exceeds cash balance ${current.cash_balance:.2f}"
                    ),
                    severity=Severity.WARNING,
                )
            if current.account_value > cfg.max_account_value_per_agent * cfg.account_growth_allowance:
                return SafetyCheck(
                    allowed=False,
                    reason=f"Account value ${current.account_value:.2f} exceeds safe limit",
                    severity=Severity.WARNING,
                )

        # 6. System daily loss
        total_pnl = await self.get_total_daily_pnl()
        if total_pnl < -cfg.system_daily_loss_halt:
            return SafetyCheck(
                allowed=False,
                reason=(
                    f"SYSTEM HALT: Total daily loss ${abs(total_pnl):.2f} exceeds limit of "
                    f"${cfg.system_daily_loss_halt:.0f}"
                ),
                severity=Severity.CRITICAL,
                halt_system=True,
            )

        # 7. Consecutive API errors
        errors = self.tracker.get_consecutive_errors()
        if errors >= cfg.api_error_halt_count:
            return SafetyCheck(
                allowed=False,
                reason=f"SYSTEM HALT: {errors} consecutive API errors detected",
                severity=Severity.CRITICAL,
                halt_system=True,
            )

        return SafetyCheck(allowed=True)

    def log_violation(self, agent: Agent, reason: str, severity: str) -> None:
        severity = Severity(severity)
        if severity == Severity.CRITICAL:
            logger.critical(f"[SAFETY] CRITICAL: {agent.name} - {reason}")
        else:
            logger.warning(f"[SAFETY] {severity.value.upper()}: {agent.name} - {reason}")
        if self.audit is not None:
            self.audit.log_safety(agent.id, agent.name, reason, severity.value)

    def emergency_stop(self, reason: str) -> None:
        """Halt all trading until clear_emergency_stop is called."""
        self.emergency_reason = reason
        logger.critical(f"[EMERGENCY STOP] {reason}")
        logger.critical("All trading halted. Manual intervention required.")

    def clear_emergency_stop(self) -> None:
        if self.emergency_reason:
            logger.warning(f"Emergency stop cleared (was: {self.emergency_reason})")
        self.emergency_reason = None

    @property
    def is_emergency_stopped(self) -> bool:
        return self.emergency_reason is not None

    async def get_safety_status(self) -> Dict[str, Any]:
        cfg = self.config
        total_pnl = await self.get_total_daily_pnl()
        recent_errors = self.tracker.get_consecutive_errors()

        agent_statuses = []
        for agent in await self.store.list_agents():
            daily_pnl = await self.get_agent_daily_pnl(agent.id)
            if daily_pnl < -cfg.max_daily_loss_per_agent:
                status = "halted"
            elif daily_pnl < -cfg.max_daily_loss_per_agent * 0.5:
                status = "warning"
            else:
                status = "ok"
            agent_statuses.append(
                {
                    "agent_id": agent.id,
                    "agent_name": agent.name,
                    "daily_pnl": daily_pnl,
                    "day_trade_count": await self.count_day_trades_last_5_days(agent.id),
                    "account_value": agent.account_value,
                    "status": status,
                }
            )

        if (
            self.is_emergency_stopped
            or total_pnl < -cfg.system_daily_loss_halt
            or recent_errors >= cfg.api_error_halt_count
        ):
            system_status = "halted"
        elif total_pnl < -cfg.system_daily_loss_halt * 0.5:
            system_status = "warning"
        else:
            system_status = "ok"

        return {
            "total_daily_pnl": total_pnl,
            "agent_statuses": agent_statuses,
            "recent_errors": recent_errors,
            "system_status": system_status,
            "emergency_stop": self.emergency_reason,
        }
