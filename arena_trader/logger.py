"""
CSV audit trail for decisions, trades, safety vetoes and equity snapshots.
"""
import csv
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .config import TradingConfig
from .schemas import Agent, Decision, ExecutionResult, PerformanceSnapshot, Trade

logger = logging.getLogger("arena_trader.logger")


class TradingLogger:
    """Appends one row per event to CSV files under config.log_dir."""

    DECISIONS_HEADERS = [
        "ts", "mode", "agent_id", "agent_name", "action", "symbol", "quantity",
        "confidence", "reasoning", "executed", "vetoed_reason",
    ]

    TRADES_HEADERS = [
        "ts", "agent_id", "action", "symbol", "quantity", "price", "total",
        "commission", "realized_pnl", "exit_reason", "broker", "order_id",
    ]

    SAFETY_HEADERS = ["ts", "agent_id", "agent_name", "severity", "reason"]

    EQUITY_HEADERS = ["ts", "agent_id", "account_value", "cash_balance", "position_count"]

    FILES = {
        "decisions.csv": DECISIONS_HEADERS,
        "trades.csv": TRADES_HEADERS,
        "safety.csv": SAFETY_HEADERS,
        "equity.csv": EQUITY_HEADERS,
    }

    def __init__(self, cfg: TradingConfig):
        self.cfg = cfg
        self.log_dir = Path(cfg.log_dir)
        self._ensure_log_dir()
        self._ensure_headers()

    def _ensure_log_dir(self):
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def _ensure_headers(self):
        """Write the header row for any CSV file that does not exist yet."""
        for filename, headers in self.FILES.items():
            filepath = self.log_dir / filename
            if not filepath.exists():
                with open(filepath, "w", newline="") as f:
                    csv.writer(f).writerow(headers)

    def _append(self, filename: str, row: list):
        with open(self.log_dir / filename, "a", newline="") as f:
            csv.writer(f).writerow([datetime.utcnow().isoformat(), *row])

    def log_decision(
        self,
        agent: Agent,
        decision: Decision,
        execution: Optional[ExecutionResult] = None,
        vetoed_reason: Optional[str] = None,
    ):
        mode = self.cfg.trading_mode
        self._append("decisions.csv", [
            mode.value if hasattr(mode, "value") else mode,
            agent.id,
            agent.name,
            getattr(decision.action, "value", decision.action),
            decision.symbol or "",
            decision.quantity if decision.quantity is not None else "",
            decision.confidence,
            decision.reasoning,
            bool(execution and execution.success),
            vetoed_reason or "",
        ])

    def log_trade(self, trade: Trade, result: Optional[ExecutionResult] = None):
        self._append("trades.csv", [
            trade.agent_id,
            trade.action,
            trade.symbol,
            trade.quantity,
            trade.price,
            trade.total,
            trade.commission,
            trade.realized_pnl if trade.realized_pnl is not None else "",
            trade.exit_reason or "",
            result.broker if result else "",
            (result.order_id or "") if result else "",
        ])

    def log_safety(self, agent_id: str, agent_name: str, reason: str, severity: str):
        self._append("safety.csv", [agent_id, agent_name, severity, reason])

    def log_equity(self, snapshot: PerformanceSnapshot):
        self._append("equity.csv", [
            snapshot.agent_id,
            snapshot.account_value,
            snapshot.cash_balance,
            snapshot.position_count,
        ])

    def _read(self, filename: str) -> List[dict]:
        filepath = self.log_dir / filename
        if not filepath.exists():
            return []
        try:
            with open(filepath, "r", newline="") as f:
                return list(csv.DictReader(f))
        except (OSError, csv.Error) as e:
            logger.warning(f"Could not read {filepath}: {e}")
            return []

    def get_recent_decisions(self, limit: int = 20) -> List[dict]:
        return self._read("decisions.csv")[-limit:]

    def get_recent_trades(self, limit: int = 20) -> List[dict]:
        return self._read("trades.csv")[-limit:]

    def get_safety_events(self, limit: int = 50) -> List[dict]:
        return self._read("safety.csv")[-limit:]

    def get_equity_history(self) -> List[dict]:
        return self._read("equity.csv")
