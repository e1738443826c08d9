"""
Error taxonomy for trade execution.

Everything except SystemHalt is isolated to a single (agent, symbol)
operation. SystemHalt skips every remaining agent in the cycle.
"""
from typing import Optional


class TradingError(Exception):
    """Base class for trade execution failures."""

    def __init__(self, message: str, agent_id: Optional[str] = None, symbol: Optional[str] = None):
        self.agent_id = agent_id
        self.symbol = symbol
        super().__init__(message)


class ValidationRejected(TradingError):
    """Safety veto or exit-parameter rejection."""

    def __init__(
        self,
        message: str,
        severity: str = "warning",
        agent_id: Optional[str] = None,
        symbol: Optional[str] = None,
    ):
        self.severity = severity
        super().__init__(message, agent_id=agent_id, symbol=symbol)


class InsufficientFunds(TradingError):
    """Pre-flight cash or collateral check failed."""

    def __init__(
        self,
        required: float,
        available: float,
        agent_id: Optional[str] = None,
        symbol: Optional[str] = None,
    ):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient funds: need ${required:,.2f}, have ${available:,.2f}",
            agent_id=agent_id,
            symbol=symbol,
        )


class BrokerExecutionFailed(TradingError):
    """Adapter-level network, auth or API error."""

    def __init__(
        self,
        broker: str,
        reason: str,
        agent_id: Optional[str] = None,
        symbol: Optional[str] = None,
    ):
        self.broker = broker
        self.reason = reason
        super().__init__(f"{broker} execution failed: {reason}", agent_id=agent_id, symbol=symbol)


class OrderTimedOut(TradingError):
    """Polling exhausted. The order may still fill later and is NOT cancelled."""

    def __init__(
        self,
        broker: str,
        order_id: Optional[str],
        agent_id: Optional[str] = None,
        symbol: Optional[str] = None,
    ):
        self.broker = broker
        self.order_id = order_id
        super().__init__(
            f"{broker} order {order_id} still pending after polling window",
            agent_id=agent_id,
            symbol=symbol,
        )


class SystemHalt(TradingError):
    """Critical system-wide veto. Stops all remaining agents this cycle."""
