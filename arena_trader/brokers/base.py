"""
Broker port implemented by every brokerage adapter and the simulator.
"""
from abc import ABC, abstractmethod
from typing import Optional

from ..schemas import AccountSnapshot, ExecutionResult
from ..tracking import ApiCallTracker, get_api_tracker
from .fulfillment import RetryPolicy


class Broker(ABC):
    """Uniform execution contract across brokerages."""

    name: str = "broker"

    def __init__(self, policy: Optional[RetryPolicy] = None, tracker: Optional[ApiCallTracker] = None):
        self.policy = policy or RetryPolicy()
        self.tracker = tracker or get_api_tracker()

    @abstractmethod
    async def submit_buy(self, symbol: str, quantity: float, agent_id: str) -> ExecutionResult:
        ...

    @abstractmethod
    async def submit_sell(self, symbol: str, quantity: float, agent_id: str) -> ExecutionResult:
        ...

    @abstractmethod
    async def get_account(self) -> AccountSnapshot:
        ...

    @abstractmethod
    async def is_market_open(self) -> bool:
        ...

    @abstractmethod
    async def cancel_all_orders(self) -> Optional[str]:
        """Cancel every open order. Returns an error message, or None on success."""
        ...

    async def aclose(self) -> None:
        """Release network resources held by the adapter."""
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
