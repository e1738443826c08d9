"""
Persistence contract for agents, positions, trades and audit records.

The trading core only needs these CRUD operations; writes from one agent's
sequential steps are applied in the order issued. InMemoryStore backs tests
and paper runs.
"""
from datetime import datetime
from typing import Dict, List, Optional, Protocol, runtime_checkable

from .schemas import Agent, DecisionRecord, PerformanceSnapshot, Position, Trade


@runtime_checkable
class Store(Protocol):
    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        ...

    async def list_agents(self) -> List[Agent]:
        ...

    async def update_agent(self, agent_id: str, cash_balance: float, account_value: float) -> Agent:
        ...

    async def list_positions(self, agent_id: str) -> List[Position]:
        ...

    async def create_position(self, position: Position) -> Position:
        ...

    async def update_position(self, position: Position) -> Position:
        ...

    async def delete_position(self, position_id: str) -> None:
        ...

    async def create_trade(self, trade: Trade) -> Trade:
        ...

    async def list_trades(self, agent_id: Optional[str] = None, since: Optional[datetime] = None) -> List[Trade]:
        """Trades oldest first, optionally filtered by agent and start time."""
        ...

    async def create_decision_record(self, record: DecisionRecord) -> DecisionRecord:
        ...

    async def create_performance_snapshot(self, snapshot: PerformanceSnapshot) -> PerformanceSnapshot:
        ...


class InMemoryStore:
    """Dictionary-backed Store. Returns copies so callers cannot mutate stored state."""

    def __init__(self, agents: Optional[List[Agent]] = None):
        self.agents: Dict[str, Agent] = {a.id: a for a in (agents or [])}
        self.positions: Dict[str, Position] = {}
        self.trades: List[Trade] = []
        self.decision_records: List[DecisionRecord] = []
        self.performance_snapshots: List[PerformanceSnapshot] = []

    def add_agent(self, agent: Agent) -> Agent:
        self.agents[agent.id] = agent
        return agent

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        agent = self.agents.get(agent_id)
        return agent.model_copy() if agent else None

    async def list_agents(self) -> List[Agent]:
        return [a.model_copy() for a in self.agents.values()]

    async def update_agent(self, agent_id: str, cash_balance: float, account_value: float) -> Agent:
        if agent_id not in self.agents:
            raise KeyError(f"Agent {agent_id} not found")
        updated = self.agents[agent_id].model_copy(
            update={"cash_balance": cash_balance, "account_value": account_value}
        )
        self.agents[agent_id] = updated
        return updated.model_copy()

    async def list_positions(self, agent_id: str) -> List[Position]:
        return [p.model_copy() for p in self.positions.values() if p.agent_id == agent_id]

    async def create_position(self, position: Position) -> Position:
        for existing in self.positions.values():
            if (existing.agent_id, existing.symbol, existing.side) == (position.agent_id, position.symbol, position.side):
                raise ValueError(f"{position.side} position in {position.symbol} already exists for {position.agent_id}")
        self.positions[position.id] = position.model_copy()
        return position

    async def update_position(self, position: Position) -> Position:
        if position.id not in self.positions:
            raise KeyError(f"Position {position.id} not found")
        self.positions[position.id] = position.model_copy()
        return position

    async def delete_position(self, position_id: str) -> None:
        self.positions.pop(position_id, None)

    async def create_trade(self, trade: Trade) -> Trade:
        self.trades.append(trade)
        return trade

    async def list_trades(self, agent_id: Optional[str] = None, since: Optional[datetime] = None) -> List[Trade]:
        trades = [
            t for t in self.trades
            if (agent_id is None or t.agent_id == agent_id) and (since is None or t.timestamp >= since)
        ]
        return sorted(trades, key=lambda t: t.timestamp)

    async def create_decision_record(self, record: DecisionRecord) -> DecisionRecord:
        self.decision_records.append(record.model_copy(deep=True))
        return record

    async def create_performance_snapshot(self, snapshot: PerformanceSnapshot) -> PerformanceSnapshot:
        self.performance_snapshots.append(snapshot)
        return snapshot
