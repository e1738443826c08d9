"""
Decision provider contract.

The provider (a language model in production) returns one Decision per agent
per cycle. Its output is untrusted: everything passes through parse_decision,
which falls back to HOLD instead of raising.
"""
import logging
from collections import defaultdict, deque
from typing import Any, Deque, Dict, Iterable, List, Protocol, Union, runtime_checkable

from .schemas import Agent, AgentContext, Decision, TradeAction, parse_decision

logger = logging.getLogger("arena_trader.decision")

__all__ = [
    "DecisionProvider",
    "ScriptedDecisionProvider",
    "format_agent_context",
    "request_decision",
    "parse_decision",
]


@runtime_checkable
class DecisionProvider(Protocol):
    async def get_decision(self, agent: Agent, context: AgentContext) -> Union[Decision, Dict[str, Any]]:
        ...


async def request_decision(provider: DecisionProvider, agent: Agent, context: AgentContext) -> Decision:
    """Ask the provider for a decision; provider failures become HOLD."""
    try:
        raw = await provider.get_decision(agent, context)
    except Exception as e:
        logger.error(f"Decision provider failed for {agent.name}: {e}", exc_info=True)
        return Decision(action=TradeAction.HOLD, reasoning=f"Decision provider error: {e}", confidence=0.0)
    decision = parse_decision(raw)
    logger.info(
        f"{agent.name} decided {decision.action} {decision.symbol or ''} "
        f"(confidence {decision.confidence:.2f})"
    )
    return decision


class ScriptedDecisionProvider:
    """
    Replays queued decisions per agent (keyed by agent id or name).

    Used for paper runs and tests; an agent with nothing queued holds.
    """

    def __init__(self, scripts: Dict[str, Iterable[Any]] = None):
        self._queues: Dict[str, Deque[Any]] = defaultdict(deque)
        self.requests: List[AgentContext] = []
        for key, decisions in (scripts or {}).items():
            self._queues[key].extend(decisions)

    def queue(self, key: str, *decisions: Any) -> None:
        self._queues[key].extend(decisions)

    async def get_decision(self, agent: Agent, context: AgentContext) -> Any:
        self.requests.append(context)
        for key in (agent.id, agent.name):
            if self._queues.get(key):
                return self._queues[key].popleft()
        return {"action": "HOLD", "reasoning": "No scripted decision", "confidence": 0.0}


def format_agent_context(context: AgentContext) -> str:
    """Render an agent's cycle context as the markdown brief sent to a model."""
    agent = context.agent
    lines = [
        f"# Trading brief for {agent.name}",
        f"Cash: ${agent.cash_balance:,.2f} | Account value: ${agent.account_value:,.2f}",
        "",
        context.market_context.summary or "## Market Context\nUnavailable",
        "",
        "## Positions",
    ]
    if context.positions:
        for p in context.positions:
            lines.append(
                f"- {p.symbol} {p.side} {p.quantity:g} @ ${p.entry_price:.2f} "
                f"(now ${p.current_price:.2f}, {p.unrealized_pnl_percent:+.1f}%)"
            )
    else:
        lines.append("- none")

    perf = context.performance
    lines += [
        "",
        "## Track Record",
        f"{perf.total_trades} closed trades, win rate {perf.win_rate * 100:.0f}%, "
        f"total P&L ${perf.total_pnl:,.2f}",
        context.exit_summary,
        "## Universe",
    ]
    for s in context.stocks:
        rsi = f"{s.rsi:.0f}" if s.rsi is not None else "n/a"
        lines.append(f"- {s.symbol}: ${s.price:.2f} ({s.change_percent:+.2f}%) RSI {rsi}")
    return "\n".join(lines) + "\n"
