"""
Order fulfillment state machine shared by every live broker adapter.

Submitted -> Polling -> Filled | Rejected | Cancelled | TimedOut

Adapters supply three callables (submit, fetch_status, extract_fill); the
polling, slippage and error conversion live here once.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterator, Optional

from ..schemas import ExecutionResult, OrderStatus
from ..tracking import ApiCallTracker, get_api_tracker

logger = logging.getLogger("arena_trader.brokers.fulfillment")


class OrderState(str, Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    FILLED = "filled"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded polling schedule: at most max_attempts status checks."""
    max_attempts: int = 20
    interval_sec: float = 0.5
    backoff: float = 1.0
    max_interval_sec: float = 2.0

    def delays(self) -> Iterator[float]:
        delay = self.interval_sec
        for _ in range(self.max_attempts):
            yield min(delay, self.max_interval_sec)
            delay *= self.backoff

    @property
    def ceiling_sec(self) -> float:
        return sum(self.delays())


@dataclass
class OrderUpdate:
    """Adapter-neutral view of one status poll."""
    state: OrderState
    filled_price: Optional[float] = None
    filled_quantity: Optional[float] = None
    reason: Optional[str] = None


SubmitFn = Callable[[], Awaitable[str]]
FetchStatusFn = Callable[[str], Awaitable[Any]]
ExtractFillFn = Callable[[Any], OrderUpdate]


async def fulfill_order(
    *,
    broker: str,
    symbol: str,
    requested_quantity: float,
    reference_price: float,
    submit: SubmitFn,
    fetch_status: FetchStatusFn,
    extract_fill: ExtractFillFn,
    policy: Optional[RetryPolicy] = None,
    commission: float = 0.0,
    tracker: Optional[ApiCallTracker] = None,
    track_calls: bool = True,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ExecutionResult:
    """
    Drive one order from submission to a terminal state.

    Never raises: submission errors become a rejected result and an
    exhausted polling window becomes a pending result.
    """
    policy = policy or RetryPolicy()
    tracker = tracker or get_api_tracker()
    start = time.monotonic()

    def elapsed_ms() -> float:
        return (time.monotonic() - start) * 1000

    try:
        order_id = await submit()
        if track_calls:
            tracker.record_success(broker, "submit")
    except Exception as e:
        if track_calls:
            tracker.record_error(broker, "submit", e)
        logger.error(f"ORDER FAILED [{broker}] {symbol} x{requested_quantity}: {e}")
        return ExecutionResult.failed(
            f"{broker} order submission failed: {e}",
            requested_quantity=requested_quantity,
            broker=broker,
            execution_time_ms=elapsed_ms(),
        )

    state = OrderState.SUBMITTED
    logger.info(f"[{broker}] Order {order_id} submitted: {symbol} x{requested_quantity}")

    for attempt, delay in enumerate(policy.delays(), start=1):
        await sleep(delay)
        state = OrderState.POLLING
        try:
            payload = await fetch_status(order_id)
            update = extract_fill(payload)
            if track_calls:
                tracker.record_success(broker, "status")
        except Exception as e:
            if track_calls:
                tracker.record_error(broker, "status", e)
            logger.warning(f"[{broker}] Status poll {attempt}/{policy.max_attempts} for {order_id} failed: {e}")
            continue

        state = update.state

        if state == OrderState.FILLED:
            executed_price = float(update.filled_price or 0.0)
            executed_quantity = float(update.filled_quantity or 0.0)
            slippage = abs(executed_price - reference_price) * executed_quantity
            logger.info(
                f"[{broker}] Order {order_id} FILLED: {executed_quantity} {symbol} @ ${executed_price:.2f} "
                f"(slippage ${slippage:.2f})"
            )
            return ExecutionResult(
                success=True,
                executed_price=executed_price,
                executed_quantity=executed_quantity,
                requested_quantity=requested_quantity,
                commission=commission,
                slippage=slippage,
                execution_time_ms=elapsed_ms(),
                order_id=str(order_id),
                order_status=OrderStatus.FILLED,
                broker=broker,
            )

        if state in (OrderState.REJECTED, OrderState.CANCELLED):
            reason = update.reason or f"Order {state.value}"
            logger.warning(f"[{broker}] Order {order_id} {state.value.upper()}: {reason}")
            return ExecutionResult.failed(
                reason,
                requested_quantity=requested_quantity,
                broker=broker,
                order_id=str(order_id),
                execution_time_ms=elapsed_ms(),
            )

    logger.warning(
        f"[{broker}] Order {order_id} not filled after {policy.max_attempts} polls; "
        f"left pending at the broker"
    )
    return ExecutionResult.failed(
        f"Order {order_id} timed out after {policy.max_attempts} status checks (still pending)",
        requested_quantity=requested_quantity,
        broker=broker,
        order_status=OrderStatus.PENDING,
        order_id=str(order_id),
        execution_time_ms=elapsed_ms(),
    )
