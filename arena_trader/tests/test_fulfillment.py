"""
Order fulfillment state machine tests.
"""
import pytest

from arena_trader.brokers.fulfillment import OrderState, OrderUpdate, RetryPolicy, fulfill_order
from arena_trader.schemas import OrderStatus
from arena_trader.tracking import ApiCallTracker


def scripted_status(*updates):
    """fetch_status/extract_fill pair replaying the given updates, then polling forever."""
    remaining = list(updates)
    calls = []

    async def fetch_status(order_id):
        calls.append(order_id)
        if remaining:
            item = remaining.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return OrderUpdate(state=OrderState.POLLING)

    return fetch_status, (lambda payload: payload), calls


async def submit_ok():
    return "order-1"


class TestRetryPolicy:
    def test_delays_are_bounded(self):
        policy = RetryPolicy(max_attempts=4, interval_sec=0.5, backoff=2.0, max_interval_sec=1.5)
        assert list(policy.delays()) == [0.5, 1.0, 1.5, 1.5]
        assert policy.ceiling_sec == pytest.approx(4.5)

    def test_default_ceiling_is_ten_seconds(self):
        assert RetryPolicy().ceiling_sec == pytest.approx(10.0)


class TestFulfillOrder:
    """Submitted -> Polling -> terminal state transitions."""

    @pytest.mark.asyncio
    async def test_fill_after_polling(self, no_sleep):
        """A fill on the third poll returns a filled result with slippage."""
        fetch, extract, calls = scripted_status(
            OrderUpdate(state=OrderState.POLLING),
            OrderUpdate(state=OrderState.POLLING),
            OrderUpdate(state=OrderState.FILLED, filled_price=101.0, filled_quantity=10),
        )
        result = await fulfill_order(
            broker="Test",
            symbol="AAPL",
            requested_quantity=10,
            reference_price=100.0,
            submit=submit_ok,
            fetch_status=fetch,
            extract_fill=extract,
            policy=RetryPolicy(max_attempts=5, interval_sec=0),
            tracker=ApiCallTracker(),
            sleep=no_sleep,
        )
        assert result.success is True
        assert result.order_status == OrderStatus.FILLED
        assert result.executed_price == 101.0
        assert result.executed_quantity == 10
        assert result.slippage == pytest.approx(10.0)
        assert result.order_id == "order-1"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_timeout_is_pending_not_cancelled(self, no_sleep):
        """Exhausted polling leaves the order pending and checks exactly max_attempts times."""
        fetch, extract, calls = scripted_status()
        result = await fulfill_order(
            broker="Test",
            symbol="AAPL",
            requested_quantity=5,
            reference_price=100.0,
            submit=submit_ok,
            fetch_status=fetch,
            extract_fill=extract,
            policy=RetryPolicy(max_attempts=4, interval_sec=0),
            tracker=ApiCallTracker(),
            sleep=no_sleep,
        )
        assert result.success is False
        assert result.is_pending
        assert result.order_id == "order-1"
        assert "timed out after 4 status checks" in result.error
        assert len(calls) == 4

    @pytest.mark.asyncio
    async def test_rejection_is_terminal(self, no_sleep):
        fetch, extract, calls = scripted_status(
            OrderUpdate(state=OrderState.REJECTED, reason="insufficient buying power"),
        )
        result = await fulfill_order(
            broker="Test",
            symbol="AAPL",
            requested_quantity=5,
            reference_price=100.0,
            submit=submit_ok,
            fetch_status=fetch,
            extract_fill=extract,
            policy=RetryPolicy(max_attempts=10, interval_sec=0),
            tracker=ApiCallTracker(),
            sleep=no_sleep,
        )
        assert result.success is False
        assert result.order_status == OrderStatus.REJECTED
        assert result.error == "insufficient buying power"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_submit_failure_is_recorded(self, no_sleep):
        """Submission errors become a rejected result and count toward the error streak."""
        tracker = ApiCallTracker()

        async def submit_fails():
            raise ConnectionError("connection reset")

        fetch, extract, calls = scripted_status()
        result = await fulfill_order(
            broker="Test",
            symbol="AAPL",
            requested_quantity=5,
            reference_price=100.0,
            submit=submit_fails,
            fetch_status=fetch,
            extract_fill=extract,
            policy=RetryPolicy(max_attempts=3, interval_sec=0),
            tracker=tracker,
            sleep=no_sleep,
        )
        assert result.success is False
        assert result.error == "Test order submission failed: connection reset"
        assert tracker.get_consecutive_errors() == 1
        assert calls == []

    @pytest.mark.asyncio
    async def test_poll_errors_are_retried(self, no_sleep):
        """A transient status error does not end the order."""
        fetch, extract, calls = scripted_status(
            RuntimeError("502"),
            OrderUpdate(state=OrderState.FILLED, filled_price=50.0, filled_quantity=2),
        )
        result = await fulfill_order(
            broker="Test",
            symbol="KO",
            requested_quantity=2,
            reference_price=50.0,
            submit=submit_ok,
            fetch_status=fetch,
            extract_fill=extract,
            policy=RetryPolicy(max_attempts=3, interval_sec=0),
            tracker=ApiCallTracker(),
            sleep=no_sleep,
        )
        assert result.success is True
        assert len(calls) == 2
