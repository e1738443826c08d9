"""
Process-wide upstream API call tracking.

Counts broker and market-data calls per service and keeps the consecutive
error streak the safety engine halts on. Counters roll over on a new UTC day
and can be reset explicitly.
"""
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, date
from typing import Any, Callable, Deque, Dict, Optional

logger = logging.getLogger("arena_trader.tracking")


@dataclass
class ApiCall:
    service: str
    operation: str
    ok: bool
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)


class ApiCallTracker:
    """Tracks upstream API calls and the consecutive failure streak."""

    def __init__(self, history_size: int = 100, today: Optional[Callable[[], date]] = None):
        self._today = today or (lambda: datetime.utcnow().date())
        self.history: Deque[ApiCall] = deque(maxlen=history_size)
        self.calls_today = 0
        self.errors_today = 0
        self.consecutive_errors = 0
        self.by_service: Dict[str, int] = {}
        self.last_reset_date = self._today()

    def _check_day_reset(self) -> None:
        current = self._today()
        if current != self.last_reset_date:
            logger.info(
                f"New day started: {current.isoformat()} "
                f"(yesterday: {self.calls_today} calls, {self.errors_today} errors)"
            )
            self.calls_today = 0
            self.errors_today = 0
            self.consecutive_errors = 0
            self.by_service = {}
            self.last_reset_date = current

    def record_success(self, service: str, operation: str = "") -> None:
        self._check_day_reset()
        self.calls_today += 1
        self.by_service[service] = self.by_service.get(service, 0) + 1
        self.consecutive_errors = 0
        self.history.append(ApiCall(service=service, operation=operation, ok=True))

    def record_error(self, service: str, operation: str = "", error: Any = None) -> None:
        self._check_day_reset()
        self.calls_today += 1
        self.errors_today += 1
        self.by_service[service] = self.by_service.get(service, 0) + 1
        self.consecutive_errors += 1
        self.history.append(
            ApiCall(service=service, operation=operation, ok=False, error=str(error) if error else None)
        )
        logger.warning(
            f"API error #{self.consecutive_errors} in a row from {service} {operation}: {error}"
        )

    def get_consecutive_errors(self) -> int:
        self._check_day_reset()
        return self.consecutive_errors

    def reset(self) -> None:
        """Clear all counters (daily rollover or manual intervention)."""
        self.history.clear()
        self.calls_today = 0
        self.errors_today = 0
        self.consecutive_errors = 0
        self.by_service = {}
        self.last_reset_date = self._today()

    def get_stats(self) -> Dict[str, Any]:
        self._check_day_reset()
        return {
            "date": self.last_reset_date.isoformat(),
            "calls_today": self.calls_today,
            "errors_today": self.errors_today,
            "consecutive_errors": self.consecutive_errors,
            "by_service": dict(self.by_service),
        }


_tracker: Optional[ApiCallTracker] = None


def get_api_tracker() -> ApiCallTracker:
    """Get or create the process-wide tracker."""
    global _tracker
    if _tracker is None:
        _tracker = ApiCallTracker()
    return _tracker


def reset_api_tracker() -> None:
    """Reset the process-wide tracker's counters."""
    get_api_tracker().reset()
