"""
US equity session clock used by the execution simulator.
"""
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo


@dataclass(frozen=True)
class MarketSession:
    """Weekday trading window in a named timezone."""
    tz_name: str = "America/New_York"
    open_time: time = time(9, 25)
    close_time: time = time(16, 0)

    @classmethod
    def from_strings(cls, tz_name: str, open_str: str, close_str: str) -> "MarketSession":
        return cls(
            tz_name=tz_name,
            open_time=time.fromisoformat(open_str),
            close_time=time.fromisoformat(close_str),
        )

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.tz_name)

    def _local(self, now: Optional[datetime]) -> datetime:
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(self.tz)

    def is_open(self, now: Optional[datetime] = None) -> bool:
        local = self._local(now)
        if local.weekday() >= 5:
            return False
        return self.open_time <= local.time() < self.close_time

    def next_open(self, now: Optional[datetime] = None) -> datetime:
        """Next session open strictly after `now` (or now, if already open)."""
        local = self._local(now)
        if self.is_open(local):
            return local
        candidate = local.replace(
            hour=self.open_time.hour, minute=self.open_time.minute, second=0, microsecond=0
        )
        if local.time() >= self.open_time:
            candidate += timedelta(days=1)
        while candidate.weekday() >= 5:
            candidate += timedelta(days=1)
        return candidate

    def next_close(self, now: Optional[datetime] = None) -> datetime:
        """Close of the current session, or of the next one when closed."""
        start = self.next_open(now)
        return start.replace(hour=self.close_time.hour, minute=self.close_time.minute, second=0, microsecond=0)

    def closed_message(self) -> str:
        return (
            f"Market is closed. Trading hours: {_fmt(self.open_time)} - {_fmt(self.close_time)} "
            f"{_tz_label(self.tz_name)}, Mon-Fri"
        )


def _fmt(t: time) -> str:
    return t.strftime("%I:%M %p").lstrip("0")


def _tz_label(tz_name: str) -> str:
    return "ET" if tz_name == "America/New_York" else tz_name


def format_duration(delta: timedelta) -> str:
    minutes_total = int(delta.total_seconds() // 60)
    hours, minutes = divmod(minutes_total, 60)
    if hours >= 24:
        days, hours = divmod(hours, 24)
        return f"{days}d {hours}h"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def get_market_status(session: Optional[MarketSession] = None, now: Optional[datetime] = None) -> dict:
    """Snapshot of session state for logs and status endpoints."""
    session = session or MarketSession()
    local = session._local(now)
    is_open = session.is_open(local)
    next_open = session.next_open(local)
    until_open = next_open - local
    return {
        "is_open": is_open,
        "current_time": local.isoformat(),
        "next_open": next_open.isoformat(),
        "next_close": session.next_close(local).isoformat(),
        "time_until_open": format_duration(until_open),
        "status": "OPEN" if is_open else f"CLOSED (opens in {format_duration(until_open)})",
    }
