"""Clock used by every time-driven component. All timestamps are UTC-aware."""

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    """Anything with a now() returning an aware datetime."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """
    Clock that only moves when told to.
    Used for simulations and tests of day rollover, follow-up offsets and sweeps.
    """

    def __init__(self, start: Optional[datetime] = None):
        start = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, delta: Optional[timedelta] = None, **kwargs: float) -> datetime:
        """Move forward by a timedelta or timedelta kwargs (days=3, hours=1, ...)."""
        step = delta if delta is not None else timedelta(**kwargs)
        with self._lock:
            self._now = self._now + step
            return self._now

    def set(self, when: datetime) -> None:
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        with self._lock:
            self._now = when


def utc_date_key(when: datetime) -> str:
    """Calendar date string used for the daily dispatch reset (UTC)."""
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when.astimezone(timezone.utc).date().isoformat()
