"""Engine-owned mutable state: daily dispatch counter, queue and stats."""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from leadswift.clock import utc_date_key

from .queue import PriorityWorkQueue


class DailyCounter:
    """
    Count of successful dispatches for the current UTC date.
    Resets when the date string changes.
    """

    def __init__(self, cap: int, now: Optional[datetime] = None):
        self._cap = cap
        self._count = 0
        self._date = utc_date_key(now) if now else ""
        self._lock = threading.Lock()

    @property
    def cap(self) -> int:
        return self._cap

    @cap.setter
    def cap(self, value: int) -> None:
        with self._lock:
            self._cap = value

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    @property
    def date(self) -> str:
        with self._lock:
            return self._date

    def reached(self) -> bool:
        with self._lock:
            return self._count >= self._cap

    def increment(self) -> int:
        with self._lock:
            self._count += 1
            return self._count

    def reset_if_new_day(self, now: datetime) -> bool:
        """Reset to zero when the UTC date moved on. Returns True on reset."""
        key = utc_date_key(now)
        with self._lock:
            if key == self._date:
                return False
            self._date = key
            self._count = 0
            return True

    def restore(self, date: str, count: int) -> None:
        with self._lock:
            self._date = date
            self._count = count


@dataclass
class DispatchStats:
    """Running totals since engine start."""

    jobs_processed: int = 0
    proposals_generated: int = 0
    fallbacks_used: int = 0
    emails_sent: int = 0
    dispatch_failures: int = 0
    follow_ups_sent: int = 0
    follow_ups_skipped: int = 0
    responses_received: int = 0
    total_processing_seconds: float = 0.0
    last_activity: Optional[datetime] = None

    @property
    def average_processing_seconds(self) -> float:
        if not self.jobs_processed:
            return 0.0
        return self.total_processing_seconds / self.jobs_processed

    @property
    def success_rate(self) -> float:
        attempts = self.emails_sent + self.dispatch_failures
        return (self.emails_sent / attempts * 100) if attempts else 0.0

    def as_dict(self) -> dict:
        return {
            "jobs_processed": self.jobs_processed,
            "proposals_generated": self.proposals_generated,
            "fallbacks_used": self.fallbacks_used,
            "emails_sent": self.emails_sent,
            "dispatch_failures": self.dispatch_failures,
            "follow_ups_sent": self.follow_ups_sent,
            "follow_ups_skipped": self.follow_ups_skipped,
            "responses_received": self.responses_received,
            "success_rate": round(self.success_rate, 1),
            "average_processing_seconds": round(self.average_processing_seconds, 3),
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
        }


@dataclass
class EngineState:
    """Everything one engine instance mutates while running."""

    counter: DailyCounter
    queue: PriorityWorkQueue = field(init=False)
    stats: DispatchStats = field(default_factory=DispatchStats)
    running: bool = False

    def __post_init__(self) -> None:
        self.queue = PriorityWorkQueue(cap_reached=self.counter.reached)
