"""Priority work queue of accepted opportunities awaiting dispatch."""

import heapq
import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from leadswift.models.opportunity import Opportunity
from leadswift.models.profile import Profile
from leadswift.scoring import MatchResult

logger = logging.getLogger(__name__)


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def score(self) -> int:
        return _PRIORITY_SCORE[self]


_PRIORITY_SCORE = {Priority.HIGH: 3, Priority.MEDIUM: 2, Priority.LOW: 1}


@dataclass
class QueueItem:
    """An accepted opportunity waiting for a dispatch slot."""

    opportunity: Opportunity
    profile: Profile
    priority: Priority
    enqueued_at: datetime
    match: Optional[MatchResult] = None
    pipeline_id: Optional[str] = None
    seq: int = field(default=0, compare=False)

    @property
    def sort_key(self) -> tuple[int, int]:
        # heapq is a min-heap: higher priority first, then insertion order
        return (-self.priority.score, self.seq)


class PriorityWorkQueue:
    """
    Ordered by priority (high > medium > low), FIFO within a band.
    At most one in-flight item per opportunity id, counting both queued
    and processing items.
    """

    def __init__(self, cap_reached: Optional[Callable[[], bool]] = None):
        self._heap: list[tuple[tuple[int, int], QueueItem]] = []
        self._seq = itertools.count()
        self._queued: set[str] = set()
        self._processing: set[str] = set()
        self._lock = threading.Lock()
        self._cap_reached = cap_reached or (lambda: False)

    def enqueue(self, item: QueueItem) -> bool:
        """Add item. False when the daily cap is reached or the opportunity is in flight."""
        if self._cap_reached():
            return False
        with self._lock:
            opp_id = item.opportunity.id
            if opp_id in self._queued or opp_id in self._processing:
                return False
            item.seq = next(self._seq)
            heapq.heappush(self._heap, (item.sort_key, item))
            self._queued.add(opp_id)
            return True

    def pop(self) -> Optional[QueueItem]:
        """Take the next item and mark it processing. None when empty or capped."""
        if self._cap_reached():
            return None
        with self._lock:
            if not self._heap:
                return None
            _, item = heapq.heappop(self._heap)
            opp_id = item.opportunity.id
            self._queued.discard(opp_id)
            self._processing.add(opp_id)
            return item

    def release(self, opportunity_id: str) -> None:
        """Processing finished (success or failure)."""
        with self._lock:
            self._processing.discard(opportunity_id)

    def trim(self, keep: int) -> list[QueueItem]:
        """Drop the lowest-priority, newest items beyond `keep`. Returns dropped items."""
        with self._lock:
            if len(self._heap) <= keep:
                return []
            ordered = sorted(self._heap, key=lambda entry: entry[0])
            kept, dropped = ordered[:keep], ordered[keep:]
            self._heap = kept
            heapq.heapify(self._heap)
            for _, item in dropped:
                self._queued.discard(item.opportunity.id)
        if dropped:
            logger.warning("Trimmed %d items from work queue (kept %d)", len(dropped), keep)
        return [item for _, item in dropped]

    def in_flight_ids(self) -> set[str]:
        with self._lock:
            return self._queued | self._processing

    def is_in_flight(self, opportunity_id: str) -> bool:
        with self._lock:
            return opportunity_id in self._queued or opportunity_id in self._processing

    def snapshot(self) -> list[QueueItem]:
        """Queued items in dispatch order."""
        with self._lock:
            return [item for _, item in sorted(self._heap, key=lambda entry: entry[0])]

    def __len__(self) -> int:
        with self._lock:
            return len(self._heap)
