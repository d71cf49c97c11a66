"""Rate-limited dispatch: work queue, daily counter and engine state."""

from .queue import Priority, PriorityWorkQueue, QueueItem
from .state import DailyCounter, DispatchStats, EngineState

__all__ = [
    "DailyCounter",
    "DispatchStats",
    "EngineState",
    "Priority",
    "PriorityWorkQueue",
    "QueueItem",
]
