"""Typed event bus: lifecycle, system, health and metrics notifications."""

import logging
import threading
import uuid
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Callable, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from leadswift.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

# Bounded history of errors and warnings kept on SystemStatus
STATUS_HISTORY = 10


class LifecycleKind(str, Enum):
    JOB_DISCOVERED = "job_discovered"
    JOB_QUEUED = "job_queued"
    PROPOSAL_GENERATED = "proposal_generated"
    EMAIL_SENT = "email_sent"
    RESPONSE_RECEIVED = "response_received"
    INTERVIEW_SCHEDULED = "interview_scheduled"
    OFFER_RECEIVED = "offer_received"
    PIPELINE_UPDATED = "pipeline_updated"
    FOLLOW_UP_SENT = "follow_up_sent"
    FOLLOW_UP_SKIPPED = "follow_up_skipped"
    REMINDER_DUE = "reminder_due"


class ComponentState(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


def _event_id() -> str:
    return uuid.uuid4().hex[:12]


class _EventBase(BaseModel):
    id: str = Field(default_factory=_event_id)
    timestamp: datetime


class LifecycleEvent(_EventBase):
    """Something happened to an opportunity or its pipeline."""

    kind: Literal["lifecycle"] = "lifecycle"
    type: LifecycleKind
    pipeline_id: Optional[str] = None
    opportunity_id: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)


class SystemEvent(_EventBase):
    """Error or warning raised by an engine component."""

    kind: Literal["system"] = "system"
    level: Literal["error", "warning"]
    component: str
    message: str
    pipeline_id: Optional[str] = None


class SystemStatus(BaseModel):
    """Component health plus the most recent errors and warnings."""

    automation_engine: ComponentState = ComponentState.STOPPED
    proposal_generator: ComponentState = ComponentState.RUNNING
    email_service: ComponentState = ComponentState.RUNNING
    application_service: ComponentState = ComponentState.RUNNING
    last_health_check: Optional[datetime] = None
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class HealthEvent(_EventBase):
    """Periodic health snapshot."""

    kind: Literal["health"] = "health"
    status: SystemStatus
    engine: dict[str, Any] = Field(default_factory=dict)


class MetricsEvent(_EventBase):
    """Periodic metrics snapshot."""

    kind: Literal["metrics"] = "metrics"
    metrics: dict[str, Any] = Field(default_factory=dict)


Event = Annotated[
    Union[LifecycleEvent, SystemEvent, HealthEvent, MetricsEvent],
    Field(discriminator="kind"),
]

event_adapter: TypeAdapter = TypeAdapter(Event)

Subscriber = Callable[[Any], None]


class Subscription(BaseModel):
    """Handle returned by subscribe(): id plus the unread backlog at subscribe time."""

    id: str
    recent: list[Event] = Field(default_factory=list)


class EventBus:
    """
    Synchronous fan-out to subscribers.
    Delivery is best effort: a failing subscriber is logged and skipped.
    New subscribers get a snapshot of recent unread events, never a replay.
    """

    def __init__(self, *, recent_limit: int = 50, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._subscribers: dict[str, Subscriber] = {}
        self._recent: deque = deque(maxlen=recent_limit)
        self._read: set[str] = set()
        self._status = SystemStatus()

    def subscribe(self, callback: Subscriber) -> Subscription:
        sub_id = uuid.uuid4().hex[:12]
        with self._lock:
            self._subscribers[sub_id] = callback
            backlog = [e for e in self._recent if e.id not in self._read]
        return Subscription(id=sub_id, recent=backlog)

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            return self._subscribers.pop(subscription_id, None) is not None

    def mark_read(self, event_ids: Optional[list[str]] = None) -> None:
        """Mark the given events (or all recent events) as read."""
        with self._lock:
            if event_ids is None:
                self._read = {e.id for e in self._recent}
            else:
                self._read.update(event_ids)

    def recent_events(self, unread_only: bool = False) -> list:
        with self._lock:
            if unread_only:
                return [e for e in self._recent if e.id not in self._read]
            return list(self._recent)

    def publish(self, event: Any) -> None:
        with self._lock:
            if len(self._recent) == self._recent.maxlen:
                self._read.discard(self._recent[0].id)
            self._recent.append(event)
            if isinstance(event, SystemEvent):
                history = self._status.errors if event.level == "error" else self._status.warnings
                history.append(f"{event.component}: {event.message}")
                del history[:-STATUS_HISTORY]
            subscribers = list(self._subscribers.values())

        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed on %s event", event.kind)

    def lifecycle(
        self,
        type: LifecycleKind,
        *,
        pipeline_id: Optional[str] = None,
        opportunity_id: Optional[str] = None,
        **data: Any,
    ) -> LifecycleEvent:
        event = LifecycleEvent(
            type=type,
            pipeline_id=pipeline_id,
            opportunity_id=opportunity_id,
            data=data,
            timestamp=self.clock.now(),
        )
        self.publish(event)
        return event

    def publish_error(
        self, component: str, message: str, pipeline_id: Optional[str] = None
    ) -> SystemEvent:
        event = SystemEvent(
            level="error",
            component=component,
            message=message,
            pipeline_id=pipeline_id,
            timestamp=self.clock.now(),
        )
        self.publish(event)
        return event

    def publish_warning(
        self, component: str, message: str, pipeline_id: Optional[str] = None
    ) -> SystemEvent:
        event = SystemEvent(
            level="warning",
            component=component,
            message=message,
            pipeline_id=pipeline_id,
            timestamp=self.clock.now(),
        )
        self.publish(event)
        return event

    def set_component(self, name: str, state: ComponentState) -> None:
        with self._lock:
            setattr(self._status, name, ComponentState(state))

    def record_health_check(self, when: datetime) -> None:
        with self._lock:
            self._status.last_health_check = when

    def system_status(self) -> SystemStatus:
        """Return a copy; callers cannot mutate the bus's status."""
        with self._lock:
            return self._status.model_copy(deep=True)
