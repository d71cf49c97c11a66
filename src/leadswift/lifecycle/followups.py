"""Follow-up scheduling: a time-ordered heap of conditional follow-up emails."""

import heapq
import itertools
import logging
import sqlite3
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from leadswift.clock import Clock, SystemClock
from leadswift.config import DEFAULT_FOLLOW_UPS, FollowUpRule
from leadswift.dispatch.calls import call_with_timeout
from leadswift.errors import LeadSwiftError, PipelineNotFoundError, TransportError
from leadswift.events import EventBus, LifecycleKind
from leadswift.generation.templates import follow_up_message
from leadswift.models.pipeline import OUTREACH_STATUSES, ApplicationStatus, Pipeline
from leadswift.store import PipelineStore
from leadswift.transport.base import EmailTransport, SendResult

from .state_machine import PipelineStateMachine

logger = logging.getLogger(__name__)


class FollowUpStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


class FollowUp(BaseModel):
    """One scheduled follow-up email for a pipeline."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    pipeline_id: str
    sequence: int
    condition: str
    subject: str
    due_at: datetime
    status: FollowUpStatus = FollowUpStatus.PENDING
    executed_at: Optional[datetime] = None
    reason: Optional[str] = None
    message_id: Optional[str] = None


def skip_reason(follow_up: FollowUp, pipeline: Pipeline) -> Optional[str]:
    """Why this follow-up must not be sent now, or None if it should go out."""
    if pipeline.is_terminal:
        return f"Pipeline closed ({pipeline.status.value})"
    if pipeline.tracking.responses > 0:
        return "Response received"
    if pipeline.tracking.bounces > 0:
        return "Email bounced"
    if pipeline.tracking.unsubscribes > 0:
        return "Recipient unsubscribed"
    if pipeline.status not in OUTREACH_STATUSES:
        return f"Pipeline left outreach ({pipeline.status.value})"
    if follow_up.condition == "opened_no_reply" and pipeline.tracking.opens == 0:
        return "Proposal not opened"
    return None


class FollowUpScheduler:
    """
    Holds pending follow-ups ordered by due time.
    run_due() re-reads each pipeline before deciding, so replies that arrive
    between scheduling and the due time suppress the follow-up.
    """

    def __init__(
        self,
        machine: PipelineStateMachine,
        store: PipelineStore,
        transport: EmailTransport,
        bus: EventBus,
        clock: Optional[Clock] = None,
        *,
        rules: Optional[list[FollowUpRule]] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        send_timeout: float = 30.0,
    ):
        self.machine = machine
        self.store = store
        self.transport = transport
        self.bus = bus
        self.clock = clock or SystemClock()
        self.rules = list(rules if rules is not None else DEFAULT_FOLLOW_UPS)
        self.send_timeout = send_timeout
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="followup")
        self._heap: list[tuple[datetime, int, str]] = []
        self._items: dict[str, FollowUp] = {}
        self._seq = itertools.count()
        self._lock = threading.Lock()
        self.sent_count = 0
        self.skipped_count = 0

    def load(self) -> int:
        """Re-queue pending follow-ups persisted by an earlier run."""
        pending = self.store.list_follow_ups(status=FollowUpStatus.PENDING.value)
        with self._lock:
            for f in pending:
                self._push(f)
        return len(pending)

    def _push(self, follow_up: FollowUp) -> None:
        self._items[follow_up.id] = follow_up
        heapq.heappush(self._heap, (follow_up.due_at, next(self._seq), follow_up.id))

    def update_rules(self, rules: list[FollowUpRule]) -> None:
        """New rules apply to future dispatches only; scheduled follow-ups are kept."""
        self.rules = list(rules)

    def schedule(self, pipeline: Pipeline, sent_at: datetime) -> list[FollowUp]:
        """Create one follow-up per rule, due `delay_days` after `sent_at`."""
        created: list[FollowUp] = []
        for seq, rule in enumerate(self.rules, start=1):
            f = FollowUp(
                pipeline_id=pipeline.id,
                sequence=seq,
                condition=rule.condition,
                subject=rule.subject,
                due_at=sent_at + timedelta(days=rule.delay_days),
            )
            self.store.save_follow_up(f)
            created.append(f)
        with self._lock:
            for f in created:
                self._push(f)
        logger.info("Scheduled %d follow-ups for pipeline %s", len(created), pipeline.id)
        return created

    def cancel(self, pipeline_id: str, reason: str = "Pipeline closed") -> int:
        """Skip every pending follow-up of a pipeline. Returns how many were cancelled."""
        now = self.clock.now()
        with self._lock:
            targets = [
                f
                for f in self._items.values()
                if f.pipeline_id == pipeline_id and f.status == FollowUpStatus.PENDING
            ]
            for f in targets:
                f.status = FollowUpStatus.SKIPPED
                f.executed_at = now
                f.reason = reason
                self._items.pop(f.id, None)
        for f in targets:
            self.store.save_follow_up(f)
        if targets:
            logger.info("Cancelled %d follow-ups for pipeline %s", len(targets), pipeline_id)
        return len(targets)

    def pending(self, pipeline_id: Optional[str] = None) -> list[FollowUp]:
        with self._lock:
            items = [f for f in self._items.values() if f.status == FollowUpStatus.PENDING]
        if pipeline_id is not None:
            items = [f for f in items if f.pipeline_id == pipeline_id]
        return sorted(items, key=lambda f: f.due_at)

    def next_due(self) -> Optional[datetime]:
        with self._lock:
            while self._heap and not self._is_pending(self._heap[0][2]):
                heapq.heappop(self._heap)
            return self._heap[0][0] if self._heap else None

    def _is_pending(self, follow_up_id: str) -> bool:
        f = self._items.get(follow_up_id)
        return f is not None and f.status == FollowUpStatus.PENDING

    def _pop_due(self, now: datetime) -> list[FollowUp]:
        due: list[FollowUp] = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                _, _, fid = heapq.heappop(self._heap)
                f = self._items.get(fid)
                if f is not None and f.status == FollowUpStatus.PENDING:
                    due.append(f)
        return due

    def run_due(self, now: Optional[datetime] = None) -> list[FollowUp]:
        """
        Process every follow-up due by `now`. Returns the processed follow-ups.
        An error on one follow-up does not stop the others; one that failed
        before it was decided goes back on the heap for the next run.
        """
        now = now or self.clock.now()
        processed: list[FollowUp] = []
        for f in self._pop_due(now):
            try:
                self._process(f, now)
            except (LeadSwiftError, sqlite3.Error) as e:
                logger.error("Follow-up %s for pipeline %s errored: %s", f.id, f.pipeline_id, e)
                self.bus.publish_warning(
                    "email_service",
                    f"Follow-up {f.condition} errored: {e}",
                    pipeline_id=f.pipeline_id,
                )
                if f.status == FollowUpStatus.PENDING:
                    with self._lock:
                        self._push(f)
                continue
            processed.append(f)
        return processed

    def _process(self, f: FollowUp, now: datetime) -> None:
        try:
            pipeline = self.machine.get(f.pipeline_id)
        except PipelineNotFoundError:
            self._finish(f, FollowUpStatus.SKIPPED, now, reason="Pipeline not found")
            return
        reason = skip_reason(f, pipeline)
        if reason is not None:
            self._skip(f, pipeline, now, reason)
        else:
            self._send(f, pipeline, now)

    def _finish(
        self,
        f: FollowUp,
        status: FollowUpStatus,
        now: datetime,
        *,
        reason: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> None:
        # Finished follow-ups live on in the store only
        with self._lock:
            f.status = status
            f.executed_at = now
            f.reason = reason
            f.message_id = message_id
            self._items.pop(f.id, None)
        self.store.save_follow_up(f)

    def _skip(self, f: FollowUp, pipeline: Pipeline, now: datetime, reason: str) -> None:
        self._finish(f, FollowUpStatus.SKIPPED, now, reason=reason)
        self.skipped_count += 1
        logger.info("Follow-up %s (%s) skipped: %s", f.id, f.condition, reason)
        self.bus.lifecycle(
            LifecycleKind.FOLLOW_UP_SKIPPED,
            pipeline_id=pipeline.id,
            opportunity_id=pipeline.opportunity_id,
            follow_up_id=f.id,
            condition=f.condition,
            reason=reason,
        )

    def _send(self, f: FollowUp, pipeline: Pipeline, now: datetime) -> None:
        opportunity = self.store.get_opportunity(pipeline.opportunity_id)
        profile = self.store.get_profile(pipeline.profile_id)
        recipient = opportunity.recipient if opportunity else None
        if opportunity is None or profile is None or recipient is None:
            self._fail(f, pipeline, now, "No recipient for follow-up")
            return
        body = follow_up_message(f.condition, opportunity, profile)
        tracking_id = pipeline.tracking_id or pipeline.id
        try:
            result: SendResult = call_with_timeout(
                self._executor,
                lambda: self.transport.send(recipient, f.subject, body, tracking_id),
                self.send_timeout,
                TransportError,
            )
        except TransportError as e:
            self._fail(f, pipeline, now, str(e))
            return
        if not result.success:
            self._fail(f, pipeline, now, result.error or "Send failed")
            return

        self._finish(f, FollowUpStatus.SENT, now, message_id=result.message_id)
        self.sent_count += 1
        note = f"Follow-up #{f.sequence} sent ({f.condition}): {f.subject}"
        # Only proposal_sent moves forward; a reply that raced the send keeps its status
        advanced = self.machine.advance_if(
            pipeline.id, ApplicationStatus.PROPOSAL_SENT, ApplicationStatus.FOLLOW_UP_SENT, note
        )
        if advanced is None:
            self.machine.add_note(pipeline.id, note)
        logger.info("Follow-up %s sent for pipeline %s", f.id, pipeline.id)
        self.bus.lifecycle(
            LifecycleKind.FOLLOW_UP_SENT,
            pipeline_id=pipeline.id,
            opportunity_id=pipeline.opportunity_id,
            follow_up_id=f.id,
            condition=f.condition,
            message_id=result.message_id,
        )

    def _fail(self, f: FollowUp, pipeline: Pipeline, now: datetime, error: str) -> None:
        self._finish(f, FollowUpStatus.FAILED, now, reason=error)
        logger.warning("Follow-up %s for pipeline %s failed: %s", f.id, pipeline.id, error)
        self.bus.publish_warning(
            "email_service", f"Follow-up {f.condition} failed: {error}", pipeline_id=pipeline.id
        )
