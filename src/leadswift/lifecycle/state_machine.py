"""Pipeline state machine: transitions, stage projection, actions and reminders."""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional

from leadswift.clock import Clock, SystemClock
from leadswift.errors import InvalidTransitionError, PipelineNotFoundError, PipelineTerminalError
from leadswift.events import EventBus, LifecycleKind
from leadswift.models.opportunity import Opportunity
from leadswift.models.pipeline import (
    OUTREACH_STATUSES,
    STATUS_ORDER,
    TERMINAL_STATUSES,
    ApplicationStatus,
    Outcome,
    OutcomeResult,
    Pipeline,
    Reminder,
    ReminderType,
    StageStatus,
    stage_for,
)
from leadswift.models.profile import Profile
from leadswift.models.proposal import Proposal
from leadswift.store import PipelineStore

from .actions import ActionFailure, ActionRunner, initial_stages

logger = logging.getLogger(__name__)

S = ApplicationStatus

DEADLINE_LEAD = timedelta(days=1)
INTERVIEW_FOLLOW_UP_DELAY = timedelta(days=3)

_OUTCOME_FOR_STATUS = {
    S.OFFER_ACCEPTED: OutcomeResult.HIRED,
    S.OFFER_REJECTED: OutcomeResult.WITHDRAWN,
    S.WITHDRAWN: OutcomeResult.WITHDRAWN,
    S.APPLICATION_REJECTED: OutcomeResult.REJECTED,
}

_STATUS_FOR_OUTCOME = {
    OutcomeResult.HIRED: S.OFFER_ACCEPTED,
    OutcomeResult.REJECTED: S.APPLICATION_REJECTED,
    OutcomeResult.WITHDRAWN: S.WITHDRAWN,
    OutcomeResult.EXPIRED: S.APPLICATION_REJECTED,
}

_STATUS_EVENTS = {
    S.RESPONSE_RECEIVED: LifecycleKind.RESPONSE_RECEIVED,
    S.INTERVIEW_SCHEDULED: LifecycleKind.INTERVIEW_SCHEDULED,
    S.OFFER_RECEIVED: LifecycleKind.OFFER_RECEIVED,
}

TRACKING_KINDS = ("opened", "clicked", "replied", "bounced", "unsubscribed")


def transition_allowed(current: ApplicationStatus, new: ApplicationStatus) -> bool:
    """Transition rules for a non-terminal current status."""
    if new in (S.APPLICATION_REJECTED, S.WITHDRAWN):
        return True
    if new in (S.OFFER_ACCEPTED, S.OFFER_REJECTED):
        return current == S.OFFER_RECEIVED
    if new == current:
        return True
    if {current, new} == {S.FOLLOW_UP_SENT, S.RESPONSE_RECEIVED}:
        return True
    return STATUS_ORDER.index(new) > STATUS_ORDER.index(current)


class PipelineStateMachine:
    """
    Sole owner of pipeline mutation.
    Every change is computed on a copy, persisted, then swapped in; a failure
    at any point leaves the stored and cached pipeline unchanged.
    """

    def __init__(
        self,
        store: PipelineStore,
        bus: EventBus,
        clock: Optional[Clock] = None,
        actions: Optional[ActionRunner] = None,
    ):
        self.store = store
        self.bus = bus
        self.clock = clock or SystemClock()
        self.actions = actions or ActionRunner()
        self._pipelines: dict[str, Pipeline] = {}
        self._by_opportunity: dict[str, str] = {}
        self._by_tracking: dict[str, str] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()
        self._terminal_listeners: list[Callable[[Pipeline], None]] = []

    # Registry

    def load(self) -> int:
        """Populate the in-memory registry from the store. Returns count loaded."""
        pipelines = self.store.list_pipelines()
        with self._registry_lock:
            for p in pipelines:
                self._register(p)
        logger.info("Loaded %d pipelines from store", len(pipelines))
        return len(pipelines)

    def _register(self, pipeline: Pipeline) -> None:
        self._pipelines[pipeline.id] = pipeline
        self._by_opportunity[pipeline.opportunity_id] = pipeline.id
        if pipeline.tracking_id:
            self._by_tracking[pipeline.tracking_id] = pipeline.id
        self._locks.setdefault(pipeline.id, threading.RLock())

    def add_terminal_listener(self, listener: Callable[[Pipeline], None]) -> None:
        """Called with the committed pipeline whenever it enters a terminal status."""
        self._terminal_listeners.append(listener)

    def _lock_for(self, pipeline_id: str) -> threading.RLock:
        with self._registry_lock:
            if pipeline_id not in self._pipelines:
                raise PipelineNotFoundError(pipeline_id)
            return self._locks[pipeline_id]

    def get(self, pipeline_id: str) -> Pipeline:
        """Return a copy of the pipeline."""
        with self._registry_lock:
            p = self._pipelines.get(pipeline_id)
        if p is None:
            raise PipelineNotFoundError(pipeline_id)
        return p.model_copy(deep=True)

    def find_by_opportunity(self, opportunity_id: str) -> Optional[Pipeline]:
        with self._registry_lock:
            pid = self._by_opportunity.get(opportunity_id)
            p = self._pipelines.get(pid) if pid else None
        return p.model_copy(deep=True) if p else None

    def find_by_tracking(self, tracking_id: str) -> Optional[Pipeline]:
        with self._registry_lock:
            pid = self._by_tracking.get(tracking_id)
            p = self._pipelines.get(pid) if pid else None
        return p.model_copy(deep=True) if p else None

    def list_pipelines(self, status: Optional[ApplicationStatus] = None) -> list[Pipeline]:
        with self._registry_lock:
            items = list(self._pipelines.values())
        if status is not None:
            items = [p for p in items if p.status == ApplicationStatus(status)]
        return [p.model_copy(deep=True) for p in items]

    def active_opportunity_ids(self) -> set[str]:
        """Opportunities with a pipeline that blocks resubmission (not awaiting a retry)."""
        with self._registry_lock:
            return {p.opportunity_id for p in self._pipelines.values() if not p.awaiting_retry}

    # Creation

    def create(
        self, opportunity: Opportunity, profile: Profile, priority: str = "medium"
    ) -> Pipeline:
        """Create the pipeline for an opportunity, or return the existing one."""
        existing = self.find_by_opportunity(opportunity.id)
        if existing is not None:
            return existing
        now = self.clock.now()
        pipeline = Pipeline(
            opportunity_id=opportunity.id,
            profile_id=profile.id,
            priority=str(getattr(priority, "value", priority)),
            stages=initial_stages(),
            created_at=now,
            last_updated=now,
            status_changed_at=now,
            notes=[f"[{now.isoformat()}] Job discovered: {opportunity.title} at {opportunity.organization}"],
        )
        discovery = pipeline.stages[0]
        discovery.status = StageStatus.COMPLETED
        discovery.started_at = now
        discovery.completed_at = now
        if opportunity.deadline is not None:
            pipeline.reminders.append(
                Reminder(
                    type=ReminderType.DEADLINE,
                    title="Application deadline approaching",
                    description=f"Deadline for {opportunity.title}",
                    due_at=opportunity.deadline - DEADLINE_LEAD,
                    priority="high",
                )
            )
        self.store.save_opportunity(opportunity)
        self.store.save_profile(profile)
        self.store.save_pipeline(pipeline)
        with self._registry_lock:
            self._register(pipeline)
        logger.info("Created pipeline %s for opportunity %s", pipeline.id, opportunity.id)
        return pipeline.model_copy(deep=True)

    # Mutation core

    @contextmanager
    def _mutate(self, pipeline_id: str, *, allow_terminal: bool = False) -> Iterator[Pipeline]:
        """
        Yield a draft copy under the pipeline lock; persist and swap on clean exit.
        Raises PipelineTerminalError before yielding if the pipeline is terminal.
        """
        with self._lock_for(pipeline_id):
            current = self._pipelines[pipeline_id]
            if current.is_terminal and not allow_terminal:
                self._reject_terminal(current)
            draft = current.model_copy(deep=True)
            yield draft
            self.store.save_pipeline(draft)
            with self._registry_lock:
                self._register(draft)

    def _reject_terminal(self, pipeline: Pipeline, attempted: Optional[str] = None) -> None:
        err = PipelineTerminalError(pipeline.id, pipeline.status.value, attempted)
        logger.error("%s", err)
        self.bus.publish_error("application_service", str(err), pipeline_id=pipeline.id)
        raise err

    def _apply_status(
        self, draft: Pipeline, new_status: ApplicationStatus, now: datetime, note: Optional[str]
    ) -> None:
        old_status = draft.status
        old_stage = draft.current_stage
        new_stage = stage_for(new_status)

        draft.status = new_status
        draft.last_updated = now
        if new_status != old_status:
            draft.status_changed_at = now
        if note:
            draft.notes.append(f"[{now.isoformat()}] {note}")

        if new_stage != old_stage:
            prev = draft.stage(old_stage)
            if prev is not None and prev.status != StageStatus.COMPLETED:
                prev.status = StageStatus.COMPLETED
                prev.completed_at = now
            nxt = draft.stage(new_stage)
            if nxt is not None:
                nxt.status = StageStatus.IN_PROGRESS
                nxt.started_at = nxt.started_at or now
        draft.current_stage = new_stage

        if new_status in TERMINAL_STATUSES:
            final = draft.stage(new_stage)
            if final is not None:
                final.status = StageStatus.COMPLETED
                final.completed_at = now
            if draft.outcome is None:
                draft.outcome = Outcome(result=_OUTCOME_FOR_STATUS[new_status], decided_at=now)

    def _after_commit(
        self,
        pipeline_id: str,
        old_status: ApplicationStatus,
        deferred: list[Callable[[], None]],
        failures: list[ActionFailure],
    ) -> Pipeline:
        committed = self.get(pipeline_id)
        if committed.status != old_status:
            self.bus.lifecycle(
                LifecycleKind.PIPELINE_UPDATED,
                pipeline_id=committed.id,
                opportunity_id=committed.opportunity_id,
                old_status=old_status.value,
                new_status=committed.status.value,
                stage=committed.current_stage.value,
            )
            kind = _STATUS_EVENTS.get(committed.status)
            if kind is not None:
                self.bus.lifecycle(
                    kind, pipeline_id=committed.id, opportunity_id=committed.opportunity_id
                )
        for f in failures:
            self.bus.publish_error(
                "application_service",
                f"Action {f.action.value}@{f.trigger} failed: {f.error}",
                pipeline_id=f.pipeline_id,
            )
        if committed.status in TERMINAL_STATUSES and old_status not in TERMINAL_STATUSES:
            for listener in list(self._terminal_listeners):
                try:
                    listener(committed)
                except Exception as e:
                    logger.error("Terminal listener for pipeline %s failed: %s", pipeline_id, e)
                    self.bus.publish_error(
                        "application_service",
                        f"Terminal listener failed: {e}",
                        pipeline_id=pipeline_id,
                    )
        for callback in deferred:
            try:
                callback()
            except Exception as e:
                logger.error("Deferred action for pipeline %s failed: %s", pipeline_id, e)
                self.bus.publish_error(
                    "application_service", f"Deferred action failed: {e}", pipeline_id=pipeline_id
                )
        return committed

    # Transitions

    def _transition(
        self,
        pipeline_id: str,
        new_status: ApplicationStatus,
        note: Optional[str] = None,
        *,
        prepare: Optional[Callable[[Pipeline, datetime], None]] = None,
        finish: Optional[Callable[[Pipeline, datetime], None]] = None,
    ) -> Pipeline:
        """
        Validate and apply one status change as a single commit.
        `prepare` edits the draft before the status moves; `finish` after actions ran.
        """
        new_status = ApplicationStatus(new_status)
        with self._lock_for(pipeline_id):
            current = self._pipelines[pipeline_id]
            if current.is_terminal:
                self._reject_terminal(current, new_status.value)
            if not transition_allowed(current.status, new_status):
                raise InvalidTransitionError(pipeline_id, current.status.value, new_status.value)
            old_status = current.status
            with self._mutate(pipeline_id) as draft:
                now = self.clock.now()
                if prepare is not None:
                    prepare(draft, now)
                self._apply_status(draft, new_status, now, note)
                deferred, failures = self.actions.run(draft, draft.current_stage, now)
                if finish is not None:
                    finish(draft, now)
        logger.info("Pipeline %s: %s -> %s", pipeline_id, old_status.value, new_status.value)
        return self._after_commit(pipeline_id, old_status, deferred, failures)

    def advance(
        self, pipeline_id: str, new_status: ApplicationStatus, note: Optional[str] = None
    ) -> Pipeline:
        """Move the pipeline to `new_status`, run due stage actions and persist."""
        return self._transition(pipeline_id, new_status, note)

    def advance_if(
        self,
        pipeline_id: str,
        expected: ApplicationStatus,
        new_status: ApplicationStatus,
        note: Optional[str] = None,
    ) -> Optional[Pipeline]:
        """Advance only while the pipeline is still in `expected`; otherwise return None."""
        with self._lock_for(pipeline_id):
            current = self._pipelines[pipeline_id]
            if current.is_terminal or current.status != ApplicationStatus(expected):
                return None
            return self._transition(pipeline_id, new_status, note)

    def add_note(self, pipeline_id: str, note: str) -> Pipeline:
        """Append a timestamped note. Notes are annotations, so terminal pipelines accept them."""
        with self._mutate(pipeline_id, allow_terminal=True) as draft:
            now = self.clock.now()
            draft.notes.append(f"[{now.isoformat()}] {note}")
            draft.last_updated = now
        return self.get(pipeline_id)

    def record_dispatch(
        self,
        pipeline_id: str,
        proposal: Proposal,
        tracking_id: str,
        message_id: Optional[str],
    ) -> Pipeline:
        """Store what was sent and clear any earlier dispatch error."""
        with self._mutate(pipeline_id) as draft:
            draft.proposal = proposal
            draft.tracking_id = tracking_id
            draft.message_id = message_id
            draft.last_error = None
            draft.last_updated = self.clock.now()
        return self.get(pipeline_id)

    def attach_proposal(self, pipeline_id: str, proposal: Proposal) -> Pipeline:
        """Keep the generated proposal so a retried dispatch can reuse it."""
        with self._mutate(pipeline_id) as draft:
            draft.proposal = proposal
            draft.last_error = None
            draft.last_updated = self.clock.now()
        return self.get(pipeline_id)

    def record_failure(self, pipeline_id: str, error: str) -> Pipeline:
        """Keep the status; remember the error so the pipeline awaits an explicit retry."""
        with self._mutate(pipeline_id) as draft:
            now = self.clock.now()
            draft.last_error = error
            draft.last_updated = now
            draft.notes.append(f"[{now.isoformat()}] Dispatch failed: {error}")
        return self.get(pipeline_id)

    def record_tracking(self, pipeline_id: str, kind: str) -> Pipeline:
        """
        Apply a delivery event. A reply during outreach moves the pipeline to
        response_received. Events on terminal pipelines are ignored.
        """
        if kind not in TRACKING_KINDS:
            raise ValueError(f"Unknown tracking event: {kind}")

        def bump(draft: Pipeline, now: datetime) -> None:
            t = draft.tracking
            if kind == "opened":
                t.opens += 1
            elif kind == "clicked":
                t.clicks += 1
            elif kind == "replied":
                t.responses += 1
            elif kind == "bounced":
                t.bounces += 1
                draft.notes.append(f"[{now.isoformat()}] Email bounced")
            elif kind == "unsubscribed":
                t.unsubscribes += 1
                draft.notes.append(f"[{now.isoformat()}] Recipient unsubscribed")
            t.last_activity = now
            draft.last_updated = now

        with self._lock_for(pipeline_id):
            current = self._pipelines[pipeline_id]
            if current.is_terminal:
                logger.info("Ignoring %s event on terminal pipeline %s", kind, pipeline_id)
                return current.model_copy(deep=True)
            if kind == "replied" and current.status in OUTREACH_STATUSES:
                return self._transition(
                    pipeline_id, S.RESPONSE_RECEIVED, "Response received", prepare=bump
                )
            with self._mutate(pipeline_id) as draft:
                bump(draft, self.clock.now())
        return self.get(pipeline_id)

    def schedule_interview(
        self,
        pipeline_id: str,
        when: datetime,
        interview_type: str = "video",
        details: str = "",
    ) -> Pipeline:
        """Set the interview time and move to interview_scheduled (prep reminder via stage action)."""
        note = f"Interview scheduled: {interview_type} on {when.isoformat()}"
        if details:
            note += f" - {details}"

        def set_time(draft: Pipeline, now: datetime) -> None:
            draft.interview_at = when

        with self._lock_for(pipeline_id):
            current = self._pipelines[pipeline_id]
            if current.status != S.INTERVIEW_SCHEDULED or current.is_terminal:
                return self._transition(pipeline_id, S.INTERVIEW_SCHEDULED, note, prepare=set_time)
            # Rescheduling: move the open prep reminder
            with self._mutate(pipeline_id) as draft:
                now = self.clock.now()
                set_time(draft, now)
                for r in draft.reminders:
                    if r.type == ReminderType.INTERVIEW_PREP and not r.completed:
                        r.due_at = when - DEADLINE_LEAD
                        r.notified = False
                draft.notes.append(f"[{now.isoformat()}] {note}")
                draft.last_updated = now
        return self.get(pipeline_id)

    def complete_interview(
        self, pipeline_id: str, feedback: str = "", next_steps: Optional[str] = None
    ) -> Pipeline:
        """Move to interview_completed; without next steps, remind to follow up in 3 days."""
        note = "Interview completed"
        if feedback:
            note += f". Feedback: {feedback}"
        if next_steps:
            note += f". Next steps: {next_steps}"

        def remind(draft: Pipeline, now: datetime) -> None:
            if next_steps:
                return
            draft.reminders.append(
                Reminder(
                    type=ReminderType.FOLLOW_UP,
                    title="Follow up after interview",
                    description="No next steps were given; check in with the interviewer",
                    due_at=now + INTERVIEW_FOLLOW_UP_DELAY,
                    priority="medium",
                )
            )

        return self._transition(pipeline_id, S.INTERVIEW_COMPLETED, note, finish=remind)

    def record_offer(
        self,
        pipeline_id: str,
        salary: Optional[float] = None,
        start_date: Optional[datetime] = None,
        deadline: Optional[datetime] = None,
    ) -> Pipeline:
        """Move to offer_received; a decision deadline gets a reminder one day before."""
        parts = ["Offer received"]
        if salary is not None:
            parts.append(f"salary {salary:g}")
        if start_date is not None:
            parts.append(f"start {start_date.date().isoformat()}")

        def remind(draft: Pipeline, now: datetime) -> None:
            if deadline is None:
                return
            draft.reminders.append(
                Reminder(
                    type=ReminderType.DEADLINE,
                    title="Offer decision deadline",
                    description="Respond to the offer before it expires",
                    due_at=deadline - DEADLINE_LEAD,
                    priority="high",
                )
            )

        return self._transition(pipeline_id, S.OFFER_RECEIVED, ", ".join(parts), finish=remind)

    def finalize_outcome(self, pipeline_id: str, outcome: Outcome) -> Pipeline:
        """Record the outcome once and move to the matching terminal status."""

        def set_outcome(draft: Pipeline, now: datetime) -> None:
            draft.outcome = outcome

        return self._transition(
            pipeline_id,
            _STATUS_FOR_OUTCOME[outcome.result],
            f"Outcome finalized: {outcome.result.value}",
            prepare=set_outcome,
        )

    # Time-driven

    def sweep(self, now: Optional[datetime] = None) -> list[str]:
        """
        Re-evaluate current-stage triggers on every non-terminal pipeline.
        Returns ids of pipelines where an action fired.
        """
        now = now or self.clock.now()
        fired: list[str] = []
        for p in self.list_pipelines():
            if p.is_terminal:
                continue
            with self._lock_for(p.id):
                current = self._pipelines[p.id]
                if current.is_terminal:
                    continue
                draft = current.model_copy(deep=True)
                deferred, failures = self.actions.run(draft, draft.current_stage, now)
                if draft == current:
                    continue
                draft.last_updated = now
                self.store.save_pipeline(draft)
                with self._registry_lock:
                    self._register(draft)
            fired.append(p.id)
            self._after_commit(p.id, p.status, deferred, failures)
        return fired

    def due_reminders(self, now: Optional[datetime] = None) -> list[tuple[Pipeline, Reminder]]:
        """
        Reminders due by `now` that were never surfaced; marks them notified and
        publishes reminder_due for each.
        """
        now = now or self.clock.now()
        due: list[tuple[Pipeline, Reminder]] = []
        for p in self.list_pipelines():
            if p.is_terminal:
                continue
            pending = [
                r for r in p.reminders if not r.completed and not r.notified and r.due_at <= now
            ]
            if not pending:
                continue
            ids = {r.id for r in pending}
            with self._mutate(p.id) as draft:
                for r in draft.reminders:
                    if r.id in ids:
                        r.notified = True
            committed = self.get(p.id)
            for r in committed.reminders:
                if r.id in ids:
                    due.append((committed, r))
                    self.bus.lifecycle(
                        LifecycleKind.REMINDER_DUE,
                        pipeline_id=committed.id,
                        opportunity_id=committed.opportunity_id,
                        reminder_id=r.id,
                        reminder_type=r.type.value,
                        title=r.title,
                        priority=r.priority,
                    )
        return due

    def active_reminders(self, now: Optional[datetime] = None) -> list[tuple[Pipeline, Reminder]]:
        """Open reminders not yet past due, soonest first."""
        now = now or self.clock.now()
        out = [
            (p, r)
            for p in self.list_pipelines()
            for r in p.reminders
            if not r.completed and r.due_at >= now
        ]
        out.sort(key=lambda pr: pr[1].due_at)
        return out

    def complete_reminder(self, pipeline_id: str, reminder_id: str) -> Reminder:
        """Mark a reminder done. Allowed on terminal pipelines (it is a to-do, not a transition)."""
        with self._mutate(pipeline_id, allow_terminal=True) as draft:
            for r in draft.reminders:
                if r.id == reminder_id:
                    r.completed = True
                    r.completed_at = self.clock.now()
                    break
            else:
                raise KeyError(f"Reminder not found: {reminder_id}")
        for r in self.get(pipeline_id).reminders:
            if r.id == reminder_id:
                return r
        raise KeyError(f"Reminder not found: {reminder_id}")
