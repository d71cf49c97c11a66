"""Unit tests for PipelineStateMachine."""

from datetime import timedelta
from typing import Callable

import pytest

from leadswift.clock import ManualClock
from leadswift.errors import InvalidTransitionError, PipelineNotFoundError, PipelineTerminalError
from leadswift.events import EventBus, LifecycleKind, SystemEvent
from leadswift.lifecycle import PipelineStateMachine, transition_allowed
from leadswift.models.opportunity import Opportunity
from leadswift.models.pipeline import (
    ApplicationStatus as S,
    Outcome,
    OutcomeResult,
    Pipeline,
    ReminderType,
    StageName,
    StageStatus,
    stage_for,
)
from leadswift.models.profile import Profile
from leadswift.store import PipelineStore


@pytest.fixture
def bus(clock: ManualClock) -> EventBus:
    return EventBus(clock=clock)


@pytest.fixture
def store() -> PipelineStore:
    s = PipelineStore()
    yield s
    s.close()


@pytest.fixture
def machine(store: PipelineStore, bus: EventBus, clock: ManualClock) -> PipelineStateMachine:
    return PipelineStateMachine(store, bus, clock)


@pytest.fixture
def pipeline(machine: PipelineStateMachine, opportunity: Opportunity, profile: Profile) -> Pipeline:
    return machine.create(opportunity, profile)


def _sent(machine: PipelineStateMachine, pid: str) -> Pipeline:
    machine.advance(pid, S.ANALYZING)
    machine.advance(pid, S.PROPOSAL_GENERATED)
    return machine.advance(pid, S.PROPOSAL_SENT)


def _action(p: Pipeline, stage: StageName, trigger: str):
    return next(a for a in p.stage(stage).actions if a.trigger == trigger)


class TestTransitionRules:
    """Tests for transition_allowed."""

    def test_forward_and_skip_allowed(self) -> None:
        assert transition_allowed(S.DISCOVERED, S.ANALYZING)
        assert transition_allowed(S.PROPOSAL_SENT, S.INTERVIEW_SCHEDULED)

    def test_backward_rejected(self) -> None:
        assert not transition_allowed(S.PROPOSAL_SENT, S.ANALYZING)

    def test_follow_up_and_response_interchangeable(self) -> None:
        assert transition_allowed(S.RESPONSE_RECEIVED, S.FOLLOW_UP_SENT)

    def test_offer_decisions_need_offer(self) -> None:
        """offer_accepted/offer_rejected only follow offer_received."""
        assert not transition_allowed(S.INTERVIEW_COMPLETED, S.OFFER_ACCEPTED)
        assert transition_allowed(S.OFFER_RECEIVED, S.OFFER_REJECTED)

    def test_rejection_and_withdrawal_from_anywhere(self) -> None:
        assert transition_allowed(S.DISCOVERED, S.WITHDRAWN)
        assert transition_allowed(S.OFFER_RECEIVED, S.APPLICATION_REJECTED)


class TestCreate:
    """Tests for pipeline creation."""

    def test_initial_state(self, pipeline: Pipeline, opportunity: Opportunity) -> None:
        """New pipelines start discovered with a completed discovery stage and a note."""
        assert pipeline.status == S.DISCOVERED
        assert pipeline.current_stage == StageName.DISCOVERY
        assert pipeline.stage(StageName.DISCOVERY).status == StageStatus.COMPLETED
        assert [s.name for s in pipeline.stages] == list(StageName)
        assert pipeline.notes[0].endswith(f"Job discovered: {opportunity.title} at {opportunity.organization}")

    def test_create_is_idempotent(
        self, machine: PipelineStateMachine, pipeline: Pipeline, opportunity: Opportunity, profile: Profile
    ) -> None:
        """One pipeline per opportunity id."""
        assert machine.create(opportunity, profile).id == pipeline.id

    def test_deadline_reminder(
        self,
        machine: PipelineStateMachine,
        make_opportunity: Callable[..., Opportunity],
        profile: Profile,
        clock: ManualClock,
    ) -> None:
        deadline = clock.now() + timedelta(days=10)
        p = machine.create(make_opportunity(id="dl", deadline=deadline), profile)
        assert len(p.reminders) == 1
        assert p.reminders[0].type == ReminderType.DEADLINE
        assert p.reminders[0].due_at == deadline - timedelta(days=1)

    def test_persisted(self, store: PipelineStore, pipeline: Pipeline, opportunity: Opportunity) -> None:
        assert store.get_pipeline(pipeline.id) == pipeline
        assert store.get_opportunity(opportunity.id) == opportunity

    def test_unknown_pipeline(self, machine: PipelineStateMachine) -> None:
        with pytest.raises(PipelineNotFoundError):
            machine.advance("missing", S.ANALYZING)


class TestAdvance:
    """Tests for status transitions and stage projection."""

    def test_stage_follows_status(self, machine: PipelineStateMachine, pipeline: Pipeline) -> None:
        """After every transition current_stage equals the projected stage."""
        for status in (S.ANALYZING, S.PROPOSAL_GENERATED, S.PROPOSAL_SENT, S.RESPONSE_RECEIVED):
            p = machine.advance(pipeline.id, status)
            assert p.current_stage == stage_for(status)

    def test_previous_stage_completed_on_stage_change(
        self, machine: PipelineStateMachine, pipeline: Pipeline
    ) -> None:
        machine.advance(pipeline.id, S.ANALYZING)
        p = machine.advance(pipeline.id, S.PROPOSAL_GENERATED)
        assert p.stage(StageName.ANALYSIS).status == StageStatus.COMPLETED
        assert p.stage(StageName.PROPOSAL).status == StageStatus.IN_PROGRESS

    def test_stage_start_action_runs_once(
        self, machine: PipelineStateMachine, pipeline: Pipeline
    ) -> None:
        """The analysis report fires on entry and not again on a same-status update."""
        p = machine.advance(pipeline.id, S.ANALYZING, "Analyzing")
        action = _action(p, StageName.ANALYSIS, "stage_start")
        assert action.executed is True
        first_result = action.result
        notes_before = len(p.notes)
        p = machine.advance(pipeline.id, S.ANALYZING)
        assert _action(p, StageName.ANALYSIS, "stage_start").result == first_result
        assert len(p.notes) == notes_before

    def test_same_status_keeps_status_changed_at(
        self, machine: PipelineStateMachine, pipeline: Pipeline, clock: ManualClock
    ) -> None:
        p1 = machine.advance(pipeline.id, S.ANALYZING)
        clock.advance(hours=1)
        p2 = machine.advance(pipeline.id, S.ANALYZING)
        assert p2.status_changed_at == p1.status_changed_at
        assert p2.last_updated > p1.last_updated

    def test_backward_transition_raises(self, machine: PipelineStateMachine, pipeline: Pipeline) -> None:
        _sent(machine, pipeline.id)
        with pytest.raises(InvalidTransitionError):
            machine.advance(pipeline.id, S.ANALYZING)
        assert machine.get(pipeline.id).status == S.PROPOSAL_SENT

    def test_events_published(
        self, machine: PipelineStateMachine, pipeline: Pipeline, bus: EventBus
    ) -> None:
        """A status change publishes pipeline_updated plus the status-specific event."""
        _sent(machine, pipeline.id)
        machine.advance(pipeline.id, S.RESPONSE_RECEIVED)
        types = [e.type for e in bus.recent_events() if not isinstance(e, SystemEvent)]
        assert LifecycleKind.PIPELINE_UPDATED in types
        assert types[-1] == LifecycleKind.RESPONSE_RECEIVED

    def test_advance_if_only_from_expected(
        self, machine: PipelineStateMachine, pipeline: Pipeline
    ) -> None:
        _sent(machine, pipeline.id)
        machine.advance(pipeline.id, S.RESPONSE_RECEIVED)
        assert machine.advance_if(pipeline.id, S.PROPOSAL_SENT, S.FOLLOW_UP_SENT) is None
        assert machine.get(pipeline.id).status == S.RESPONSE_RECEIVED


class TestTerminal:
    """Terminal pipelines are immutable apart from notes and reminder completion."""

    def test_finalize_sets_outcome_and_completion_report(
        self, machine: PipelineStateMachine, pipeline: Pipeline, clock: ManualClock
    ) -> None:
        outcome = Outcome(result=OutcomeResult.REJECTED, decided_at=clock.now(), feedback="Too senior")
        p = machine.finalize_outcome(pipeline.id, outcome)
        assert p.status == S.APPLICATION_REJECTED
        assert p.is_terminal
        assert p.outcome.feedback == "Too senior"
        assert p.stage(StageName.COMPLETION).status == StageStatus.COMPLETED
        report = _action(p, StageName.COMPLETION, "outcome_finalized").result
        assert "Feedback received: Too senior" in report
        assert "Analyze proposal and interview performance for improvements" in report

    def test_hired_lessons(self, machine: PipelineStateMachine, pipeline: Pipeline) -> None:
        _sent(machine, pipeline.id)
        machine.record_offer(pipeline.id, salary=120000)
        p = machine.advance(pipeline.id, S.OFFER_ACCEPTED)
        assert p.outcome.result == OutcomeResult.HIRED
        report = _action(p, StageName.COMPLETION, "outcome_finalized").result
        assert "Successful application - analyze what worked well" in report

    def test_transition_after_terminal_raises(
        self, machine: PipelineStateMachine, pipeline: Pipeline, bus: EventBus
    ) -> None:
        """Further transitions raise and publish an error event; the pipeline is unchanged."""
        machine.advance(pipeline.id, S.WITHDRAWN)
        before = machine.get(pipeline.id)
        with pytest.raises(PipelineTerminalError):
            machine.advance(pipeline.id, S.ANALYZING)
        assert machine.get(pipeline.id) == before
        errors = [e for e in bus.recent_events() if isinstance(e, SystemEvent) and e.level == "error"]
        assert errors and "terminal" in errors[-1].message

    def test_outcome_set_once(
        self, machine: PipelineStateMachine, pipeline: Pipeline, clock: ManualClock
    ) -> None:
        machine.finalize_outcome(pipeline.id, Outcome(result=OutcomeResult.WITHDRAWN, decided_at=clock.now()))
        with pytest.raises(PipelineTerminalError):
            machine.finalize_outcome(pipeline.id, Outcome(result=OutcomeResult.HIRED, decided_at=clock.now()))

    def test_notes_allowed_on_terminal(self, machine: PipelineStateMachine, pipeline: Pipeline) -> None:
        machine.advance(pipeline.id, S.WITHDRAWN)
        p = machine.add_note(pipeline.id, "Closed by operator")
        assert p.notes[-1].endswith("Closed by operator")
        assert p.status == S.WITHDRAWN

    def test_tracking_ignored_on_terminal(self, machine: PipelineStateMachine, pipeline: Pipeline) -> None:
        machine.advance(pipeline.id, S.APPLICATION_REJECTED)
        p = machine.record_tracking(pipeline.id, "opened")
        assert p.tracking.opens == 0

    def test_terminal_listener_called_once(
        self, machine: PipelineStateMachine, pipeline: Pipeline
    ) -> None:
        closed = []
        machine.add_terminal_listener(closed.append)
        machine.advance(pipeline.id, S.WITHDRAWN)
        machine.add_note(pipeline.id, "after")
        assert [p.id for p in closed] == [pipeline.id]

    def test_failing_terminal_listener_does_not_break_transition(
        self,
        machine: PipelineStateMachine,
        store: PipelineStore,
        bus: EventBus,
        pipeline: Pipeline,
    ) -> None:
        """A listener error is reported; the transition and later listeners still happen."""

        def broken(p: Pipeline) -> None:
            raise RuntimeError("cleanup exploded")

        closed = []
        machine.add_terminal_listener(broken)
        machine.add_terminal_listener(closed.append)
        p = machine.advance(pipeline.id, S.WITHDRAWN)
        assert p.status == S.WITHDRAWN
        assert store.get_pipeline(pipeline.id).status == S.WITHDRAWN
        assert [c.id for c in closed] == [pipeline.id]
        assert any("cleanup exploded" in e for e in bus.system_status().errors)


class TestTracking:
    """Tests for record_tracking."""

    def test_reply_during_outreach_moves_to_response(
        self, machine: PipelineStateMachine, pipeline: Pipeline
    ) -> None:
        _sent(machine, pipeline.id)
        p = machine.record_tracking(pipeline.id, "replied")
        assert p.status == S.RESPONSE_RECEIVED
        assert p.tracking.responses == 1
        assert p.tracking.last_activity is not None

    def test_open_only_counts(self, machine: PipelineStateMachine, pipeline: Pipeline) -> None:
        _sent(machine, pipeline.id)
        p = machine.record_tracking(pipeline.id, "opened")
        assert p.status == S.PROPOSAL_SENT
        assert p.tracking.opens == 1

    def test_unknown_kind(self, machine: PipelineStateMachine, pipeline: Pipeline) -> None:
        with pytest.raises(ValueError):
            machine.record_tracking(pipeline.id, "forwarded")


class TestInterviewAndOffer:
    """Tests for interview scheduling, completion and offers."""

    def test_schedule_creates_prep_reminder(
        self, machine: PipelineStateMachine, pipeline: Pipeline, clock: ManualClock
    ) -> None:
        _sent(machine, pipeline.id)
        when = clock.now() + timedelta(days=5)
        p = machine.schedule_interview(pipeline.id, when, "video")
        assert p.status == S.INTERVIEW_SCHEDULED
        assert p.interview_at == when
        prep = [r for r in p.reminders if r.type == ReminderType.INTERVIEW_PREP]
        assert len(prep) == 1
        assert prep[0].due_at == when - timedelta(days=1)

    def test_reschedule_moves_reminder(
        self, machine: PipelineStateMachine, pipeline: Pipeline, clock: ManualClock
    ) -> None:
        """Rescheduling keeps one prep reminder and moves it."""
        _sent(machine, pipeline.id)
        machine.schedule_interview(pipeline.id, clock.now() + timedelta(days=5))
        later = clock.now() + timedelta(days=8)
        p = machine.schedule_interview(pipeline.id, later)
        prep = [r for r in p.reminders if r.type == ReminderType.INTERVIEW_PREP]
        assert len(prep) == 1
        assert prep[0].due_at == later - timedelta(days=1)
        assert p.interview_at == later

    def test_complete_without_next_steps_adds_follow_up(
        self, machine: PipelineStateMachine, pipeline: Pipeline, clock: ManualClock
    ) -> None:
        _sent(machine, pipeline.id)
        machine.schedule_interview(pipeline.id, clock.now() + timedelta(days=1))
        p = machine.complete_interview(pipeline.id, feedback="Went well")
        follow = [r for r in p.reminders if r.type == ReminderType.FOLLOW_UP]
        assert len(follow) == 1
        assert follow[0].due_at == clock.now() + timedelta(days=3)

    def test_complete_with_next_steps_no_reminder(
        self, machine: PipelineStateMachine, pipeline: Pipeline, clock: ManualClock
    ) -> None:
        _sent(machine, pipeline.id)
        p = machine.complete_interview(pipeline.id, next_steps="Second round Friday")
        assert not [r for r in p.reminders if r.type == ReminderType.FOLLOW_UP]

    def test_offer_deadline_reminder(
        self, machine: PipelineStateMachine, pipeline: Pipeline, clock: ManualClock
    ) -> None:
        _sent(machine, pipeline.id)
        deadline = clock.now() + timedelta(days=7)
        p = machine.record_offer(pipeline.id, salary=100000, deadline=deadline)
        assert p.status == S.OFFER_RECEIVED
        assert p.current_stage == StageName.NEGOTIATION
        assert any(r.due_at == deadline - timedelta(days=1) for r in p.reminders)


class TestTimeDriven:
    """Tests for sweep and reminders."""

    def test_no_response_sweep_fires_once(
        self, machine: PipelineStateMachine, pipeline: Pipeline, clock: ManualClock
    ) -> None:
        """Three days in outreach without a reply creates one follow-up reminder."""
        _sent(machine, pipeline.id)
        clock.advance(days=2)
        assert machine.sweep() == []
        clock.advance(days=1)
        assert machine.sweep() == [pipeline.id]
        assert machine.sweep() == []
        p = machine.get(pipeline.id)
        assert _action(p, StageName.OUTREACH, "no_response_3_days").executed is True
        assert len([r for r in p.reminders if r.type == ReminderType.FOLLOW_UP]) == 1

    def test_due_reminders_surface_once(
        self, machine: PipelineStateMachine, pipeline: Pipeline, clock: ManualClock, bus: EventBus
    ) -> None:
        _sent(machine, pipeline.id)
        machine.schedule_interview(pipeline.id, clock.now() + timedelta(days=2))
        assert machine.due_reminders() == []
        clock.advance(days=1)
        due = machine.due_reminders()
        assert len(due) == 1
        assert due[0][1].notified is True
        assert machine.due_reminders() == []
        assert bus.recent_events()[-1].type == LifecycleKind.REMINDER_DUE

    def test_active_and_complete_reminder(
        self, machine: PipelineStateMachine, pipeline: Pipeline, clock: ManualClock
    ) -> None:
        _sent(machine, pipeline.id)
        machine.schedule_interview(pipeline.id, clock.now() + timedelta(days=4))
        active = machine.active_reminders()
        assert len(active) == 1
        reminder = active[0][1]
        done = machine.complete_reminder(pipeline.id, reminder.id)
        assert done.completed is True
        assert machine.active_reminders() == []
        with pytest.raises(KeyError):
            machine.complete_reminder(pipeline.id, "nope")

    def test_reload_from_store(
        self, store: PipelineStore, bus: EventBus, clock: ManualClock, pipeline: Pipeline
    ) -> None:
        """A fresh machine over the same store sees the same pipelines."""
        fresh = PipelineStateMachine(store, bus, clock)
        assert fresh.load() == 1
        assert fresh.get(pipeline.id) == pipeline
