"""Unit tests for FollowUpScheduler."""

import sqlite3
from datetime import timedelta

import pytest

from leadswift.clock import ManualClock
from leadswift.config import FollowUpRule
from leadswift.events import EventBus, LifecycleKind
from leadswift.lifecycle import FollowUpScheduler, FollowUpStatus, PipelineStateMachine
from leadswift.models.opportunity import Opportunity
from leadswift.models.pipeline import ApplicationStatus as S, Pipeline
from leadswift.models.profile import Profile
from leadswift.store import PipelineStore
from leadswift.transport import DryRunTransport


@pytest.fixture
def store() -> PipelineStore:
    s = PipelineStore()
    yield s
    s.close()


@pytest.fixture
def bus(clock: ManualClock) -> EventBus:
    return EventBus(clock=clock)


@pytest.fixture
def machine(store: PipelineStore, bus: EventBus, clock: ManualClock) -> PipelineStateMachine:
    return PipelineStateMachine(store, bus, clock)


@pytest.fixture
def scheduler(
    machine: PipelineStateMachine,
    store: PipelineStore,
    transport: DryRunTransport,
    bus: EventBus,
    clock: ManualClock,
) -> FollowUpScheduler:
    return FollowUpScheduler(machine, store, transport, bus, clock)


@pytest.fixture
def sent_pipeline(
    machine: PipelineStateMachine,
    scheduler: FollowUpScheduler,
    opportunity: Opportunity,
    profile: Profile,
    clock: ManualClock,
) -> Pipeline:
    """Pipeline in proposal_sent with the default follow-up sequence scheduled."""
    p = machine.create(opportunity, profile)
    machine.advance(p.id, S.ANALYZING)
    machine.advance(p.id, S.PROPOSAL_GENERATED)
    p = machine.advance(p.id, S.PROPOSAL_SENT)
    scheduler.schedule(p, clock.now())
    return p


class TestSchedule:
    """Tests for schedule and cancel."""

    def test_one_follow_up_per_rule(self, scheduler: FollowUpScheduler, sent_pipeline: Pipeline, clock: ManualClock) -> None:
        pending = scheduler.pending(sent_pipeline.id)
        assert [f.condition for f in pending] == ["no_response", "opened_no_reply", "final_follow_up"]
        assert [f.due_at - clock.now() for f in pending] == [
            timedelta(days=3),
            timedelta(days=7),
            timedelta(days=14),
        ]
        assert scheduler.next_due() == clock.now() + timedelta(days=3)

    def test_persisted(self, store: PipelineStore, sent_pipeline: Pipeline) -> None:
        assert len(store.list_follow_ups(pipeline_id=sent_pipeline.id)) == 3

    def test_cancel(self, scheduler: FollowUpScheduler, sent_pipeline: Pipeline) -> None:
        assert scheduler.cancel(sent_pipeline.id, "Withdrawn") == 3
        assert scheduler.pending(sent_pipeline.id) == []
        assert scheduler.next_due() is None

    def test_update_rules_affects_future_only(
        self, scheduler: FollowUpScheduler, sent_pipeline: Pipeline
    ) -> None:
        scheduler.update_rules([FollowUpRule(condition="no_response", delay_days=1, subject="Ping")])
        assert len(scheduler.pending(sent_pipeline.id)) == 3


class TestRunDue:
    """Sending and skipping follow-ups as time passes."""

    def test_no_reply_sends_first_follow_up(
        self,
        scheduler: FollowUpScheduler,
        machine: PipelineStateMachine,
        transport: DryRunTransport,
        sent_pipeline: Pipeline,
        clock: ManualClock,
        bus: EventBus,
    ) -> None:
        """Three days without a reply: follow-up #1 goes out and the status becomes follow_up_sent."""
        clock.advance(days=3)
        processed = scheduler.run_due()
        assert len(processed) == 1
        assert processed[0].status == FollowUpStatus.SENT
        assert processed[0].message_id == "dryrun-1"
        assert machine.get(sent_pipeline.id).status == S.FOLLOW_UP_SENT
        assert transport.sent[0].subject == "Following up on my proposal"
        assert transport.sent[0].recipient == "hiring@acme.example"
        assert bus.recent_events()[-1].type == LifecycleKind.FOLLOW_UP_SENT

    def test_reply_before_due_skips(
        self,
        scheduler: FollowUpScheduler,
        machine: PipelineStateMachine,
        transport: DryRunTransport,
        sent_pipeline: Pipeline,
        clock: ManualClock,
    ) -> None:
        """A reply on day 2 moves to response_received and suppresses follow-up #1."""
        clock.advance(days=2)
        machine.record_tracking(sent_pipeline.id, "replied")
        clock.advance(days=1)
        processed = scheduler.run_due()
        assert processed[0].status == FollowUpStatus.SKIPPED
        assert processed[0].reason == "Response received"
        assert transport.sent == []
        assert machine.get(sent_pipeline.id).status == S.RESPONSE_RECEIVED

    def test_opened_no_reply_needs_open(
        self,
        scheduler: FollowUpScheduler,
        sent_pipeline: Pipeline,
        clock: ManualClock,
    ) -> None:
        """The day-7 follow-up only goes out if the proposal was opened."""
        clock.advance(days=7)
        processed = scheduler.run_due()
        by_condition = {f.condition: f for f in processed}
        assert by_condition["no_response"].status == FollowUpStatus.SENT
        assert by_condition["opened_no_reply"].status == FollowUpStatus.SKIPPED
        assert by_condition["opened_no_reply"].reason == "Proposal not opened"

    def test_opened_no_reply_sent_after_open(
        self,
        scheduler: FollowUpScheduler,
        machine: PipelineStateMachine,
        transport: DryRunTransport,
        sent_pipeline: Pipeline,
        clock: ManualClock,
    ) -> None:
        clock.advance(days=1)
        machine.record_tracking(sent_pipeline.id, "opened")
        clock.advance(days=6)
        scheduler.run_due()
        assert [m.subject for m in transport.sent] == [
            "Following up on my proposal",
            "Quick question about your project",
        ]
        assert scheduler.sent_count == 2

    def test_bounce_skips(
        self,
        scheduler: FollowUpScheduler,
        machine: PipelineStateMachine,
        sent_pipeline: Pipeline,
        clock: ManualClock,
    ) -> None:
        machine.record_tracking(sent_pipeline.id, "bounced")
        clock.advance(days=3)
        assert scheduler.run_due()[0].reason == "Email bounced"
        assert scheduler.skipped_count == 1

    def test_terminal_pipeline_skips(
        self,
        scheduler: FollowUpScheduler,
        machine: PipelineStateMachine,
        sent_pipeline: Pipeline,
        clock: ManualClock,
    ) -> None:
        machine.advance(sent_pipeline.id, S.WITHDRAWN)
        clock.advance(days=3)
        assert scheduler.run_due()[0].reason == "Pipeline closed (withdrawn)"

    def test_not_due_yet(self, scheduler: FollowUpScheduler, sent_pipeline: Pipeline, clock: ManualClock) -> None:
        clock.advance(days=2, hours=23)
        assert scheduler.run_due() == []

    def test_send_failure_marks_failed(
        self,
        machine: PipelineStateMachine,
        store: PipelineStore,
        bus: EventBus,
        clock: ManualClock,
        failing_transport,
        sent_pipeline: Pipeline,
    ) -> None:
        """A provider failure marks the follow-up failed without touching the status."""
        failing = FollowUpScheduler(machine, store, failing_transport, bus, clock)
        failing.schedule(machine.get(sent_pipeline.id), clock.now())
        clock.advance(days=3)
        processed = failing.run_due()
        assert processed[0].status == FollowUpStatus.FAILED
        assert machine.get(sent_pipeline.id).status == S.PROPOSAL_SENT
        assert bus.system_status().warnings

    def test_load_restores_pending(
        self,
        machine: PipelineStateMachine,
        store: PipelineStore,
        transport: DryRunTransport,
        bus: EventBus,
        clock: ManualClock,
        sent_pipeline: Pipeline,
    ) -> None:
        """Pending follow-ups survive a restart."""
        fresh = FollowUpScheduler(machine, store, transport, bus, clock)
        assert fresh.load() == 3
        clock.advance(days=3)
        assert fresh.run_due()[0].status == FollowUpStatus.SENT


class TestRunDueErrors:
    """One follow-up erroring must not strand the rest of the batch."""

    def test_store_error_does_not_block_later_follow_ups(
        self,
        scheduler: FollowUpScheduler,
        store: PipelineStore,
        transport: DryRunTransport,
        bus: EventBus,
        sent_pipeline: Pipeline,
        clock: ManualClock,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Saving the first due follow-up fails; the second is still decided."""
        real_save = store.save_follow_up
        calls = {"n": 0}

        def flaky_save(follow_up) -> None:
            calls["n"] += 1
            if calls["n"] == 1:
                raise sqlite3.OperationalError("database is locked")
            real_save(follow_up)

        monkeypatch.setattr(store, "save_follow_up", flaky_save)
        clock.advance(days=7)
        processed = scheduler.run_due()
        assert [f.condition for f in processed] == ["opened_no_reply"]
        assert processed[0].status == FollowUpStatus.SKIPPED
        assert len(transport.sent) == 1
        assert any("database is locked" in w for w in bus.system_status().warnings)
        assert [f.condition for f in scheduler.pending(sent_pipeline.id)] == ["final_follow_up"]

    def test_error_before_decision_retries_next_run(
        self,
        scheduler: FollowUpScheduler,
        store: PipelineStore,
        transport: DryRunTransport,
        sent_pipeline: Pipeline,
        clock: ManualClock,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """A follow-up that errored before being sent or skipped stays pending."""
        real_get = store.get_opportunity
        calls = {"n": 0}

        def flaky_get(opportunity_id: str):
            calls["n"] += 1
            if calls["n"] == 1:
                raise sqlite3.OperationalError("disk I/O error")
            return real_get(opportunity_id)

        monkeypatch.setattr(store, "get_opportunity", flaky_get)
        clock.advance(days=3)
        assert scheduler.run_due() == []
        assert len(scheduler.pending(sent_pipeline.id)) == 3
        assert scheduler.next_due() <= clock.now()

        processed = scheduler.run_due()
        assert processed[0].status == FollowUpStatus.SENT
        assert len(transport.sent) == 1


class TestBookkeeping:
    def test_finished_follow_ups_are_dropped(
        self,
        scheduler: FollowUpScheduler,
        sent_pipeline: Pipeline,
        clock: ManualClock,
    ) -> None:
        """Only pending follow-ups are held in memory."""
        assert len(scheduler._items) == 3
        clock.advance(days=3)
        scheduler.run_due()
        assert len(scheduler._items) == 2
        scheduler.cancel(sent_pipeline.id)
        assert scheduler._items == {}
        assert scheduler.next_due() is None
