"""Integration tests for AutomationEngine: submission through follow-ups and tracking."""

from datetime import timedelta
from pathlib import Path
from typing import Callable

import pytest

from leadswift.clock import ManualClock
from leadswift.config import EngineConfig
from leadswift.engine import AutomationEngine
from leadswift.errors import PipelineNotFoundError
from leadswift.events import ComponentState, HealthEvent, LifecycleKind, MetricsEvent
from leadswift.lifecycle import FollowUpStatus
from leadswift.models.opportunity import Opportunity
from leadswift.models.pipeline import ApplicationStatus as S
from leadswift.models.profile import Profile
from leadswift.transport import DryRunTransport


class TestSubmission:
    """Tests for submit_opportunity."""

    def test_accepted(self, engine: AutomationEngine, opportunity: Opportunity, profile: Profile) -> None:
        result = engine.submit_opportunity(opportunity, profile)
        assert result.accepted is True
        assert result.reason == "Job added to processing queue"
        assert result.score == 90
        assert len(engine.state.queue) == 1

    def test_duplicate_while_queued(
        self, engine: AutomationEngine, opportunity: Opportunity, profile: Profile
    ) -> None:
        """A second submission for the same id while the first is queued is a duplicate."""
        engine.submit_opportunity(opportunity, profile)
        second = engine.submit_opportunity(opportunity, profile, "high")
        assert second.accepted is False
        assert second.rejected_by == "duplicate"
        assert len(engine.state.queue) == 1

    def test_duplicate_after_dispatch(
        self, engine: AutomationEngine, opportunity: Opportunity, profile: Profile
    ) -> None:
        """A live pipeline keeps blocking resubmission after the queue drained."""
        engine.submit_opportunity(opportunity, profile)
        engine.process_next()
        assert engine.submit_opportunity(opportunity, profile).rejected_by == "duplicate"

    def test_low_score_rejected(self, engine: AutomationEngine, profile: Profile) -> None:
        opp = Opportunity(id="low", title="Platform Engineer", skills=["Go", "Kubernetes"])
        result = engine.submit_opportunity(opp, profile)
        assert result.accepted is False
        assert result.rejected_by == "min_score"
        assert "score too low" in result.reason

    def test_disabled(self, clock: ManualClock, opportunity: Opportunity, profile: Profile) -> None:
        engine = AutomationEngine(EngineConfig(enabled=False), clock=clock, transport=DryRunTransport())
        result = engine.submit_opportunity(opportunity, profile)
        assert result.accepted is False
        assert result.reason == "Automation is disabled"
        engine.close()

    def test_dict_input_accepted(self, engine: AutomationEngine, profile: Profile) -> None:
        """Raw mappings from the discovery feed are validated into models."""
        result = engine.submit_opportunity(
            {
                "id": "raw-1",
                "title": "Senior Python Developer",
                "industry": "Fintech",
                "skills": ["Python"],
                "contact": {"email": "jobs@example.com"},
            },
            profile.model_dump(),
        )
        assert result.accepted is True

    def test_bad_shape_rejected_with_warning(self, engine: AutomationEngine, profile: Profile) -> None:
        """Malformed input is rejected before the queue and raises a warning event."""
        result = engine.submit_opportunity({"id": "", "title": ""}, profile)
        assert result.accepted is False
        assert result.rejected_by == "validation"
        assert len(engine.state.queue) == 0
        assert engine.system_status().warnings

    def test_bad_priority_rejected(
        self, engine: AutomationEngine, opportunity: Opportunity, profile: Profile
    ) -> None:
        result = engine.submit_opportunity(opportunity, profile, "urgent")
        assert result.accepted is False
        assert result.rejected_by == "validation"

    def test_resubmit_after_failure_allowed(
        self,
        clock: ManualClock,
        stub_generator,
        failing_transport,
        opportunity: Opportunity,
        profile: Profile,
    ) -> None:
        """A pipeline awaiting retry does not block a fresh submission."""
        engine = AutomationEngine(
            EngineConfig(), clock=clock, generator=stub_generator, transport=failing_transport
        )
        engine.submit_opportunity(opportunity, profile)
        engine.process_next()
        assert engine.submit_opportunity(opportunity, profile).accepted is True
        engine.close()


class TestLifecycleScenarios:
    """End-to-end flows driven by the manual clock."""

    def test_follow_up_after_three_quiet_days(
        self, engine: AutomationEngine, opportunity: Opportunity, profile: Profile, clock: ManualClock
    ) -> None:
        engine.submit_opportunity(opportunity, profile)
        pid = engine.process_next().pipeline_id
        clock.advance(days=3)
        engine.lifecycle_tick()
        assert engine.machine.get(pid).status == S.FOLLOW_UP_SENT
        assert engine.state.stats.follow_ups_sent == 1

    def test_reply_on_day_two_suppresses_follow_up(
        self,
        engine: AutomationEngine,
        opportunity: Opportunity,
        profile: Profile,
        clock: ManualClock,
        transport: DryRunTransport,
    ) -> None:
        engine.submit_opportunity(opportunity, profile)
        pid = engine.process_next().pipeline_id
        tracking_id = engine.machine.get(pid).tracking_id
        clock.advance(days=2)
        assert engine.on_tracking_event(tracking_id, "replied").status == S.RESPONSE_RECEIVED
        clock.advance(days=1)
        engine.lifecycle_tick()
        assert engine.machine.get(pid).status == S.RESPONSE_RECEIVED
        assert len(transport.sent) == 1
        first = engine.store.list_follow_ups(pipeline_id=pid)[0]
        assert first.status == FollowUpStatus.SKIPPED
        assert engine.state.stats.responses_received == 1

    def test_unknown_tracking_id(self, engine: AutomationEngine) -> None:
        with pytest.raises(PipelineNotFoundError):
            engine.on_tracking_event("nope", "opened")

    def test_terminal_cancels_follow_ups(
        self, engine: AutomationEngine, opportunity: Opportunity, profile: Profile
    ) -> None:
        engine.submit_opportunity(opportunity, profile)
        pid = engine.process_next().pipeline_id
        engine.machine.advance(pid, S.WITHDRAWN)
        assert engine.followups.pending(pid) == []
        reasons = {f.reason for f in engine.store.list_follow_ups(pipeline_id=pid)}
        assert reasons == {"Pipeline closed (withdrawn)"}

    def test_reminder_due_published(
        self, engine: AutomationEngine, opportunity: Opportunity, profile: Profile, clock: ManualClock
    ) -> None:
        """lifecycle_tick surfaces the no-response reminder created by the outreach sweep."""
        engine.submit_opportunity(opportunity, profile)
        pid = engine.process_next().pipeline_id
        engine.followups.cancel(pid)
        clock.advance(days=3)
        engine.lifecycle_tick()
        kinds = [getattr(e, "type", None) for e in engine.bus.recent_events()]
        assert LifecycleKind.REMINDER_DUE in kinds


class TestOperations:
    """Health, metrics, config updates, scheduler wiring and restore."""

    def test_health_check_trims_long_queue(
        self,
        clock: ManualClock,
        stub_generator,
        transport: DryRunTransport,
        make_opportunity: Callable[..., Opportunity],
        profile: Profile,
    ) -> None:
        engine = AutomationEngine(
            EngineConfig(max_queue_length=2, queue_trim_to=1),
            clock=clock,
            generator=stub_generator,
            transport=transport,
        )
        engine.submit_opportunity(make_opportunity(id="a"), profile, "low")
        engine.submit_opportunity(make_opportunity(id="b"), profile, "high")
        engine.submit_opportunity(make_opportunity(id="c"), profile, "medium")
        event = engine.health_check()
        assert isinstance(event, HealthEvent)
        assert [i.opportunity.id for i in engine.state.queue.snapshot()] == ["b"]
        assert event.status.last_health_check == clock.now()
        assert event.engine["queue_length"] == 1
        assert any("queue too long" in w for w in engine.system_status().warnings)
        engine.close()

    def test_collect_metrics(
        self, engine: AutomationEngine, opportunity: Opportunity, profile: Profile
    ) -> None:
        engine.submit_opportunity(opportunity, profile)
        engine.process_next()
        metrics = engine.collect_metrics()
        assert metrics.total_applications == 1
        assert metrics.engine["emails_sent"] == 1
        assert metrics.top_industries == ["Fintech"]
        assert isinstance(engine.bus.recent_events()[-1], MetricsEvent)

    def test_update_config(self, engine: AutomationEngine) -> None:
        engine.update_config({"max_daily_applications": 1, "excluded_organizations": ["Acme Payments"]})
        assert engine.state.counter.cap == 1
        assert engine.filter.config.excluded_organizations == ["Acme Payments"]

    def test_update_config_reschedules_jobs(self, engine: AutomationEngine, clock: ManualClock) -> None:
        engine.update_config({"intervals": {"processor": 5}})
        assert engine.scheduler.jobs()["processor"] == clock.now() + timedelta(seconds=5)

    def test_scheduler_jobs_wired(self, engine: AutomationEngine, clock: ManualClock) -> None:
        """The health job runs immediately; the processor after its interval."""
        assert engine.scheduler.run_pending() == ["health"]
        clock.advance(seconds=30)
        assert "processor" in engine.scheduler.run_pending()

    def test_config_path_adds_reload_job(
        self, tmp_path: Path, clock: ManualClock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """An engine built with a config file watches it for changes."""
        monkeypatch.delenv("LEADSWIFT_LLM_PROVIDER", raising=False)
        path = tmp_path / "config.yaml"
        path.write_text("automation:\n  max_daily_applications: 3\n")
        engine = AutomationEngine(
            EngineConfig(), clock=clock, transport=DryRunTransport(), config_path=path
        )
        try:
            assert "config_reload" in engine.scheduler.jobs()
            assert engine.reload_config() is True
            assert engine.state.counter.cap == 3
            assert engine.reload_config() is False
        finally:
            engine.close()

    def test_start_stop_states(self, engine: AutomationEngine) -> None:
        engine.start()
        assert engine.status().is_running is True
        assert engine.system_status().automation_engine == ComponentState.RUNNING
        engine.stop()
        assert engine.status().is_running is False
        assert engine.system_status().automation_engine == ComponentState.STOPPED

    def test_restore_from_database(
        self,
        tmp_path: Path,
        clock: ManualClock,
        stub_generator,
        opportunity: Opportunity,
        profile: Profile,
    ) -> None:
        """Pipelines, follow-ups and today's count survive an engine restart."""
        cfg = EngineConfig(db_path=str(tmp_path / "engine.db"))
        first = AutomationEngine(cfg, clock=clock, generator=stub_generator, transport=DryRunTransport())
        first.submit_opportunity(opportunity, profile)
        pid = first.process_next().pipeline_id
        first.close()

        second = AutomationEngine(cfg, clock=clock, generator=stub_generator, transport=DryRunTransport())
        second.restore()
        assert second.machine.get(pid).status == S.PROPOSAL_SENT
        assert len(second.followups.pending(pid)) == 3
        assert second.state.counter.count == 1
        assert second.submit_opportunity(opportunity, profile).rejected_by == "duplicate"
        second.close()
