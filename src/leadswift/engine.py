"""Automation engine facade: submission, dispatch, tracking, health and metrics."""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

import pydantic
from pydantic import BaseModel

from leadswift.analytics import AutomationMetrics, compute_pipeline_metrics
from leadswift.clock import Clock, SystemClock, utc_date_key
from leadswift.config import ConfigReloader, EngineConfig
from leadswift.dispatch import DailyCounter, EngineState, Priority, QueueItem
from leadswift.dispatch.processor import DispatchOutcome, QueueProcessor
from leadswift.errors import PipelineNotFoundError, ValidationError
from leadswift.events import ComponentState, EventBus, HealthEvent, LifecycleKind, MetricsEvent, SystemStatus
from leadswift.filtering import FilterEngine
from leadswift.generation import ProposalGenerator, build_generator
from leadswift.lifecycle import ActionContext, ActionRunner, FollowUp, FollowUpScheduler, PipelineStateMachine
from leadswift.models.opportunity import Opportunity
from leadswift.models.pipeline import PRE_DISPATCH_STATUSES, ActionType, AutomatedAction, Pipeline
from leadswift.models.profile import Profile
from leadswift.scheduler import AutomationScheduler
from leadswift.scoring import score_match
from leadswift.store import PipelineStore
from leadswift.transport import EmailTransport, build_transport

logger = logging.getLogger(__name__)

# scheduler job name -> SchedulerIntervals field
_INTERVAL_JOBS = {
    "processor": "processor",
    "lifecycle": "follow_ups",
    "health": "health",
    "metrics": "metrics",
    "config_reload": "config_reload",
}


class SubmissionResult(BaseModel):
    """Verdict returned to the discovery feed."""

    accepted: bool
    reason: str
    score: Optional[int] = None
    rejected_by: Optional[str] = None


class EngineStatus(BaseModel):
    """Point-in-time view of the dispatch state."""

    is_running: bool
    daily_application_count: int
    max_daily_applications: int
    counter_date: str
    queue_length: int
    active_pipelines: int
    last_activity: Optional[datetime] = None


def _coerce(model: type[BaseModel], value: Any, what: str) -> Any:
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid {what}: {e.error_count()} error(s): {e.errors()[0]['msg']}") from e


class AutomationEngine:
    """
    Owns one EngineState and wires scoring, filtering, dispatch, lifecycle and
    follow-ups together. All periodic work runs on a single scheduler thread.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        clock: Optional[Clock] = None,
        store: Optional[PipelineStore] = None,
        generator: Optional[ProposalGenerator] = None,
        transport: Optional[EmailTransport] = None,
        bus: Optional[EventBus] = None,
        config_path: Optional[Union[str, Path]] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.config = config or EngineConfig()
        self.clock = clock or SystemClock()
        cfg = self.config
        self.bus = bus or EventBus(recent_limit=cfg.recent_events_limit, clock=self.clock)
        self.store = store or PipelineStore(cfg.db_path, timeout=cfg.timeouts.database)
        self._owns_generator = generator is None
        self._owns_transport = transport is None
        self.generator = generator or build_generator(cfg.generator, timeout=cfg.timeouts.generation)
        self.transport = transport or build_transport(cfg.email, timeout=cfg.timeouts.transport)
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="leadswift-io")

        self.state = EngineState(counter=DailyCounter(cfg.max_daily_applications, self.clock.now()))
        actions = ActionRunner()
        actions.register(ActionType.SEND_EMAIL, self._send_email_action)
        self.machine = PipelineStateMachine(self.store, self.bus, self.clock, actions)
        self.followups = FollowUpScheduler(
            self.machine,
            self.store,
            self.transport,
            self.bus,
            self.clock,
            rules=cfg.follow_ups,
            executor=self._executor,
            send_timeout=cfg.timeouts.transport,
        )
        self.machine.add_terminal_listener(
            lambda p: self.followups.cancel(p.id, f"Pipeline closed ({p.status.value})")
        )
        self.filter = FilterEngine(cfg, self.clock)
        self.processor = QueueProcessor(
            self.state,
            self.machine,
            self.followups,
            self.generator,
            self.transport,
            self.bus,
            cfg,
            self.store,
            self.clock,
            executor=self._executor,
        )
        self._reloader = ConfigReloader(config_path) if config_path else None
        self.scheduler = self._build_scheduler()
        self._restored = False

    def _build_scheduler(self) -> AutomationScheduler:
        intervals = self.config.intervals
        scheduler = AutomationScheduler(self.clock, on_error=self._on_job_error)
        scheduler.add_job("processor", intervals.processor, self.process_next)
        scheduler.add_job("lifecycle", intervals.follow_ups, self.lifecycle_tick)
        scheduler.add_job("health", intervals.health, self.health_check, run_immediately=True)
        scheduler.add_job("metrics", intervals.metrics, self.collect_metrics)
        if self._reloader is not None:
            scheduler.add_job("config_reload", intervals.config_reload, self.reload_config)
        return scheduler

    def _on_job_error(self, name: str, error: Exception) -> None:
        self.bus.publish_error("automation_engine", f"Scheduled job {name} failed: {error}")

    # Lifecycle

    def restore(self) -> None:
        """Reload pipelines, pending follow-ups and today's dispatch count from the store."""
        pipelines = self.machine.load()
        follow_ups = self.followups.load()
        saved = self.store.load_counter()
        if saved is not None and saved[0] == utc_date_key(self.clock.now()):
            self.state.counter.restore(*saved)
        self._restored = True
        logger.info("Restored %d pipelines and %d pending follow-ups", pipelines, follow_ups)

    def start(self) -> None:
        if self.state.running:
            return
        if not self._restored:
            self.restore()
        self.state.running = True
        self.processor.reset_counter_if_new_day(self.clock.now())
        self.bus.set_component("automation_engine", ComponentState.RUNNING)
        self.scheduler.start()
        logger.info("Automation engine started")

    def stop(self) -> None:
        """Stop the loop. In-flight external calls are abandoned; pipelines are not touched."""
        self.scheduler.stop()
        self.state.running = False
        self.bus.set_component("automation_engine", ComponentState.STOPPED)
        logger.info("Automation engine stopped")

    def close(self) -> None:
        self.stop()
        self._executor.shutdown(wait=False, cancel_futures=True)
        if self._owns_transport:
            self.transport.close()
        self.store.close()

    # Intake

    def submit_opportunity(
        self,
        opportunity: Union[Opportunity, dict],
        profile: Union[Profile, dict],
        priority: Union[Priority, str] = Priority.MEDIUM,
    ) -> SubmissionResult:
        """Score, filter and enqueue one discovered opportunity."""
        try:
            opp = _coerce(Opportunity, opportunity, "opportunity")
            prof = _coerce(Profile, profile, "profile")
            try:
                prio = Priority(getattr(priority, "value", priority))
            except ValueError as e:
                raise ValidationError(f"Invalid priority: {priority!r}") from e
        except ValidationError as e:
            logger.warning("Rejected submission: %s", e)
            self.bus.publish_warning("application_service", str(e))
            return SubmissionResult(accepted=False, reason=str(e), rejected_by="validation")

        cfg = self.config
        if not cfg.enabled:
            return SubmissionResult(accepted=False, reason="Automation is disabled", rejected_by="disabled")
        now = self.clock.now()
        self.processor.reset_counter_if_new_day(now)
        if self.state.counter.reached():
            return SubmissionResult(
                accepted=False, reason="Daily application limit reached", rejected_by="daily_cap"
            )

        match = score_match(
            opp,
            prof,
            priority_industries=cfg.priority_industries,
            minimum_score=cfg.minimum_match_score,
        )
        active = self.state.queue.in_flight_ids() | self.machine.active_opportunity_ids()
        verdict = self.filter.evaluate(opp, prof, match, active_ids=active)
        if not verdict.accept:
            logger.info("Rejected %s: %s", opp.id, verdict.reason)
            return SubmissionResult(
                accepted=False,
                reason=verdict.reason,
                score=match.score,
                rejected_by=verdict.rejected_by,
            )

        item = QueueItem(opportunity=opp, profile=prof, priority=prio, enqueued_at=now, match=match)
        if not self.state.queue.enqueue(item):
            if self.state.counter.reached():
                reason, rule = "Daily application limit reached", "daily_cap"
            else:
                reason, rule = f"Already processing this opportunity: {opp.id}", "duplicate"
            return SubmissionResult(accepted=False, reason=reason, score=match.score, rejected_by=rule)

        self.bus.lifecycle(
            LifecycleKind.JOB_QUEUED,
            opportunity_id=opp.id,
            title=opp.title,
            priority=prio.value,
            score=match.score,
        )
        logger.info("Queued %s (score %d, priority %s)", opp.id, match.score, prio.value)
        return SubmissionResult(accepted=True, reason="Job added to processing queue", score=match.score)

    # Dispatch

    def process_next(self) -> Optional[DispatchOutcome]:
        return self.processor.tick()

    def retry_dispatch(self, pipeline_id: str) -> bool:
        """
        Re-enqueue a pipeline whose dispatch failed or never happened.
        False when the pipeline is already past dispatch, terminal, in flight, or capped.
        """
        pipeline = self.machine.get(pipeline_id)
        if pipeline.is_terminal or pipeline.status not in PRE_DISPATCH_STATUSES:
            logger.info("Pipeline %s not eligible for retry (%s)", pipeline_id, pipeline.status.value)
            return False
        opp = self.store.get_opportunity(pipeline.opportunity_id)
        prof = self.store.get_profile(pipeline.profile_id)
        if opp is None or prof is None:
            raise PipelineNotFoundError(pipeline_id)
        item = QueueItem(
            opportunity=opp,
            profile=prof,
            priority=Priority(pipeline.priority),
            enqueued_at=self.clock.now(),
            pipeline_id=pipeline.id,
        )
        queued = self.state.queue.enqueue(item)
        if queued:
            self.bus.lifecycle(
                LifecycleKind.JOB_QUEUED, pipeline_id=pipeline.id, opportunity_id=opp.id, retry=True
            )
        return queued

    def _send_email_action(self, ctx: ActionContext, action: AutomatedAction) -> str:
        pipeline_id = ctx.pipeline.id
        ctx.deferred.append(lambda: self.retry_dispatch(pipeline_id))
        return "Dispatch re-queued"

    # Follow-ups and tracking

    def run_follow_ups(self, now: Optional[datetime] = None) -> list[FollowUp]:
        processed = self.followups.run_due(now)
        stats = self.state.stats
        stats.follow_ups_sent = self.followups.sent_count
        stats.follow_ups_skipped = self.followups.skipped_count
        return processed

    def lifecycle_tick(self) -> None:
        """Follow-ups, time-based triggers and due reminders, in that order."""
        now = self.clock.now()
        self.run_follow_ups(now)
        self.machine.sweep(now)
        self.machine.due_reminders(now)

    def on_tracking_event(self, tracking_id: str, kind: str) -> Pipeline:
        """Apply an asynchronous delivery event (opened, clicked, replied, bounced, unsubscribed)."""
        pipeline = self.machine.find_by_tracking(tracking_id)
        if pipeline is None:
            raise PipelineNotFoundError(tracking_id)
        updated = self.machine.record_tracking(pipeline.id, kind)
        if kind == "replied":
            self.state.stats.responses_received += 1
        return updated

    # Configuration

    def update_config(self, changes: Union[EngineConfig, dict]) -> EngineConfig:
        """
        Apply new operator settings. Scheduled follow-ups and queued items are kept;
        new follow-up rules only affect later dispatches.
        """
        if isinstance(changes, EngineConfig):
            new = changes
        else:
            merged = self.config.model_dump()
            merged.update(changes)
            new = EngineConfig.from_dict(merged)
        old = self.config
        self.config = new
        self.filter.config = new
        self.processor.config = new
        self.state.counter.cap = new.max_daily_applications
        self.followups.update_rules(new.follow_ups)
        self.followups.send_timeout = new.timeouts.transport
        jobs = self.scheduler.jobs()
        for job, field in _INTERVAL_JOBS.items():
            new_value = getattr(new.intervals, field)
            if job in jobs and getattr(old.intervals, field) != new_value:
                self.scheduler.set_interval(job, new_value)
        if self._owns_generator and new.generator != old.generator:
            self.generator = build_generator(new.generator, timeout=new.timeouts.generation)
            self.processor.generator = self.generator
        if self._owns_transport and new.email != old.email:
            self.transport.close()
            self.transport = build_transport(new.email, timeout=new.timeouts.transport)
            self.processor.transport = self.transport
            self.followups.transport = self.transport
        logger.info("Configuration updated")
        return new

    def reload_config(self) -> bool:
        if self._reloader is None:
            return False
        new = self._reloader.poll()
        if new is None:
            return False
        self.update_config(new)
        return True

    # Observability

    def status(self) -> EngineStatus:
        counter = self.state.counter
        return EngineStatus(
            is_running=self.state.running,
            daily_application_count=counter.count,
            max_daily_applications=counter.cap,
            counter_date=counter.date,
            queue_length=len(self.state.queue),
            active_pipelines=sum(1 for p in self.machine.list_pipelines() if not p.is_terminal),
            last_activity=self.state.stats.last_activity,
        )

    def system_status(self) -> SystemStatus:
        return self.bus.system_status()

    def health_check(self) -> HealthEvent:
        """Refresh component states, trim an overlong queue and publish a health snapshot."""
        now = self.clock.now()
        self.bus.record_health_check(now)
        self.bus.set_component(
            "automation_engine",
            ComponentState.RUNNING if self.state.running else ComponentState.STOPPED,
        )
        cfg = self.config
        if len(self.state.queue) > cfg.max_queue_length:
            dropped = self.state.queue.trim(cfg.queue_trim_to)
            self.bus.publish_warning(
                "automation_engine",
                f"Processing queue too long; dropped {len(dropped)} lowest-priority items",
            )
        event = HealthEvent(
            timestamp=now,
            status=self.bus.system_status(),
            engine=self.status().model_dump(mode="json"),
        )
        self.bus.publish(event)
        return event

    def collect_metrics(self, timeframe: Optional[str] = None) -> AutomationMetrics:
        pipelines = self.machine.list_pipelines()
        opportunities = {}
        for p in pipelines:
            opp = self.store.get_opportunity(p.opportunity_id)
            if opp is not None:
                opportunities[opp.id] = opp
        metrics = compute_pipeline_metrics(
            pipelines, opportunities, timeframe=timeframe, now=self.clock.now()
        )
        metrics.engine = self.state.stats.as_dict()
        self.bus.publish(MetricsEvent(timestamp=self.clock.now(), metrics=metrics.model_dump(mode="json")))
        return metrics
