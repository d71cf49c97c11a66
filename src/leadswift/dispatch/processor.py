"""Queue processor: one rate-limited generate-and-send step per tick."""

import logging
import sqlite3
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from leadswift.clock import Clock, SystemClock
from leadswift.config import EngineConfig
from leadswift.errors import GenerationError, LeadSwiftError, TransportError
from leadswift.events import ComponentState, EventBus, LifecycleKind
from leadswift.generation import (
    Fallback,
    ProposalGenerator,
    fallback_proposal,
    format_email_text,
    generate_with_fallback,
)
from leadswift.lifecycle.followups import FollowUpScheduler
from leadswift.lifecycle.state_machine import PipelineStateMachine
from leadswift.models.pipeline import PRE_DISPATCH_STATUSES, ApplicationStatus, Pipeline
from leadswift.models.proposal import Proposal
from leadswift.store import PipelineStore
from leadswift.transport.base import EmailTransport

from .calls import call_with_timeout
from .queue import QueueItem
from .state import EngineState

logger = logging.getLogger(__name__)

S = ApplicationStatus


@dataclass
class DispatchOutcome:
    """What one tick did with one queue item."""

    opportunity_id: str
    pipeline_id: Optional[str] = None
    sent: bool = False
    fallback: bool = False
    message_id: Optional[str] = None
    error: Optional[str] = None


class QueueProcessor:
    """
    Pops at most one item per tick, generates its proposal and sends it.
    Failures are not re-queued: the pipeline keeps its pre-attempt status with
    last_error set, and a warning event is published.
    """

    def __init__(
        self,
        state: EngineState,
        machine: PipelineStateMachine,
        followups: FollowUpScheduler,
        generator: ProposalGenerator,
        transport: EmailTransport,
        bus: EventBus,
        config: EngineConfig,
        store: PipelineStore,
        clock: Optional[Clock] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.state = state
        self.machine = machine
        self.followups = followups
        self.generator = generator
        self.transport = transport
        self.bus = bus
        self.config = config
        self.store = store
        self.clock = clock or SystemClock()
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="dispatch")
        # One tick at a time, so the cap check and the increment stay together
        self._tick_lock = threading.Lock()

    def reset_counter_if_new_day(self, now: datetime) -> bool:
        counter = self.state.counter
        if counter.reset_if_new_day(now):
            logger.info("Daily dispatch counter reset for %s", counter.date)
            self.store.save_counter(counter.date, counter.count)
            return True
        return False

    def tick(self) -> Optional[DispatchOutcome]:
        """Process the next queued item, if any and if the daily cap allows."""
        with self._tick_lock:
            now = self.clock.now()
            self.reset_counter_if_new_day(now)
            item = self.state.queue.pop()
            if item is None:
                return None
            started = time.monotonic()
            opp_id = item.opportunity.id
            try:
                outcome = self._process(item, now)
            except (LeadSwiftError, sqlite3.Error) as e:
                logger.error("Processing opportunity %s failed: %s", opp_id, e)
                self.bus.publish_error("automation_engine", f"Processing {opp_id} failed: {e}")
                outcome = DispatchOutcome(opportunity_id=opp_id, error=str(e))
            finally:
                self.state.queue.release(opp_id)
                stats = self.state.stats
                stats.jobs_processed += 1
                stats.total_processing_seconds += time.monotonic() - started
                stats.last_activity = self.clock.now()
            return outcome

    def _process(self, item: QueueItem, now: datetime) -> DispatchOutcome:
        opp, profile = item.opportunity, item.profile
        pipeline = self.machine.find_by_opportunity(opp.id)
        if pipeline is None:
            pipeline = self.machine.create(opp, profile, item.priority.value)
            self.bus.lifecycle(
                LifecycleKind.JOB_DISCOVERED,
                pipeline_id=pipeline.id,
                opportunity_id=opp.id,
                title=opp.title,
                organization=opp.organization,
                score=item.match.score if item.match else None,
            )
        outcome = DispatchOutcome(opportunity_id=opp.id, pipeline_id=pipeline.id)

        if pipeline.status not in PRE_DISPATCH_STATUSES:
            outcome.error = f"Pipeline already past dispatch ({pipeline.status.value})"
            logger.info("Skipping %s: %s", opp.id, outcome.error)
            return outcome
        if pipeline.status == S.DISCOVERED:
            pipeline = self.machine.advance(pipeline.id, S.ANALYZING, "Analyzing opportunity")

        proposal = pipeline.proposal if pipeline.status == S.PROPOSAL_GENERATED else None
        if proposal is None:
            proposal = self._generate(item, pipeline, outcome)
            if proposal is None:
                return outcome

        if not self.config.auto_apply_enabled:
            logger.info("Auto-apply disabled; proposal for %s kept for review", opp.id)
            return outcome

        recipient = opp.recipient
        if recipient is None:
            return self._fail(pipeline, outcome, "No contact email for opportunity", "email_service")

        tracking_id = pipeline.tracking_id or uuid.uuid4().hex
        body = format_email_text(proposal, profile)
        try:
            result = call_with_timeout(
                self._executor,
                lambda: self.transport.send(recipient, proposal.subject, body, tracking_id),
                self.config.timeouts.transport,
                TransportError,
            )
        except TransportError as e:
            return self._fail(pipeline, outcome, f"Send failed: {e}", "email_service")
        if not result.success:
            return self._fail(
                pipeline, outcome, f"Send failed: {result.error or 'unknown error'}", "email_service"
            )

        counter = self.state.counter
        counter.increment()
        self.store.save_counter(counter.date, counter.count)
        self.machine.record_dispatch(pipeline.id, proposal, tracking_id, result.message_id)
        sent = self.machine.advance(pipeline.id, S.PROPOSAL_SENT, f"Proposal sent to {recipient}")
        self.followups.schedule(sent, self.clock.now())

        self.state.stats.emails_sent += 1
        self.bus.set_component("email_service", ComponentState.RUNNING)
        self.bus.lifecycle(
            LifecycleKind.EMAIL_SENT,
            pipeline_id=pipeline.id,
            opportunity_id=opp.id,
            message_id=result.message_id,
            tracking_id=tracking_id,
            subject=proposal.subject,
        )
        outcome.sent = True
        outcome.message_id = result.message_id
        logger.info("Dispatched proposal for %s (pipeline %s)", opp.id, pipeline.id)
        return outcome

    def _generate(
        self, item: QueueItem, pipeline: Pipeline, outcome: DispatchOutcome
    ) -> Optional[Proposal]:
        opp, profile = item.opportunity, item.profile
        generator = self.generator

        def _call() -> Proposal:
            try:
                return generator.generate(opp, profile)
            except GenerationError:
                raise
            except Exception as e:
                raise GenerationError(f"{type(e).__name__}: {e}") from e

        try:
            result = generate_with_fallback(
                lambda: call_with_timeout(
                    self._executor, _call, self.config.timeouts.generation, GenerationError
                ),
                fallback_proposal,
                generator_name=generator.name,
                allow_fallback=self.config.generator.fallback_on_error,
            )
        except GenerationError as e:
            self._fail(pipeline, outcome, f"Proposal generation failed: {e}", "proposal_generator")
            return None

        if isinstance(result, Fallback):
            outcome.fallback = True
            self.state.stats.fallbacks_used += 1
            self.bus.set_component("proposal_generator", ComponentState.ERROR)
            self.bus.publish_warning(
                "proposal_generator",
                f"Generator failed, fallback proposal used: {result.error}",
                pipeline_id=pipeline.id,
            )
        else:
            self.bus.set_component("proposal_generator", ComponentState.RUNNING)

        note = "Fallback proposal generated" if outcome.fallback else "Proposal generated"
        self.machine.advance(pipeline.id, S.PROPOSAL_GENERATED, note)
        self.machine.attach_proposal(pipeline.id, result.proposal)
        self.state.stats.proposals_generated += 1
        self.bus.lifecycle(
            LifecycleKind.PROPOSAL_GENERATED,
            pipeline_id=pipeline.id,
            opportunity_id=opp.id,
            subject=result.proposal.subject,
            fallback=outcome.fallback,
        )
        return result.proposal

    def _fail(
        self, pipeline: Pipeline, outcome: DispatchOutcome, error: str, component: str
    ) -> DispatchOutcome:
        self.machine.record_failure(pipeline.id, error)
        self.state.stats.dispatch_failures += 1
        self.bus.set_component(component, ComponentState.ERROR)
        self.bus.publish_warning(component, error, pipeline_id=pipeline.id)
        logger.warning("Dispatch for %s failed: %s", outcome.opportunity_id, error)
        outcome.error = error
        return outcome
