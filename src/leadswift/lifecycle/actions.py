"""Stage action templates, trigger predicates and the action runner."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from leadswift.models.pipeline import (
    ActionType,
    ApplicationStatus,
    AutomatedAction,
    OutcomeResult,
    Pipeline,
    Reminder,
    ReminderType,
    Stage,
    StageName,
)

logger = logging.getLogger(__name__)

NO_RESPONSE_WINDOW = timedelta(days=3)
INTERVIEW_PREP_LEAD = timedelta(days=1)

# (stage, [(action type, trigger)]) in lifecycle order
STAGE_TEMPLATE: list[tuple[StageName, list[tuple[ActionType, str]]]] = [
    (StageName.DISCOVERY, []),
    (StageName.ANALYSIS, [(ActionType.GENERATE_REPORT, "stage_start")]),
    (StageName.PROPOSAL, []),
    (StageName.OUTREACH, [(ActionType.SCHEDULE_REMINDER, "no_response_3_days")]),
    (StageName.INTERVIEW, [(ActionType.SCHEDULE_REMINDER, "interview_scheduled")]),
    (StageName.NEGOTIATION, []),
    (StageName.COMPLETION, [(ActionType.GENERATE_REPORT, "outcome_finalized")]),
]

_STAGE_NOTES = {
    StageName.DISCOVERY: "Opportunity discovered and scored",
    StageName.ANALYSIS: "Requirements analysis",
    StageName.PROPOSAL: "Proposal generation",
    StageName.OUTREACH: "Proposal dispatch and follow-ups",
    StageName.INTERVIEW: "Responses and interviews",
    StageName.NEGOTIATION: "Offer negotiation",
    StageName.COMPLETION: "Final outcome and lessons learned",
}


def initial_stages() -> list[Stage]:
    return [
        Stage(
            name=name,
            notes=_STAGE_NOTES[name],
            actions=[AutomatedAction(type=t, trigger=trig) for t, trig in actions],
        )
        for name, actions in STAGE_TEMPLATE
    ]


def _no_response_3_days(pipeline: Pipeline, now: datetime) -> bool:
    return (
        now - pipeline.status_changed_at >= NO_RESPONSE_WINDOW
        and pipeline.tracking.responses == 0
    )


TRIGGERS: dict[str, Callable[[Pipeline, datetime], bool]] = {
    "stage_start": lambda p, now: True,
    "no_response_3_days": _no_response_3_days,
    "interview_scheduled": lambda p, now: p.status == ApplicationStatus.INTERVIEW_SCHEDULED,
    "outcome_finalized": lambda p, now: p.outcome is not None,
    "proposal_approved": lambda p, now: p.status == ApplicationStatus.PROPOSAL_GENERATED,
}


def trigger_holds(trigger: str, pipeline: Pipeline, now: datetime) -> bool:
    """Evaluate a named trigger. Unknown triggers never fire."""
    predicate = TRIGGERS.get(trigger)
    if predicate is None:
        logger.debug("Unknown trigger %r on pipeline %s", trigger, pipeline.id)
        return False
    return predicate(pipeline, now)


@dataclass
class ActionContext:
    """What a handler sees: the draft pipeline plus a list of post-commit callbacks."""

    pipeline: Pipeline
    stage: Stage
    now: datetime
    deferred: list[Callable[[], None]] = field(default_factory=list)


@dataclass
class ActionFailure:
    pipeline_id: str
    action: ActionType
    trigger: str
    error: str


Handler = Callable[[ActionContext, AutomatedAction], Optional[str]]


def lessons_learned(pipeline: Pipeline) -> list[str]:
    outcome = pipeline.outcome
    if outcome is None:
        return []
    lessons: list[str] = []
    if outcome.result == OutcomeResult.HIRED:
        lessons.append("Successful application - analyze what worked well")
        lessons.append("Document effective proposal elements for future use")
    elif outcome.result == OutcomeResult.REJECTED:
        if outcome.feedback:
            lessons.append(f"Feedback received: {outcome.feedback}")
        lessons.append("Analyze proposal and interview performance for improvements")
    else:
        lessons.append(f"Closed as {outcome.result.value} without a decision")
    return lessons


def _generate_report(ctx: ActionContext, action: AutomatedAction) -> str:
    p = ctx.pipeline
    if ctx.stage.name == StageName.COMPLETION and p.outcome is not None:
        days = max(0, (ctx.now - p.created_at).days)
        report = (
            f"Outcome report: {p.outcome.result.value} after {days} days; "
            f"opens={p.tracking.opens}, responses={p.tracking.responses}"
        )
        lessons = lessons_learned(p)
        if lessons:
            report += ". Lessons learned: " + "; ".join(lessons)
    else:
        report = f"{ctx.stage.name.value.capitalize()} report: status {p.status.value}"
    p.notes.append(f"[{ctx.now.isoformat()}] {report}")
    return report


def _has_open_reminder(p: Pipeline, kind: ReminderType) -> Optional[Reminder]:
    for r in p.reminders:
        if r.type == kind and not r.completed:
            return r
    return None


def _schedule_reminder(ctx: ActionContext, action: AutomatedAction) -> str:
    p = ctx.pipeline
    if action.trigger == "interview_scheduled":
        when = (p.interview_at or ctx.now) - INTERVIEW_PREP_LEAD
        existing = _has_open_reminder(p, ReminderType.INTERVIEW_PREP)
        if existing is not None:
            existing.due_at = when
            return f"Interview prep reminder moved to {when.isoformat()}"
        p.reminders.append(
            Reminder(
                type=ReminderType.INTERVIEW_PREP,
                title="Prepare for interview",
                description="Review the opportunity, research the organization, prepare questions",
                due_at=when,
                priority="high",
            )
        )
        return f"Interview prep reminder due {when.isoformat()}"
    p.reminders.append(
        Reminder(
            type=ReminderType.FOLLOW_UP,
            title="Follow up on proposal",
            description="No response received in 3 days",
            due_at=ctx.now,
            priority="medium",
        )
    )
    return "Follow-up reminder created"


def _update_status(ctx: ActionContext, action: AutomatedAction) -> str:
    return f"Status confirmed: {ctx.pipeline.status.value}"


def _send_email_unwired(ctx: ActionContext, action: AutomatedAction) -> str:
    return "No email sender registered"


class ActionRunner:
    """
    Runs due, not-yet-executed actions of a stage against a draft pipeline.
    Each action is marked executed before its handler runs, so it fires at most once
    even when the handler fails.
    """

    def __init__(self, handlers: Optional[dict[ActionType, Handler]] = None):
        self._handlers: dict[ActionType, Handler] = {
            ActionType.GENERATE_REPORT: _generate_report,
            ActionType.SCHEDULE_REMINDER: _schedule_reminder,
            ActionType.UPDATE_STATUS: _update_status,
            ActionType.SEND_EMAIL: _send_email_unwired,
        }
        if handlers:
            self._handlers.update(handlers)

    def register(self, action_type: ActionType, handler: Handler) -> None:
        self._handlers[ActionType(action_type)] = handler

    def run(
        self, pipeline: Pipeline, stage_name: StageName, now: datetime
    ) -> tuple[list[Callable[[], None]], list[ActionFailure]]:
        """Fire due actions of `stage_name` on `pipeline` in place."""
        stage = pipeline.stage(stage_name)
        if stage is None:
            return [], []
        ctx = ActionContext(pipeline=pipeline, stage=stage, now=now)
        failures: list[ActionFailure] = []
        for action in stage.actions:
            if action.executed or not trigger_holds(action.trigger, pipeline, now):
                continue
            action.executed = True
            action.executed_at = now
            handler = self._handlers.get(action.type)
            try:
                action.result = handler(ctx, action) if handler else "No handler"
            except Exception as e:
                logger.error(
                    "Action %s@%s failed on pipeline %s: %s",
                    action.type.value,
                    action.trigger,
                    pipeline.id,
                    e,
                )
                action.result = f"error: {e}"
                failures.append(
                    ActionFailure(
                        pipeline_id=pipeline.id,
                        action=action.type,
                        trigger=action.trigger,
                        error=str(e),
                    )
                )
            else:
                logger.info(
                    "Action %s@%s executed on pipeline %s",
                    action.type.value,
                    action.trigger,
                    pipeline.id,
                )
        return ctx.deferred, failures
