"""Pipeline lifecycle models: status, stages, actions, reminders, outcome."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from leadswift.models.proposal import Proposal


class ApplicationStatus(str, Enum):
    DISCOVERED = "discovered"
    ANALYZING = "analyzing"
    PROPOSAL_GENERATED = "proposal_generated"
    PROPOSAL_SENT = "proposal_sent"
    FOLLOW_UP_SENT = "follow_up_sent"
    RESPONSE_RECEIVED = "response_received"
    INTERVIEW_SCHEDULED = "interview_scheduled"
    INTERVIEW_COMPLETED = "interview_completed"
    OFFER_RECEIVED = "offer_received"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_REJECTED = "offer_rejected"
    APPLICATION_REJECTED = "application_rejected"
    WITHDRAWN = "withdrawn"


class StageName(str, Enum):
    DISCOVERY = "discovery"
    ANALYSIS = "analysis"
    PROPOSAL = "proposal"
    OUTREACH = "outreach"
    INTERVIEW = "interview"
    NEGOTIATION = "negotiation"
    COMPLETION = "completion"


class StageStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ActionType(str, Enum):
    SEND_EMAIL = "send_email"
    SCHEDULE_REMINDER = "schedule_reminder"
    UPDATE_STATUS = "update_status"
    GENERATE_REPORT = "generate_report"


class ReminderType(str, Enum):
    FOLLOW_UP = "follow_up"
    INTERVIEW_PREP = "interview_prep"
    DEADLINE = "deadline"
    CUSTOM = "custom"


class OutcomeResult(str, Enum):
    HIRED = "hired"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"


S = ApplicationStatus

TERMINAL_STATUSES = frozenset(
    {S.OFFER_ACCEPTED, S.OFFER_REJECTED, S.APPLICATION_REJECTED, S.WITHDRAWN}
)

# Main-line ordering; forward moves (including skips) are allowed along it
STATUS_ORDER: tuple[ApplicationStatus, ...] = (
    S.DISCOVERED,
    S.ANALYZING,
    S.PROPOSAL_GENERATED,
    S.PROPOSAL_SENT,
    S.FOLLOW_UP_SENT,
    S.RESPONSE_RECEIVED,
    S.INTERVIEW_SCHEDULED,
    S.INTERVIEW_COMPLETED,
    S.OFFER_RECEIVED,
)

STATUS_TO_STAGE: dict[ApplicationStatus, StageName] = {
    S.DISCOVERED: StageName.DISCOVERY,
    S.ANALYZING: StageName.ANALYSIS,
    S.PROPOSAL_GENERATED: StageName.PROPOSAL,
    S.PROPOSAL_SENT: StageName.OUTREACH,
    S.FOLLOW_UP_SENT: StageName.OUTREACH,
    S.RESPONSE_RECEIVED: StageName.INTERVIEW,
    S.INTERVIEW_SCHEDULED: StageName.INTERVIEW,
    S.INTERVIEW_COMPLETED: StageName.INTERVIEW,
    S.OFFER_RECEIVED: StageName.NEGOTIATION,
    S.OFFER_ACCEPTED: StageName.COMPLETION,
    S.OFFER_REJECTED: StageName.COMPLETION,
    S.APPLICATION_REJECTED: StageName.COMPLETION,
    S.WITHDRAWN: StageName.COMPLETION,
}

# Statuses before any email went out; a failed dispatch leaves the pipeline here
PRE_DISPATCH_STATUSES = frozenset({S.DISCOVERED, S.ANALYZING, S.PROPOSAL_GENERATED})

OUTREACH_STATUSES = frozenset({S.PROPOSAL_SENT, S.FOLLOW_UP_SENT})


def stage_for(status: ApplicationStatus) -> StageName:
    """Fixed status -> stage projection."""
    return STATUS_TO_STAGE[ApplicationStatus(status)]


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AutomatedAction(BaseModel):
    """Declarative side effect bound to a stage; fires at most once."""

    type: ActionType
    trigger: str = Field(..., description="Named predicate evaluated against the pipeline")
    executed: bool = False
    executed_at: Optional[datetime] = None
    result: Optional[str] = None


class Stage(BaseModel):
    """Coarse lifecycle phase of a pipeline."""

    name: StageName
    status: StageStatus = StageStatus.PENDING
    actions: list[AutomatedAction] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    notes: str = ""


class Reminder(BaseModel):
    """Dated to-do surfaced to the notification layer when due."""

    id: str = Field(default_factory=_new_id)
    type: ReminderType
    title: str
    description: str = ""
    due_at: datetime
    priority: str = "medium"
    completed: bool = False
    completed_at: Optional[datetime] = None
    notified: bool = False


class Outcome(BaseModel):
    """Terminal result of a pipeline. Set exactly once."""

    result: OutcomeResult
    decided_at: datetime = Field(default_factory=_utcnow)
    feedback: Optional[str] = None
    salary: Optional[float] = None
    start_date: Optional[datetime] = None


class TrackingCounters(BaseModel):
    """Delivery events reported by the email transport."""

    opens: int = 0
    clicks: int = 0
    responses: int = 0
    bounces: int = 0
    unsubscribes: int = 0
    last_activity: Optional[datetime] = None


class Pipeline(BaseModel):
    """
    Per-opportunity lifecycle record.
    Mutated only by the state machine; retained after reaching a terminal state.
    """

    id: str = Field(default_factory=_new_id)
    opportunity_id: str
    profile_id: str
    status: ApplicationStatus = ApplicationStatus.DISCOVERED
    current_stage: StageName = StageName.DISCOVERY
    stages: list[Stage] = Field(default_factory=list)
    reminders: list[Reminder] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=_utcnow)
    last_updated: datetime = Field(default_factory=_utcnow)
    status_changed_at: datetime = Field(default_factory=_utcnow)
    outcome: Optional[Outcome] = None

    priority: str = "medium"
    tracking_id: Optional[str] = None
    message_id: Optional[str] = None
    tracking: TrackingCounters = Field(default_factory=TrackingCounters)
    proposal: Optional[Proposal] = None
    last_error: Optional[str] = None
    interview_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES or self.outcome is not None

    @property
    def awaiting_retry(self) -> bool:
        """A dispatch attempt failed and the pipeline never left the pre-dispatch states."""
        return (
            not self.is_terminal
            and self.status in PRE_DISPATCH_STATUSES
            and self.last_error is not None
        )

    def stage(self, name: StageName) -> Optional[Stage]:
        for s in self.stages:
            if s.name == name:
                return s
        return None
