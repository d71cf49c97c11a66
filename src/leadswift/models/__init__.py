"""Data models for opportunities, profiles, proposals and pipelines."""

from leadswift.models.opportunity import ContactInfo, Opportunity, Urgency
from leadswift.models.pipeline import (
    ActionType,
    ApplicationStatus,
    AutomatedAction,
    Outcome,
    OutcomeResult,
    Pipeline,
    Reminder,
    ReminderType,
    Stage,
    StageName,
    StageStatus,
    TrackingCounters,
)
from leadswift.models.profile import ExperienceTier, Profile
from leadswift.models.proposal import Proposal

__all__ = [
    "ActionType",
    "ApplicationStatus",
    "AutomatedAction",
    "ContactInfo",
    "ExperienceTier",
    "Opportunity",
    "Outcome",
    "OutcomeResult",
    "Pipeline",
    "Profile",
    "Proposal",
    "Reminder",
    "ReminderType",
    "Stage",
    "StageName",
    "StageStatus",
    "TrackingCounters",
    "Urgency",
]
