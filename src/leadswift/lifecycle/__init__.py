"""Pipeline lifecycle: state machine, stage actions and follow-ups."""

from .actions import ActionContext, ActionRunner, trigger_holds
from .followups import FollowUp, FollowUpScheduler, FollowUpStatus
from .state_machine import PipelineStateMachine, transition_allowed

__all__ = [
    "ActionContext",
    "ActionRunner",
    "FollowUp",
    "FollowUpScheduler",
    "FollowUpStatus",
    "PipelineStateMachine",
    "transition_allowed",
    "trigger_holds",
]
