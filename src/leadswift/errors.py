"""Error taxonomy for the automation engine."""

from typing import Optional


class LeadSwiftError(Exception):
    """Base class for all engine errors."""


class ConfigError(LeadSwiftError):
    """Operator configuration could not be loaded or is inconsistent."""


class ValidationError(LeadSwiftError, ValueError):
    """
    Opportunity or profile has a bad shape.
    Raised before anything enters the queue; never retried.
    """


class GenerationError(LeadSwiftError):
    """AI proposal generation failed or timed out."""


class TransportError(LeadSwiftError):
    """Email transport failed to send or timed out."""


class PipelineNotFoundError(LeadSwiftError, KeyError):
    """No pipeline with the given id (or tracking id) exists."""

    def __init__(self, pipeline_id: str):
        super().__init__(pipeline_id)
        self.pipeline_id = pipeline_id

    def __str__(self) -> str:
        return f"Pipeline not found: {self.pipeline_id}"


class PipelineTerminalError(LeadSwiftError):
    """Transition attempted on a pipeline that already reached a terminal state."""

    def __init__(self, pipeline_id: str, status: str, attempted: Optional[str] = None):
        self.pipeline_id = pipeline_id
        self.status = status
        self.attempted = attempted
        msg = f"Pipeline {pipeline_id} is terminal ({status})"
        if attempted:
            msg += f"; cannot move to {attempted}"
        super().__init__(msg)


class InvalidTransitionError(LeadSwiftError):
    """Transition not allowed from the pipeline's current status."""

    def __init__(self, pipeline_id: str, current: str, attempted: str):
        self.pipeline_id = pipeline_id
        self.current = current
        self.attempted = attempted
        super().__init__(f"Pipeline {pipeline_id}: {current} -> {attempted} is not allowed")
