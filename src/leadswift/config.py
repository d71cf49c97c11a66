"""Operator configuration: YAML-loadable pydantic models with env overrides."""

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from leadswift.errors import ConfigError

logger = logging.getLogger(__name__)


def _parse_hour(value: Any) -> int:
    """Accept 9, "9" or "09:00"; only the hour is significant."""
    if isinstance(value, int):
        hour = value
    else:
        text = str(value).strip()
        hour = int(text.split(":")[0]) if text else 0
    if not 0 <= hour <= 24:
        raise ValueError(f"hour out of range: {value!r}")
    return hour


class WorkingHours(BaseModel):
    """Daily window in which new opportunities are accepted."""

    enabled: bool = True
    start: int = Field(default=9, description='Start hour; "09:00" accepted')
    end: int = Field(default=17, description='End hour (exclusive); "17:00" accepted')
    timezone: str = "UTC"

    @field_validator("start", "end", mode="before")
    @classmethod
    def _hour(cls, value: Any) -> int:
        return _parse_hour(value)

    @field_validator("timezone")
    @classmethod
    def _known_zone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone: {value}") from e
        return value

    def contains(self, when: datetime) -> bool:
        """True if `when` falls inside [start, end) in the configured timezone."""
        if not self.enabled or self.start == self.end:
            return True
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        hour = when.astimezone(ZoneInfo(self.timezone)).hour
        if self.start < self.end:
            return self.start <= hour < self.end
        # Overnight window, e.g. 22 -> 6
        return hour >= self.start or hour < self.end


class FollowUpRule(BaseModel):
    """One follow-up in the sequence scheduled after a successful dispatch."""

    condition: str = Field(..., description="no_response | opened_no_reply | final_follow_up")
    delay_days: float = Field(..., gt=0)
    subject: str


DEFAULT_FOLLOW_UPS = [
    FollowUpRule(condition="no_response", delay_days=3, subject="Following up on my proposal"),
    FollowUpRule(
        condition="opened_no_reply", delay_days=7, subject="Quick question about your project"
    ),
    FollowUpRule(
        condition="final_follow_up", delay_days=14, subject="Last follow-up - still interested?"
    ),
]


class GeneratorSettings(BaseModel):
    """Proposal generator selection."""

    provider: str = Field(default="template", description="template | ollama | openai")
    model: Optional[str] = None
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=1000, gt=0)
    api_key: Optional[str] = Field(default=None, repr=False)
    base_url: Optional[str] = None
    fallback_on_error: bool = Field(
        default=True,
        description="Send the template proposal when the generator fails",
    )


class EmailSettings(BaseModel):
    """Email transport selection."""

    provider: str = Field(default="dry_run", description="dry_run | sendgrid | resend | postmark")
    api_key: Optional[str] = Field(default=None, repr=False)
    from_email: str = "noreply@leadswift.local"
    from_name: str = "LeadSwift"
    base_url: Optional[str] = None


class SchedulerIntervals(BaseModel):
    """Tick periods in seconds."""

    processor: float = Field(default=30, gt=0)
    follow_ups: float = Field(default=60, gt=0)
    health: float = Field(default=60, gt=0)
    metrics: float = Field(default=300, gt=0)
    config_reload: float = Field(default=30, gt=0)


class CallTimeouts(BaseModel):
    """Upper bounds for calls to external collaborators, in seconds."""

    generation: float = Field(default=60, gt=0)
    transport: float = Field(default=30, gt=0)
    database: float = Field(default=5, gt=0)


class EngineConfig(BaseModel):
    """
    Operator configuration for the automation engine.
    Loaded from YAML; secrets are read from the environment.
    """

    enabled: bool = True
    auto_apply_enabled: bool = Field(
        default=True, description="When false, proposals are generated but not sent"
    )
    max_daily_applications: int = Field(default=20, ge=0)
    minimum_match_score: int = Field(default=60, ge=0, le=100)
    priority_industries: list[str] = Field(default_factory=list)
    excluded_organizations: list[str] = Field(default_factory=list)
    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    follow_ups: list[FollowUpRule] = Field(default_factory=lambda: list(DEFAULT_FOLLOW_UPS))

    max_queue_length: int = Field(default=100, gt=0)
    queue_trim_to: int = Field(default=50, gt=0)
    recent_events_limit: int = Field(default=50, gt=0)

    generator: GeneratorSettings = Field(default_factory=GeneratorSettings)
    email: EmailSettings = Field(default_factory=EmailSettings)
    intervals: SchedulerIntervals = Field(default_factory=SchedulerIntervals)
    timeouts: CallTimeouts = Field(default_factory=CallTimeouts)
    db_path: Optional[str] = Field(default=None, description="SQLite path; in-memory when unset")

    @model_validator(mode="after")
    def _trim_below_cap(self) -> "EngineConfig":
        if self.queue_trim_to > self.max_queue_length:
            raise ValueError("queue_trim_to must not exceed max_queue_length")
        return self

    @classmethod
    def from_dict(cls, data: dict) -> "EngineConfig":
        """Build from a nested ({automation: {...}}) or flat mapping."""
        body = data.get("automation", data) if isinstance(data.get("automation"), dict) else data
        body = dict(body)
        if "excluded_companies" in body and "excluded_organizations" not in body:
            body["excluded_organizations"] = body.pop("excluded_companies")
        try:
            return cls.model_validate(body)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    @classmethod
    def from_yaml(cls, path: str | Path) -> "EngineConfig":
        """Load config from a YAML file and apply environment overrides."""
        p = Path(path)
        try:
            data = yaml.safe_load(p.read_text()) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read config {p}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config {p} must be a mapping")
        return cls.from_dict(data).with_env()

    def with_env(self, environ: Optional[dict[str, str]] = None) -> "EngineConfig":
        """Return a copy with provider, model and API keys taken from the environment."""
        env = os.environ if environ is None else environ
        gen_update: dict[str, Any] = {}
        provider = (env.get("LEADSWIFT_LLM_PROVIDER") or "").strip().lower()
        if provider:
            gen_update["provider"] = provider
        if env.get("LEADSWIFT_LLM_MODEL"):
            gen_update["model"] = env["LEADSWIFT_LLM_MODEL"]
        if env.get("OPENAI_API_KEY") and not self.generator.api_key:
            gen_update["api_key"] = env["OPENAI_API_KEY"]
        email_update: dict[str, Any] = {}
        if env.get("LEADSWIFT_EMAIL_API_KEY") and not self.email.api_key:
            email_update["api_key"] = env["LEADSWIFT_EMAIL_API_KEY"]
        if not gen_update and not email_update:
            return self
        return self.model_copy(
            update={
                "generator": self.generator.model_copy(update=gen_update),
                "email": self.email.model_copy(update=email_update),
            }
        )


class ConfigReloader:
    """Re-reads a YAML config file when its mtime changes."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._mtime: Optional[float] = None

    def poll(self) -> Optional[EngineConfig]:
        """
        Return a freshly loaded config if the file changed since the last poll.
        A missing or invalid file is logged and yields None.
        """
        try:
            mtime = self.path.stat().st_mtime
        except OSError:
            logger.warning("Config file %s not readable", self.path)
            return None
        if self._mtime is not None and mtime == self._mtime:
            return None
        self._mtime = mtime
        try:
            config = EngineConfig.from_yaml(self.path)
        except ConfigError as e:
            logger.error("Ignoring invalid config %s: %s", self.path, e)
            return None
        logger.info("Loaded config from %s", self.path)
        return config
