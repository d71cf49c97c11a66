"""Discovered opportunity and contact channel models."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ContactInfo(BaseModel):
    """How the organization behind an opportunity can be reached."""

    model_config = ConfigDict(frozen=True)

    email: Optional[str] = None
    contact_person: Optional[str] = None
    phone: Optional[str] = None
    application_method: str = "email"


class Opportunity(BaseModel):
    """
    A job/contract lead emitted by the discovery feed.
    Immutable once discovered; downstream records reference it by id.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Stable id assigned by the discovery feed")
    title: str = Field(..., min_length=1)
    organization: str = ""
    industry: str = ""
    location: Optional[str] = None
    description: str = ""

    skills: list[str] = Field(default_factory=list, description="Required skills")

    budget_min: Optional[Decimal] = None
    budget_max: Optional[Decimal] = None
    budget_currency: Optional[str] = None

    urgency: Urgency = Urgency.MEDIUM
    posted_at: Optional[datetime] = None
    deadline: Optional[datetime] = None

    contact: ContactInfo = Field(default_factory=ContactInfo)
    source_url: Optional[str] = None

    @field_validator("skills")
    @classmethod
    def _strip_skills(cls, value: list[str]) -> list[str]:
        return [s.strip() for s in value if s and s.strip()]

    @property
    def recipient(self) -> Optional[str]:
        """Email address proposals are dispatched to, if any."""
        email = (self.contact.email or "").strip()
        return email or None
