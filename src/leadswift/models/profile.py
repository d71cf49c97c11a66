"""Profile of the acting party, used to score and address proposals."""

from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field


class ExperienceTier(str, Enum):
    """Ordinal experience tiers: entry < mid < senior < expert."""

    ENTRY = "entry"
    MID = "mid"
    SENIOR = "senior"
    EXPERT = "expert"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


_TIER_RANK = {
    ExperienceTier.ENTRY: 1,
    ExperienceTier.MID: 2,
    ExperienceTier.SENIOR: 3,
    ExperienceTier.EXPERT: 4,
}


class Profile(BaseModel):
    """Skills, preferences and identity; immutable for the duration of a run."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    full_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None

    skills: list[str] = Field(default_factory=list)
    industries: list[str] = Field(default_factory=list, description="Preferred industries")
    experience_tier: ExperienceTier = ExperienceTier.MID
    years_experience: int = Field(default=0, ge=0)
    bio: str = ""

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Profile":
        """Load profile from YAML file. Supports nested (experience block) or flat structure."""
        data = yaml.safe_load(Path(path).read_text()) or {}
        exp = data.get("experience", {}) if isinstance(data.get("experience"), dict) else {}

        flat: dict = {"id": data.get("id", data.get("profile_id", "default"))}
        for key in ("full_name", "email", "phone", "bio"):
            if data.get(key) is not None:
                flat[key] = data[key]
        flat["skills"] = data.get("skills") or []
        flat["industries"] = data.get("industries") or data.get("preferred_industries") or []
        tier = exp.get("level", data.get("experience_tier"))
        if tier:
            flat["experience_tier"] = str(tier).lower()
        years = exp.get("years", data.get("years_experience"))
        if years is not None:
            flat["years_experience"] = years
        return cls.model_validate(flat)
