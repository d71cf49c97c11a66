"""Deterministic opportunity/profile match scoring."""

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from leadswift.matching import detect_required_tier, name_in, split_skills
from leadswift.models.opportunity import Opportunity, Urgency
from leadswift.models.profile import ExperienceTier, Profile

SKILL_WEIGHT = 0.40
INDUSTRY_WEIGHT = 0.25
EXPERIENCE_WEIGHT = 0.20
PRIORITY_INDUSTRY_WEIGHT = 0.10
URGENCY_WEIGHT = 0.05

# Penalty per tier step between profile and requirement
_TIER_STEP_PENALTY = 0.25


class ScoreBreakdown(BaseModel):
    """Per-factor contribution in points (weight x factor x 100)."""

    model_config = ConfigDict(frozen=True)

    skill: float = 0.0
    industry: float = 0.0
    experience: float = 0.0
    priority_bonus: float = 0.0
    urgency_bonus: float = 0.0

    @property
    def total(self) -> float:
        return self.skill + self.industry + self.experience + self.priority_bonus + self.urgency_bonus


class MatchResult(BaseModel):
    """Result of scoring one opportunity against one profile."""

    model_config = ConfigDict(frozen=True)

    opportunity_id: str
    profile_id: str
    score: int = Field(..., ge=0, le=100)
    breakdown: ScoreBreakdown
    matched_skills: list[str] = Field(default_factory=list)
    missing_skills: list[str] = Field(default_factory=list)
    required_tier: ExperienceTier = ExperienceTier.MID
    eligible: bool = True
    rejection_reason: Optional[str] = None


def _round_half_up(value: float) -> int:
    # Trim float noise first so 12.4999999999 rounds like 12.5
    return int(Decimal(str(round(value, 6))).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def experience_factor(profile_tier: ExperienceTier, required_tier: ExperienceTier) -> float:
    """1.0 on an exact tier match, minus 0.25 per step of distance, floored at 0."""
    distance = abs(profile_tier.rank - required_tier.rank)
    return max(0.0, 1.0 - _TIER_STEP_PENALTY * distance)


def score_match(
    opportunity: Opportunity,
    profile: Profile,
    *,
    priority_industries: Iterable[str] = (),
    minimum_score: int = 0,
) -> MatchResult:
    """
    Score an opportunity against a profile on a 0-100 scale.
    Pure function: same inputs always give the same result.
    """
    if opportunity.skills:
        matched, missing = split_skills(opportunity.skills, profile.skills)
        skill_factor = len(matched) / len(opportunity.skills)
    else:
        # Nothing required means nothing missing
        matched, missing = [], []
        skill_factor = 1.0

    industry_factor = 1.0 if name_in(opportunity.industry, profile.industries) else 0.0

    required_tier = detect_required_tier(opportunity.title, opportunity.description)
    exp_factor = experience_factor(profile.experience_tier, required_tier)

    priority_factor = 1.0 if name_in(opportunity.industry, priority_industries) else 0.0
    urgency_factor = 1.0 if opportunity.urgency == Urgency.HIGH else 0.0

    breakdown = ScoreBreakdown(
        skill=SKILL_WEIGHT * skill_factor * 100,
        industry=INDUSTRY_WEIGHT * industry_factor * 100,
        experience=EXPERIENCE_WEIGHT * exp_factor * 100,
        priority_bonus=PRIORITY_INDUSTRY_WEIGHT * priority_factor * 100,
        urgency_bonus=URGENCY_WEIGHT * urgency_factor * 100,
    )
    score = max(0, min(100, _round_half_up(breakdown.total)))

    eligible = score >= minimum_score
    reason = None if eligible else f"Match score too low: {score} (minimum {minimum_score})"

    return MatchResult(
        opportunity_id=opportunity.id,
        profile_id=profile.id,
        score=score,
        breakdown=breakdown,
        matched_skills=matched,
        missing_skills=missing,
        required_tier=required_tier,
        eligible=eligible,
        rejection_reason=reason,
    )


def score_many(
    opportunities: list[Opportunity],
    profile: Profile,
    *,
    priority_industries: Iterable[str] = (),
    minimum_score: int = 0,
) -> list[MatchResult]:
    """Score a batch and return results sorted by score descending (stable)."""
    industries = list(priority_industries)
    results = [
        score_match(o, profile, priority_industries=industries, minimum_score=minimum_score)
        for o in opportunities
    ]
    results.sort(key=lambda r: r.score, reverse=True)
    return results
