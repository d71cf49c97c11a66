"""Shared keyword and skill matching utilities for scoring and filtering."""

from typing import Iterable, Optional

from leadswift.models.profile import ExperienceTier


def _normalize(text: Optional[str]) -> str:
    """Lowercase and strip for matching; empty string if None."""
    return (text or "").lower().strip()


def skill_matches(required: str, offered: str) -> bool:
    """
    Case-insensitive substring match in either direction.
    "React" matches "react.js"; "Python 3" matches "python".
    """
    req = _normalize(required)
    off = _normalize(offered)
    if not req or not off:
        return False
    return req in off or off in req


def split_skills(
    required: Iterable[str], offered: Iterable[str]
) -> tuple[list[str], list[str]]:
    """Partition required skills into (matched, missing) against the offered list."""
    offered_list = [s for s in offered if _normalize(s)]
    matched: list[str] = []
    missing: list[str] = []
    for skill in required:
        if any(skill_matches(skill, o) for o in offered_list):
            matched.append(skill)
        else:
            missing.append(skill)
    return matched, missing


# Checked in order as substrings; the first group with a hit decides the tier
_TIER_KEYWORDS: list[tuple[tuple[str, ...], ExperienceTier]] = [
    (("senior", "lead", "principal"), ExperienceTier.SENIOR),
    (("junior", "entry", "graduate"), ExperienceTier.ENTRY),
    (("expert", "architect", "director"), ExperienceTier.EXPERT),
]


def detect_required_tier(title: str, description: str = "") -> ExperienceTier:
    """Infer the experience tier an opportunity asks for from its title and description."""
    text = f"{title or ''} {description or ''}".lower()
    for words, tier in _TIER_KEYWORDS:
        if any(w in text for w in words):
            return tier
    return ExperienceTier.MID


def name_in(name: Optional[str], names: Iterable[str]) -> bool:
    """Case-insensitive membership test for organization / industry names."""
    target = _normalize(name)
    if not target:
        return False
    return any(_normalize(n) == target for n in names)
