"""Filter rules: each returns (passed, explanation, rule_id)."""

from datetime import datetime
from typing import AbstractSet

from leadswift.config import EngineConfig
from leadswift.matching import name_in
from leadswift.models.opportunity import Opportunity
from leadswift.scoring import MatchResult


def apply_exclusion_rule(opp: Opportunity, config: EngineConfig) -> tuple[bool, str, str]:
    """Organization must not be on the operator's exclusion list (case-insensitive)."""
    if not config.excluded_organizations:
        return True, "Exclusion list not set", "exclusion"
    if name_in(opp.organization, config.excluded_organizations):
        return False, f"Excluded: organization {opp.organization} is in exclusion list", "exclusion"
    return True, "Organization not excluded", "exclusion"


def apply_working_hours_rule(now: datetime, config: EngineConfig) -> tuple[bool, str, str]:
    """Current time must fall inside the configured working window."""
    hours = config.working_hours
    if not hours.enabled:
        return True, "Working hours not enforced", "working_hours"
    if hours.contains(now):
        return True, "Within working hours", "working_hours"
    return (
        False,
        f"Outside working hours ({hours.start:02d}:00-{hours.end:02d}:00 {hours.timezone})",
        "working_hours",
    )


def apply_min_score_rule(match: MatchResult, config: EngineConfig) -> tuple[bool, str, str]:
    """Match score must reach the configured minimum."""
    minimum = config.minimum_match_score
    if match.score < minimum:
        return False, f"Match score too low: {match.score} (minimum {minimum})", "min_score"
    return True, f"Match score {match.score} meets minimum {minimum}", "min_score"


def apply_duplicate_rule(
    opp: Opportunity, active_ids: AbstractSet[str]
) -> tuple[bool, str, str]:
    """Opportunity must not already be queued, processing, or tracked by a live pipeline."""
    if opp.id in active_ids:
        return False, f"Already processing this opportunity: {opp.id}", "duplicate"
    return True, "Not a duplicate", "duplicate"
