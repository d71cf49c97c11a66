"""Eligibility filter with ordered rules and explanation trail."""

from typing import AbstractSet, Optional

from pydantic import BaseModel, Field

from leadswift.clock import Clock, SystemClock
from leadswift.config import EngineConfig
from leadswift.models.opportunity import Opportunity
from leadswift.models.profile import Profile
from leadswift.scoring import MatchResult

from .rules import (
    apply_duplicate_rule,
    apply_exclusion_rule,
    apply_min_score_rule,
    apply_working_hours_rule,
)


class FilterResult(BaseModel):
    """Verdict for one opportunity."""

    accept: bool = Field(..., description="All rules passed")
    reason: str = Field(..., description="First failing explanation, or acceptance summary")
    rejected_by: Optional[str] = Field(
        default=None,
        description="First rule that rejected (exclusion|working_hours|min_score|duplicate)",
    )
    explanations: list[str] = Field(default_factory=list)
    match: MatchResult


class FilterEngine:
    """
    Applies the acceptance rules in order; the first failure wins.
    Pure apart from reading the clock.
    """

    def __init__(self, config: EngineConfig, clock: Optional[Clock] = None):
        self.config = config
        self.clock = clock or SystemClock()

    def evaluate(
        self,
        opportunity: Opportunity,
        profile: Profile,
        match: MatchResult,
        *,
        active_ids: AbstractSet[str] = frozenset(),
    ) -> FilterResult:
        """Return accept/reject with the rule trail up to the first failure."""
        config = self.config
        checks = (
            lambda: apply_exclusion_rule(opportunity, config),
            lambda: apply_working_hours_rule(self.clock.now(), config),
            lambda: apply_min_score_rule(match, config),
            lambda: apply_duplicate_rule(opportunity, active_ids),
        )
        explanations: list[str] = []
        for check in checks:
            passed, explanation, rule_id = check()
            explanations.append(explanation)
            if not passed:
                return FilterResult(
                    accept=False,
                    reason=explanation,
                    rejected_by=rule_id,
                    explanations=explanations,
                    match=match,
                )
        return FilterResult(
            accept=True,
            reason="Opportunity meets all criteria",
            explanations=explanations,
            match=match,
        )
