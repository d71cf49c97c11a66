"""Match scoring between opportunities and the profile."""

from .match import MatchResult, ScoreBreakdown, experience_factor, score_many, score_match

__all__ = ["MatchResult", "ScoreBreakdown", "experience_factor", "score_many", "score_match"]
