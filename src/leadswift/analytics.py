"""Pipeline analytics: conversion rates, timings and recommendations."""

import math
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field

from leadswift.models.opportunity import Opportunity
from leadswift.models.pipeline import ApplicationStatus, Pipeline

S = ApplicationStatus

TIMEFRAME_DAYS = {"week": 7, "month": 30, "quarter": 90}

_RESPONDED = frozenset(
    {
        S.RESPONSE_RECEIVED,
        S.INTERVIEW_SCHEDULED,
        S.INTERVIEW_COMPLETED,
        S.OFFER_RECEIVED,
        S.OFFER_ACCEPTED,
        S.OFFER_REJECTED,
    }
)
_INTERVIEWED = frozenset(
    {S.INTERVIEW_SCHEDULED, S.INTERVIEW_COMPLETED, S.OFFER_RECEIVED, S.OFFER_ACCEPTED, S.OFFER_REJECTED}
)
_OFFERED = frozenset({S.OFFER_RECEIVED, S.OFFER_ACCEPTED, S.OFFER_REJECTED})


class AutomationMetrics(BaseModel):
    """Aggregate pipeline performance; rates are whole percentages."""

    total_applications: int = 0
    response_rate: int = 0
    interview_rate: int = 0
    offer_rate: int = 0
    acceptance_rate: int = 0
    average_days_to_response: int = 0
    average_days_to_offer: int = 0
    top_industries: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    engine: dict = Field(default_factory=dict, description="Dispatch stats from the running engine")


def _pct(part: int, whole: int) -> int:
    return int(math.floor(part / whole * 100 + 0.5)) if whole else 0


def _days_between(start: datetime, end: datetime) -> int:
    return math.ceil(abs((end - start).total_seconds()) / 86400)


def _avg(values: list[int]) -> int:
    return int(math.floor(sum(values) / len(values) + 0.5)) if values else 0


def responded(p: Pipeline) -> bool:
    return p.status in _RESPONDED or p.tracking.responses > 0


def recommendations(response_rate: float) -> list[str]:
    recs: list[str] = []
    if response_rate < 0.1:
        recs.append("Consider improving proposal personalization and subject lines")
    if response_rate < 0.05:
        recs.append("Research company contacts more thoroughly before sending")
    recs.append("Continue tracking metrics to identify improvement opportunities")
    return recs


def top_industries(
    pipelines: list[Pipeline], opportunities: dict[str, Opportunity], limit: int = 3
) -> list[str]:
    """Industries ranked by response rate, then by volume."""
    sent: dict[str, int] = defaultdict(int)
    replies: dict[str, int] = defaultdict(int)
    for p in pipelines:
        opp = opportunities.get(p.opportunity_id)
        if opp is None or not opp.industry:
            continue
        sent[opp.industry] += 1
        if responded(p):
            replies[opp.industry] += 1
    ranked = sorted(sent, key=lambda ind: (-replies[ind] / sent[ind], -sent[ind], ind))
    return ranked[:limit]


def compute_pipeline_metrics(
    pipelines: list[Pipeline],
    opportunities: Optional[dict[str, Opportunity]] = None,
    *,
    timeframe: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AutomationMetrics:
    """Compute metrics over pipelines, optionally restricted to a week/month/quarter window."""
    if timeframe is not None:
        if timeframe not in TIMEFRAME_DAYS:
            raise ValueError(f"Unknown timeframe: {timeframe}. Available: {list(TIMEFRAME_DAYS)}")
        if now is None:
            raise ValueError("now is required with a timeframe")
        cutoff = now - timedelta(days=TIMEFRAME_DAYS[timeframe])
        pipelines = [p for p in pipelines if p.created_at >= cutoff]

    total = len(pipelines)
    responses = sum(1 for p in pipelines if responded(p))
    interviews = sum(1 for p in pipelines if p.status in _INTERVIEWED)
    offers = sum(1 for p in pipelines if p.status in _OFFERED)
    accepted = sum(1 for p in pipelines if p.status == S.OFFER_ACCEPTED)

    response_days = [
        _days_between(p.created_at, p.last_updated)
        for p in pipelines
        if p.status == S.RESPONSE_RECEIVED
    ]
    offer_days = [
        _days_between(p.created_at, p.last_updated) for p in pipelines if p.status == S.OFFER_RECEIVED
    ]

    return AutomationMetrics(
        total_applications=total,
        response_rate=_pct(responses, total),
        interview_rate=_pct(interviews, total),
        offer_rate=_pct(offers, total),
        acceptance_rate=_pct(accepted, offers),
        average_days_to_response=_avg(response_days),
        average_days_to_offer=_avg(offer_days),
        top_industries=top_industries(pipelines, opportunities or {}),
        recommendations=recommendations(responses / total if total else 0.0),
    )
