"""
Confidence Scoring — composite 0-100 score per customer-crop prediction.

Four components, each capped to 0-25:
  1. Data quantity: min(count / 20, 1) × 25
  2. Consistency:   25 × (1 − min(CV, 1)),  CV = stddev / mean
  3. Recency:       25 × max(0, 1 − days_since_last / 84)
  4. Regularity:    25 × (1 − min(interval CV, 1))

Banding (high ≥ 70, medium ≥ 40) decides whether a prediction is shown to
an operator as actionable.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from learning.constants import ACTIVITY, CONFIDENCE
from learning.models import CustomerCropStats
from learning.stats import days_between, get_stddev, round_half_up


@dataclass(frozen=True)
class ConfidenceResult:
    score: int
    level: str  # high | medium | low
    components: dict[str, float]


def _clamp_component(value: float) -> float:
    return min(CONFIDENCE["component_weight"], max(0.0, value))


def confidence_level(score: float) -> str:
    if score >= CONFIDENCE["high"]:
        return "high"
    if score >= CONFIDENCE["medium"]:
        return "medium"
    return "low"


def days_since_last_order(stats: CustomerCropStats, now: datetime | None = None) -> float | None:
    if stats.last_order_date is None:
        return None
    now = now or datetime.now(timezone.utc)
    return days_between(stats.last_order_date, now)


def calculate_confidence(stats: CustomerCropStats, now: datetime | None = None) -> ConfidenceResult:
    weight = CONFIDENCE["component_weight"]

    data_score = _clamp_component(min(stats.count / CONFIDENCE["data_threshold"], 1.0) * weight)

    if stats.count >= 2 and stats.mean > 0:
        cv = get_stddev(stats.count, stats.m2) / stats.mean
        consistency_score = _clamp_component(weight * (1 - min(cv, 1.0)))
    else:
        consistency_score = 0.0

    days_since = days_since_last_order(stats, now)
    if days_since is None:
        recency_score = 0.0
    else:
        recency_score = _clamp_component(weight * (1 - days_since / CONFIDENCE["recency_decay_days"]))

    # A single interval has no spread yet, so regularity needs at least two
    avg_interval = stats.avg_days_between_orders
    if stats.interval_count >= 2 and avg_interval and avg_interval > 0:
        interval_cv = (stats.interval_stddev or 0.0) / avg_interval
        regularity_score = _clamp_component(weight * (1 - min(interval_cv, 1.0)))
    else:
        regularity_score = 0.0

    total = round_half_up(data_score + consistency_score + recency_score + regularity_score)
    total = min(100, max(0, total))

    return ConfidenceResult(
        score=total,
        level=confidence_level(total),
        components={
            "data": round(data_score, 2),
            "consistency": round(consistency_score, 2),
            "recency": round(recency_score, 2),
            "regularity": round(regularity_score, 2),
        },
    )


def activity_flag(stats: CustomerCropStats, now: datetime | None = None) -> str:
    """active | at_risk | churned | unknown, from the gap since the last order."""
    days_since = days_since_last_order(stats, now)
    if days_since is None:
        return "unknown"
    if days_since > ACTIVITY["churned_days"]:
        return "churned"
    if days_since > ACTIVITY["active_days"]:
        return "at_risk"
    # Inside the active window, a customer overdue by 2x their usual cadence is still at risk
    avg_interval = stats.avg_days_between_orders
    if stats.interval_count >= 2 and avg_interval and days_since > ACTIVITY["at_risk_interval_multiple"] * avg_interval:
        return "at_risk"
    return "active"
