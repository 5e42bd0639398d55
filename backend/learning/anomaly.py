"""
Anomaly Detection — order quantities and harvest yields.

Two regimes, selected by how many observations the key already has:

  - Cold start (< 5 orders): absolute bounds, flag if the quantity is more
    than 5x or less than 10% of the running mean. Variance is meaningless
    with this little data.
  - Steady state (5+ orders): z-score against the running mean / stddev,
    threshold 3.0 below 10 orders and 2.5 from 10 on.

Detection always runs against the distribution as it stood *before* the
observation is folded in. Every result carries an expected range so the
alert can say why a value was flagged.
"""

from __future__ import annotations

from dataclasses import dataclass

from learning.constants import ANOMALY_THRESHOLDS, DEFAULT_PARAMS, YIELD, LearningParams
from learning.models import CustomerCropStats, YieldProfile
from learning.stats import get_stddev


@dataclass(frozen=True)
class ExpectedRange:
    low: float
    high: float

    def as_dict(self) -> dict[str, float]:
        return {"low": self.low, "high": self.high}


@dataclass(frozen=True)
class AnomalyResult:
    is_anomaly: bool
    method: str  # absolute_bounds | zscore
    confidence: str  # low | medium | high
    z_score: float | None
    expected_range: ExpectedRange
    threshold: float | None = None


def zscore_threshold(count: int) -> float:
    if count < ANOMALY_THRESHOLDS["many_orders"]:
        return ANOMALY_THRESHOLDS["few_orders"]
    return ANOMALY_THRESHOLDS["normal"]


def check_order_anomaly(
    quantity: float,
    stats: CustomerCropStats,
    params: LearningParams = DEFAULT_PARAMS,
) -> AnomalyResult:
    """Assess one order quantity against the pair's pre-update statistics."""
    mean = stats.mean

    if stats.count < ANOMALY_THRESHOLDS["min_orders_for_zscore"]:
        high = mean * params.anomaly_high_multiplier
        low = mean * params.anomaly_low_multiplier
        # No informative baseline while the mean is still 0
        is_anomaly = mean > 0 and (quantity > high or quantity < low)
        return AnomalyResult(
            is_anomaly=is_anomaly,
            method="absolute_bounds",
            confidence="low",
            z_score=None,
            expected_range=ExpectedRange(low=round(max(low, 0.0), 2), high=round(max(high, 0.0), 2)),
        )

    stddev = get_stddev(stats.count, stats.m2)
    if stddev == 0:
        return AnomalyResult(
            is_anomaly=False,
            method="zscore",
            confidence="low",
            z_score=0.0,
            expected_range=ExpectedRange(low=round(max(mean, 0.0), 2), high=round(mean, 2)),
        )

    threshold = zscore_threshold(stats.count)
    z = (quantity - mean) / stddev
    return AnomalyResult(
        is_anomaly=abs(z) > threshold,
        method="zscore",
        confidence="high" if stats.count >= ANOMALY_THRESHOLDS["many_orders"] else "medium",
        z_score=round(z, 2),
        expected_range=ExpectedRange(
            low=max(0.0, round(mean - threshold * stddev, 2)),
            high=round(mean + threshold * stddev, 2),
        ),
        threshold=threshold,
    )


def check_yield_outlier(
    yield_per_tray: float,
    profile: YieldProfile,
    params: LearningParams = DEFAULT_PARAMS,
) -> AnomalyResult:
    """
    Flag a harvest whose yield per tray is far outside the crop's history.

    Only active once YIELD["min_harvests_for_outlier"] harvests exist.
    """
    threshold = params.yield_outlier_zscore
    mean = profile.yield_mean
    if profile.yield_count < YIELD["min_harvests_for_outlier"]:
        return AnomalyResult(
            is_anomaly=False,
            method="zscore",
            confidence="low",
            z_score=None,
            expected_range=ExpectedRange(low=0.0, high=round(max(mean, 0.0), 2)),
            threshold=threshold,
        )

    stddev = get_stddev(profile.yield_count, profile.yield_m2)
    if stddev == 0:
        return AnomalyResult(
            is_anomaly=False,
            method="zscore",
            confidence="low",
            z_score=0.0,
            expected_range=ExpectedRange(low=round(max(mean, 0.0), 2), high=round(mean, 2)),
            threshold=threshold,
        )

    z = (yield_per_tray - mean) / stddev
    return AnomalyResult(
        is_anomaly=abs(z) > threshold,
        method="zscore",
        confidence="high" if profile.yield_count >= ANOMALY_THRESHOLDS["many_orders"] else "medium",
        z_score=round(z, 2),
        expected_range=ExpectedRange(
            low=max(0.0, round(mean - threshold * stddev, 2)),
            high=round(mean + threshold * stddev, 2),
        ),
        threshold=threshold,
    )
