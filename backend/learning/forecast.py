"""
EWMA demand predictor with bias feedback.

The stored EWMA is always the uncorrected predictor state. Bias correction
is applied only when a prediction is surfaced (API payloads, alerts, the
nightly rollup) and is never written back into the record.
"""

from __future__ import annotations

from dataclasses import dataclass

from learning.constants import ACCURACY, ANOMALY_THRESHOLDS, BIWEEKLY_INTERVAL_DAYS, EWMA_ALPHA
from learning.models import CustomerCropStats


def update_ewma(previous: float | None, value: float, alpha: float = EWMA_ALPHA["weekly"]) -> float:
    """First observation is taken verbatim; afterwards alpha·x + (1−alpha)·prev."""
    if previous is None:
        return value
    return alpha * value + (1 - alpha) * previous


def select_alpha(stats: CustomerCropStats) -> float:
    """Pick the smoothing factor from the record as it stood before this order."""
    if stats.count < ANOMALY_THRESHOLDS["min_orders_for_zscore"]:
        return EWMA_ALPHA["new_customer"]
    if stats.avg_days_between_orders and stats.avg_days_between_orders > BIWEEKLY_INTERVAL_DAYS:
        return EWMA_ALPHA["biweekly"]
    return EWMA_ALPHA["weekly"]


def update_prediction_accuracy(actual: float, predicted: float | None, stats: CustomerCropStats) -> dict[str, float | int]:
    """
    Score the previous EWMA against the order that just arrived.

    Returns only the fields that change; an empty dict when there was no
    usable prediction (no prior EWMA, a zero EWMA, or a non-positive actual).
    """
    if not predicted or actual <= 0:
        return {}

    abs_pct_error = abs(actual - predicted) / actual * 100
    signed_error = actual - predicted  # positive = under-predicted
    alpha = ACCURACY["bias_alpha"]

    return {
        "total_predictions": stats.total_predictions + 1,
        "sum_abs_percent_error": stats.sum_abs_percent_error + abs_pct_error,
        "running_bias": alpha * signed_error + (1 - alpha) * stats.running_bias,
    }


@dataclass(frozen=True)
class BiasCorrection:
    adjusted: float | None
    corrected: bool
    bias: float = 0.0


def apply_bias_correction(
    ewma: float | None,
    running_bias: float,
    threshold: float = ACCURACY["bias_correction_threshold"],
) -> BiasCorrection:
    """Scale the EWMA by the running bias once drift exceeds the threshold."""
    if not ewma or abs(running_bias or 0.0) <= threshold:
        return BiasCorrection(adjusted=ewma, corrected=False, bias=running_bias or 0.0)
    return BiasCorrection(adjusted=ewma * (1 + running_bias / 100), corrected=True, bias=running_bias)
