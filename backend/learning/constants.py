"""
Learning Engine — Algorithm parameters and defaults.

Values are tuned for microgreens ordering patterns (weekly/biweekly
restaurant and retail orders, small tray counts). The detection
multipliers and thresholds are exposed through LearningParams so they can
be overridden per deployment instead of being treated as fixed truths.
"""

from __future__ import annotations

from dataclasses import dataclass

# EWMA alpha by ordering frequency: alpha = 2/(N+1), N = equivalent SMA window
EWMA_ALPHA = {
    "weekly": 0.25,  # ~8 week window
    "biweekly": 0.15,  # ~12 week window
    "new_customer": 0.40,  # ~4 week window, < 5 orders
}
BIWEEKLY_INTERVAL_DAYS = 10

ANOMALY_THRESHOLDS = {
    "few_orders": 3.0,  # < 10 orders (wider tolerance)
    "normal": 2.5,  # 10+ orders
    "min_orders_for_zscore": 5,  # below this, absolute bounds
    "many_orders": 10,
}

ABSOLUTE_BOUNDS = {
    "high_multiplier": 5.0,  # flag if > 5x mean
    "low_multiplier": 0.1,  # flag if < 10% of mean
}

# Four components, 25 points each
CONFIDENCE = {
    "data_threshold": 20,
    "component_weight": 25.0,
    "recency_decay_days": 84,  # 12 weeks
    "high": 70,
    "medium": 40,
}

TREND = {
    "min_orders": 4,
    "increasing_pct": 5.0,
    "decreasing_pct": -5.0,
}

YIELD = {
    "outlier_zscore": 3.0,
    "min_harvests_for_outlier": 5,
    "min_harvests_for_buffer": 3,
    "ewma_alpha": 0.3,
    "default_buffer_pct": 15,
    "buffer_cv_multiplier": 1.5,
    "min_buffer_pct": 5,
    "max_buffer_pct": 30,
}

ACCURACY = {
    "bias_alpha": 0.3,
    "bias_correction_threshold": 10.0,
}

ACTIVITY = {
    "active_days": 30,
    "churned_days": 84,
    "at_risk_interval_multiple": 2.0,
}

UNKNOWN_KEY = "unknown"


@dataclass(frozen=True)
class LearningParams:
    """Tunable detection and correction parameters."""

    bias_correction_threshold: float = ACCURACY["bias_correction_threshold"]
    anomaly_high_multiplier: float = ABSOLUTE_BOUNDS["high_multiplier"]
    anomaly_low_multiplier: float = ABSOLUTE_BOUNDS["low_multiplier"]
    yield_outlier_zscore: float = YIELD["outlier_zscore"]

    @classmethod
    def from_settings(cls, settings) -> "LearningParams":
        return cls(
            bias_correction_threshold=settings.bias_correction_threshold,
            anomaly_high_multiplier=settings.anomaly_high_multiplier,
            anomaly_low_multiplier=settings.anomaly_low_multiplier,
            yield_outlier_zscore=settings.yield_outlier_zscore,
        )


DEFAULT_PARAMS = LearningParams()
