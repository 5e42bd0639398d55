"""
Running statistics — Welford moments, order intervals, and trend.

Pure functions: no store access, no side effects. Every update is O(1)
and only needs the accumulators already on the record, so the full order
history never has to be rescanned.

  - Welford: numerically stable running mean / sample variance
  - Interval tracker: Welford over days between consecutive orders
  - Trend: incremental least-squares slope of quantity vs. order index
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime

from learning.constants import TREND
from learning.models import CustomerCropStats

SECONDS_PER_DAY = 86400.0


# ── Welford ─────────────────────────────────────────────────────────────────


def welford_update(count: int, mean: float, m2: float, value: float) -> tuple[int, float, float]:
    """Fold one observation into (count, mean, m2)."""
    new_count = count + 1
    delta = value - mean
    new_mean = mean + delta / new_count
    delta2 = value - new_mean
    return new_count, new_mean, m2 + delta * delta2


def get_stddev(count: int, m2: float) -> float:
    """Sample standard deviation; 0 with fewer than two observations."""
    if count < 2:
        return 0.0
    return math.sqrt(max(m2, 0.0) / (count - 1))


# ── Interval tracking ───────────────────────────────────────────────────────


def days_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / SECONDS_PER_DAY


def update_interval_stats(stats: CustomerCropStats, gap_days: float) -> dict[str, float | int]:
    """Welford update of the days-between-orders accumulators."""
    count, mean, m2 = welford_update(
        stats.interval_count,
        stats.avg_days_between_orders or 0.0,
        stats.interval_m2,
        gap_days,
    )
    return {
        "interval_count": count,
        "avg_days_between_orders": mean,
        "interval_m2": m2,
        "interval_stddev": get_stddev(count, m2),
    }


# ── Trend (incremental linear regression) ──────────────────────────────────


@dataclass(frozen=True)
class TrendResult:
    trend: str  # increasing | decreasing | stable | insufficient_data
    slope: float | None
    weekly_change_pct: float | None


def update_regression(stats: CustomerCropStats, x: int, y: float) -> dict[str, float]:
    return {
        "sum_x": stats.sum_x + x,
        "sum_y": stats.sum_y + y,
        "sum_xy": stats.sum_xy + x * y,
        "sum_x2": stats.sum_x2 + x * x,
    }


def get_trend(
    n: int,
    sum_x: float,
    sum_y: float,
    sum_xy: float,
    sum_x2: float,
) -> TrendResult:
    """
    Classify demand direction from the regression sums.

    slope = (n·Σxy − Σx·Σy) / (n·Σx² − (Σx)²)
    weekly_change_pct = slope / mean × 100

    Under TREND["min_orders"] observations no slope is reported at all,
    rather than a 0 that would look like a confident "stable".
    """
    if n < TREND["min_orders"]:
        return TrendResult(trend="insufficient_data", slope=None, weekly_change_pct=None)

    denominator = n * sum_x2 - sum_x * sum_x
    if denominator == 0:
        return TrendResult(trend="stable", slope=0.0, weekly_change_pct=0.0)

    slope = (n * sum_xy - sum_x * sum_y) / denominator
    mean = sum_y / n
    change_pct = (slope / mean) * 100 if mean != 0 else 0.0

    if change_pct > TREND["increasing_pct"]:
        trend = "increasing"
    elif change_pct < TREND["decreasing_pct"]:
        trend = "decreasing"
    else:
        trend = "stable"

    return TrendResult(trend=trend, slope=round(slope, 2), weekly_change_pct=round(change_pct, 1))


def trend_for(stats: CustomerCropStats) -> TrendResult:
    return get_trend(stats.count, stats.sum_x, stats.sum_y, stats.sum_xy, stats.sum_x2)


def round_half_up(value: float) -> int:
    """Half-up rounding for non-negative values."""
    return int(math.floor(value + 0.5))
