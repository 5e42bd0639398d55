"""
Yield profiles — harvest tracking and production buffer calibration.

Consistent yields earn a tighter production buffer (less waste); volatile
yields widen it, capped at 30%:

    buffer = clamp(round(1.5 × CV × 100), 5, 30),  CV = stddev / mean

Until three harvests exist the fixed 15% default is used.
"""

from __future__ import annotations

from learning.constants import YIELD
from learning.forecast import update_ewma
from learning.models import HarvestEvent, YieldProfile
from learning.stats import get_stddev, round_half_up, welford_update


def calculate_production_buffer(yield_count: int, yield_mean: float, yield_stddev: float) -> int:
    """Recommended production buffer percentage from yield variance."""
    if yield_count < YIELD["min_harvests_for_buffer"]:
        return YIELD["default_buffer_pct"]
    cv = yield_stddev / yield_mean if yield_mean > 0 else 0.0
    raw = round_half_up(cv * 100 * YIELD["buffer_cv_multiplier"])
    return int(min(YIELD["max_buffer_pct"], max(YIELD["min_buffer_pct"], raw)))


def buffer_for(profile: YieldProfile) -> int:
    return calculate_production_buffer(profile.yield_count, profile.yield_mean, profile.yield_stddev)


def default_yield_profile(event: HarvestEvent) -> YieldProfile:
    return YieldProfile(
        crop_key=event.crop_key,
        crop_display_name=event.crop_display_name,
        profile_yield_per_tray=event.profile_yield_per_tray or 0.0,
        adjusted_buffer_percent=YIELD["default_buffer_pct"],
    )


def apply_harvest(profile: YieldProfile, event: HarvestEvent) -> YieldProfile:
    """Fold one (non-outlier) harvest into the crop's yield profile."""
    count, mean, m2 = welford_update(profile.yield_count, profile.yield_mean, profile.yield_m2, event.yield_per_tray)
    stddev = get_stddev(count, m2)

    last_harvest = profile.last_harvest_date
    if last_harvest is None or event.harvest_date > last_harvest:
        last_harvest = event.harvest_date

    return profile.model_copy(
        update={
            "crop_display_name": event.crop_display_name or profile.crop_display_name,
            "profile_yield_per_tray": (
                event.profile_yield_per_tray
                if event.profile_yield_per_tray is not None
                else profile.profile_yield_per_tray
            ),
            "yield_count": count,
            "yield_mean": mean,
            "yield_m2": m2,
            "yield_stddev": stddev,
            "actual_yield_estimate": update_ewma(profile.actual_yield_estimate, event.yield_per_tray, YIELD["ewma_alpha"]),
            "adjusted_buffer_percent": calculate_production_buffer(count, mean, stddev),
            "last_harvest_date": last_harvest,
        }
    )
