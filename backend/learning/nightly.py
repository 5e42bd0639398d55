"""
Learning Engine — nightly batch rollup.

Runs once a day (02:00 America/Boise via Celery beat) over a snapshot of
every customer-crop record:

  1. Per key: confidence, trend, MAPE, bias-corrected prediction, activity
  2. Monthly summaries, rebuilt from daily buckets
  3. Top crops (pandas groupby over the per-key frame)
  4. One fresh DashboardSummary, written wholesale

Stats records are read without locking and never written back: the fast
path is their only writer. A key that fails to summarize is skipped,
logged and counted in `error_count`; the pass continues.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone

import pandas as pd
import structlog

from learning.confidence import activity_flag, calculate_confidence, days_since_last_order
from learning.constants import DEFAULT_PARAMS, LearningParams
from learning.forecast import apply_bias_correction
from learning.models import CustomerCropStats, DailyBucket, DashboardSummary, MonthlySummary, TopCrop
from learning.stats import trend_for
from stores.base import StatsStore

logger = structlog.get_logger()

TOP_CROPS_LIMIT = 8
WEEKLY_REVENUE_WINDOW_DAYS = 28
HEALTH_RANK = {"active": 0, "at_risk": 1, "churned": 2}


@dataclass(frozen=True)
class KeyInsight:
    customer_key: str
    crop_key: str
    crop_display_name: str | None
    count: int
    total_volume: float
    ewma: float | None
    prediction: float | None
    bias_corrected: bool
    confidence_score: int
    confidence_level: str
    trend: str
    slope: float | None
    weekly_change_pct: float | None
    mape: float | None
    activity: str
    days_since_last_order: int | None


@dataclass
class NightlyResult:
    dashboard: DashboardSummary
    insights: list[KeyInsight] = field(default_factory=list)
    monthly_summaries: list[MonthlySummary] = field(default_factory=list)
    failed_keys: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0


# ── Per key ───────────────────────────────────────────────────────────────


def compute_key_insight(
    stats: CustomerCropStats,
    now: datetime,
    params: LearningParams = DEFAULT_PARAMS,
) -> KeyInsight:
    confidence = calculate_confidence(stats, now)
    trend = trend_for(stats)
    correction = apply_bias_correction(stats.ewma, stats.running_bias, params.bias_correction_threshold)
    days_since = days_since_last_order(stats, now)

    return KeyInsight(
        customer_key=stats.customer_key,
        crop_key=stats.crop_key,
        crop_display_name=stats.crop_display_name,
        count=stats.count,
        total_volume=stats.mean * stats.count,
        ewma=stats.ewma,
        prediction=correction.adjusted,
        bias_corrected=correction.corrected,
        confidence_score=confidence.score,
        confidence_level=confidence.level,
        trend=trend.trend,
        slope=trend.slope,
        weekly_change_pct=trend.weekly_change_pct,
        mape=stats.mape,
        activity=activity_flag(stats, now),
        days_since_last_order=round(days_since) if days_since is not None else None,
    )


# ── Buckets ───────────────────────────────────────────────────────────────


def build_monthly_summaries(buckets: list[DailyBucket]) -> list[MonthlySummary]:
    """Fold daily buckets into one summary per YYYY-MM."""
    months: dict[str, dict] = {}
    for bucket in buckets:
        month = bucket.date[:7]
        agg = months.setdefault(month, {"orders": 0, "revenue": 0.0, "customers": set(), "crops": {}})
        agg["orders"] += bucket.order_count
        agg["revenue"] += bucket.total_revenue
        agg["customers"].update(bucket.customer_orders.keys())
        for crop, quantity in bucket.crop_quantities.items():
            agg["crops"][crop] = agg["crops"].get(crop, 0.0) + quantity

    return [
        MonthlySummary(
            month=month,
            total_orders=agg["orders"],
            total_revenue=round(agg["revenue"], 2),
            unique_customers=len(agg["customers"]),
            crop_quantities=agg["crops"],
            avg_order_value=round(agg["revenue"] / agg["orders"], 2) if agg["orders"] > 0 else 0.0,
        )
        for month, agg in sorted(months.items())
    ]


def average_weekly_revenue(buckets: list[DailyBucket], now: datetime) -> float:
    """Mean weekly revenue over the trailing four weeks of buckets."""
    cutoff = (now.astimezone(timezone.utc) - timedelta(days=WEEKLY_REVENUE_WINDOW_DAYS)).strftime("%Y-%m-%d")
    revenue = sum(bucket.total_revenue for bucket in buckets if bucket.date >= cutoff)
    return round(revenue / (WEEKLY_REVENUE_WINDOW_DAYS / 7), 2)


# ── Crops ─────────────────────────────────────────────────────────────────


def _combined_trend(trends: pd.Series) -> str:
    values = set(trends)
    if "increasing" in values:
        return "increasing"
    if "decreasing" in values:
        return "decreasing"
    return "stable"


def summarize_top_crops(insights_df: pd.DataFrame, limit: int = TOP_CROPS_LIMIT) -> list[TopCrop]:
    """Rank crops by lifetime volume across every customer."""
    if insights_df.empty:
        return []

    df = insights_df[insights_df["count"] > 0].copy()
    if df.empty:
        return []
    df["prediction"] = df["prediction"].fillna(df["ewma"]).fillna(0.0)

    grouped = (
        df.groupby("crop_key")
        .agg(
            display_name=("crop_display_name", "first"),
            total_volume=("total_volume", "sum"),
            ewma_total=("prediction", "sum"),
            customers=("customer_key", "nunique"),
            max_confidence=("confidence_score", "max"),
            trend=("trend", _combined_trend),
        )
        .reset_index()
        .sort_values(["total_volume", "crop_key"], ascending=[False, True])
        .head(limit)
    )

    return [
        TopCrop(
            crop_key=row.crop_key,
            display_name=row.display_name if isinstance(row.display_name, str) else None,
            total_volume=round(float(row.total_volume), 2),
            ewma_total=round(float(row.ewma_total), 2),
            customers=int(row.customers),
            max_confidence=int(row.max_confidence),
            trend=row.trend,
        )
        for row in grouped.itertuples(index=False)
    ]


def customer_health(insights: list[KeyInsight]) -> dict[str, int]:
    """
    One status per customer: the healthiest across their crops.

    A customer still ordering any crop regularly is active, even if other
    crops have lapsed.
    """
    best: dict[str, str] = {}
    for insight in insights:
        if insight.activity not in HEALTH_RANK:
            continue
        current = best.get(insight.customer_key)
        if current is None or HEALTH_RANK[insight.activity] < HEALTH_RANK[current]:
            best[insight.customer_key] = insight.activity

    health = {"active": 0, "at_risk": 0, "churned": 0}
    for status in best.values():
        health[status] += 1
    return health


# ── Rollup ────────────────────────────────────────────────────────────────


def run_nightly_rollup(
    store: StatsStore,
    tenant_id: str,
    now: datetime | None = None,
    params: LearningParams = DEFAULT_PARAMS,
) -> NightlyResult:
    started = time.monotonic()
    now = now or datetime.now(timezone.utc)
    logger.info("nightly.started", tenant_id=tenant_id, snapshot_started_at=now.isoformat())

    snapshot, unreadable = store.scan_stats()
    insights: list[KeyInsight] = []
    failed_keys: list[str] = []
    for key in unreadable:
        failed_keys.append(key)
        logger.error("nightly.key_failed", key=key, error="unreadable record", error_type="ValidationError")
    for stats in snapshot:
        try:
            insights.append(compute_key_insight(stats, now, params))
        except Exception as exc:
            key = f"{stats.customer_key}/{stats.crop_key}"
            failed_keys.append(key)
            logger.error("nightly.key_failed", key=key, error=str(exc), error_type=type(exc).__name__)

    buckets = store.list_daily_buckets()
    monthly = build_monthly_summaries(buckets)
    store.put_monthly_summaries(monthly)

    insights_df = pd.DataFrame([asdict(insight) for insight in insights])
    top_crops = summarize_top_crops(insights_df)

    confidence_distribution = {"high": 0, "medium": 0, "low": 0}
    trend_distribution: dict[str, int] = {}
    for insight in insights:
        confidence_distribution[insight.confidence_level] += 1
        trend_distribution[insight.trend] = trend_distribution.get(insight.trend, 0) + 1

    mapes = [insight.mape for insight in insights if insight.mape is not None]
    avg_mape = round(sum(mapes) / len(mapes), 2) if mapes else None
    health = customer_health(insights)

    dashboard = DashboardSummary(
        tenant_id=tenant_id,
        total_customer_crop_pairs=len(snapshot) + len(unreadable),
        keys_processed=len(insights),
        error_count=len(failed_keys),
        active_customers=health["active"],
        customer_health=health,
        confidence_distribution=confidence_distribution,
        trend_distribution=trend_distribution,
        avg_confidence=(
            round(sum(insight.confidence_score for insight in insights) / len(insights), 2) if insights else None
        ),
        avg_mape=avg_mape,
        prediction_accuracy=round(100 - avg_mape, 2) if avg_mape is not None else None,
        bias_corrected_pairs=sum(1 for insight in insights if insight.bias_corrected),
        alert_count=len(store.list_alerts(status="pending")),
        avg_weekly_revenue=average_weekly_revenue(buckets, now),
        top_crops=top_crops,
        total_daily_buckets=len(buckets),
        total_monthly_summaries=len(monthly),
        snapshot_started_at=now,
        computed_at=datetime.now(timezone.utc),
    )
    store.put_dashboard(dashboard)

    duration = round(time.monotonic() - started, 3)
    logger.info(
        "nightly.completed",
        tenant_id=tenant_id,
        keys_processed=len(insights),
        error_count=len(failed_keys),
        monthly_summaries=len(monthly),
        alert_count=dashboard.alert_count,
        duration_seconds=duration,
    )
    return NightlyResult(
        dashboard=dashboard,
        insights=insights,
        monthly_summaries=monthly,
        failed_keys=failed_keys,
        duration_seconds=duration,
    )
