"""
Learning Engine — event-driven fast path.

Per order line (lines of the same crop are aggregated at normalization):

    resolve key → key lock → load or default-construct
      → anomaly check against the PRE-update record
      → moments, interval, trend, EWMA, bias (learning.customer_stats)
      → persist → alert if anomalous
    then, under a date-scoped lock, the order's daily bucket.

Per harvest:

    crop lock → load or default → outlier check
      → fold into the yield profile, or raise a yield_outlier alert

Lock timeouts are retried a bounded number of times, then the line is
recorded as failed. Per-event problems never raise out of process_*; they
come back in the result and are counted in FastPathMetrics.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar

import redis
import structlog

from alerts.engine import (
    DismissResult,
    build_order_anomaly_alert,
    build_yield_outlier_alert,
    dismiss_alerts,
    publish_alerts,
)
from core.config import Settings, get_settings
from integrations.order_events import normalize_harvest, normalize_order
from learning.anomaly import check_order_anomaly, check_yield_outlier
from learning.confidence import activity_flag, calculate_confidence
from learning.constants import YIELD, LearningParams
from learning.customer_stats import apply_order, default_stats, with_identity
from learning.errors import KeyLockTimeout, MalformedEventError, StoreError
from learning.forecast import apply_bias_correction
from learning.keys import stats_key
from learning.models import Alert, DailyBucket, HarvestEvent, OrderEvent, OrderLine
from learning.stats import trend_for
from learning.yield_profile import apply_harvest, buffer_for, default_yield_profile
from stores.base import StatsStore

logger = structlog.get_logger()

T = TypeVar("T")


# ── Results ───────────────────────────────────────────────────────────────


class FastPathMetrics:
    """Thread-safe counters for the event path."""

    def __init__(self):
        self._lock = threading.Lock()
        self.processed = 0
        self.skipped = 0
        self.failed = 0
        self.anomalies = 0

    def record(self, processed: int = 0, skipped: int = 0, failed: int = 0, anomalies: int = 0) -> None:
        with self._lock:
            self.processed += processed
            self.skipped += skipped
            self.failed += failed
            self.anomalies += anomalies

    @property
    def error_rate(self) -> float:
        attempted = self.processed + self.failed
        return self.failed / attempted if attempted else 0.0

    def as_dict(self) -> dict[str, float]:
        return {
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "anomalies": self.anomalies,
            "error_rate": round(self.error_rate, 4),
        }


@dataclass
class OrderResult:
    order_id: str | None = None
    customer_key: str | None = None
    lines_processed: int = 0
    lines_failed: int = 0
    alerts: list[Alert] = field(default_factory=list)
    failed_crops: list[str] = field(default_factory=list)
    bucket_updated: bool = False
    skipped: bool = False
    skip_reason: str | None = None

    @property
    def anomalies_detected(self) -> int:
        return len(self.alerts)


@dataclass
class HarvestResult:
    crop_key: str | None = None
    harvest_id: str | None = None
    yield_per_tray: float | None = None
    outlier: bool = False
    z_score: float | None = None
    actual_yield_estimate: float | None = None
    buffer_percent: int | None = None
    alert: Alert | None = None
    failed: bool = False
    skipped: bool = False
    skip_reason: str | None = None


@dataclass(frozen=True)
class Prediction:
    customer_key: str
    crop_key: str
    ewma: float | None
    bias_corrected_prediction: float | None
    bias_corrected: bool
    confidence_score: int
    confidence_level: str
    trend: str
    slope: float | None
    weekly_change_pct: float | None
    mape: float | None
    activity: str

    def as_dict(self) -> dict[str, Any]:
        """Presented payload; rounding happens here and nowhere upstream."""
        return {
            "customer_key": self.customer_key,
            "crop_key": self.crop_key,
            "ewma": round(self.ewma, 2) if self.ewma is not None else None,
            "bias_corrected_prediction": (
                round(self.bias_corrected_prediction, 2) if self.bias_corrected_prediction is not None else None
            ),
            "bias_corrected": self.bias_corrected,
            "confidence_score": self.confidence_score,
            "confidence_level": self.confidence_level,
            "trend": self.trend,
            "slope": self.slope,
            "weekly_change_pct": self.weekly_change_pct,
            "mape": round(self.mape, 1) if self.mape is not None else None,
            "activity": self.activity,
        }


def daily_bucket_key(order_date: datetime) -> str:
    return order_date.astimezone(timezone.utc).strftime("%Y-%m-%d")


# ── Engine ────────────────────────────────────────────────────────────────


class LearningEngine:
    """
    Owns the fast path over one StatsStore.

    Usage:
        engine = LearningEngine(get_store(settings), settings=settings)
        result = engine.process_order_payload(raw_doc, source="shopifyOrders")
    """

    def __init__(
        self,
        store: StatsStore,
        settings: Settings | None = None,
        params: LearningParams | None = None,
        metrics: FastPathMetrics | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.params = params or LearningParams.from_settings(self.settings)
        self.metrics = metrics or FastPathMetrics()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ── Locking ────────────────────────────────────────────────────────

    def _locked(self, key: str, fn: Callable[[], T]) -> T:
        """Run fn under the key lock, retrying lock timeouts a bounded number of times."""
        attempt = 0
        while True:
            attempt += 1
            try:
                with self.store.key_lock(key, timeout=self.settings.key_lock_timeout_seconds):
                    return fn()
            except KeyLockTimeout:
                if attempt > self.settings.key_lock_max_retries:
                    raise
                logger.info("learning.key_lock_retry", key=key, attempt=attempt)

    # ── Orders ─────────────────────────────────────────────────────────

    def process_order_payload(self, raw: dict[str, Any], source: str = "orders", emit_alerts: bool = True) -> OrderResult:
        """Normalize a raw order document, then run the fast path on it."""
        try:
            event = normalize_order(raw, source=source)
        except MalformedEventError as exc:
            self.metrics.record(skipped=1)
            logger.warning("learning.order_skipped", source=source, reason=exc.reason, detail=exc.detail)
            return OrderResult(order_id=raw.get("id") if isinstance(raw, dict) else None, skipped=True, skip_reason=exc.reason)
        return self.process_order(event, emit_alerts=emit_alerts)

    def process_order(self, event: OrderEvent, emit_alerts: bool = True) -> OrderResult:
        result = OrderResult(order_id=event.order_id, customer_key=event.customer_key)

        for line in event.lines:
            try:
                alert = self._locked(
                    f"stats:{stats_key(event.customer_key, line.crop_key)}",
                    lambda line=line: self._update_line(event, line, emit_alerts),
                )
            except (KeyLockTimeout, StoreError) as exc:
                result.lines_failed += 1
                result.failed_crops.append(line.crop_key)
                logger.error(
                    "learning.order_line_failed",
                    order_id=event.order_id,
                    customer_key=event.customer_key,
                    crop_key=line.crop_key,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue

            result.lines_processed += 1
            if alert is not None:
                result.alerts.append(alert)

        try:
            self._locked(f"daily:{daily_bucket_key(event.order_date)}", lambda: self._update_daily_bucket(event))
            result.bucket_updated = True
        except (KeyLockTimeout, StoreError) as exc:
            logger.error("learning.daily_bucket_failed", order_id=event.order_id, error=str(exc))

        self.metrics.record(
            processed=result.lines_processed,
            failed=result.lines_failed,
            anomalies=len(result.alerts),
        )
        if result.alerts:
            self._publish(result.alerts)

        logger.info(
            "learning.order_processed",
            order_id=event.order_id,
            source=event.source,
            customer_key=event.customer_key,
            lines_processed=result.lines_processed,
            lines_failed=result.lines_failed,
            anomalies=len(result.alerts),
        )
        return result

    def _update_line(self, event: OrderEvent, line: OrderLine, emit_alerts: bool) -> Alert | None:
        stats = self.store.get_stats(event.customer_key, line.crop_key)
        if stats is None:
            stats = default_stats(event, line)

        # Detection and the surfaced expectation both use the pre-update record
        anomaly = check_order_anomaly(line.quantity, stats, self.params)
        expected = apply_bias_correction(stats.ewma, stats.running_bias, self.params.bias_correction_threshold)
        pre_update_mean = stats.mean

        updated = with_identity(apply_order(stats, line.quantity, event.order_date), event, line)
        self.store.put_stats(updated)

        if not anomaly.is_anomaly:
            return None

        logger.info(
            "learning.anomaly_detected",
            order_id=event.order_id,
            customer_key=event.customer_key,
            crop_key=line.crop_key,
            quantity=line.quantity,
            method=anomaly.method,
            z_score=anomaly.z_score,
            expected_range=anomaly.expected_range.as_dict(),
        )
        if not emit_alerts:
            return None

        alert = build_order_anomaly_alert(event, line, anomaly, pre_update_mean, expected.adjusted)
        self.store.put_alert(alert)
        return alert

    def _update_daily_bucket(self, event: OrderEvent) -> None:
        date = daily_bucket_key(event.order_date)
        bucket = self.store.get_daily_bucket(date) or DailyBucket(date=date)

        crop_quantities = dict(bucket.crop_quantities)
        for line in event.lines:
            crop_quantities[line.crop_key] = crop_quantities.get(line.crop_key, 0.0) + line.quantity
        customer_orders = dict(bucket.customer_orders)
        customer_orders[event.customer_key] = customer_orders.get(event.customer_key, 0) + 1

        self.store.put_daily_bucket(
            bucket.model_copy(
                update={
                    "order_count": bucket.order_count + 1,
                    "total_revenue": bucket.total_revenue + event.total,
                    "crop_quantities": crop_quantities,
                    "customer_orders": customer_orders,
                }
            )
        )

    # ── Harvests ───────────────────────────────────────────────────────

    def process_harvest_payload(self, raw: dict[str, Any], emit_alerts: bool = True) -> HarvestResult:
        try:
            event = normalize_harvest(raw)
        except MalformedEventError as exc:
            self.metrics.record(skipped=1)
            logger.warning("learning.harvest_skipped", reason=exc.reason, detail=exc.detail)
            return HarvestResult(skipped=True, skip_reason=exc.reason)
        return self.process_harvest(event, emit_alerts=emit_alerts)

    def process_harvest(self, event: HarvestEvent, emit_alerts: bool = True) -> HarvestResult:
        try:
            result = self._locked(f"yield:{event.crop_key}", lambda: self._update_yield(event, emit_alerts))
        except (KeyLockTimeout, StoreError) as exc:
            self.metrics.record(failed=1)
            logger.error(
                "learning.harvest_failed",
                harvest_id=event.harvest_id,
                crop_key=event.crop_key,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return HarvestResult(crop_key=event.crop_key, harvest_id=event.harvest_id, failed=True)

        self.metrics.record(processed=1, anomalies=1 if result.outlier else 0)
        if result.alert is not None:
            self._publish([result.alert])
        logger.info(
            "learning.harvest_processed",
            harvest_id=event.harvest_id,
            crop_key=event.crop_key,
            yield_per_tray=round(event.yield_per_tray, 2),
            outlier=result.outlier,
            buffer_percent=result.buffer_percent,
        )
        return result

    def _update_yield(self, event: HarvestEvent, emit_alerts: bool) -> HarvestResult:
        profile = self.store.get_yield_profile(event.crop_key) or default_yield_profile(event)
        outlier = check_yield_outlier(event.yield_per_tray, profile, self.params)

        if outlier.is_anomaly:
            alert = None
            if emit_alerts:
                alert = build_yield_outlier_alert(event, profile, outlier)
                self.store.put_alert(alert)
            logger.info(
                "learning.yield_outlier_detected",
                harvest_id=event.harvest_id,
                crop_key=event.crop_key,
                yield_per_tray=round(event.yield_per_tray, 2),
                z_score=outlier.z_score,
            )
            return HarvestResult(
                crop_key=event.crop_key,
                harvest_id=event.harvest_id,
                yield_per_tray=event.yield_per_tray,
                outlier=True,
                z_score=outlier.z_score,
                actual_yield_estimate=profile.actual_yield_estimate,
                buffer_percent=buffer_for(profile),
                alert=alert,
            )

        updated = apply_harvest(profile, event)
        self.store.put_yield_profile(updated)
        return HarvestResult(
            crop_key=event.crop_key,
            harvest_id=event.harvest_id,
            yield_per_tray=event.yield_per_tray,
            z_score=outlier.z_score,
            actual_yield_estimate=updated.actual_yield_estimate,
            buffer_percent=updated.adjusted_buffer_percent,
        )

    # ── Reads ──────────────────────────────────────────────────────────

    def get_prediction(self, customer_key: str, crop_key: str, now: datetime | None = None) -> Prediction | None:
        """Bias-corrected prediction for one pair; None when the pair has no history."""
        stats = self.store.get_stats(customer_key, crop_key)
        if stats is None:
            return None

        now = now or self._clock()
        correction = apply_bias_correction(stats.ewma, stats.running_bias, self.params.bias_correction_threshold)
        confidence = calculate_confidence(stats, now)
        trend = trend_for(stats)

        return Prediction(
            customer_key=customer_key,
            crop_key=crop_key,
            ewma=stats.ewma,
            bias_corrected_prediction=correction.adjusted,
            bias_corrected=correction.corrected,
            confidence_score=confidence.score,
            confidence_level=confidence.level,
            trend=trend.trend,
            slope=trend.slope,
            weekly_change_pct=trend.weekly_change_pct,
            mape=stats.mape,
            activity=activity_flag(stats, now),
        )

    def get_yield_buffer(self, crop_key: str) -> int:
        """Recommended production buffer percent; the default until the crop has a profile."""
        profile = self.store.get_yield_profile(crop_key)
        if profile is None:
            return YIELD["default_buffer_pct"]
        return buffer_for(profile)

    # ── Alerts ─────────────────────────────────────────────────────────

    def dismiss_alerts(
        self,
        alert_id: str | None = None,
        alert_ids: list[str] | None = None,
        dismiss_all: bool = False,
    ) -> DismissResult:
        return dismiss_alerts(self.store, alert_id=alert_id, alert_ids=alert_ids, dismiss_all=dismiss_all, now=self._clock())

    def _publish(self, alerts: list[Alert]) -> None:
        if not self.settings.alert_publish_enabled:
            return
        try:
            publish_alerts(alerts, tenant_id=self.settings.tenant_id, redis_url=self.settings.redis_url)
        except redis.RedisError as exc:
            logger.warning("alerts.publish_failed", count=len(alerts), error=str(exc))
