"""
Learning Engine Workers — event fast path, nightly rollup, backfill.

  1. process_order_event / process_harvest_event: one raw document per
     task. Not retried; per-line failures are logged and counted.
  2. run_nightly_stats: the 02:00 rollup, retried on store failures.
  3. dismiss_alerts / backfill_orders: operator actions.

Schedule: See celery_app.py beat_schedule
"""

from typing import Any

import redis
import structlog

from core.config import get_settings
from learning.backfill import backfill_orders as run_backfill
from learning.constants import LearningParams
from learning.engine import FastPathMetrics, LearningEngine
from learning.errors import StoreError
from learning.nightly import run_nightly_rollup
from stores.base import get_store
from workers.celery_app import celery_app

logger = structlog.get_logger()

_settings = get_settings()

# Per worker process, so error_rate covers everything this worker handled
fast_path_metrics = FastPathMetrics()


def _build_engine() -> LearningEngine:
    settings = get_settings()
    return LearningEngine(get_store(settings), settings=settings, metrics=fast_path_metrics)


@celery_app.task(
    name="workers.learning.process_order_event",
    bind=True,
    max_retries=0,
    acks_late=True,
)
def process_order_event(self, raw_order: dict[str, Any], source: str = "orders"):
    """Run one ingested order through the fast path."""
    run_id = self.request.id or "manual"
    engine = _build_engine()
    result = engine.process_order_payload(raw_order, source=source)

    if result.skipped:
        return {"status": "skipped", "reason": result.skip_reason, "run_id": run_id}

    return {
        "status": "success" if result.lines_failed == 0 else "partial",
        "order_id": result.order_id,
        "customer_key": result.customer_key,
        "lines_processed": result.lines_processed,
        "lines_failed": result.lines_failed,
        "anomalies_detected": result.anomalies_detected,
        "alert_ids": [alert.alert_id for alert in result.alerts],
        "error_rate": round(fast_path_metrics.error_rate, 4),
        "run_id": run_id,
    }


@celery_app.task(
    name="workers.learning.process_harvest_event",
    bind=True,
    max_retries=0,
    acks_late=True,
)
def process_harvest_event(self, raw_harvest: dict[str, Any]):
    """Fold one harvest into its crop's yield profile (or flag it)."""
    run_id = self.request.id or "manual"
    engine = _build_engine()
    result = engine.process_harvest_payload(raw_harvest)

    if result.skipped:
        return {"status": "skipped", "reason": result.skip_reason, "run_id": run_id}
    if result.failed:
        return {"status": "failed", "crop_key": result.crop_key, "run_id": run_id}

    return {
        "status": "success",
        "crop_key": result.crop_key,
        "outlier": result.outlier,
        "z_score": result.z_score,
        "yield_per_tray": round(result.yield_per_tray, 2) if result.yield_per_tray is not None else None,
        "buffer_percent": result.buffer_percent,
        "alert_id": result.alert.alert_id if result.alert else None,
        "run_id": run_id,
    }


@celery_app.task(
    name="workers.learning.run_nightly_stats",
    bind=True,
    max_retries=_settings.nightly_max_retries,
    default_retry_delay=60,
    time_limit=_settings.nightly_time_limit_seconds,
    acks_late=True,
)
def run_nightly_stats(self, tenant_id: str | None = None):
    """
    Nightly job: rebuild confidence/trend/MAPE summaries and the dashboard.

    Per-key failures are absorbed by the rollup itself; only a store
    failure (the whole pass is unusable) triggers a retry.
    """
    run_id = self.request.id or "manual"
    settings = get_settings()
    tenant_id = tenant_id or settings.tenant_id
    logger.info("nightly.task_started", tenant_id=tenant_id, run_id=run_id)

    try:
        store = get_store(settings)
        result = run_nightly_rollup(store, tenant_id=tenant_id, params=LearningParams.from_settings(settings))
    except (StoreError, redis.RedisError) as exc:
        logger.error("nightly.failed", tenant_id=tenant_id, run_id=run_id, error=str(exc))
        raise self.retry(exc=exc)

    return {
        "status": "success" if not result.failed_keys else "partial",
        "tenant_id": tenant_id,
        "keys_processed": result.dashboard.keys_processed,
        "error_count": result.dashboard.error_count,
        "monthly_summaries": len(result.monthly_summaries),
        "alert_count": result.dashboard.alert_count,
        "duration_seconds": result.duration_seconds,
        "run_id": run_id,
    }


@celery_app.task(
    name="workers.learning.dismiss_alerts",
    bind=True,
    max_retries=0,
)
def dismiss_alerts(
    self,
    alert_id: str | None = None,
    alert_ids: list[str] | None = None,
    dismiss_all: bool = False,
):
    engine = _build_engine()
    result = engine.dismiss_alerts(alert_id=alert_id, alert_ids=alert_ids, dismiss_all=dismiss_all)
    return {
        "status": "success",
        "dismissed": result.dismissed,
        "already_dismissed": result.already_dismissed,
        "missing": result.missing,
        "run_id": self.request.id or "manual",
    }


@celery_app.task(
    name="workers.learning.backfill_orders",
    bind=True,
    max_retries=0,
    acks_late=True,
)
def backfill_orders(self, collections: dict[str, list[dict[str, Any]]]):
    """Drop order-derived records and replay the full order history."""
    run_id = self.request.id or "manual"
    logger.info("backfill.task_started", run_id=run_id, sources=sorted(collections))
    result = run_backfill(_build_engine(), collections)
    return {
        "status": "success",
        "orders_read": result.orders_read,
        "orders_replayed": result.orders_replayed,
        "lines_processed": result.lines_processed,
        "lines_failed": result.lines_failed,
        "skipped": result.skipped,
        "skip_reasons": result.skip_reasons,
        "customer_crop_pairs": result.customer_crop_pairs,
        "run_id": run_id,
    }
