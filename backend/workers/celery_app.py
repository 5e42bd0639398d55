"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "harvest_learning",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Messages and timestamps stay in UTC; crontab entries read in farm-local time
    timezone=settings.nightly_timezone,
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.learning.process_order_event": {"queue": "events"},
        "workers.learning.process_harvest_event": {"queue": "events"},
        "workers.learning.dismiss_alerts": {"queue": "events"},
        "workers.learning.run_nightly_stats": {"queue": "batch"},
        "workers.learning.backfill_orders": {"queue": "batch"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        "learning-nightly-stats": {
            "task": "workers.learning.run_nightly_stats",
            "schedule": crontab(hour=settings.nightly_hour, minute=settings.nightly_minute),
            "kwargs": {"tenant_id": settings.tenant_id},
            "options": {"queue": "batch"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"], related_name="learning")
