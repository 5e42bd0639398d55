"""
Tests for the Celery workers and beat schedule.

Tasks are invoked with `.run()` (no broker) against an in-memory store
patched in place of the configured one.
"""

import pytest

from learning.errors import StoreError
from learning.models import Alert
from stores.memory import MemoryStatsStore
from workers.celery_app import celery_app
from workers.learning import (
    backfill_orders,
    dismiss_alerts,
    process_harvest_event,
    process_order_event,
    run_nightly_stats,
)


class _BrokenStore(MemoryStatsStore):
    def list_stats(self):
        raise StoreError("connection reset")


@pytest.fixture
def task_store(monkeypatch):
    store = MemoryStatsStore()
    monkeypatch.setattr("workers.learning.get_store", lambda settings: store)
    return store


class TestSchedule:
    def test_nightly_beat_entry(self):
        entry = celery_app.conf.beat_schedule["learning-nightly-stats"]
        assert entry["task"] == "workers.learning.run_nightly_stats"
        assert entry["schedule"].hour == {2}
        assert entry["schedule"].minute == {0}
        assert entry["options"] == {"queue": "batch"}

    def test_nightly_timezone(self):
        assert celery_app.conf.timezone == "America/Boise"

    def test_nightly_limits(self):
        assert run_nightly_stats.max_retries == 3
        assert run_nightly_stats.time_limit == 540

    def test_event_tasks_not_retried(self):
        assert process_order_event.max_retries == 0
        assert process_harvest_event.max_retries == 0


class TestEventTasks:
    def test_order_event(self, task_store, make_order, start):
        result = process_order_event.run(make_order("o1", start, [("Pea Shoots", 4)]), source="shopifyOrders")
        assert result["status"] == "success"
        assert result["lines_processed"] == 1
        assert result["run_id"] == "manual"
        assert task_store.get_stats("chef@bistro.com", "pea_shoots").count == 1

    def test_malformed_order_event(self, task_store, make_order, start):
        result = process_order_event.run(make_order("o1", start, [("Pea Shoots", 1)], status="canceled"))
        assert result == {"status": "skipped", "reason": "cancelled", "run_id": "manual"}

    def test_harvest_event(self, task_store):
        result = process_harvest_event.run(
            {"id": "h1", "cropId": "pea_shoots", "totalYieldOz": 96, "trayCount": 12, "harvestedAt": "2026-03-01"}
        )
        assert result["status"] == "success"
        assert result["yield_per_tray"] == 8.0
        assert result["buffer_percent"] == 15


class TestNightlyTask:
    def test_rollup(self, task_store, make_stats):
        task_store.put_stats(make_stats([10, 12, 11]))
        result = run_nightly_stats.run(tenant_id="farm-1")
        assert result["status"] == "success"
        assert result["tenant_id"] == "farm-1"
        assert result["keys_processed"] == 1
        assert task_store.get_dashboard().tenant_id == "farm-1"

    def test_store_failure_propagates(self, monkeypatch):
        monkeypatch.setattr("workers.learning.get_store", lambda settings: _BrokenStore())
        with pytest.raises(StoreError):
            run_nightly_stats.run(tenant_id="farm-1")


class TestOperatorTasks:
    def test_dismiss_all(self, task_store):
        for alert_id in ("a1", "a2"):
            task_store.put_alert(Alert(alert_id=alert_id, alert_type="order_anomaly", crop_key="pea_shoots"))
        result = dismiss_alerts.run(dismiss_all=True)
        assert result["dismissed"] == 2
        assert task_store.list_alerts("pending") == []

    def test_backfill(self, task_store, make_order, start):
        result = backfill_orders.run(
            {
                "shopifyOrders": [make_order("o1", start, [("Pea Shoots", 4)])],
                "orders": [{"shopifyOrderId": "o1", "createdAt": "2026-01-05T15:00:00Z"}],
            }
        )
        assert result["orders_replayed"] == 1
        assert result["skip_reasons"] == {"duplicate": 1}
        assert result["customer_crop_pairs"] == 1
