"""
In-process statistics store.

Used for local runs, replays and tests. Records live in plain dicts guarded
by one short-lived mutex; per-key locks are separate threading.Lock objects
created on first use, so updates to different keys never contend.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

from learning.errors import KeyLockTimeout
from learning.models import (
    Alert,
    AlertStatus,
    CustomerCropStats,
    DailyBucket,
    DashboardSummary,
    MonthlySummary,
    YieldProfile,
)
from stores.base import StatsStore, register_store


class MemoryStatsStore(StatsStore):
    backend = "memory"

    def __init__(self):
        self._guard = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}
        self._stats: dict[tuple[str, str], CustomerCropStats] = {}
        self._yields: dict[str, YieldProfile] = {}
        self._alerts: dict[str, Alert] = {}
        self._buckets: dict[str, DailyBucket] = {}
        self._monthly: dict[str, MonthlySummary] = {}
        self._dashboard: DashboardSummary | None = None

    # ── Customer-crop stats ────────────────────────────────────────────

    def get_stats(self, customer_key: str, crop_key: str) -> CustomerCropStats | None:
        with self._guard:
            stats = self._stats.get((customer_key, crop_key))
        return stats.model_copy() if stats is not None else None

    def put_stats(self, stats: CustomerCropStats) -> None:
        with self._guard:
            self._stats[(stats.customer_key, stats.crop_key)] = stats.model_copy()

    def list_stats(self) -> list[CustomerCropStats]:
        with self._guard:
            return [stats.model_copy() for stats in self._stats.values()]

    # ── Yield profiles ─────────────────────────────────────────────────

    def get_yield_profile(self, crop_key: str) -> YieldProfile | None:
        with self._guard:
            profile = self._yields.get(crop_key)
        return profile.model_copy() if profile is not None else None

    def put_yield_profile(self, profile: YieldProfile) -> None:
        with self._guard:
            self._yields[profile.crop_key] = profile.model_copy()

    def list_yield_profiles(self) -> list[YieldProfile]:
        with self._guard:
            return [profile.model_copy() for profile in self._yields.values()]

    # ── Alerts ─────────────────────────────────────────────────────────

    def get_alert(self, alert_id: str) -> Alert | None:
        with self._guard:
            alert = self._alerts.get(alert_id)
        return alert.model_copy() if alert is not None else None

    def put_alert(self, alert: Alert) -> None:
        with self._guard:
            self._alerts[alert.alert_id] = alert.model_copy()

    def list_alerts(self, status: AlertStatus | None = None) -> list[Alert]:
        with self._guard:
            alerts = [alert.model_copy() for alert in self._alerts.values()]
        if status is not None:
            alerts = [alert for alert in alerts if alert.status == status]
        return sorted(alerts, key=lambda alert: alert.created_at)

    # ── Daily buckets / monthly summaries ─────────────────────────────

    def get_daily_bucket(self, date: str) -> DailyBucket | None:
        with self._guard:
            bucket = self._buckets.get(date)
        return bucket.model_copy(deep=True) if bucket is not None else None

    def put_daily_bucket(self, bucket: DailyBucket) -> None:
        with self._guard:
            self._buckets[bucket.date] = bucket.model_copy(deep=True)

    def list_daily_buckets(self) -> list[DailyBucket]:
        with self._guard:
            buckets = [bucket.model_copy(deep=True) for bucket in self._buckets.values()]
        return sorted(buckets, key=lambda bucket: bucket.date)

    def put_monthly_summaries(self, summaries: list[MonthlySummary]) -> None:
        with self._guard:
            self._monthly = {summary.month: summary.model_copy(deep=True) for summary in summaries}

    def list_monthly_summaries(self) -> list[MonthlySummary]:
        with self._guard:
            summaries = [summary.model_copy(deep=True) for summary in self._monthly.values()]
        return sorted(summaries, key=lambda summary: summary.month)

    # ── Dashboard ──────────────────────────────────────────────────────

    def get_dashboard(self) -> DashboardSummary | None:
        with self._guard:
            dashboard = self._dashboard
        return dashboard.model_copy(deep=True) if dashboard is not None else None

    def put_dashboard(self, summary: DashboardSummary) -> None:
        with self._guard:
            self._dashboard = summary.model_copy(deep=True)

    # ── Lifecycle ──────────────────────────────────────────────────────

    def reset_order_history(self) -> None:
        with self._guard:
            self._stats.clear()
            self._buckets.clear()
            self._monthly.clear()
            self._dashboard = None

    @contextmanager
    def key_lock(self, key: str, timeout: float) -> Iterator[None]:
        with self._guard:
            lock = self._key_locks.setdefault(key, threading.Lock())
        if not lock.acquire(timeout=timeout):
            raise KeyLockTimeout(key, timeout)
        try:
            yield
        finally:
            lock.release()


# One store per process, so Celery tasks in a local worker share state
_process_store: MemoryStatsStore | None = None
_process_store_guard = threading.Lock()


def _memory_store_factory(settings=None) -> MemoryStatsStore:
    global _process_store
    with _process_store_guard:
        if _process_store is None:
            _process_store = MemoryStatsStore()
        return _process_store


register_store("memory", _memory_store_factory)
