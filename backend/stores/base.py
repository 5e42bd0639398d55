"""
Statistics Store — Abstract Base Class

Every backend (in-process memory for local runs and tests, Redis for
deployed workers) implements this interface so the orchestrator is
storage-agnostic.

Records are pydantic models. Readers always get a copy: mutating a
returned record never changes what is stored until it is written back
with the matching put_* method.

Serialization of read-modify-write cycles is the caller's job, through
key_lock(). Nothing in the store itself is transactional.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import Callable

import structlog

from learning.models import (
    Alert,
    AlertStatus,
    CustomerCropStats,
    DailyBucket,
    DashboardSummary,
    MonthlySummary,
    YieldProfile,
)

logger = structlog.get_logger()


class StatsStore(ABC):
    """Keyed record store plus key-scoped locks."""

    backend: str = "abstract"

    # ── Customer-crop stats ────────────────────────────────────────────

    @abstractmethod
    def get_stats(self, customer_key: str, crop_key: str) -> CustomerCropStats | None: ...

    @abstractmethod
    def put_stats(self, stats: CustomerCropStats) -> None: ...

    @abstractmethod
    def list_stats(self) -> list[CustomerCropStats]:
        """Point-in-time snapshot of every customer-crop record."""

    def scan_stats(self) -> tuple[list[CustomerCropStats], list[str]]:
        """
        Snapshot of every readable customer-crop record, plus the storage
        keys of records that could not be decoded.

        Backends holding only validated models never report unreadable keys.
        """
        return self.list_stats(), []

    # ── Yield profiles ─────────────────────────────────────────────────

    @abstractmethod
    def get_yield_profile(self, crop_key: str) -> YieldProfile | None: ...

    @abstractmethod
    def put_yield_profile(self, profile: YieldProfile) -> None: ...

    @abstractmethod
    def list_yield_profiles(self) -> list[YieldProfile]: ...

    # ── Alerts ─────────────────────────────────────────────────────────

    @abstractmethod
    def get_alert(self, alert_id: str) -> Alert | None: ...

    @abstractmethod
    def put_alert(self, alert: Alert) -> None: ...

    @abstractmethod
    def list_alerts(self, status: AlertStatus | None = None) -> list[Alert]: ...

    # ── Daily buckets / monthly summaries ─────────────────────────────

    @abstractmethod
    def get_daily_bucket(self, date: str) -> DailyBucket | None: ...

    @abstractmethod
    def put_daily_bucket(self, bucket: DailyBucket) -> None: ...

    @abstractmethod
    def list_daily_buckets(self) -> list[DailyBucket]: ...

    @abstractmethod
    def put_monthly_summaries(self, summaries: list[MonthlySummary]) -> None:
        """Replace every monthly summary with the given set."""

    @abstractmethod
    def list_monthly_summaries(self) -> list[MonthlySummary]: ...

    # ── Dashboard ──────────────────────────────────────────────────────

    @abstractmethod
    def get_dashboard(self) -> DashboardSummary | None: ...

    @abstractmethod
    def put_dashboard(self, summary: DashboardSummary) -> None: ...

    # ── Lifecycle ──────────────────────────────────────────────────────

    @abstractmethod
    def reset_order_history(self) -> None:
        """
        Drop everything derived from orders: customer-crop stats, daily
        buckets, monthly summaries and the dashboard. Used before a
        historical backfill.

        Alerts (with their dismissals) and yield profiles are kept.
        """

    @abstractmethod
    def key_lock(self, key: str, timeout: float) -> AbstractContextManager[None]:
        """
        Exclusive lock scoped to one record key.

        Raises KeyLockTimeout when the lock is not acquired within
        `timeout` seconds.
        """


# ── Backend registry ──────────────────────────────────────────────────────

_STORE_REGISTRY: dict[str, Callable[..., StatsStore]] = {}


def register_store(backend: str, factory: Callable[..., StatsStore]) -> None:
    """Register a store factory taking the application Settings."""
    _STORE_REGISTRY[backend] = factory
    logger.debug("store.registered", backend=backend)


def get_store(settings=None) -> StatsStore:
    """
    Build the store configured by `stats_store_backend`.

    Usage:
        store = get_store(get_settings())
    """
    if settings is None:
        from core.config import get_settings

        settings = get_settings()

    # Backends register themselves on import
    import stores.memory  # noqa: F401
    import stores.redis_store  # noqa: F401

    factory = _STORE_REGISTRY.get(settings.stats_store_backend)
    if factory is None:
        raise ValueError(
            f"No store registered for backend: {settings.stats_store_backend}. "
            f"Available: {list(_STORE_REGISTRY.keys())}"
        )
    return factory(settings)
