"""
Redis-backed statistics store.

Layout (one hash per record family, JSON values):

    {prefix}:{tenant}:stats       field = stats_key(customer, crop), a JSON array
    {prefix}:{tenant}:yield       field = crop_key
    {prefix}:{tenant}:alerts      field = alert_id
    {prefix}:{tenant}:daily       field = YYYY-MM-DD
    {prefix}:{tenant}:monthly     field = YYYY-MM
    {prefix}:{tenant}:dashboard   string

Key-scoped locks use redis-py's Lock with a lease (so a crashed worker
cannot hold a key forever) and a bounded blocking timeout.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, TypeVar

import redis
import structlog
from pydantic import BaseModel, ValidationError
from redis.exceptions import LockError, RedisError

from learning.errors import KeyLockTimeout, StoreError
from learning.keys import stats_key
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

logger = structlog.get_logger()

ModelT = TypeVar("ModelT", bound=BaseModel)


def _dump(record: BaseModel) -> str:
    return record.model_dump_json()


def _load(model: type[ModelT], raw: str | bytes | None, where: str) -> ModelT | None:
    if raw is None:
        return None
    try:
        return model.model_validate_json(raw)
    except ValidationError as exc:
        raise StoreError(f"decode {where} failed: {exc.error_count()} validation error(s)") from exc


def _text(value: str | bytes) -> str:
    return value.decode() if isinstance(value, bytes) else value


class RedisStatsStore(StatsStore):
    backend = "redis"

    def __init__(self, client: redis.Redis, tenant_id: str, prefix: str = "learning", lock_lease_seconds: float = 30.0):
        self.client = client
        self.tenant_id = tenant_id
        self.prefix = prefix
        self.lock_lease_seconds = lock_lease_seconds

    def _key(self, family: str) -> str:
        return f"{self.prefix}:{self.tenant_id}:{family}"

    # ── Hash helpers ───────────────────────────────────────────────────

    def _hget(self, family: str, field: str, model: type[ModelT]) -> ModelT | None:
        try:
            raw = self.client.hget(self._key(family), field)
        except RedisError as exc:
            raise StoreError(f"read {family}/{field} failed: {exc}") from exc
        return _load(model, raw, f"{family}/{field}")

    def _hset(self, family: str, field: str, record: BaseModel) -> None:
        try:
            self.client.hset(self._key(family), field, _dump(record))
        except RedisError as exc:
            raise StoreError(f"write {family}/{field} failed: {exc}") from exc

    def _hscan(self, family: str, model: type[ModelT]) -> tuple[list[ModelT], list[str]]:
        """Decode every record in a family; undecodable fields are logged and returned, not raised."""
        try:
            raw = self.client.hgetall(self._key(family))
        except RedisError as exc:
            raise StoreError(f"scan {family} failed: {exc}") from exc

        records: list[ModelT] = []
        invalid: list[str] = []
        for field, value in raw.items():
            try:
                records.append(model.model_validate_json(value))
            except ValidationError as exc:
                invalid.append(_text(field))
                logger.error(
                    "store.record_invalid",
                    family=family,
                    field=_text(field),
                    tenant_id=self.tenant_id,
                    error_count=exc.error_count(),
                )
        return records, invalid

    def _hvalues(self, family: str, model: type[ModelT]) -> list[ModelT]:
        return self._hscan(family, model)[0]

    # ── Customer-crop stats ────────────────────────────────────────────

    def get_stats(self, customer_key: str, crop_key: str) -> CustomerCropStats | None:
        return self._hget("stats", stats_key(customer_key, crop_key), CustomerCropStats)

    def put_stats(self, stats: CustomerCropStats) -> None:
        self._hset("stats", stats_key(stats.customer_key, stats.crop_key), stats)

    def list_stats(self) -> list[CustomerCropStats]:
        return self._hvalues("stats", CustomerCropStats)

    def scan_stats(self) -> tuple[list[CustomerCropStats], list[str]]:
        return self._hscan("stats", CustomerCropStats)

    # ── Yield profiles ─────────────────────────────────────────────────

    def get_yield_profile(self, crop_key: str) -> YieldProfile | None:
        return self._hget("yield", crop_key, YieldProfile)

    def put_yield_profile(self, profile: YieldProfile) -> None:
        self._hset("yield", profile.crop_key, profile)

    def list_yield_profiles(self) -> list[YieldProfile]:
        return self._hvalues("yield", YieldProfile)

    # ── Alerts ─────────────────────────────────────────────────────────

    def get_alert(self, alert_id: str) -> Alert | None:
        return self._hget("alerts", alert_id, Alert)

    def put_alert(self, alert: Alert) -> None:
        self._hset("alerts", alert.alert_id, alert)

    def list_alerts(self, status: AlertStatus | None = None) -> list[Alert]:
        alerts = self._hvalues("alerts", Alert)
        if status is not None:
            alerts = [alert for alert in alerts if alert.status == status]
        return sorted(alerts, key=lambda alert: alert.created_at)

    # ── Daily buckets / monthly summaries ─────────────────────────────

    def get_daily_bucket(self, date: str) -> DailyBucket | None:
        return self._hget("daily", date, DailyBucket)

    def put_daily_bucket(self, bucket: DailyBucket) -> None:
        self._hset("daily", bucket.date, bucket)

    def list_daily_buckets(self) -> list[DailyBucket]:
        return sorted(self._hvalues("daily", DailyBucket), key=lambda bucket: bucket.date)

    def put_monthly_summaries(self, summaries: list[MonthlySummary]) -> None:
        key = self._key("monthly")
        try:
            pipe = self.client.pipeline()
            pipe.delete(key)
            if summaries:
                pipe.hset(key, mapping={summary.month: _dump(summary) for summary in summaries})
            pipe.execute()
        except RedisError as exc:
            raise StoreError(f"write monthly summaries failed: {exc}") from exc

    def list_monthly_summaries(self) -> list[MonthlySummary]:
        return sorted(self._hvalues("monthly", MonthlySummary), key=lambda summary: summary.month)

    # ── Dashboard ──────────────────────────────────────────────────────

    def get_dashboard(self) -> DashboardSummary | None:
        try:
            raw = self.client.get(self._key("dashboard"))
        except RedisError as exc:
            raise StoreError(f"read dashboard failed: {exc}") from exc
        return _load(DashboardSummary, raw, "dashboard")

    def put_dashboard(self, summary: DashboardSummary) -> None:
        try:
            self.client.set(self._key("dashboard"), _dump(summary))
        except RedisError as exc:
            raise StoreError(f"write dashboard failed: {exc}") from exc

    # ── Lifecycle ──────────────────────────────────────────────────────

    def reset_order_history(self) -> None:
        families = ("stats", "daily", "monthly", "dashboard")
        try:
            self.client.delete(*(self._key(family) for family in families))
        except RedisError as exc:
            raise StoreError(f"reset failed: {exc}") from exc
        logger.info("store.order_history_reset", backend=self.backend, tenant_id=self.tenant_id)

    @contextmanager
    def key_lock(self, key: str, timeout: float) -> Iterator[None]:
        lock = self.client.lock(
            self._key(f"lock:{key}"),
            timeout=self.lock_lease_seconds,
            blocking_timeout=timeout,
        )
        try:
            acquired = lock.acquire()
        except RedisError as exc:
            raise StoreError(f"lock {key} failed: {exc}") from exc
        if not acquired:
            raise KeyLockTimeout(key, timeout)
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError:
                # Lease expired while the key was held
                logger.warning("store.lock_lease_expired", key=key, lease_seconds=self.lock_lease_seconds)


def _redis_store_factory(settings) -> RedisStatsStore:
    client = redis.Redis.from_url(settings.redis_url)
    return RedisStatsStore(
        client,
        tenant_id=settings.tenant_id,
        prefix=settings.stats_key_prefix,
        lock_lease_seconds=settings.key_lock_lease_seconds,
    )


register_store("redis", _redis_store_factory)
