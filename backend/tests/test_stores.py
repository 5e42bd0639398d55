"""
Tests for the statistics stores.

Covers:
  - Copy-on-read semantics of the memory store
  - Key-scoped lock timeouts
  - Alert status filtering, monthly replacement, order-history reset
  - Customer keys that differ only in punctuation never share a record
  - Redis layout, error wrapping and unreadable records (against an in-test Redis double)
  - Backend registry
"""

import threading
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from learning.engine import LearningEngine
from learning.errors import KeyLockTimeout, StoreError
from learning.models import Alert, DailyBucket, MonthlySummary, YieldProfile
from learning.nightly import run_nightly_rollup
from stores.base import get_store
from stores.memory import MemoryStatsStore
from stores.redis_store import RedisStatsStore

# ── Redis double ───────────────────────────────────────────────────────


class _FakeLock:
    def __init__(self, server, name):
        self.server = server
        self.name = name

    def acquire(self):
        if self.name in self.server.held_locks:
            return False
        self.server.held_locks.add(self.name)
        return True

    def release(self):
        self.server.held_locks.discard(self.name)


class _FakePipeline:
    def __init__(self, server):
        self.server = server
        self.ops = []

    def delete(self, *keys):
        self.ops.append(("delete", keys, {}))

    def hset(self, key, field=None, value=None, mapping=None):
        self.ops.append(("hset", (key, field, value), {"mapping": mapping}))

    def execute(self):
        for name, args, kwargs in self.ops:
            getattr(self.server, name)(*args, **kwargs)
        self.ops = []


class FakeRedis:
    """Just enough of redis.Redis for RedisStatsStore."""

    def __init__(self, fail=False):
        self.hashes: dict[str, dict[str, str]] = {}
        self.strings: dict[str, str] = {}
        self.held_locks: set[str] = set()
        self.lock_calls: list[dict] = []
        self.fail = fail

    def _check(self):
        if self.fail:
            raise RedisConnectionError("connection refused")

    def hget(self, key, field):
        self._check()
        return self.hashes.get(key, {}).get(field)

    def hset(self, key, field=None, value=None, mapping=None):
        self._check()
        bucket = self.hashes.setdefault(key, {})
        if field is not None:
            bucket[field] = value
        if mapping:
            bucket.update(mapping)

    def hgetall(self, key):
        self._check()
        return dict(self.hashes.get(key, {}))

    def get(self, key):
        self._check()
        return self.strings.get(key)

    def set(self, key, value):
        self._check()
        self.strings[key] = value

    def delete(self, *keys):
        self._check()
        for key in keys:
            self.hashes.pop(key, None)
            self.strings.pop(key, None)

    def pipeline(self):
        self._check()
        return _FakePipeline(self)

    def lock(self, name, timeout=None, blocking_timeout=None):
        self.lock_calls.append({"name": name, "timeout": timeout, "blocking_timeout": blocking_timeout})
        return _FakeLock(self, name)


def _alert(alert_id, status="pending", minutes=0, now=None):
    kwargs = {"alert_id": alert_id, "alert_type": "order_anomaly", "crop_key": "pea_shoots", "status": status}
    if now is not None:
        kwargs["created_at"] = now + timedelta(minutes=minutes)
    return Alert(**kwargs)


# ── Memory store ───────────────────────────────────────────────────────


class TestMemoryStore:
    def test_reads_return_copies(self, store, make_stats):
        store.put_stats(make_stats([5, 6]))
        copy = store.get_stats("chef@bistro.com", "pea_shoots")
        copy.count = 999
        assert store.get_stats("chef@bistro.com", "pea_shoots").count == 2

    def test_missing_records(self, store):
        assert store.get_stats("nobody", "nothing") is None
        assert store.get_yield_profile("nothing") is None
        assert store.get_alert("missing") is None
        assert store.get_daily_bucket("2026-01-01") is None
        assert store.get_dashboard() is None

    def test_list_alerts_by_status(self, store, now):
        store.put_alert(_alert("b", minutes=2, now=now))
        store.put_alert(_alert("a", minutes=1, now=now))
        store.put_alert(_alert("c", status="dismissed", now=now))
        assert [alert.alert_id for alert in store.list_alerts("pending")] == ["a", "b"]
        assert [alert.alert_id for alert in store.list_alerts("dismissed")] == ["c"]
        assert len(store.list_alerts()) == 3

    def test_monthly_summaries_replaced(self, store):
        store.put_monthly_summaries([MonthlySummary(month="2026-01"), MonthlySummary(month="2026-02")])
        store.put_monthly_summaries([MonthlySummary(month="2026-03")])
        assert [summary.month for summary in store.list_monthly_summaries()] == ["2026-03"]

    def test_daily_buckets_sorted(self, store):
        store.put_daily_bucket(DailyBucket(date="2026-02-02"))
        store.put_daily_bucket(DailyBucket(date="2026-01-15"))
        assert [bucket.date for bucket in store.list_daily_buckets()] == ["2026-01-15", "2026-02-02"]

    def test_reset_order_history_keeps_alerts_and_yields(self, store, make_stats):
        store.put_stats(make_stats([5]))
        store.put_yield_profile(YieldProfile(crop_key="pea_shoots"))
        store.put_daily_bucket(DailyBucket(date="2026-01-15"))
        store.put_alert(_alert("a", status="dismissed"))
        store.reset_order_history()
        assert store.list_stats() == []
        assert store.list_daily_buckets() == []
        assert [profile.crop_key for profile in store.list_yield_profiles()] == ["pea_shoots"]
        assert store.get_alert("a").status == "dismissed"

    def test_similar_customer_keys_stay_separate(self, store, make_stats):
        store.put_stats(make_stats([4], customer_key="a.b@x.com"))
        store.put_stats(make_stats([40], customer_key="a_b@x.com"))
        assert store.get_stats("a.b@x.com", "pea_shoots").mean == 4
        assert store.get_stats("a_b@x.com", "pea_shoots").mean == 40
        assert len(store.list_stats()) == 2

    def test_key_lock_times_out_while_held(self, store):
        with store.key_lock("stats:a", timeout=0.05):
            with pytest.raises(KeyLockTimeout) as exc_info:
                with store.key_lock("stats:a", timeout=0.05):
                    pass
        assert exc_info.value.key == "stats:a"

    def test_key_locks_are_independent(self, store):
        with store.key_lock("stats:a", timeout=0.05):
            with store.key_lock("stats:b", timeout=0.05):
                pass

    def test_key_lock_released_after_error(self, store):
        with pytest.raises(RuntimeError):
            with store.key_lock("stats:a", timeout=0.05):
                raise RuntimeError("boom")
        with store.key_lock("stats:a", timeout=0.05):
            pass

    def test_key_lock_waits_for_holder(self, store):
        held = threading.Event()
        release = threading.Event()

        def _hold():
            with store.key_lock("stats:a", timeout=1.0):
                held.set()
                release.wait(1.0)

        worker = threading.Thread(target=_hold)
        worker.start()
        held.wait(1.0)
        release.set()
        with store.key_lock("stats:a", timeout=2.0):
            pass
        worker.join()


# ── Redis store ────────────────────────────────────────────────────────


class TestRedisStore:
    def _store(self, client=None):
        return RedisStatsStore(client or FakeRedis(), tenant_id="farm-1", prefix="learning", lock_lease_seconds=12.0)

    def test_stats_round_trip(self, make_stats):
        client = FakeRedis()
        store = self._store(client)
        stats = make_stats([5, 7, 6])
        store.put_stats(stats)
        assert '["chef@bistro.com","pea_shoots"]' in client.hashes["learning:farm-1:stats"]
        loaded = store.get_stats("chef@bistro.com", "pea_shoots")
        assert loaded == stats
        assert store.list_stats() == [stats]

    def test_similar_customer_keys_stay_separate(self, make_stats):
        client = FakeRedis()
        store = self._store(client)
        store.put_stats(make_stats([4], customer_key="a.b@x.com"))
        store.put_stats(make_stats([40], customer_key="a_b@x.com"))
        assert len(client.hashes["learning:farm-1:stats"]) == 2
        assert store.get_stats("a.b@x.com", "pea_shoots").mean == 4
        assert store.get_stats("a_b@x.com", "pea_shoots").mean == 40

    def test_unreadable_record_skipped_by_scan(self, make_stats):
        client = FakeRedis()
        store = self._store(client)
        stats = make_stats([5, 7, 6])
        store.put_stats(stats)
        client.hashes["learning:farm-1:stats"]["bad-field"] = '{"customer_key": "bad@x.com"}'

        records, unreadable = store.scan_stats()
        assert records == [stats]
        assert unreadable == ["bad-field"]
        assert store.list_stats() == [stats]

    def test_unreadable_record_read_raises_store_error(self):
        client = FakeRedis()
        client.hashes["learning:farm-1:stats"] = {'["bad@x.com","pea_shoots"]': '{"customer_key": "bad@x.com"}'}
        client.strings["learning:farm-1:dashboard"] = "not json"
        store = self._store(client)
        with pytest.raises(StoreError, match="decode stats"):
            store.get_stats("bad@x.com", "pea_shoots")
        with pytest.raises(StoreError, match="decode dashboard"):
            store.get_dashboard()

    def test_alerts_and_filter(self, now):
        store = self._store()
        store.put_alert(_alert("a", now=now))
        store.put_alert(_alert("b", status="dismissed", minutes=1, now=now))
        assert store.get_alert("a").status == "pending"
        assert [alert.alert_id for alert in store.list_alerts("dismissed")] == ["b"]

    def test_monthly_summaries_replaced(self):
        store = self._store()
        store.put_monthly_summaries([MonthlySummary(month="2026-01"), MonthlySummary(month="2026-02")])
        store.put_monthly_summaries([MonthlySummary(month="2026-03", total_orders=4)])
        summaries = store.list_monthly_summaries()
        assert [summary.month for summary in summaries] == ["2026-03"]
        assert summaries[0].total_orders == 4

    def test_reset_order_history_keeps_alerts_and_yields(self, make_stats):
        client = FakeRedis()
        store = self._store(client)
        store.put_stats(make_stats([5]))
        store.put_yield_profile(YieldProfile(crop_key="pea_shoots"))
        store.put_daily_bucket(DailyBucket(date="2026-01-15"))
        store.put_alert(_alert("a", status="dismissed"))
        store.reset_order_history()
        assert sorted(client.hashes) == ["learning:farm-1:alerts", "learning:farm-1:yield"]
        assert store.get_alert("a").status == "dismissed"

    def test_key_lock_uses_lease_and_timeout(self):
        client = FakeRedis()
        store = self._store(client)
        with store.key_lock("stats:a", timeout=0.5):
            pass
        assert client.lock_calls == [{"name": "learning:farm-1:lock:stats:a", "timeout": 12.0, "blocking_timeout": 0.5}]
        assert client.held_locks == set()

    def test_key_lock_timeout(self):
        client = FakeRedis()
        client.held_locks.add("learning:farm-1:lock:stats:a")
        with pytest.raises(KeyLockTimeout):
            with self._store(client).key_lock("stats:a", timeout=0.5):
                pass

    def test_redis_errors_wrapped(self, make_stats):
        store = self._store(FakeRedis(fail=True))
        with pytest.raises(StoreError):
            store.get_stats("chef@bistro.com", "pea_shoots")
        with pytest.raises(StoreError):
            store.put_stats(make_stats([5]))
        with pytest.raises(StoreError):
            store.list_alerts()
        with pytest.raises(StoreError):
            store.put_monthly_summaries([])


class TestRedisStoreUnreadableRecords:
    """One corrupt record must not take down the engine or the nightly rollup."""

    STATS_KEY = "learning:farm-1:stats"

    def _store(self, client):
        return RedisStatsStore(client, tenant_id="farm-1", prefix="learning")

    def test_nightly_rollup_counts_unreadable_record(self, make_stats, now):
        client = FakeRedis()
        store = self._store(client)
        store.put_stats(make_stats([10, 12, 11]))
        client.hashes[self.STATS_KEY]['["bad@x.com","pea_shoots"]'] = '{"customer_key": "bad@x.com"}'

        result = run_nightly_rollup(store, tenant_id="farm-1", now=now)

        assert result.dashboard.keys_processed == 1
        assert result.dashboard.error_count == 1
        assert result.dashboard.total_customer_crop_pairs == 2
        assert result.failed_keys == ['["bad@x.com","pea_shoots"]']
        assert store.get_dashboard().error_count == 1

    def test_engine_fails_only_the_unreadable_line(self, settings, make_order, start):
        client = FakeRedis()
        client.hashes[self.STATS_KEY] = {'["chef@bistro.com","pea_shoots"]': '{"customer_key": "chef@bistro.com"}'}
        engine = LearningEngine(self._store(client), settings=settings)

        result = engine.process_order_payload(make_order("o1", start, [("Pea Shoots", 4), ("Radish Mix", 2)]))

        assert result.lines_failed == 1
        assert result.failed_crops == ["pea_shoots"]
        assert result.lines_processed == 1
        assert engine.store.get_stats("chef@bistro.com", "radish_mix").count == 1


# ── Registry ───────────────────────────────────────────────────────────


class TestRegistry:
    def test_memory_backend_is_process_wide(self, settings):
        assert get_store(settings) is get_store(settings)
        assert isinstance(get_store(settings), MemoryStatsStore)

    def test_unknown_backend(self, settings):
        with pytest.raises(ValueError):
            get_store(settings.model_copy(update={"stats_store_backend": "cassandra"}))

