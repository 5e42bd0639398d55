"""
Test Configuration — Fixtures for an in-memory stats store, engine, and
synthetic order / harvest data.

Every test gets a fresh MemoryStatsStore and an engine with a fixed clock,
so confidence and recency values are reproducible.
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.config import Settings
from learning.customer_stats import apply_order
from learning.engine import LearningEngine
from learning.models import CustomerCropStats, HarvestEvent
from stores.memory import MemoryStatsStore

NOW = datetime(2026, 3, 30, 12, 0, tzinfo=timezone.utc)
START = datetime(2026, 1, 5, 15, 0, tzinfo=timezone.utc)


def build_stats(
    quantities: list[float],
    start: datetime = START,
    interval_days: float = 7.0,
    customer_key: str = "chef@bistro.com",
    crop_key: str = "pea_shoots",
) -> CustomerCropStats:
    """Fold quantities into a fresh record, one order every interval_days."""
    stats = CustomerCropStats(customer_key=customer_key, crop_key=crop_key, crop_display_name="Pea Shoots")
    for i, quantity in enumerate(quantities):
        stats = apply_order(stats, quantity, start + timedelta(days=interval_days * i))
    return stats


def raw_order(
    order_id: str,
    created_at: datetime,
    items: list[tuple[str, float]],
    email: str = "chef@bistro.com",
    name: str = "Bistro Chef",
    total: float | None = None,
    **extra,
) -> dict:
    """Shopify-sync shaped order document."""
    doc = {
        "shopifyOrderId": order_id,
        "customerEmail": email,
        "customerName": name,
        "createdAt": created_at.isoformat().replace("+00:00", "Z"),
        "status": "delivered",
        "items": [
            {
                "title": title,
                "quantity": quantity,
                "lineTotal": quantity * 6.0 if isinstance(quantity, (int, float)) else None,
            }
            for title, quantity in items
        ],
    }
    if total is not None:
        doc["total"] = total
    doc.update(extra)
    return doc


def harvest_event(yield_per_tray: float, day: int = 0, crop_key: str = "pea_shoots") -> HarvestEvent:
    return HarvestEvent(
        harvest_id=f"h_{crop_key}_{day}",
        crop_key=crop_key,
        crop_display_name="Pea Shoots",
        yield_per_tray=yield_per_tray,
        harvest_date=START + timedelta(days=day),
    )


@pytest.fixture
def settings():
    """Local settings with short lock timeouts, isolated from any .env file."""
    return Settings(
        _env_file=None,
        app_env="test",
        stats_store_backend="memory",
        key_lock_timeout_seconds=0.05,
        key_lock_max_retries=1,
        alert_publish_enabled=False,
    )


@pytest.fixture
def store():
    return MemoryStatsStore()


@pytest.fixture
def engine(store, settings):
    return LearningEngine(store, settings=settings, clock=lambda: NOW)


@pytest.fixture
def make_stats():
    return build_stats


@pytest.fixture
def make_order():
    return raw_order


@pytest.fixture
def make_harvest():
    return harvest_event


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def start():
    return START
