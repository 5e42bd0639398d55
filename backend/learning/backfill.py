"""
Learning Engine — historical backfill.

Rebuilds the order-derived records from the raw order history:

  1. Drop order-derived records (stats, buckets, summaries, dashboard);
     alerts and yield profiles are kept
  2. Normalize both source collections, shopifyOrders first since it is
     the primary source; any later order with an already-seen id is a
     duplicate
  3. Skip malformed / cancelled / unknown-customer orders, counting reasons
  4. Sort chronologically, ties broken by order id
  5. Replay through the fast path with alerting off

EWMA and bias depend on order sequence, so step 4 is what makes the
rebuild match live processing. Replaying the same history twice from a
reset store yields identical records.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Iterable

import structlog

from integrations.order_events import ORDER_SOURCES, normalize_order, order_id
from learning.engine import LearningEngine
from learning.errors import MalformedEventError
from learning.models import OrderEvent

logger = structlog.get_logger()


@dataclass
class BackfillResult:
    orders_read: dict[str, int] = field(default_factory=dict)
    orders_replayed: int = 0
    lines_processed: int = 0
    lines_failed: int = 0
    skipped: int = 0
    skip_reasons: dict[str, int] = field(default_factory=dict)
    customer_crop_pairs: int = 0
    duration_seconds: float = 0.0

    def skip(self, reason: str) -> None:
        self.skipped += 1
        self.skip_reasons[reason] = self.skip_reasons.get(reason, 0) + 1


def collect_orders(
    collections: dict[str, Iterable[dict[str, Any]]],
    result: BackfillResult,
) -> list[OrderEvent]:
    """Normalize and de-duplicate raw orders, sorted for replay."""
    ordered_sources = [source for source in ORDER_SOURCES if source in collections]
    ordered_sources += [source for source in collections if source not in ORDER_SOURCES]

    seen_ids: set[str] = set()
    events: list[OrderEvent] = []
    for source in ordered_sources:
        read = 0
        for raw in collections[source]:
            read += 1
            ref = order_id(raw) if isinstance(raw, dict) else None
            if ref and ref in seen_ids:
                result.skip("duplicate")
                continue
            if ref:
                seen_ids.add(ref)
            try:
                events.append(normalize_order(raw, source=source))
            except MalformedEventError as exc:
                result.skip(exc.reason)
        result.orders_read[source] = read

    events.sort(key=lambda event: (event.order_date, event.order_id or ""))
    return events


def backfill_orders(
    engine: LearningEngine,
    collections: dict[str, Iterable[dict[str, Any]]],
    reset: bool = True,
) -> BackfillResult:
    """
    Rebuild customer-crop stats and daily buckets from raw order history.

    Usage:
        result = backfill_orders(engine, {"shopifyOrders": docs, "orders": webhook_docs})
    """
    started = time.monotonic()
    result = BackfillResult()

    if reset:
        engine.store.reset_order_history()

    events = collect_orders(collections, result)
    logger.info(
        "backfill.started",
        processable=len(events),
        skipped=result.skipped,
        skip_reasons=result.skip_reasons,
    )

    for event in events:
        order_result = engine.process_order(event, emit_alerts=False)
        result.orders_replayed += 1
        result.lines_processed += order_result.lines_processed
        result.lines_failed += order_result.lines_failed

    result.customer_crop_pairs = len(engine.store.list_stats())
    result.duration_seconds = round(time.monotonic() - started, 3)

    logger.info(
        "backfill.completed",
        orders_replayed=result.orders_replayed,
        lines_processed=result.lines_processed,
        lines_failed=result.lines_failed,
        customer_crop_pairs=result.customer_crop_pairs,
        skipped=result.skipped,
        skip_reasons=result.skip_reasons,
        duration_seconds=result.duration_seconds,
    )
    return result
