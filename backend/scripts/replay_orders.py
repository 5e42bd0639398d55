#!/usr/bin/env python3
"""
Replay Orders — rebuild Learning Engine stats from exported order history.

Loads JSON exports of the order collections (and optionally harvests),
replays them chronologically through the fast path, runs the nightly
rollup, and prints the resulting dashboard.

Usage:
  python scripts/replay_orders.py --shopify-orders exports/shopifyOrders.json
  python scripts/replay_orders.py --shopify-orders a.json --webhook-orders b.json \\
      --harvests harvests.json --output dashboard.json
  python scripts/replay_orders.py --shopify-orders a.json --store configured
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any

# Add backend to path so imports work when script is run directly.
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _load_documents(path: str | None) -> list[dict[str, Any]]:
    """A JSON list of documents, or an object keyed by document id."""
    if not path:
        return []
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        return [{"id": doc_id, **doc} for doc_id, doc in data.items()]
    return list(data)


def main() -> int:
    parser = argparse.ArgumentParser(description="Replay exported order history through the Learning Engine")
    parser.add_argument("--shopify-orders", type=str, default=None, help="shopifyOrders export (JSON)")
    parser.add_argument("--webhook-orders", type=str, default=None, help="orders export (JSON)")
    parser.add_argument("--harvests", type=str, default=None, help="harvests export (JSON)")
    parser.add_argument(
        "--store",
        choices=["memory", "configured"],
        default="memory",
        help="Replay into a throwaway in-memory store or the configured store",
    )
    parser.add_argument("--output", type=str, default=None, help="Write the dashboard JSON here")
    args = parser.parse_args()

    from core.config import get_settings
    from integrations.order_events import normalize_harvest
    from learning.backfill import backfill_orders
    from learning.engine import LearningEngine
    from learning.errors import MalformedEventError
    from learning.nightly import run_nightly_rollup
    from learning.yield_profile import default_yield_profile
    from stores.base import get_store
    from stores.memory import MemoryStatsStore

    if not args.shopify_orders and not args.webhook_orders:
        print("Provide --shopify-orders and/or --webhook-orders.")
        return 1

    settings = get_settings()
    store = MemoryStatsStore() if args.store == "memory" else get_store(settings)
    engine = LearningEngine(store, settings=settings)

    print("=" * 60)
    print("  Learning Engine Order Replay")
    print("=" * 60)
    print(f"  Store:  {store.backend}")
    print(f"  Tenant: {settings.tenant_id}")
    print()

    collections = {
        "shopifyOrders": _load_documents(args.shopify_orders),
        "orders": _load_documents(args.webhook_orders),
    }
    result = backfill_orders(engine, collections)

    for source, count in result.orders_read.items():
        print(f"  Read {count:,} documents from {source}")
    print(f"  Replayed {result.orders_replayed:,} orders ({result.lines_processed:,} lines, {result.lines_failed} failed)")
    print(f"  Skipped {result.skipped:,}")
    for reason, count in sorted(result.skip_reasons.items()):
        print(f"    {reason:<22} {count:,}")
    print(f"  Customer-crop pairs: {result.customer_crop_pairs:,}")

    harvests = _load_documents(args.harvests)
    if harvests:
        events, skipped = [], 0
        for raw in harvests:
            try:
                events.append(normalize_harvest(raw))
            except MalformedEventError:
                skipped += 1
        events.sort(key=lambda event: event.harvest_date)
        # Backfill keeps yield profiles; the export rebuilds the crops it covers
        first_by_crop = {}
        for event in events:
            first_by_crop.setdefault(event.crop_key, event)
        for event in first_by_crop.values():
            store.put_yield_profile(default_yield_profile(event))

        outliers = 0
        for event in events:
            harvest = engine.process_harvest(event, emit_alerts=False)
            outliers += int(harvest.outlier)
        print(f"  Harvests: {len(events):,} ({outliers} outliers held out, {skipped} skipped)")

    nightly = run_nightly_rollup(store, tenant_id=settings.tenant_id, params=engine.params)
    dashboard = nightly.dashboard

    print()
    print(f"  {'Crop':<28} {'Volume':>10} {'EWMA':>8} {'Cust':>5} {'Conf':>5}  Trend")
    print(f"  {'-' * 28} {'-' * 10} {'-' * 8} {'-' * 5} {'-' * 5}  {'-' * 12}")
    for crop in dashboard.top_crops:
        print(
            f"  {(crop.display_name or crop.crop_key)[:28]:<28} {crop.total_volume:>10.1f} "
            f"{crop.ewma_total:>8.1f} {crop.customers:>5} {crop.max_confidence:>5}  {crop.trend}"
        )
    print()
    print(f"  Confidence: {dashboard.confidence_distribution}")
    print(f"  Health:     {dashboard.customer_health}")
    print(f"  Avg MAPE:   {dashboard.avg_mape}")
    print(f"  Errors:     {dashboard.error_count}")

    if args.output:
        Path(args.output).write_text(dashboard.model_dump_json(indent=2), encoding="utf-8")
        print(f"\n  Dashboard written to {args.output}")

    print()
    return 0


if __name__ == "__main__":
    sys.exit(main())
