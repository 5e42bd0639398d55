"""
Order & Harvest Event Normalization

Orders reach the Learning Engine from two independently synced sources
with differently-shaped documents:

    Shopify GraphQL sync  → shopifyOrders  (ISO createdAt, `items`)
    Shopify order webhook → orders         (Timestamp createdAt, `lineItems`)

Both are normalized here, once, into a canonical OrderEvent. Everything
downstream of this module works on OrderEvent / HarvestEvent only.

Problems with the event as a whole raise MalformedEventError with a short
machine-readable reason. Problems with a single line item (missing or
non-numeric quantity, unknown crop) drop that line and are logged; a bad
quantity is never coerced to 0.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any

import structlog

from learning.constants import UNKNOWN_KEY
from learning.errors import MalformedEventError
from learning.keys import crop_display_name, crop_key, customer_key, normalize_title
from learning.models import HarvestEvent, OrderEvent, OrderLine

logger = structlog.get_logger()

ORDER_SOURCES = ("shopifyOrders", "orders")
LINE_ITEM_FIELDS = ("items", "lineItems", "line_items")
ORDER_ID_FIELDS = ("shopifyOrderId", "shopifyDraftOrderId", "id", "orderId")
CANCELLED_STATUSES = {"cancelled", "canceled"}


# ── Field parsing ─────────────────────────────────────────────────────────


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse the timestamp shapes seen in order and harvest documents.

    Accepts datetimes, ISO-8601 strings, Firestore-style
    {"seconds": ...} / {"_seconds": ...} objects, and epoch seconds.
    Naive values are taken as UTC. Returns None when unparseable.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        if seconds is None or isinstance(seconds, bool):
            return None
        try:
            parsed = datetime.fromtimestamp(float(seconds), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            return None
    elif isinstance(value, (int, float)):
        try:
            parsed = datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_number(value: Any) -> float | None:
    """Finite float from a number or numeric string; None otherwise."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def order_id(raw: dict[str, Any]) -> str | None:
    for field in ORDER_ID_FIELDS:
        value = raw.get(field)
        if value not in (None, ""):
            return str(value)
    return None


def _line_items(raw: dict[str, Any]) -> list[dict[str, Any]] | None:
    for field in LINE_ITEM_FIELDS:
        items = raw.get(field)
        if items:
            return items if isinstance(items, list) else None
    return None


def is_cancelled(raw: dict[str, Any]) -> bool:
    status = str(raw.get("status") or "").strip().lower()
    return status in CANCELLED_STATUSES or bool(raw.get("cancelledAt") or raw.get("cancelled_at"))


# ── Orders ────────────────────────────────────────────────────────────────


def normalize_order_lines(items: list[dict[str, Any]], order_ref: str | None = None) -> list[OrderLine]:
    """
    Validate line items and aggregate repeated crops within one order.

    Input (raw line items):
        [
            {"title": "Pea Shoots", "quantity": 4, "lineTotal": 24.0},
            {"title": "Pea Shoots", "quantity": "2", "lineTotal": 12.0},
            {"title": "Radish", "quantity": null},
        ]

    Output: [OrderLine(crop_key="pea_shoots", quantity=6.0, line_total=36.0)]
    """
    aggregated: dict[str, dict[str, Any]] = {}
    for item in items:
        if not isinstance(item, dict):
            logger.warning("learning.line_item_skipped", order_id=order_ref, reason="not_an_object")
            continue

        key = crop_key(item)
        if key == UNKNOWN_KEY:
            logger.warning("learning.line_item_skipped", order_id=order_ref, reason="missing_crop")
            continue

        quantity = parse_number(item.get("quantity"))
        if quantity is None:
            logger.warning(
                "learning.line_item_skipped",
                order_id=order_ref,
                crop_key=key,
                reason="invalid_quantity",
                raw_quantity=repr(item.get("quantity")),
            )
            continue
        if quantity <= 0:
            logger.info("learning.line_item_skipped", order_id=order_ref, crop_key=key, reason="non_positive_quantity")
            continue

        line_total = parse_number(item.get("lineTotal", item.get("line_total")))
        entry = aggregated.setdefault(
            key,
            {"crop_key": key, "crop_display_name": crop_display_name(item), "quantity": 0.0, "line_total": None},
        )
        entry["quantity"] += quantity
        if line_total is not None:
            entry["line_total"] = (entry["line_total"] or 0.0) + line_total

    return [OrderLine(**entry) for entry in aggregated.values()]


def normalize_order(raw: dict[str, Any], source: str = "orders") -> OrderEvent:
    """
    Normalize a raw order document into an OrderEvent.

    Input (shopifyOrders document):
        {
            "shopifyOrderId": "gid://shopify/Order/5501",
            "customerEmail": "Chef@Bistro.com",
            "customerName": "Bistro Chef",
            "createdAt": "2026-03-02T15:04:05Z",
            "total": "48.00",
            "status": "delivered",
            "items": [{"title": "Pea Shoots", "quantity": 4, "lineTotal": 24.0}, ...]
        }

    Raises MalformedEventError with reason missing_date, invalid_date,
    no_line_items, unknown_customer, cancelled or no_valid_line_items.
    """
    if not isinstance(raw, dict):
        raise MalformedEventError("not_an_object", type(raw).__name__)

    ref = order_id(raw)

    created = raw.get("createdAt", raw.get("created_at", raw.get("shopifyCreatedAt")))
    if created in (None, ""):
        raise MalformedEventError("missing_date", ref or "")
    order_date = parse_timestamp(created)
    if order_date is None:
        raise MalformedEventError("invalid_date", repr(created))

    items = _line_items(raw)
    if not items:
        raise MalformedEventError("no_line_items", ref or "")

    cust = customer_key(raw)
    if cust == UNKNOWN_KEY:
        raise MalformedEventError("unknown_customer", ref or "")

    if is_cancelled(raw):
        raise MalformedEventError("cancelled", ref or "")

    lines = normalize_order_lines(items, order_ref=ref)
    if not lines:
        raise MalformedEventError("no_valid_line_items", ref or "")

    total = parse_number(raw.get("total"))
    if total is None:
        total = sum(line.line_total or 0.0 for line in lines)

    customer_name = raw.get("customerName") or raw.get("name")

    return OrderEvent(
        order_id=ref,
        source=source,
        customer_key=cust,
        customer_name=str(customer_name).strip() if customer_name else None,
        order_date=order_date,
        total=total,
        status=raw.get("status"),
        lines=lines,
    )


# ── Harvests ──────────────────────────────────────────────────────────────


def normalize_harvest(raw: dict[str, Any]) -> HarvestEvent:
    """
    Normalize a raw harvest document into a HarvestEvent.

    Input:
        {
            "id": "h_0192",
            "cropId": "pea_shoots",
            "totalYieldOz": 96,
            "trayCount": 12,
            "harvestedAt": "2026-03-01T09:00:00Z"
        }

    yield_per_tray is taken directly when present, otherwise derived from
    totalYieldOz / trayCount.
    """
    if not isinstance(raw, dict):
        raise MalformedEventError("not_an_object", type(raw).__name__)

    ref = raw.get("harvestId") or raw.get("id")
    crop = normalize_title(raw.get("cropId") or raw.get("cropKey") or raw.get("cropName") or raw.get("title"))
    if not crop:
        raise MalformedEventError("missing_crop", str(ref or ""))

    tray_count = parse_number(raw.get("trayCount", raw.get("tray_count")))
    total_yield = parse_number(raw.get("totalYieldOz", raw.get("total_yield")))
    yield_per_tray = parse_number(raw.get("yieldPerTray", raw.get("yield_per_tray")))
    if yield_per_tray is None:
        if total_yield is None or tray_count is None or tray_count <= 0:
            raise MalformedEventError("missing_yield_data", str(ref or ""))
        yield_per_tray = total_yield / tray_count
    if yield_per_tray <= 0:
        raise MalformedEventError("missing_yield_data", str(ref or ""))

    harvested = raw.get("harvestedAt", raw.get("harvest_date"))
    if harvested in (None, ""):
        raise MalformedEventError("missing_date", str(ref or ""))
    harvest_date = parse_timestamp(harvested)
    if harvest_date is None:
        raise MalformedEventError("invalid_date", repr(harvested))

    display = raw.get("cropName") or raw.get("title") or raw.get("cropId")

    return HarvestEvent(
        harvest_id=str(ref) if ref else None,
        crop_key=crop,
        crop_display_name=str(display) if display else None,
        yield_per_tray=yield_per_tray,
        tray_count=tray_count,
        total_yield=total_yield,
        harvest_date=harvest_date,
        profile_yield_per_tray=parse_number(raw.get("profileYieldPerTray")),
    )
