"""
Ingestion boundary package.

Normalizes raw order and harvest documents from every source collection
into canonical Learning Engine events:
  - shopifyOrders  (Shopify GraphQL sync)
  - orders         (Shopify order webhook)
  - harvests       (crew harvest log)

Usage:
    from integrations import normalize_order

    event = normalize_order(raw_doc, source="shopifyOrders")
    engine.process_order(event)
"""

from integrations.order_events import (
    ORDER_SOURCES,
    is_cancelled,
    normalize_harvest,
    normalize_order,
    normalize_order_lines,
    order_id,
    parse_number,
    parse_timestamp,
)

__all__ = [
    "ORDER_SOURCES",
    "is_cancelled",
    "normalize_harvest",
    "normalize_order",
    "normalize_order_lines",
    "order_id",
    "parse_number",
    "parse_timestamp",
]
