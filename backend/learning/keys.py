"""
Key Derivation — stable (customer, crop) identities.

Orders arrive from two independently synced collections (Shopify GraphQL
sync and the order webhook) with differently-shaped documents. Both must
resolve to the same keys, so the preference order below only uses fields
that carry the same value in either source.
"""

from __future__ import annotations

import json
import re
from typing import Any

from learning.constants import UNKNOWN_KEY

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_WHITESPACE = re.compile(r"\s+")


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _last_gid_segment(value: Any) -> str:
    """'gid://shopify/Customer/123' → '123'."""
    return _clean_text(value).rstrip("/").split("/")[-1].strip()


def normalize_title(title: Any) -> str:
    """'Pea Shoots (8oz)' → 'pea_shoots_8oz'."""
    return _NON_ALNUM.sub("_", _clean_text(title).lower()).strip("_")


def customer_key(record: dict[str, Any]) -> str:
    """
    Derive the customer key from a raw order or customer record.

    Priority: email → Shopify customer id → webhook customer id → name.
    """
    email = _clean_text(record.get("customerEmail") or record.get("email"))
    if email:
        return email.lower()

    shopify_id = _clean_text(record.get("shopifyCustomerId"))
    if shopify_id:
        segment = _last_gid_segment(shopify_id)
        if segment:
            return f"cust_{segment}"

    customer_id = _clean_text(record.get("customerId"))
    if customer_id:
        return customer_id

    name = _clean_text(record.get("customerName") or record.get("name"))
    if name:
        return "name_" + _WHITESPACE.sub("_", name.lower())

    return UNKNOWN_KEY


def crop_key(line_item: dict[str, Any]) -> str:
    """Derive the crop key from a raw line item (title first, then product id)."""
    title_key = normalize_title(line_item.get("title") or line_item.get("name"))
    if title_key:
        return title_key

    product_id = _clean_text(line_item.get("shopifyProductId") or line_item.get("productId"))
    if product_id:
        segment = _last_gid_segment(product_id)
        if segment:
            return segment

    return UNKNOWN_KEY


def crop_display_name(line_item: dict[str, Any]) -> str:
    return _clean_text(line_item.get("title") or line_item.get("name")) or "Unknown Product"


def stats_key(customer: str, crop: str) -> str:
    """
    Storage key for a customer-crop stats record.

    Injective: distinct (customer, crop) pairs never share a key, whatever
    characters the customer key carries.
    """
    return json.dumps([customer, crop], separators=(",", ":"))
