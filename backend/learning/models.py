"""
Learning Engine records.

Persisted records are pydantic models so every store backend can round-trip
them through JSON with `model_dump(mode="json")` / `model_validate`.
Canonical ingestion events live here as well: every raw order or harvest is
normalized into one of these shapes before it reaches the statistics core.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

AlertType = Literal["order_anomaly", "yield_outlier"]
AlertStatus = Literal["pending", "dismissed"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── Canonical events ───────────────────────────────────────────────────────


class OrderLine(BaseModel):
    crop_key: str
    crop_display_name: str
    quantity: float
    line_total: float | None = None

    model_config = {"frozen": True}


class OrderEvent(BaseModel):
    order_id: str | None = None
    source: str = "orders"
    customer_key: str
    customer_name: str | None = None
    order_date: datetime
    total: float = 0.0
    status: str | None = None
    lines: list[OrderLine] = Field(default_factory=list)

    model_config = {"frozen": True}


class HarvestEvent(BaseModel):
    harvest_id: str | None = None
    crop_key: str
    crop_display_name: str | None = None
    yield_per_tray: float
    tray_count: float | None = None
    total_yield: float | None = None
    harvest_date: datetime
    profile_yield_per_tray: float | None = None

    model_config = {"frozen": True}


# ─── Persisted statistics ───────────────────────────────────────────────────


class CustomerCropStats(BaseModel):
    """Running statistics for one (customer, crop) pair."""

    customer_key: str
    crop_key: str
    customer_name: str | None = None
    crop_display_name: str | None = None
    first_order_date: datetime | None = None

    # Welford accumulators
    count: int = 0
    mean: float = 0.0
    m2: float = 0.0

    # EWMA predictor state (uncorrected)
    ewma: float | None = None
    ewma_alpha: float = 0.25

    # Incremental regression (X = order index, Y = quantity)
    sum_x: float = 0.0
    sum_y: float = 0.0
    sum_xy: float = 0.0
    sum_x2: float = 0.0

    # Ordering pattern
    last_order_date: datetime | None = None
    last_quantity: float = 0.0
    avg_days_between_orders: float | None = None
    interval_stddev: float | None = None
    interval_count: int = 0
    interval_m2: float = 0.0

    # Prediction accuracy
    total_predictions: int = 0
    sum_abs_percent_error: float = 0.0
    running_bias: float = 0.0

    @property
    def stddev(self) -> float:
        if self.count < 2:
            return 0.0
        return math.sqrt(max(self.m2, 0.0) / (self.count - 1))

    @property
    def mape(self) -> float | None:
        if self.total_predictions <= 0:
            return None
        return self.sum_abs_percent_error / self.total_predictions


class YieldProfile(BaseModel):
    """Running harvest-yield statistics for one crop."""

    crop_key: str
    crop_display_name: str | None = None
    profile_yield_per_tray: float = 0.0
    actual_yield_estimate: float | None = None
    yield_count: int = 0
    yield_mean: float = 0.0
    yield_m2: float = 0.0
    yield_stddev: float = 0.0
    adjusted_buffer_percent: int = 15
    last_harvest_date: datetime | None = None


class Alert(BaseModel):
    alert_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    alert_type: AlertType
    status: AlertStatus = "pending"
    crop_key: str
    crop_display_name: str | None = None
    customer_key: str | None = None
    customer_name: str | None = None
    order_id: str | None = None
    harvest_id: str | None = None
    quantity: float | None = None
    yield_per_tray: float | None = None
    expected_mean: float | None = None
    expected_quantity: float | None = None
    z_score: float | None = None
    expected_range: dict[str, float] | None = None
    method: str | None = None
    confidence: str | None = None
    severity: str = "medium"
    created_at: datetime = Field(default_factory=_utcnow)
    dismissed_at: datetime | None = None


class DailyBucket(BaseModel):
    date: str  # YYYY-MM-DD
    order_count: int = 0
    total_revenue: float = 0.0
    crop_quantities: dict[str, float] = Field(default_factory=dict)
    customer_orders: dict[str, int] = Field(default_factory=dict)


class MonthlySummary(BaseModel):
    month: str  # YYYY-MM
    total_orders: int = 0
    total_revenue: float = 0.0
    unique_customers: int = 0
    crop_quantities: dict[str, float] = Field(default_factory=dict)
    avg_order_value: float = 0.0


class TopCrop(BaseModel):
    crop_key: str
    display_name: str | None = None
    total_volume: float
    ewma_total: float
    customers: int
    max_confidence: int
    trend: str


class DashboardSummary(BaseModel):
    """Tenant-wide rollup, rebuilt wholesale by the nightly job."""

    tenant_id: str
    total_customer_crop_pairs: int = 0
    keys_processed: int = 0
    error_count: int = 0
    active_customers: int = 0
    customer_health: dict[str, int] = Field(default_factory=lambda: {"active": 0, "at_risk": 0, "churned": 0})
    confidence_distribution: dict[str, int] = Field(default_factory=lambda: {"high": 0, "medium": 0, "low": 0})
    trend_distribution: dict[str, int] = Field(default_factory=dict)
    avg_confidence: float | None = None
    avg_mape: float | None = None
    prediction_accuracy: float | None = None
    bias_corrected_pairs: int = 0
    alert_count: int = 0
    avg_weekly_revenue: float = 0.0
    top_crops: list[TopCrop] = Field(default_factory=list)
    total_daily_buckets: int = 0
    total_monthly_summaries: int = 0
    snapshot_started_at: datetime
    computed_at: datetime
