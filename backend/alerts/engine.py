"""
Alert Engine — Order anomaly / yield outlier alerts and their lifecycle.

Alert Types:
  - order_anomaly: an order quantity outside the customer-crop pair's
    expected range (absolute bounds or z-score)
  - yield_outlier: a harvest whose yield per tray is > 3σ from the crop's
    history; the harvest is kept out of the yield profile

Lifecycle is append-only with a single transition: pending → dismissed.
New alerts can optionally be fanned out on Redis pub/sub.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone

import redis
import structlog

from learning.anomaly import AnomalyResult
from learning.errors import AlertTransitionError
from learning.models import Alert, HarvestEvent, OrderEvent, OrderLine, YieldProfile
from stores.base import StatsStore

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────────────────
# Severity
# ──────────────────────────────────────────────────────────────────────────

SEVERITY_THRESHOLDS = {
    "anomaly_z_score": {
        "critical": 4.0,
        "high": 3.0,
        "medium": 2.5,
    },
}


def classify_anomaly_severity(z_score: float | None) -> str:
    """Severity from |z|; bound-based detections (no z) are medium."""
    if z_score is None:
        return "medium"
    thresholds = SEVERITY_THRESHOLDS["anomaly_z_score"]
    z = abs(z_score)
    if z >= thresholds["critical"]:
        return "critical"
    elif z >= thresholds["high"]:
        return "high"
    elif z >= thresholds["medium"]:
        return "medium"
    return "low"


# ──────────────────────────────────────────────────────────────────────────
# Construction
# ──────────────────────────────────────────────────────────────────────────


def build_order_anomaly_alert(
    event: OrderEvent,
    line: OrderLine,
    anomaly: AnomalyResult,
    expected_mean: float,
    expected_quantity: float | None,
) -> Alert:
    """Alert for one anomalous order line, scored on the pre-update record."""
    return Alert(
        alert_type="order_anomaly",
        crop_key=line.crop_key,
        crop_display_name=line.crop_display_name,
        customer_key=event.customer_key,
        customer_name=event.customer_name or event.customer_key,
        order_id=event.order_id,
        quantity=line.quantity,
        expected_mean=round(expected_mean, 2),
        expected_quantity=round(expected_quantity, 2) if expected_quantity is not None else None,
        z_score=anomaly.z_score,
        expected_range=anomaly.expected_range.as_dict(),
        method=anomaly.method,
        confidence=anomaly.confidence,
        severity=classify_anomaly_severity(anomaly.z_score),
    )


def build_yield_outlier_alert(event: HarvestEvent, profile: YieldProfile, anomaly: AnomalyResult) -> Alert:
    return Alert(
        alert_type="yield_outlier",
        crop_key=event.crop_key,
        crop_display_name=event.crop_display_name or profile.crop_display_name,
        harvest_id=event.harvest_id,
        yield_per_tray=round(event.yield_per_tray, 2),
        expected_mean=round(profile.yield_mean, 2),
        z_score=anomaly.z_score,
        expected_range=anomaly.expected_range.as_dict(),
        method=anomaly.method,
        confidence=anomaly.confidence,
        severity=classify_anomaly_severity(anomaly.z_score),
    )


# ──────────────────────────────────────────────────────────────────────────
# Dismissal
# ──────────────────────────────────────────────────────────────────────────


@dataclass
class DismissResult:
    dismissed: int = 0
    already_dismissed: int = 0
    missing: list[str] = field(default_factory=list)


def dismiss_alert(store: StatsStore, alert_id: str, now: datetime | None = None) -> bool:
    """
    Move one alert pending → dismissed.

    Returns False when the alert was already dismissed. Raises
    AlertTransitionError for an unknown id.
    """
    alert = store.get_alert(alert_id)
    if alert is None:
        raise AlertTransitionError(f"Alert {alert_id} not found")
    if alert.status == "dismissed":
        return False
    store.put_alert(
        alert.model_copy(update={"status": "dismissed", "dismissed_at": now or datetime.now(timezone.utc)})
    )
    return True


def dismiss_alerts(
    store: StatsStore,
    alert_id: str | None = None,
    alert_ids: list[str] | None = None,
    dismiss_all: bool = False,
    now: datetime | None = None,
) -> DismissResult:
    """
    Dismiss one alert, a list of alerts, or every pending alert.

    Exactly one selector must be given. A single unknown alert_id raises
    AlertTransitionError; unknown ids inside alert_ids are reported in
    DismissResult.missing instead.
    """
    selectors = sum([alert_id is not None, alert_ids is not None, bool(dismiss_all)])
    if selectors != 1:
        raise ValueError("Provide exactly one of alert_id, alert_ids, or dismiss_all")

    now = now or datetime.now(timezone.utc)
    result = DismissResult()

    if dismiss_all:
        ids = [alert.alert_id for alert in store.list_alerts(status="pending")]
    elif alert_ids is not None:
        ids = list(dict.fromkeys(alert_ids))
    else:
        ids = [alert_id]

    for current in ids:
        try:
            changed = dismiss_alert(store, current, now=now)
        except AlertTransitionError:
            if alert_id is not None:
                raise
            result.missing.append(current)
            continue
        if changed:
            result.dismissed += 1
        else:
            result.already_dismissed += 1

    logger.info(
        "alerts.dismissed",
        dismissed=result.dismissed,
        already_dismissed=result.already_dismissed,
        missing=len(result.missing),
        dismiss_all=dismiss_all,
    )
    return result


# ──────────────────────────────────────────────────────────────────────────
# Publishing
# ──────────────────────────────────────────────────────────────────────────


def alert_channel(tenant_id: str) -> str:
    return f"alerts:{tenant_id}"


def publish_alerts(alerts: list[Alert], tenant_id: str, redis_url: str, client: redis.Redis | None = None) -> int:
    """
    Publish new alerts to Redis pub/sub for real-time delivery.
    Returns number of subscribers notified.
    """
    if not alerts:
        return 0

    owns_client = client is None
    client = client or redis.Redis.from_url(redis_url)
    try:
        total_subs = 0
        for alert in alerts:
            payload = json.dumps(
                {
                    "type": "alert",
                    "payload": {
                        "alert_id": alert.alert_id,
                        "alert_type": alert.alert_type,
                        "severity": alert.severity,
                        "crop_key": alert.crop_key,
                        "customer_key": alert.customer_key,
                        "z_score": alert.z_score,
                        "expected_range": alert.expected_range,
                        "created_at": alert.created_at.isoformat(),
                    },
                }
            )
            total_subs += client.publish(alert_channel(tenant_id), payload)
        return total_subs
    finally:
        if owns_client:
            client.close()
