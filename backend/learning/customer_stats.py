"""
Customer-crop accumulator updates.

`apply_order` is the single place where a new order quantity is folded into
a CustomerCropStats record, in a fixed order:

    moments → interval → trend → EWMA → bias/accuracy

Both the event fast path and the historical backfill go through it, which
is what makes a replay from a reset store reproduce the live records.
"""

from __future__ import annotations

from datetime import datetime

import structlog

from learning.forecast import select_alpha, update_ewma, update_prediction_accuracy
from learning.models import CustomerCropStats, OrderEvent, OrderLine
from learning.stats import days_between, update_interval_stats, update_regression, welford_update

logger = structlog.get_logger()


def default_stats(event: OrderEvent, line: OrderLine) -> CustomerCropStats:
    """Explicit default construction for a pair seen for the first time."""
    return CustomerCropStats(
        customer_key=event.customer_key,
        crop_key=line.crop_key,
        customer_name=event.customer_name or event.customer_key,
        crop_display_name=line.crop_display_name,
        first_order_date=event.order_date,
    )


def apply_order(stats: CustomerCropStats, quantity: float, order_date: datetime) -> CustomerCropStats:
    """Return a new record with one order observation folded in."""
    update: dict = {}

    # Moments
    count, mean, m2 = welford_update(stats.count, stats.mean, stats.m2, quantity)
    update.update(count=count, mean=mean, m2=m2)

    # Interval (every order after the first contributes one gap)
    last_order_date = order_date
    if stats.last_order_date is not None:
        gap = days_between(stats.last_order_date, order_date)
        if gap < 0:
            logger.warning(
                "learning.out_of_order_event",
                customer_key=stats.customer_key,
                crop_key=stats.crop_key,
                gap_days=round(gap, 3),
            )
            gap = 0.0
            last_order_date = stats.last_order_date
        update.update(update_interval_stats(stats, gap))

    # Trend, X is the 1-based order index
    update.update(update_regression(stats, count, quantity))

    # EWMA, alpha picked from the record as it stood before this order
    alpha = select_alpha(stats)
    update.update(ewma=update_ewma(stats.ewma, quantity, alpha), ewma_alpha=alpha)

    # Accuracy of the prediction that was in effect for this order
    update.update(update_prediction_accuracy(quantity, stats.ewma, stats))

    update.update(last_order_date=last_order_date, last_quantity=quantity)
    if stats.first_order_date is None or order_date < stats.first_order_date:
        update["first_order_date"] = order_date

    return stats.model_copy(update=update)


def with_identity(stats: CustomerCropStats, event: OrderEvent, line: OrderLine) -> CustomerCropStats:
    """Refresh display metadata from the latest event."""
    return stats.model_copy(
        update={
            "customer_name": event.customer_name or stats.customer_name or event.customer_key,
            "crop_display_name": line.crop_display_name or stats.crop_display_name,
        }
    )
