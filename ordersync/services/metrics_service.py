"""Daily order metrics computed from the local order store.

WHAT:
    Per-UTC-day order count, revenue and shipping cost over the last N days,
    plus summary totals and average order value.

WHY:
    Metrics are recomputed on every read; nothing is materialized, so they
    always reflect whatever the syncs and webhooks have stored.

REFERENCES:
    - ordersync/routers/metrics.py
"""

import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

from sqlalchemy.orm import Session

from ..models import Order as OrderRow
from ..utils.dates import parse_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 30


def _to_decimal(value) -> Decimal:
    """Safe Decimal conversion (None or garbage -> 0)."""
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")


def _shipping_amount(price_set: Optional[dict]) -> Decimal:
    shop_money = (price_set or {}).get("shop_money") or {}
    return _to_decimal(shop_money.get("amount"))


def window_start(days: int, now: Optional[datetime] = None) -> datetime:
    """UTC midnight `days` days before `now`."""
    now = now or utc_now()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight - timedelta(days=days)


def compute_order_metrics(db: Session, days: int = DEFAULT_WINDOW_DAYS, now: Optional[datetime] = None) -> dict:
    """Aggregate stored orders created in the window, grouped by UTC date.

    Returns:
        {"metrics": [{date, orderCount, revenue, shippingCost}, ...],
         "summary": {totalOrders, totalRevenue, totalShipping, averageOrderValue}}
    """
    start = window_start(days, now)

    # created_at strings may carry offsets; prefilter loosely, filter exactly after parsing
    prefilter = (start - timedelta(days=1)).strftime("%Y-%m-%d")
    rows = (
        db.query(OrderRow.created_at, OrderRow.total_price, OrderRow.total_shipping_price_set)
        .filter(OrderRow.created_at >= prefilter)
        .all()
    )

    buckets: Dict[str, Dict[str, object]] = {}
    skipped = 0

    for created_at, total_price, shipping_set in rows:
        created = parse_iso(created_at)
        if created is None:
            skipped += 1
            continue
        if created < start:
            continue

        date_key = created.date().isoformat()
        bucket = buckets.setdefault(
            date_key,
            {"orderCount": 0, "revenue": Decimal("0"), "shippingCost": Decimal("0")},
        )
        bucket["orderCount"] += 1
        bucket["revenue"] += _to_decimal(total_price)
        bucket["shippingCost"] += _shipping_amount(shipping_set)

    if skipped:
        logger.warning(f"[METRICS] Skipped {skipped} orders with unparsable created_at")

    ordered = OrderedDict(sorted(buckets.items()))
    total_orders = sum(b["orderCount"] for b in ordered.values())
    total_revenue = sum((b["revenue"] for b in ordered.values()), Decimal("0"))
    total_shipping = sum((b["shippingCost"] for b in ordered.values()), Decimal("0"))
    average = total_revenue / total_orders if total_orders else Decimal("0")

    return {
        "metrics": [
            {
                "date": date_key,
                "orderCount": bucket["orderCount"],
                "revenue": float(bucket["revenue"]),
                "shippingCost": float(bucket["shippingCost"]),
            }
            for date_key, bucket in ordered.items()
        ],
        "summary": {
            "totalOrders": total_orders,
            "totalRevenue": float(total_revenue),
            "totalShipping": float(total_shipping),
            "averageOrderValue": float(average),
        },
    }
