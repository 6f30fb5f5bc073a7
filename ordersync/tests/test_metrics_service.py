"""Tests for daily order metrics."""

from datetime import datetime, timezone

from ordersync.services.metrics_service import compute_order_metrics, window_start
from ordersync.services.order_repository import OrderRepository
from ordersync.tests.helpers import make_order

NOW = datetime(2024, 1, 10, 15, 30, tzinfo=timezone.utc)


def _store(db, *orders):
    OrderRepository(db).upsert_batch(list(orders))


def test_window_start_is_utc_midnight():
    assert window_start(7, NOW) == datetime(2024, 1, 3, tzinfo=timezone.utc)
    assert window_start(0, NOW) == datetime(2024, 1, 10, tzinfo=timezone.utc)


def test_daily_buckets_and_summary(test_db_session):
    _store(
        test_db_session,
        make_order("1", created_at="2024-01-01T08:00:00Z", total_price="10.00"),
        make_order("2", created_at="2024-01-01T20:00:00Z", total_price="20.00"),
        make_order("3", created_at="2024-01-02T09:00:00Z", total_price="5.00"),
    )

    result = compute_order_metrics(test_db_session, days=30, now=NOW)

    assert result["metrics"] == [
        {"date": "2024-01-01", "orderCount": 2, "revenue": 30.0, "shippingCost": 0.0},
        {"date": "2024-01-02", "orderCount": 1, "revenue": 5.0, "shippingCost": 0.0},
    ]
    summary = result["summary"]
    assert summary["totalOrders"] == 3
    assert summary["totalRevenue"] == 35.0
    assert abs(summary["averageOrderValue"] - 35 / 3) < 1e-9


def test_shipping_is_summed(test_db_session):
    _store(
        test_db_session,
        make_order("1", created_at="2024-01-05T08:00:00Z", shipping="4.50"),
        make_order("2", created_at="2024-01-05T09:00:00Z", shipping="0.50"),
        make_order("3", created_at="2024-01-05T10:00:00Z"),
    )

    result = compute_order_metrics(test_db_session, days=30, now=NOW)

    assert result["metrics"][0]["shippingCost"] == 5.0
    assert result["summary"]["totalShipping"] == 5.0


def test_orders_outside_window_are_excluded(test_db_session):
    _store(
        test_db_session,
        make_order("1", created_at="2024-01-02T23:59:59Z"),
        make_order("2", created_at="2024-01-03T00:00:00Z"),
        # Local time on the 2nd, already the 3rd in UTC
        make_order("3", created_at="2024-01-02T20:00:00-05:00"),
    )

    result = compute_order_metrics(test_db_session, days=7, now=NOW)

    assert result["metrics"] == [
        {"date": "2024-01-03", "orderCount": 2, "revenue": 20.0, "shippingCost": 0.0},
    ]


def test_empty_store(test_db_session):
    result = compute_order_metrics(test_db_session, days=30, now=NOW)
    assert result["metrics"] == []
    assert result["summary"] == {
        "totalOrders": 0,
        "totalRevenue": 0.0,
        "totalShipping": 0.0,
        "averageOrderValue": 0.0,
    }


def test_unparsable_created_at_is_skipped(test_db_session):
    _store(
        test_db_session,
        make_order("1", created_at="2024-01-05T08:00:00Z"),
        make_order("2", created_at="2024-13-45 not a date"),
    )

    result = compute_order_metrics(test_db_session, days=30, now=NOW)
    assert result["summary"]["totalOrders"] == 1
