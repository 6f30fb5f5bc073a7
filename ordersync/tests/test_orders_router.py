"""HTTP tests for the orders and metrics endpoints."""

from ordersync.deps import ShopifyConfigError, get_order_sync_service
from ordersync.models import BulkStatusEnum
from ordersync.services.order_repository import OrderRepository
from ordersync.services.shopify_client import BulkOperation
from ordersync.tests.helpers import BULK_OPERATION_ID, BULK_URL, make_order, upstream_error


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


# =============================================================================
# READS
# =============================================================================

def test_list_orders_paginated(client, test_db_session):
    OrderRepository(test_db_session).upsert_batch([
        make_order(str(i), created_at=f"2024-01-{i:02d}T00:00:00Z") for i in range(1, 6)
    ])

    response = client.get("/orders", params={"page": 2, "limit": 2})

    assert response.status_code == 200
    body = response.json()
    assert [o["id"] for o in body["orders"]] == ["3", "2"]
    assert body["pagination"] == {"page": 2, "limit": 2, "total": 5, "totalPages": 3}
    assert body["orders"][0]["syncStatus"] == "success"
    assert "customer" not in body["orders"][0]


def test_list_orders_empty(client):
    body = client.get("/orders").json()
    assert body == {"orders": [], "pagination": {"page": 1, "limit": 20, "total": 0, "totalPages": 0}}


def test_list_orders_rejects_bad_paging(client):
    assert client.get("/orders", params={"page": 0}).status_code == 422
    assert client.get("/orders", params={"limit": 251}).status_code == 422


def test_get_order(client, test_db_session):
    OrderRepository(test_db_session).upsert(make_order("1001", shipping="3.00"))

    response = client.get("/orders/1001")

    assert response.status_code == 200
    order = response.json()["order"]
    assert order["id"] == "1001"
    assert order["total_shipping_price_set"]["shop_money"]["amount"] == "3.00"


def test_get_missing_order(client):
    assert client.get("/orders/404404").status_code == 404


# =============================================================================
# SYNC
# =============================================================================

def test_sync_requires_flag(client):
    assert client.post("/orders").status_code == 400
    assert client.post("/orders", json={"sync": False}).status_code == 400


def test_first_sync_returns_202(client, fake_client):
    response = client.post("/orders", json={"sync": True})

    assert response.status_code == 202
    assert response.json() == {
        "success": True,
        "method": "bulk",
        "status": "pending",
        "operationId": BULK_OPERATION_ID,
        "isFirstSync": True,
    }
    assert fake_client.started_bulk == [None]


def test_incremental_sync_returns_counts(client, fake_client, test_db_session, state_store):
    state_store.update_last_sync_at(test_db_session, "2024-01-01T00:00:00Z")
    fake_client.change_count = 2
    fake_client.incremental_orders = [make_order("1"), make_order("2")]

    response = client.post("/orders", json={"sync": True})

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "method": "incremental",
        "synced": 2,
        "new": 2,
        "updated": 0,
        "isFirstSync": False,
    }


def test_sync_conflict_returns_409(client, fake_client):
    fake_client.current_operation = BulkOperation(id=BULK_OPERATION_ID, status="running")

    response = client.post("/orders", json={"sync": True})

    assert response.status_code == 409
    body = response.json()
    assert body["success"] is False
    assert body["status"] == "pending"
    assert body["operationId"] == BULK_OPERATION_ID
    assert fake_client.started_bulk == []


def test_sync_upstream_failure_returns_502(client, fake_client):
    async def broken():
        raise upstream_error("shopify down")

    fake_client.get_current_bulk_operation = broken

    response = client.post("/orders", json={"sync": True})
    assert response.status_code == 502


def test_missing_credentials_returns_500(app, client):
    def unconfigured():
        raise ShopifyConfigError("Shopify credentials not configured")

    app.dependency_overrides[get_order_sync_service] = unconfigured

    response = client.post("/orders", json={"sync": True})
    assert response.status_code == 500
    assert "credentials" in response.json()["detail"]
    # Reads do not need Shopify
    assert client.get("/orders").status_code == 200


# =============================================================================
# BULK STATUS
# =============================================================================

def test_bulk_status_idle(client):
    response = client.get("/orders", params={"status": "bulk"})
    assert response.status_code == 200
    assert response.json() == {"status": "idle"}


def test_bulk_status_completed_queues_finalization(client, fake_client, fake_queue, test_db_session, state_store):
    state_store.start_bulk(test_db_session, BULK_OPERATION_ID, started_at="2024-06-01T00:00:00Z")
    fake_client.current_operation = BulkOperation(id=BULK_OPERATION_ID, status="completed", url=BULK_URL)

    response = client.get("/orders", params={"status": "bulk"})

    assert response.status_code == 200
    assert response.json() == {"status": "pending", "operationId": BULK_OPERATION_ID}
    assert [job[0] for job in fake_queue.submitted] == ["finalize_bulk_sync"]


def test_bulk_status_queue_unavailable_stays_pending(client, fake_client, fake_queue, test_db_session, state_store):
    state_store.start_bulk(test_db_session, BULK_OPERATION_ID, started_at="2024-06-01T00:00:00Z")
    fake_client.current_operation = BulkOperation(id=BULK_OPERATION_ID, status="completed", url=BULK_URL)
    fake_queue.submit_error = ConnectionError("Redis unreachable")

    response = client.get("/orders", params={"status": "bulk"})

    assert response.status_code == 200
    assert response.json() == {"status": "pending", "operationId": BULK_OPERATION_ID}

    # Next poll retries the submission
    fake_queue.submit_error = None
    client.get("/orders", params={"status": "bulk"})
    assert [job[0] for job in fake_queue.submitted] == ["finalize_bulk_sync"]


def test_bulk_status_after_import(client, test_db_session, state_store):
    state_store.update_bulk_state(
        test_db_session, BulkStatusEnum.idle, operation_id=BULK_OPERATION_ID, synced=1200
    )

    response = client.get("/orders", params={"status": "bulk"})
    assert response.json() == {"status": "idle", "operationId": BULK_OPERATION_ID, "synced": 1200}


def test_bulk_status_failed(client, fake_client, test_db_session, state_store):
    state_store.start_bulk(test_db_session, BULK_OPERATION_ID, started_at="2024-06-01T00:00:00Z")
    fake_client.current_operation = BulkOperation(id=BULK_OPERATION_ID, status="failed", error_code="INTERNAL_SERVER_ERROR")

    body = client.get("/orders", params={"status": "bulk"}).json()
    assert body["status"] == "failed"
    assert body["error"] == "INTERNAL_SERVER_ERROR"


# =============================================================================
# REFRESH
# =============================================================================

def test_refresh_order(client, fake_client):
    fake_client.orders_by_id = {"1001": make_order("1001", total_price="42.00")}

    response = client.post("/orders/1001")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["order"]["total_price"] == "42.00"
    assert body["order"]["syncStatus"] == "success"


def test_refresh_unknown_order(client):
    assert client.post("/orders/999").status_code == 404


def test_refresh_upstream_failure(client, fake_client):
    fake_client.fetch_error = upstream_error()
    assert client.post("/orders/1001").status_code == 502


# =============================================================================
# METRICS
# =============================================================================

def test_metrics_endpoint(client, test_db_session):
    OrderRepository(test_db_session).upsert(make_order("1", created_at="2999-01-01T00:00:00Z"))

    response = client.get("/metrics", params={"days": 7})

    assert response.status_code == 200
    body = response.json()
    assert set(body) == {"metrics", "summary"}
    assert set(body["summary"]) == {"totalOrders", "totalRevenue", "totalShipping", "averageOrderValue"}


def test_metrics_rejects_negative_days(client):
    assert client.get("/metrics", params={"days": -1}).status_code == 422
