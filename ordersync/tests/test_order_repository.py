"""Tests for the local order store: upserts, last-write-wins, batching, reads."""

import pytest
from sqlalchemy.exc import OperationalError

from ordersync.models import Order as OrderRow, SyncStatusEnum
from ordersync.schemas import Customer
from ordersync.services.order_comparison import diff_orders
from ordersync.services.order_repository import (
    OrderPersistenceError,
    OrderRepository,
    is_stale,
)
from ordersync.services.order_transform import transform_graphql_order, transform_webhook_order
from ordersync.tests.helpers import graphql_order_node, make_order


@pytest.fixture
def repo(test_db_session):
    return OrderRepository(test_db_session, retry_delay_seconds=0)


def _count(db):
    return db.query(OrderRow).count()


def test_is_stale_compares_instants_not_strings():
    assert is_stale("2024-01-01T10:00:00Z", "2024-01-01T11:00:00Z") is True
    assert is_stale("2024-01-01T11:00:00Z", "2024-01-01T10:00:00Z") is False
    assert is_stale("2024-01-01T10:00:00Z", "2024-01-01T10:00:00Z") is False
    # Same instant in another offset is not older
    assert is_stale("2024-01-01T05:00:00-05:00", "2024-01-01T10:00:00Z") is False
    assert is_stale("2024-01-01T04:59:00-05:00", "2024-01-01T10:00:00Z") is True
    assert is_stale("garbage", "2024-01-01T10:00:00Z") is False


def test_upsert_is_idempotent(repo, test_db_session):
    order = make_order("1001")
    assert repo.upsert(order) is True
    assert repo.upsert(order) is True
    assert _count(test_db_session) == 1


def test_newer_version_overwrites(repo):
    repo.upsert(make_order("1001", updated_at="2024-01-01T10:00:00Z", total_price="10.00"))
    assert repo.upsert(make_order("1001", updated_at="2024-01-02T10:00:00Z", total_price="12.00")) is True
    assert repo.get("1001").total_price == "12.00"


def test_older_version_is_skipped(repo):
    repo.upsert(make_order("1001", updated_at="2024-01-02T10:00:00Z", total_price="12.00"))
    assert repo.upsert(make_order("1001", updated_at="2024-01-01T10:00:00Z", total_price="10.00")) is False
    assert repo.get("1001").total_price == "12.00"


def test_equal_timestamp_overwrites(repo):
    repo.upsert(make_order("1001", total_price="10.00"))
    assert repo.upsert(make_order("1001", total_price="11.00")) is True
    assert repo.get("1001").total_price == "11.00"


def test_batch_reports_written_and_stale(repo, test_db_session):
    repo.upsert(make_order("1", updated_at="2024-02-01T00:00:00Z"))

    orders = [
        make_order("1", updated_at="2024-01-01T00:00:00Z"),
        make_order("2"),
        make_order("3"),
        make_order("4"),
        make_order("5"),
    ]
    result = repo.upsert_batch(orders, batch_size=2)

    assert result.written == 4
    assert result.stale == 1
    assert result.stale_ids == ["1"]
    assert result.batches == 3
    assert _count(test_db_session) == 5


def test_duplicate_ids_in_one_batch_resolve_in_order(repo):
    result = repo.upsert_batch([
        make_order("7", updated_at="2024-01-01T00:00:00Z", total_price="1.00"),
        make_order("7", updated_at="2024-01-03T00:00:00Z", total_price="3.00"),
        make_order("7", updated_at="2024-01-02T00:00:00Z", total_price="2.00"),
    ])
    assert result.stale == 1
    assert repo.get("7").total_price == "3.00"


def test_stored_order_round_trips(repo):
    order = make_order(
        "1001",
        shipping="4.99",
        customer=Customer(id="77", email="a@example.com"),
    )
    repo.upsert(order, synced_at="2024-05-01T00:00:00Z")

    stored = repo.get("1001")
    assert stored.shipping_amount == "4.99"
    assert stored.customer.id == "77"
    assert stored.line_items[0].sku == "MUG-1"
    assert stored.sync_status == SyncStatusEnum.success
    assert stored.synced_at == "2024-05-01T00:00:00Z"


def test_serialize_uses_camel_case_and_omits_absent(repo):
    repo.upsert(make_order("1001"), synced_at="2024-05-01T00:00:00Z")
    data = OrderRepository.serialize(repo.get("1001"))

    assert data["syncStatus"] == "success"
    assert data["syncedAt"] == "2024-05-01T00:00:00Z"
    assert "syncError" not in data
    assert "shipping_address" not in data
    assert "customer" not in data
    assert data["line_items"][0]["price"] == "10.00"
    assert "stored_at" not in data


def test_get_missing_returns_none(repo):
    assert repo.get("nope") is None
    assert repo.get_many([]) == {}


def test_get_many(repo):
    repo.upsert_batch([make_order("1"), make_order("2")])
    found = repo.get_many(["1", "2", "3"])
    assert set(found) == {"1", "2"}


def test_mark_sync_status(repo):
    repo.upsert(make_order("1001"))
    assert repo.mark_sync_status("1001", SyncStatusEnum.failed, error="refetch failed") is True
    stored = repo.get("1001")
    assert stored.sync_status == SyncStatusEnum.failed
    assert stored.sync_error == "refetch failed"
    assert repo.mark_sync_status("missing", SyncStatusEnum.failed) is False


def test_paginate_newest_first(repo):
    repo.upsert_batch([
        make_order(str(i), created_at=f"2024-01-{i:02d}T00:00:00Z") for i in range(1, 6)
    ])

    first = repo.paginate(page=1, page_size=2)
    assert [o.id for o in first.orders] == ["5", "4"]
    assert first.total == 5
    assert first.total_pages == 3

    last = repo.paginate(page=3, page_size=2)
    assert [o.id for o in last.orders] == ["1"]

    beyond = repo.paginate(page=4, page_size=2)
    assert beyond.orders == []
    assert beyond.total == 5


def test_webhook_and_synced_orders_sort_together(repo):
    webhook_order = transform_webhook_order({
        "id": 1,
        "created_at": "2024-01-01T07:00:00-05:00",
        "updated_at": "2024-01-01T07:00:00-05:00",
    })
    synced_order = transform_graphql_order(graphql_order_node("2", createdAt="2024-01-01T09:00:00Z"))
    repo.upsert_batch([webhook_order, synced_order])

    assert [o.id for o in repo.paginate(page=1, page_size=10).orders] == ["1", "2"]

    # The same version seen again through a sync keeps its timestamp
    resynced = transform_graphql_order(graphql_order_node(
        "1",
        createdAt="2024-01-01T12:00:00Z",
        updatedAt="2024-01-01T12:00:00Z",
    ))
    stored = repo.get("1")
    assert stored.created_at == resynced.created_at
    assert stored.updated_at == resynced.updated_at
    assert "updated_at" not in diff_orders(resynced, stored).changed_fields


def test_paginate_empty_store(repo):
    page = repo.paginate(page=1, page_size=20)
    assert page.orders == []
    assert page.total == 0
    assert page.total_pages == 0


def test_unfulfilled_is_case_insensitive(repo):
    repo.upsert_batch([
        make_order("1", fulfillment_status="FULFILLED"),
        make_order("2", fulfillment_status="fulfilled"),
        make_order("3", fulfillment_status="UNFULFILLED"),
        make_order("4", fulfillment_status="partial"),
        make_order("5"),
    ])
    assert {o.id for o in repo.get_unfulfilled()} == {"3", "4", "5"}


# =============================================================================
# WRITE FAILURES
# =============================================================================

class _FlakyRepository(OrderRepository):
    """Fails the first `failures` batch writes with a database error."""

    def __init__(self, db, failures, fail_from_call=0):
        super().__init__(db, retry_delay_seconds=0.5, sleep=self._record_sleep)
        self.failures = failures
        self.fail_from_call = fail_from_call
        self.calls = 0
        self.sleeps = []

    def _record_sleep(self, seconds):
        self.sleeps.append(seconds)

    def _write_batch(self, orders, sync_status, synced_at):
        self.calls += 1
        if self.calls > self.fail_from_call and self.failures > 0:
            self.failures -= 1
            raise OperationalError("INSERT INTO orders", {}, Exception("database is locked"))
        return super()._write_batch(orders, sync_status, synced_at)


def test_transient_write_failure_is_retried(test_db_session):
    repo = _FlakyRepository(test_db_session, failures=2)
    result = repo.upsert_batch([make_order("1"), make_order("2")])

    assert result.written == 2
    assert repo.calls == 3
    assert repo.sleeps == [0.5, 1.0]


def test_persistent_failure_reports_committed_batches(test_db_session):
    # First batch commits; every attempt at the second fails
    repo = _FlakyRepository(test_db_session, failures=10, fail_from_call=1)

    with pytest.raises(OrderPersistenceError) as exc_info:
        repo.upsert_batch([make_order(str(i)) for i in range(1, 5)], batch_size=2)

    assert exc_info.value.written == 2
    assert _count(test_db_session) == 2
