"""Order sync orchestration.

WHAT:
    Decides how to bring the local order store up to date and drives it:
    - First sync, or more than BULK_THRESHOLD changes: start a Shopify bulk
      operation and return immediately (finalized later by a queued job)
    - Otherwise: page the changed orders, re-check unfulfilled ones, diff,
      upsert in batches, advance the watermark

WHY:
    Paging a full history through the rate-limited API takes hours; bulk
    operations export it server-side. Small deltas are cheaper to page.

FLOW:
    POST /orders -> sync_orders()
        -> bulk: SyncState pending -> GET /orders?status=bulk polls check_bulk_status()
           -> completed: queue finalize_bulk_sync job -> finalize_bulk_operation()
        -> incremental: fetch -> dedupe -> classify -> upsert -> watermark

REFERENCES:
    - ordersync/services/shopify_client.py
    - ordersync/services/order_repository.py
    - ordersync/services/sync_state_store.py
    - ordersync/workers/jobs.py (queued finalization and periodic sync)
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..models import BulkStatusEnum, SyncStatusEnum
from ..schemas import Order
from ..telemetry import capture_exception
from ..utils.dates import to_iso, utc_now
from .order_comparison import classify_orders
from .order_repository import OrderRepository, OrderPersistenceError
from .order_transform import transform_webhook_order
from .shopify_client import (
    BULK_MAX_WAIT_SECONDS,
    BULK_POLL_INTERVAL_SECONDS,
    BulkOperationTimeoutError,
    ShopifyAPIError,
    ShopifyClient,
)
from .sync_state_store import BulkSyncStateSnapshot, SyncStateStore

logger = logging.getLogger(__name__)

BULK_THRESHOLD = 100
FINALIZE_JOB_NAME = "finalize_bulk_sync"


class BulkSyncInProgressError(Exception):
    """A bulk operation is already running upstream; no new sync was started."""

    def __init__(self, operation_id: Optional[str]):
        super().__init__(f"Bulk operation {operation_id} is already in progress")
        self.operation_id = operation_id


class OrderNotFoundError(Exception):
    """Shopify has no order with this id."""

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found in Shopify")
        self.order_id = order_id


@dataclass
class SyncResult:
    method: str  # "bulk" or "incremental"
    status: str = "success"
    synced: int = 0
    new: int = 0
    updated: int = 0
    unchanged: int = 0
    stale: int = 0
    operation_id: Optional[str] = None
    is_first_sync: bool = False


@dataclass
class BulkStatusResult:
    status: BulkStatusEnum
    operation_id: Optional[str] = None
    synced: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def from_snapshot(cls, snapshot: BulkSyncStateSnapshot) -> "BulkStatusResult":
        return cls(
            status=snapshot.status,
            operation_id=snapshot.operation_id,
            synced=snapshot.synced,
            error=snapshot.error,
        )


def normalize_bulk_status(status: Optional[str]) -> BulkStatusEnum:
    """Map Shopify's BulkOperationStatus onto the local state machine."""
    if not status:
        return BulkStatusEnum.idle
    value = status.lower()
    if value == "completed":
        return BulkStatusEnum.completed
    if value == "failed":
        return BulkStatusEnum.failed
    if value in ("canceled", "canceling"):
        return BulkStatusEnum.canceled
    if value in ("created", "running"):
        return BulkStatusEnum.pending
    return BulkStatusEnum.idle


def dedupe_orders(orders: Iterable[Order]) -> List[Order]:
    """Deduplicate by id; the last occurrence wins."""
    by_id: Dict[str, Order] = {}
    for order in orders:
        by_id[order.id] = order
    return list(by_id.values())


def ingest_webhook_order(db: Session, payload: Dict[str, Any]) -> Tuple[Order, bool]:
    """Store an order pushed by a Shopify webhook.

    The payload's own `updated_at` is kept so that last-write-wins against
    batch syncs stays meaningful.

    Returns:
        (order, applied); applied is False when a newer version was already stored
    """
    order = transform_webhook_order(payload)
    applied = OrderRepository(db).upsert(order, sync_status=SyncStatusEnum.success)
    logger.info(f"[WEBHOOK] Order {order.id} {'stored' if applied else 'ignored (stale)'}")
    return order, applied


class OrderSyncService:
    """Sync orchestrator.

    Usage:
        service = OrderSyncService(client, state_store, task_queue)
        result = await service.sync_orders(db)
    """

    def __init__(
        self,
        client: ShopifyClient,
        state_store: SyncStateStore,
        task_queue=None,
        bulk_threshold: int = BULK_THRESHOLD,
        batch_size: int = 1000,
        repository_factory: Callable[[Session], OrderRepository] = OrderRepository,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.client = client
        self.state_store = state_store
        self.task_queue = task_queue
        self.bulk_threshold = bulk_threshold
        self.batch_size = batch_size
        self.repository_factory = repository_factory
        self._clock = clock

    # =========================================================================
    # SYNC ENTRY POINT
    # =========================================================================

    async def sync_orders(self, db: Session) -> SyncResult:
        """Run one sync: bulk (returns pending) or incremental (runs to completion).

        Raises:
            BulkSyncInProgressError: If Shopify reports a running bulk operation
            ShopifyAPIError: On upstream failures
            OrderPersistenceError: If batch writes fail after retries
        """
        sync_started_at = to_iso(self._clock())

        current = await self.client.get_current_bulk_operation()
        if current is not None and current.is_running:
            logger.info(f"[ORDER_SYNC] Bulk operation {current.id} still {current.status}, refusing to start")
            raise BulkSyncInProgressError(current.id)

        last_sync_at = self.state_store.get_last_sync_at(db)

        if not last_sync_at:
            logger.info("[ORDER_SYNC] No previous sync, starting full bulk export")
            return await self._start_bulk(db, since=None, started_at=sync_started_at, is_first_sync=True)

        # Ask for one more than the threshold so "more than N" is observable
        count = await self.client.count_orders_since(last_sync_at, threshold=self.bulk_threshold + 1)
        if count > self.bulk_threshold:
            logger.info(
                f"[ORDER_SYNC] More than {self.bulk_threshold} orders changed since {last_sync_at}, using bulk"
            )
            return await self._start_bulk(db, since=last_sync_at, started_at=sync_started_at, is_first_sync=False)

        logger.info(f"[ORDER_SYNC] {count} orders changed since {last_sync_at}, syncing incrementally")
        return await self._sync_incremental(db, last_sync_at, sync_started_at)

    async def _start_bulk(
        self,
        db: Session,
        since: Optional[str],
        started_at: str,
        is_first_sync: bool,
    ) -> SyncResult:
        operation_id = await self.client.start_orders_bulk(since=since)
        self.state_store.start_bulk(db, operation_id, started_at=started_at)
        return SyncResult(
            method="bulk",
            status=BulkStatusEnum.pending.value,
            operation_id=operation_id,
            is_first_sync=is_first_sync,
        )

    async def _sync_incremental(self, db: Session, last_sync_at: str, sync_started_at: str) -> SyncResult:
        repository = self.repository_factory(db)

        orders = await self.client.fetch_orders_incremental(last_sync_at)

        # Fulfillment changes do not always bump updated_at, so re-check open orders
        unfulfilled = repository.get_unfulfilled(limit=1000)
        if unfulfilled:
            try:
                refreshed = await self.client.fetch_orders_by_ids([order.id for order in unfulfilled])
                orders.extend(refreshed)
                logger.info(f"[ORDER_SYNC] Re-fetched {len(refreshed)}/{len(unfulfilled)} unfulfilled orders")
            except ShopifyAPIError as e:
                logger.warning(f"[ORDER_SYNC] Unfulfilled re-check failed, continuing without it: {e}")

        orders = dedupe_orders(orders)

        existing = repository.get_many(order.id for order in orders)
        summary = classify_orders(orders, existing)

        result = repository.upsert_batch(orders, batch_size=self.batch_size)

        # Only after every batch has been committed
        self.state_store.update_last_sync_at(db, sync_started_at)

        logger.info(
            f"[ORDER_SYNC] Incremental sync done: {len(orders)} orders "
            f"(new={summary.new}, updated={summary.updated}, unchanged={summary.unchanged}, stale={result.stale})"
        )
        return SyncResult(
            method="incremental",
            synced=len(orders),
            new=summary.new,
            updated=summary.updated,
            unchanged=summary.unchanged,
            stale=result.stale,
        )

    # =========================================================================
    # BULK STATUS / FINALIZATION
    # =========================================================================

    async def check_bulk_status(self, db: Session) -> BulkStatusResult:
        """Report bulk progress, queueing finalization once Shopify is done.

        Never waits for the import itself.
        """
        state = self.state_store.get_bulk_state(db)
        if state.status != BulkStatusEnum.pending:
            return BulkStatusResult.from_snapshot(state)

        operation = await self.client.get_current_bulk_operation()
        if operation is None:
            snapshot = self.state_store.update_bulk_state(db, BulkStatusEnum.idle)
            return BulkStatusResult.from_snapshot(snapshot)

        if operation.status == "completed":
            # Another process may have finished while our cached copy was fresh
            fresh = self.state_store.get_bulk_state(db, use_cache=False)
            if fresh.status != BulkStatusEnum.pending or fresh.synced is not None:
                return BulkStatusResult(
                    status=BulkStatusEnum.idle if fresh.synced is not None else fresh.status,
                    operation_id=fresh.operation_id,
                    synced=fresh.synced,
                    error=fresh.error,
                )

            if not operation.url:
                # Nothing matched the query; Shopify returns no file
                self._complete_empty_bulk(db, operation.id, fresh)
                return BulkStatusResult(status=BulkStatusEnum.idle, operation_id=operation.id, synced=0)

            await self._submit_finalization(operation.id, operation.url)
            return BulkStatusResult(status=BulkStatusEnum.pending, operation_id=operation.id)

        status = normalize_bulk_status(operation.status)
        error = operation.error_code if status == BulkStatusEnum.failed else None
        snapshot = self.state_store.update_bulk_state(db, status, operation_id=operation.id, error=error)
        return BulkStatusResult.from_snapshot(snapshot)

    def _complete_empty_bulk(self, db: Session, operation_id: str, state: BulkSyncStateSnapshot) -> None:
        self.state_store.update_last_sync_at(db, state.started_at or to_iso(self._clock()))
        self.state_store.update_bulk_state(
            db, BulkStatusEnum.idle, operation_id=operation_id, synced=0, processed=0, error=None
        )

    async def _submit_finalization(self, operation_id: str, url: str) -> None:
        if self.task_queue is None:
            raise RuntimeError("No task queue configured for bulk finalization")
        try:
            await self.task_queue.submit(
                FINALIZE_JOB_NAME,
                operation_id,
                url,
                job_id=f"finalize-bulk:{operation_id}",
            )
        except Exception as e:
            # State stays pending; the next status poll submits again
            logger.error(f"[TASK_QUEUE] Failed to queue finalization of {operation_id}: {e}")
            capture_exception(e, {"operation_id": operation_id})
            return
        logger.info(f"[ORDER_SYNC] Queued finalization of bulk operation {operation_id}")

    async def finalize_bulk_operation(self, db: Session, operation_id: str, url: str) -> Optional[int]:
        """Download a completed bulk export and store it.

        Returns:
            Number of orders imported, or None when another worker holds the claim

        Raises:
            Exception: Any failure is recorded as `failed` state and re-raised
        """
        if not self.state_store.try_claim_finalization(db, operation_id):
            return None

        state = self.state_store.update_bulk_state(db, BulkStatusEnum.pending, operation_id=operation_id)
        watermark = state.started_at or to_iso(self._clock())
        repository = self.repository_factory(db)

        try:
            orders = dedupe_orders(await self.client.download_bulk_data(url))
            result = repository.upsert_batch(orders, batch_size=self.batch_size)
            self.state_store.update_last_sync_at(db, watermark)
            self.state_store.update_bulk_state(
                db,
                BulkStatusEnum.idle,
                operation_id=operation_id,
                synced=len(orders),
                processed=result.written,
                error=None,
            )
        except Exception as e:
            db.rollback()
            processed = e.written if isinstance(e, OrderPersistenceError) else 0
            logger.error(f"[ORDER_SYNC] Finalization of {operation_id} failed after {processed} rows: {e}")
            self.state_store.update_bulk_state(
                db,
                BulkStatusEnum.failed,
                operation_id=operation_id,
                processed=processed,
                error=str(e),
            )
            self.state_store.release_claim(db, operation_id)
            capture_exception(e, extra={"operation_id": operation_id, "processed": processed})
            raise

        logger.info(f"[ORDER_SYNC] Bulk operation {operation_id} finalized: {len(orders)} orders")
        return len(orders)

    async def run_bulk_sync_to_completion(
        self,
        db: Session,
        operation_id: str,
        max_wait_seconds: float = BULK_MAX_WAIT_SECONDS,
        poll_interval_seconds: float = BULK_POLL_INTERVAL_SECONDS,
    ) -> Optional[int]:
        """Wait for a bulk operation (2h cap) and finalize it inline."""
        try:
            url = await self.client.wait_for_bulk_operation(
                operation_id,
                max_wait_seconds=max_wait_seconds,
                poll_interval_seconds=poll_interval_seconds,
            )
        except BulkOperationTimeoutError as e:
            # Still running upstream; the polling endpoint can pick it up later
            logger.warning(f"[ORDER_SYNC] {e}")
            raise
        except ShopifyAPIError as e:
            status = BulkStatusEnum.canceled if "cancel" in str(e).lower() else BulkStatusEnum.failed
            self.state_store.update_bulk_state(db, status, operation_id=operation_id, error=str(e))
            capture_exception(e, extra={"operation_id": operation_id})
            raise

        return await self.finalize_bulk_operation(db, operation_id, url)

    # =========================================================================
    # SINGLE ORDER
    # =========================================================================

    async def refresh_order(self, db: Session, order_id: str) -> Order:
        """Re-fetch one order from Shopify and store it.

        Raises:
            OrderNotFoundError: If Shopify has no such order
            ShopifyAPIError: On upstream failures
        """
        repository = self.repository_factory(db)
        repository.mark_sync_status(order_id, SyncStatusEnum.pending)

        try:
            order = await self.client.fetch_order_by_id(order_id)
        except ShopifyAPIError as e:
            repository.mark_sync_status(order_id, SyncStatusEnum.failed, error=str(e))
            raise

        if order is None:
            repository.mark_sync_status(order_id, SyncStatusEnum.failed, error="Order not found in Shopify")
            raise OrderNotFoundError(order_id)

        if not repository.upsert(order, sync_status=SyncStatusEnum.success):
            # A newer version is already stored; it is still in sync
            repository.mark_sync_status(order.id, SyncStatusEnum.success)

        return repository.get(order.id) or order
