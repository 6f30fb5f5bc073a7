"""Order persistence (local order store).

WHAT:
    Idempotent upserts keyed by the Shopify order id, last-write-wins by the
    upstream `updated_at`, batched commits, and the read queries used by the
    API (pagination, single lookups, unfulfilled orders).

WHY:
    Webhooks, incremental syncs and bulk imports all write the same rows in
    arbitrary order. Comparing `updated_at` keeps an older delivery from
    overwriting a newer one, whichever path it arrives on.

REFERENCES:
    - ordersync/models.py (Order table)
    - ordersync/services/order_sync_service.py (batch writer)
    - ordersync/routers/webhooks.py (single writer)
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ..models import Order as OrderRow, SyncStatusEnum
from ..schemas import Order
from ..utils.dates import parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000
DEFAULT_UNFULFILLED_LIMIT = 1000
WRITE_RETRY_ATTEMPTS = 3

ORDER_COLUMNS = (
    "order_number",
    "email",
    "created_at",
    "updated_at",
    "total_price",
    "subtotal_price",
    "total_tax",
    "currency",
    "financial_status",
    "fulfillment_status",
)
JSON_COLUMNS = ("total_shipping_price_set", "shipping_address", "customer")


class OrderPersistenceError(Exception):
    """Batch write failed after retries; `written` rows were already committed."""

    def __init__(self, message: str, written: int = 0):
        super().__init__(message)
        self.written = written


@dataclass
class UpsertResult:
    written: int = 0
    stale: int = 0
    batches: int = 0
    stale_ids: List[str] = field(default_factory=list)


@dataclass
class OrderPage:
    orders: List[Order]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def row_to_order(row: OrderRow) -> Order:
    """ORM row -> normalized schema (internal row timestamps dropped)."""
    data = {name: getattr(row, name) for name in ("id",) + ORDER_COLUMNS + JSON_COLUMNS}
    data["line_items"] = row.line_items or []
    data["sync_status"] = row.sync_status
    data["sync_error"] = row.sync_error
    data["synced_at"] = row.synced_at
    return Order.model_validate(data)


def is_stale(incoming_updated_at: Optional[str], stored_updated_at: Optional[str]) -> bool:
    """True when the incoming version is strictly older than the stored one."""
    incoming = parse_iso(incoming_updated_at)
    stored = parse_iso(stored_updated_at)
    if incoming is None or stored is None:
        return False
    return incoming < stored


class OrderRepository:
    """Repository over the `orders` table bound to one session."""

    def __init__(
        self,
        db: Session,
        retry_attempts: int = WRITE_RETRY_ATTEMPTS,
        retry_delay_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.retry_attempts = retry_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self._sleep = sleep

    # =========================================================================
    # WRITES
    # =========================================================================

    def _apply(self, row: OrderRow, order: Order, sync_status: SyncStatusEnum, synced_at: str) -> None:
        for name in ORDER_COLUMNS:
            setattr(row, name, getattr(order, name))
        for name in JSON_COLUMNS:
            value = getattr(order, name)
            setattr(row, name, value.model_dump(exclude_none=True) if value is not None else None)
        row.line_items = [item.model_dump(exclude_none=True) for item in order.line_items]
        row.sync_status = sync_status
        row.sync_error = None
        row.synced_at = synced_at

    def _write_batch(
        self,
        orders: List[Order],
        sync_status: SyncStatusEnum,
        synced_at: str,
    ) -> UpsertResult:
        """Apply one batch and commit. Duplicate ids inside the batch resolve in order."""
        result = UpsertResult(batches=1)
        ids = list({order.id for order in orders})
        rows: Dict[str, OrderRow] = {
            row.id: row
            for row in self.db.query(OrderRow).filter(OrderRow.id.in_(ids)).all()
        }

        for order in orders:
            row = rows.get(order.id)
            if row is None:
                row = OrderRow(id=order.id)
                self.db.add(row)
                rows[order.id] = row
            elif is_stale(order.updated_at, row.updated_at):
                logger.info(
                    f"[ORDER_REPO] Skipping stale write for {order.id} "
                    f"(incoming {order.updated_at} < stored {row.updated_at})"
                )
                result.stale += 1
                result.stale_ids.append(order.id)
                continue

            self._apply(row, order, sync_status, synced_at)
            result.written += 1

        self.db.commit()
        return result

    def upsert(
        self,
        order: Order,
        sync_status: SyncStatusEnum = SyncStatusEnum.success,
        synced_at: Optional[str] = None,
    ) -> bool:
        """Insert or update a single order.

        Returns:
            False when the write was skipped because a newer version is stored
        """
        result = self.upsert_batch([order], sync_status=sync_status, synced_at=synced_at)
        return result.written == 1

    def upsert_batch(
        self,
        orders: Iterable[Order],
        batch_size: int = DEFAULT_BATCH_SIZE,
        sync_status: SyncStatusEnum = SyncStatusEnum.success,
        synced_at: Optional[str] = None,
    ) -> UpsertResult:
        """Upsert orders in batches, one commit per batch.

        There is no transaction spanning batches: if a later batch fails, the
        earlier ones stay committed and are reported via
        `OrderPersistenceError.written`.

        Raises:
            OrderPersistenceError: If a batch still fails after retries
        """
        orders = list(orders)
        synced_at = synced_at or to_iso(utc_now())
        total = UpsertResult()

        for start in range(0, len(orders), batch_size):
            batch = orders[start:start + batch_size]
            batch_result = self._write_batch_with_retry(batch, sync_status, synced_at, total.written)
            total.written += batch_result.written
            total.stale += batch_result.stale
            total.batches += 1
            total.stale_ids.extend(batch_result.stale_ids)

        if orders:
            logger.info(
                f"[ORDER_REPO] Upserted {total.written} orders in {total.batches} batches "
                f"({total.stale} stale skipped)"
            )
        return total

    def _write_batch_with_retry(
        self,
        batch: List[Order],
        sync_status: SyncStatusEnum,
        synced_at: str,
        committed_so_far: int,
    ) -> UpsertResult:
        last_error: Optional[Exception] = None

        for attempt in range(self.retry_attempts):
            try:
                return self._write_batch(batch, sync_status, synced_at)
            except OperationalError as e:
                self.db.rollback()
                last_error = e
                logger.warning(
                    f"[ORDER_REPO] Batch write failed (attempt {attempt + 1}/{self.retry_attempts}): {e}"
                )
                if attempt < self.retry_attempts - 1:
                    self._sleep(self.retry_delay_seconds * (attempt + 1))

        logger.error(f"[ORDER_REPO] Giving up on batch after {self.retry_attempts} attempts")
        raise OrderPersistenceError(
            f"Failed to persist orders after {self.retry_attempts} attempts: {last_error}",
            written=committed_so_far,
        )

    def mark_sync_status(self, order_id: str, status: SyncStatusEnum, error: Optional[str] = None) -> bool:
        """Set the sync bookkeeping of a stored order. False if the order is unknown."""
        row = self.db.get(OrderRow, order_id)
        if row is None:
            return False
        row.sync_status = status
        row.sync_error = error
        if status == SyncStatusEnum.success:
            row.synced_at = to_iso(utc_now())
        self.db.commit()
        return True

    # =========================================================================
    # READS
    # =========================================================================

    def get(self, order_id: str) -> Optional[Order]:
        row = self.db.get(OrderRow, order_id)
        return row_to_order(row) if row else None

    def get_many(self, order_ids: Iterable[str]) -> Dict[str, Order]:
        ids = list(set(order_ids))
        if not ids:
            return {}
        found: Dict[str, Order] = {}
        # Chunked to stay under bind-parameter limits
        for start in range(0, len(ids), DEFAULT_BATCH_SIZE):
            chunk = ids[start:start + DEFAULT_BATCH_SIZE]
            for row in self.db.query(OrderRow).filter(OrderRow.id.in_(chunk)).all():
                found[row.id] = row_to_order(row)
        return found

    def paginate(self, page: int = 1, page_size: int = 20) -> OrderPage:
        """Newest first by `created_at`."""
        page = max(page, 1)
        total = self.db.query(func.count(OrderRow.id)).scalar() or 0
        rows = (
            self.db.query(OrderRow)
            .order_by(OrderRow.created_at.desc(), OrderRow.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return OrderPage(orders=[row_to_order(row) for row in rows], page=page, limit=page_size, total=total)

    def get_unfulfilled(self, limit: int = DEFAULT_UNFULFILLED_LIMIT) -> List[Order]:
        """Orders whose fulfillment status is missing or anything but FULFILLED."""
        rows = (
            self.db.query(OrderRow)
            .filter(
                or_(
                    OrderRow.fulfillment_status.is_(None),
                    func.upper(OrderRow.fulfillment_status) != "FULFILLED",
                )
            )
            .order_by(OrderRow.created_at.desc())
            .limit(limit)
            .all()
        )
        return [row_to_order(row) for row in rows]

    @staticmethod
    def serialize(order: Order) -> dict:
        """API shape: camelCase bookkeeping, absent values omitted."""
        return order.model_dump(by_alias=True, exclude_none=True, mode="json")
