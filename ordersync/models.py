"""SQLAlchemy ORM models and enums.

This module defines the local order store: one row per Shopify order keyed by
its bare numeric id, plus two singleton bookkeeping rows (the incremental sync
watermark and the bulk operation state).
"""

from datetime import datetime
import enum

from sqlalchemy import Column, String, DateTime, Enum, Integer, JSON, Text, Index
from sqlalchemy.orm import declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class SyncStatusEnum(str, enum.Enum):
    """Per-order sync bookkeeping."""
    pending = "pending"
    success = "success"
    failed = "failed"


class BulkStatusEnum(str, enum.Enum):
    """State of the current/last Shopify bulk operation as seen by this service."""
    idle = "idle"
    pending = "pending"
    completed = "completed"
    failed = "failed"
    canceled = "canceled"


# Core models ----------------------------------------------------

class Order(Base):
    """A Shopify order in normalized form.

    WHAT: Flattened order totals plus JSON columns for the nested parts
          (shipping address, line items, customer, shipping price set)
    WHY: The read API serves the order as one document; nothing queries
         inside line items, so they do not need their own table
    REFERENCES:
        - Shopify Order object: https://shopify.dev/docs/api/admin-graphql/latest/objects/Order
    """
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_created_at", "created_at"),
        Index("ix_orders_fulfillment_status", "fulfillment_status"),
    )

    # Natural key: bare Shopify id ("gid://shopify/Order/" stripped)
    id = Column(String, primary_key=True)
    order_number = Column(Integer, nullable=False, default=0)
    email = Column(String, nullable=True)

    # ISO-8601 strings as Shopify reports them; also the sort/filter keys
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)

    # Monetary values kept as decimal strings (no float drift)
    total_price = Column(String, nullable=False, default="0")
    subtotal_price = Column(String, nullable=False, default="0")
    total_tax = Column(String, nullable=False, default="0")
    total_shipping_price_set = Column(JSON, nullable=True)  # {"shop_money": {"amount", "currency_code"}}
    currency = Column(String, nullable=False, default="USD")

    shipping_address = Column(JSON, nullable=True)
    line_items = Column(JSON, nullable=False, default=list)
    customer = Column(JSON, nullable=True)

    financial_status = Column(String, nullable=True)
    fulfillment_status = Column(String, nullable=True)

    # Sync bookkeeping
    sync_status = Column(Enum(SyncStatusEnum), nullable=False, default=SyncStatusEnum.success)
    sync_error = Column(Text, nullable=True)
    synced_at = Column(String, nullable=True)

    # Row timestamps (internal, never exposed)
    stored_at = Column(DateTime, default=datetime.utcnow)
    row_updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return f"Order #{self.order_number} ({self.id}) - {self.total_price} {self.currency}"


class SyncMetadata(Base):
    """Singleton watermark for incremental sync.

    WHAT: `last_sync_at` is the lower bound for the next "updated since" fetch
    WHY: Only advanced after a batch is durably written, so a crash mid-sync
         replays the window instead of losing it
    """
    __tablename__ = "sync_metadata"

    key = Column(String, primary_key=True, default="orders")
    last_sync_at = Column(String, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SyncState(Base):
    """Singleton state machine row for the bulk operation.

    WHAT: idle -> pending -> (idle | failed | canceled), one bulk job at a time
    WHY: Lets the polling endpoint answer without calling Shopify on every
         request, and carries the persisted finalization claim
    """
    __tablename__ = "sync_state"

    key = Column(String, primary_key=True, default="bulk")
    status = Column(Enum(BulkStatusEnum), nullable=False, default=BulkStatusEnum.idle)
    operation_id = Column(String, nullable=True)
    started_at = Column(String, nullable=True)  # ISO time the operation was started; next watermark
    synced = Column(Integer, nullable=True)  # Final count once a bulk run is finalized
    processed = Column(Integer, nullable=True)  # Rows committed before a failure
    error = Column(Text, nullable=True)

    # Finalization claim (conditional update, single writer per operation)
    claimed_operation_id = Column(String, nullable=True)
    claimed_at = Column(DateTime, nullable=True)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return f"Bulk sync {self.status} ({self.operation_id or '-'})"
