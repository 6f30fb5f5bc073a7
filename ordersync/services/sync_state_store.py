"""Persistence for sync bookkeeping: incremental watermark and bulk operation state.

WHAT:
    - `last_sync_at` watermark (SyncMetadata singleton)
    - Bulk operation state machine (SyncState singleton) behind a TTL cache
    - Persisted finalization claim so a finished bulk operation is imported once

WHY:
    The polling endpoint is hit every few seconds by the UI. Serving the bulk
    state from a short-lived cache keeps those reads off the database, while
    every write goes to the row and drops the cached copy.
    The claim is a conditional UPDATE, so two workers (or a restarted one)
    cannot both finalize the same operation.

REFERENCES:
    - ordersync/models.py (SyncMetadata, SyncState)
    - ordersync/services/order_sync_service.py (only caller)
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import BulkStatusEnum, SyncMetadata, SyncState

logger = logging.getLogger(__name__)

METADATA_KEY = "orders"
BULK_STATE_KEY = "bulk"

DEFAULT_CACHE_TTL_SECONDS = 60
CLAIM_STALE_AFTER = timedelta(minutes=30)

_UNSET: Any = object()


# =============================================================================
# TTL CACHE
# =============================================================================

class TTLCache:
    """Small in-memory TTL cache with an injectable clock.

    get() returns None for missing or expired keys.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, value)

    def invalidate(self, key: Optional[str] = None) -> None:
        """Drop one key, or everything when key is None."""
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)


# =============================================================================
# STATE SNAPSHOT
# =============================================================================

@dataclass(frozen=True)
class BulkSyncStateSnapshot:
    """Detached copy of the SyncState row (safe to cache across sessions)."""

    status: BulkStatusEnum = BulkStatusEnum.idle
    operation_id: Optional[str] = None
    started_at: Optional[str] = None
    synced: Optional[int] = None
    processed: Optional[int] = None
    error: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: SyncState) -> "BulkSyncStateSnapshot":
        return cls(
            status=BulkStatusEnum(row.status) if row.status else BulkStatusEnum.idle,
            operation_id=row.operation_id,
            started_at=row.started_at,
            synced=row.synced,
            processed=row.processed,
            error=row.error,
            updated_at=row.updated_at,
        )


class SyncStateStore:
    """Reads and writes sync bookkeeping rows.

    Methods take the caller's session; the store only owns the cache.
    """

    def __init__(self, cache: Optional[TTLCache] = None):
        self.cache = cache or TTLCache()

    # -------------------------------------------------------------------------
    # Watermark
    # -------------------------------------------------------------------------

    def get_last_sync_at(self, db: Session) -> Optional[str]:
        row = db.get(SyncMetadata, METADATA_KEY)
        return row.last_sync_at if row else None

    def update_last_sync_at(self, db: Session, timestamp: str) -> None:
        """Advance the watermark. Call only after the synced orders are committed."""
        row = db.get(SyncMetadata, METADATA_KEY)
        if row is None:
            row = SyncMetadata(key=METADATA_KEY)
            db.add(row)
        row.last_sync_at = timestamp
        db.commit()
        logger.info(f"[SYNC_STATE] last_sync_at -> {timestamp}")

    # -------------------------------------------------------------------------
    # Bulk state
    # -------------------------------------------------------------------------

    def _get_or_create_row(self, db: Session) -> SyncState:
        row = db.get(SyncState, BULK_STATE_KEY)
        if row is not None:
            return row

        row = SyncState(key=BULK_STATE_KEY, status=BulkStatusEnum.idle)
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            # Another writer created it first
            db.rollback()
            row = db.get(SyncState, BULK_STATE_KEY)
        return row

    def get_bulk_state(self, db: Session, use_cache: bool = True) -> BulkSyncStateSnapshot:
        """Current bulk state; served from the TTL cache when fresh."""
        if use_cache:
            cached = self.cache.get(BULK_STATE_KEY)
            if cached is not None:
                return cached

        row = db.get(SyncState, BULK_STATE_KEY)
        snapshot = BulkSyncStateSnapshot.from_row(row) if row else BulkSyncStateSnapshot()
        self.cache.set(BULK_STATE_KEY, snapshot)
        return snapshot

    def update_bulk_state(
        self,
        db: Session,
        status: BulkStatusEnum,
        operation_id: Optional[str] = _UNSET,
        synced: Optional[int] = _UNSET,
        processed: Optional[int] = _UNSET,
        error: Optional[str] = _UNSET,
    ) -> BulkSyncStateSnapshot:
        """Write the bulk state. Fields left unset keep their stored value."""
        row = self._get_or_create_row(db)
        row.status = status
        if operation_id is not _UNSET:
            row.operation_id = operation_id
        if synced is not _UNSET:
            row.synced = synced
        if processed is not _UNSET:
            row.processed = processed
        if error is not _UNSET:
            row.error = error
        row.updated_at = datetime.utcnow()
        db.commit()

        self.cache.invalidate(BULK_STATE_KEY)
        logger.info(f"[SYNC_STATE] Bulk state -> {status.value} (operation={row.operation_id})")
        return BulkSyncStateSnapshot.from_row(row)

    def start_bulk(self, db: Session, operation_id: str, started_at: str) -> BulkSyncStateSnapshot:
        """Record a freshly started bulk operation; clears results of the previous run."""
        row = self._get_or_create_row(db)
        row.started_at = started_at
        row.claimed_operation_id = None
        row.claimed_at = None
        return self.update_bulk_state(
            db,
            BulkStatusEnum.pending,
            operation_id=operation_id,
            synced=None,
            processed=None,
            error=None,
        )

    # -------------------------------------------------------------------------
    # Finalization claim
    # -------------------------------------------------------------------------

    def try_claim_finalization(self, db: Session, operation_id: str, now: Optional[datetime] = None) -> bool:
        """Atomically claim the right to finalize `operation_id`.

        Succeeds when no claim exists for this operation, or when the existing
        claim is older than 30 minutes (its worker is presumed dead).
        """
        now = now or datetime.utcnow()
        self._get_or_create_row(db)

        stmt = (
            update(SyncState)
            .where(SyncState.key == BULK_STATE_KEY)
            .where(
                or_(
                    SyncState.claimed_operation_id.is_(None),
                    SyncState.claimed_operation_id != operation_id,
                    SyncState.claimed_at.is_(None),
                    SyncState.claimed_at < now - CLAIM_STALE_AFTER,
                )
            )
            .values(claimed_operation_id=operation_id, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        result = db.execute(stmt)
        db.commit()

        claimed = result.rowcount == 1
        if claimed:
            logger.info(f"[SYNC_STATE] Claimed finalization of {operation_id}")
        else:
            logger.info(f"[SYNC_STATE] Finalization of {operation_id} already claimed, skipping")
        return claimed

    def release_claim(self, db: Session, operation_id: str) -> None:
        """Drop our claim so a later attempt can retry the operation."""
        stmt = (
            update(SyncState)
            .where(SyncState.key == BULK_STATE_KEY)
            .where(SyncState.claimed_operation_id == operation_id)
            .values(claimed_operation_id=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        db.execute(stmt)
        db.commit()
