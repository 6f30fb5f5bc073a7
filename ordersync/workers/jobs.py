"""Background job functions shared by the arq worker and the in-process queue.

WHAT:
    - finalize_bulk_sync: import a completed bulk export (queued by the
      bulk status endpoint)
    - scheduled_order_sync: periodic sync run by arq cron every 15 minutes

WHY:
    Jobs open their own database session because they outlive the request
    that queued them. All sync logic stays in OrderSyncService.

CONTEXT:
    Both backends call `job(ctx, *args)`. Optional ctx keys (used by tests):
    - "session_factory": sessionmaker to use instead of SessionLocal
    - "order_sync_service": prebuilt OrderSyncService

REFERENCES:
    - ordersync/services/order_sync_service.py
    - ordersync/workers/task_queue.py
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from ordersync.database import get_sync_session
from ordersync.services.order_sync_service import BulkSyncInProgressError, OrderSyncService
from ordersync.services.shopify_client import BulkOperationTimeoutError
from ordersync.telemetry import capture_exception, set_sync_context

logger = logging.getLogger(__name__)


def _get_service(ctx: Dict[str, Any]) -> OrderSyncService:
    service = ctx.get("order_sync_service")
    if service is None:
        from ordersync.deps import get_order_sync_service

        service = get_order_sync_service()
    return service


async def finalize_bulk_sync(ctx: Dict[str, Any], operation_id: str, url: str) -> Dict[str, Any]:
    """Import a completed bulk operation.

    Skips silently when another worker already holds the finalization claim.
    Failures are recorded on the bulk state by the service and re-raised so the
    job runner sees them.
    """
    logger.info(f"[ARQ] Finalizing bulk operation {operation_id}")
    set_sync_context(job="finalize_bulk_sync", operation_id=operation_id)
    service = _get_service(ctx)

    with get_sync_session(ctx.get("session_factory")) as db:
        synced = await service.finalize_bulk_operation(db, operation_id, url)

    if synced is None:
        return {"success": True, "operation_id": operation_id, "skipped": True}
    return {"success": True, "operation_id": operation_id, "synced": synced}


async def scheduled_order_sync(ctx: Dict[str, Any]) -> Dict[str, Any]:
    """Periodic sync; a started bulk job is driven to completion inline."""
    logger.info("[ARQ] Scheduled order sync starting")
    set_sync_context(job="scheduled_order_sync")
    service = _get_service(ctx)

    with get_sync_session(ctx.get("session_factory")) as db:
        try:
            result = await service.sync_orders(db)
        except BulkSyncInProgressError as e:
            logger.info(f"[ARQ] Bulk operation {e.operation_id} in progress, skipping scheduled sync")
            return {"success": False, "skipped": True, "operation_id": e.operation_id}
        except Exception as e:
            capture_exception(e, extra={"job": "scheduled_order_sync"})
            raise

        if result.method != "bulk":
            logger.info(f"[ARQ] Scheduled sync complete: {result.synced} orders")
            return {
                "success": True,
                "method": result.method,
                "synced": result.synced,
                "new": result.new,
                "updated": result.updated,
            }

        try:
            synced = await service.run_bulk_sync_to_completion(db, result.operation_id)
        except BulkOperationTimeoutError:
            # Left pending; the status endpoint will queue finalization once it completes
            return {"success": False, "method": "bulk", "operation_id": result.operation_id, "timed_out": True}

    logger.info(f"[ARQ] Scheduled bulk sync complete: {synced} orders")
    return {"success": True, "method": "bulk", "operation_id": result.operation_id, "synced": synced}


JOB_FUNCTIONS = {
    "finalize_bulk_sync": finalize_bulk_sync,
    "scheduled_order_sync": scheduled_order_sync,
}
