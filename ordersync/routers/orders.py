"""Orders API: paginated reads, sync trigger, bulk progress and single-order refresh.

WHAT:
    GET  /orders                 -> paginated stored orders (newest first)
    GET  /orders?status=bulk     -> bulk operation progress (queues finalization)
    POST /orders {"sync": true}  -> start a sync (202 bulk / 200 incremental / 409 conflict)
    GET  /orders/{id}            -> one stored order
    POST /orders/{id}            -> re-fetch one order from Shopify

REFERENCES:
    - ordersync/services/order_sync_service.py
    - ordersync/services/order_repository.py
"""

import logging
from typing import Callable, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import get_order_sync_service, get_order_sync_service_factory
from ..schemas import (
    BulkStatusResponse,
    OrderRefreshResponse,
    OrderResponse,
    OrdersPageResponse,
    Pagination,
    SyncRequest,
    SyncResponse,
)
from ..services.order_repository import OrderPersistenceError, OrderRepository
from ..services.order_sync_service import (
    BulkSyncInProgressError,
    OrderNotFoundError,
    OrderSyncService,
)
from ..services.shopify_client import ShopifyAPIError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["Orders"])


def _dump(model) -> dict:
    return model.model_dump(by_alias=True, exclude_none=True, mode="json")


@router.get("")
async def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=250),
    status_check: Optional[str] = Query(None, alias="status", description="Use 'bulk' for bulk sync progress"),
    db: Session = Depends(get_db),
    service_factory: Callable[[], OrderSyncService] = Depends(get_order_sync_service_factory),
):
    """List stored orders, or report bulk sync progress with `?status=bulk`."""
    if status_check == "bulk":
        service = service_factory()
        try:
            result = await service.check_bulk_status(db)
        except ShopifyAPIError as e:
            logger.error(f"[ORDER_SYNC] Bulk status check failed: {e}")
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
        return _dump(
            BulkStatusResponse(
                status=result.status,
                operation_id=result.operation_id,
                synced=result.synced,
                error=result.error,
            )
        )

    repository = OrderRepository(db)
    order_page = repository.paginate(page=page, page_size=limit)
    return _dump(
        OrdersPageResponse(
            orders=[repository.serialize(order) for order in order_page.orders],
            pagination=Pagination(
                page=order_page.page,
                limit=order_page.limit,
                total=order_page.total,
                total_pages=order_page.total_pages,
            ),
        )
    )


@router.post("", response_model=SyncResponse, response_model_exclude_none=True)
async def sync_orders(
    response: Response,
    payload: Optional[SyncRequest] = Body(default=None),
    db: Session = Depends(get_db),
    service: OrderSyncService = Depends(get_order_sync_service),
):
    """Start a sync.

    Returns 202 when a bulk export was started (poll `?status=bulk`), 200 with
    change counts when an incremental sync ran to completion.
    """
    if payload is None or not payload.sync:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Request body must be {\"sync\": true}")

    try:
        result = await service.sync_orders(db)
    except BulkSyncInProgressError as e:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "success": False,
                "error": "A bulk sync is already in progress",
                "status": "pending",
                "operationId": e.operation_id,
            },
        )
    except ShopifyAPIError as e:
        logger.error(f"[ORDER_SYNC] Sync failed upstream: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    except OrderPersistenceError as e:
        logger.error(f"[ORDER_SYNC] Sync failed writing orders ({e.written} committed): {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to store orders")

    if result.method == "bulk":
        response.status_code = status.HTTP_202_ACCEPTED
        return SyncResponse(
            method="bulk",
            status=result.status,
            operation_id=result.operation_id,
            is_first_sync=result.is_first_sync,
        )

    return SyncResponse(
        method="incremental",
        synced=result.synced,
        new=result.new,
        updated=result.updated,
        is_first_sync=False,
    )


@router.get("/{order_id}", response_model=OrderResponse)
def get_order(order_id: str, db: Session = Depends(get_db)):
    repository = OrderRepository(db)
    order = repository.get(order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return OrderResponse(order=repository.serialize(order))


@router.post("/{order_id}", response_model=OrderRefreshResponse)
async def refresh_order(
    order_id: str,
    db: Session = Depends(get_db),
    service: OrderSyncService = Depends(get_order_sync_service),
):
    """Re-fetch one order from Shopify and store it."""
    try:
        order = await service.refresh_order(db, order_id)
    except OrderNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found in Shopify")
    except ShopifyAPIError as e:
        logger.error(f"[ORDER_SYNC] Refresh of {order_id} failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return OrderRefreshResponse(success=True, order=OrderRepository.serialize(order))
