"""Shopify order webhooks.

WHAT:
    POST /webhooks/orders          (orders/create)
    POST /webhooks/orders/update   (orders/updated)

    Both verify the HMAC over the raw body, transform the REST payload and
    upsert it with last-write-wins against whatever a sync stored.

WHY:
    Webhooks keep the store fresh between syncs. Delivery is at-least-once and
    unordered, which the repository's `updated_at` comparison absorbs.

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks
    - ordersync/services/webhook_signature.py
"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import Settings, get_settings
from ..schemas import WebhookAckResponse
from ..services.order_sync_service import ingest_webhook_order
from ..services.webhook_signature import verify_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Shopify Webhooks"])

SIGNATURE_HEADER = "X-Shopify-Hmac-SHA256"


async def _handle_order_webhook(request: Request, db: Session, settings: Settings) -> WebhookAckResponse:
    """Verify, parse and store one order webhook. Nothing is written unless the HMAC matches."""
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    topic = request.headers.get("X-Shopify-Topic", "orders")

    if not signature:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing webhook signature")

    if not settings.SHOPIFY_WEBHOOK_SECRET:
        logger.error("[WEBHOOK] SHOPIFY_WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook secret not configured")

    if not verify_webhook_signature(body, signature, settings.SHOPIFY_WEBHOOK_SECRET):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook body must be an object")

    try:
        order, applied = ingest_webhook_order(db, payload)
    except ValueError as e:
        # Includes pydantic ValidationError
        logger.warning(f"[WEBHOOK] Rejected {topic} payload: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid order payload")

    logger.info(f"[WEBHOOK] {topic} processed for order {order.id} (applied={applied})")
    return WebhookAckResponse(success=True, order_id=order.id, applied=applied)


@router.post("/orders", response_model=WebhookAckResponse)
async def order_created(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return await _handle_order_webhook(request, db, settings)


@router.post("/orders/update", response_model=WebhookAckResponse)
async def order_updated(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return await _handle_order_webhook(request, db, settings)
