"""Shopify webhook HMAC verification.

WHAT:
    Verifies the `X-Shopify-Hmac-SHA256` header against the raw request body.

WHY:
    Webhooks are unauthenticated POSTs; the HMAC is the only proof they came
    from Shopify. It must be computed over the exact bytes received, before
    any JSON parsing.

REFERENCES:
    - https://shopify.dev/docs/apps/webhooks/configuration/https#step-5-verify-the-webhook
    - ordersync/routers/webhooks.py (caller)
"""

import base64
import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def compute_webhook_signature(raw_body: bytes, secret: str) -> str:
    """Return base64(HMAC-SHA256(secret, raw_body))."""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_webhook_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Verify that a webhook request came from Shopify.

    Args:
        raw_body: Raw request body bytes (never re-serialized JSON)
        signature: X-Shopify-Hmac-SHA256 header value
        secret: Shared webhook secret

    Returns:
        True if signature is valid, False otherwise (including missing inputs)
    """
    if not secret:
        logger.error("[WEBHOOK] Webhook secret not configured")
        return False

    if not signature:
        logger.warning("[WEBHOOK] Missing HMAC header")
        return False

    computed = compute_webhook_signature(raw_body, secret)

    # Constant-time comparison; bytes so non-ASCII headers compare instead of raising
    is_valid = hmac.compare_digest(computed.encode("utf-8"), signature.encode("utf-8"))

    if not is_valid:
        logger.warning("[WEBHOOK] Invalid HMAC signature")

    return is_valid
