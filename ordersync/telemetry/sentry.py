"""
Sentry Error Tracking
=====================

Error tracking for the order sync API and worker.

Related files:
- ordersync/main.py: Initializes Sentry on app startup
- ordersync/workers/arq_worker.py: Initializes Sentry on worker startup
- ordersync/workers/jobs.py: Tags events with the job and bulk operation
- ordersync/services/order_sync_service.py: Captures finalization failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled when unset)
- ENVIRONMENT: Environment name (production, staging, development)
- RELEASE_VERSION: Release identifier set by CI/CD (optional)
"""

from __future__ import annotations

import os
import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

_initialized = False


def init_sentry() -> bool:
    """
    Initialize Sentry SDK once per process (API or worker).

    Returns:
        True if Sentry is active, False when no DSN is configured or init failed.
    """
    global _initialized

    if _initialized:
        return True

    dsn = os.environ.get("SENTRY_DSN") or None
    if not dsn:
        logger.info("[SENTRY] SENTRY_DSN not set - error tracking disabled")
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                RedisIntegration(),
                LoggingIntegration(
                    level=logging.INFO,         # Breadcrumbs
                    event_level=logging.ERROR,  # Events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False

    _initialized = True
    logger.info(f"[SENTRY] Initialized for {environment} environment")
    return True


def set_sync_context(job: Optional[str] = None, operation_id: Optional[str] = None) -> None:
    """Tag subsequent events with the running job and bulk operation."""
    if not _initialized:
        return

    if job:
        sentry_sdk.set_tag("job", job)
    if operation_id:
        sentry_sdk.set_tag("bulk_operation_id", operation_id)


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Report a handled exception.

    Used where a failure is turned into state (e.g. a bulk finalization that
    ends as `failed`) but should still be tracked.

    Args:
        exception: The exception to capture
        extra: Additional context to attach to the event
    """
    if not _initialized:
        logger.error(f"Exception (Sentry disabled): {exception}")
        return

    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in (extra or {}).items():
                scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture exception: {e}")
