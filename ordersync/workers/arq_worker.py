"""ARQ async worker for order sync jobs.

WHAT:
    Processes queued bulk finalizations and runs the periodic order sync.

WHY:
    - Finalization of a large bulk export can take minutes; it must not run
      inside the API request that noticed the export was done
    - arq provides async job processing with built-in cron scheduling
    - Job ids (`finalize-bulk:<operation id>`) dedupe repeated submissions

USAGE:
    # Start worker
    arq ordersync.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m ordersync.workers.start_arq_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - ordersync/workers/jobs.py
"""

from __future__ import annotations

import logging
import platform
from datetime import datetime, timezone
from typing import Dict

from arq import cron

from ordersync.telemetry import init_observability
from ordersync.workers.jobs import finalize_bulk_sync, scheduled_order_sync
from ordersync.workers.task_queue import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)

JOB_TIMEOUT_SECONDS = 2 * 60 * 60 + 600  # Bulk wait cap plus import time


async def startup(ctx: Dict) -> None:
    """Worker startup - initialize resources and log config."""
    init_observability()

    logger.info("=" * 60)
    logger.info("[ARQ] Order sync worker starting up")
    logger.info("=" * 60)
    logger.info(f"[ARQ] Python: {platform.python_version()}")
    logger.info(f"[ARQ] Host: {platform.node()}")
    logger.info(f"[ARQ] Queue: {QUEUE_NAME}")
    logger.info("[ARQ] Cron: scheduled_order_sync at :00/:15/:30/:45")
    logger.info("=" * 60)

    ctx["startup_time"] = datetime.now(timezone.utc)
    ctx["jobs_processed"] = 0


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - cleanup and log stats."""
    jobs = ctx.get("jobs_processed", 0)
    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))

    from ordersync.deps import get_task_queue

    await get_task_queue().close()

    logger.info("=" * 60)
    logger.info("[ARQ] Worker shutting down")
    logger.info(f"[ARQ] Jobs processed: {jobs}")
    logger.info(f"[ARQ] Uptime: {uptime}")
    logger.info("=" * 60)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    - max_jobs=4: finalizations are I/O heavy but share one database
    - job_timeout: long enough for a 2h bulk wait plus the import
    - max_tries=3: retry transient failures, not forever
    """

    functions = [
        finalize_bulk_sync,
        scheduled_order_sync,
    ]

    cron_jobs = [
        cron(
            scheduled_order_sync,
            minute={0, 15, 30, 45},
            run_at_startup=False,
            unique=True,
            timeout=JOB_TIMEOUT_SECONDS,
        ),
    ]

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    # Redis connection
    redis_settings = get_redis_settings()

    max_jobs = 4
    job_timeout = JOB_TIMEOUT_SECONDS
    keep_result = 3600               # Keep results for 1 hour
    retry_jobs = True
    max_tries = 3
    health_check_interval = 30

    queue_name = QUEUE_NAME
