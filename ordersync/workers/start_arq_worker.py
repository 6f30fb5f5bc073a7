#!/usr/bin/env python3
"""Start the ARQ worker for order sync jobs.

USAGE:
    python -m ordersync.workers.start_arq_worker            # long-running worker
    python -m ordersync.workers.start_arq_worker --burst    # drain the queue, then exit

    Or directly:
    arq ordersync.workers.arq_worker.WorkerSettings
"""

import argparse
import logging
import sys

from arq import run_worker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Order sync background worker")
    parser.add_argument(
        "--burst",
        action="store_true",
        help="Process queued finalizations and exit (cron jobs are not waited for)",
    )
    args = parser.parse_args(argv)

    from ordersync.workers.arq_worker import WorkerSettings

    settings = WorkerSettings.redis_settings
    logger.info(
        f"[ARQ] Starting worker on {settings.host}:{settings.port}/{settings.database} "
        f"(queue={WorkerSettings.queue_name}, burst={args.burst})"
    )
    run_worker(WorkerSettings, burst=args.burst)


if __name__ == "__main__":
    main()
