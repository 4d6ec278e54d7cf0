#!/usr/bin/env python3
"""Start the ARQ job worker (or the cron scheduler).

USAGE:
    python -m shopsync.workers.start_arq_worker
    python -m shopsync.workers.start_arq_worker --scheduler

    Or directly:
    arq shopsync.workers.arq_worker.WorkerSettings
    arq shopsync.workers.arq_scheduler.SchedulerSettings
"""

import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main():
    """Start the ARQ worker, or the scheduler with --scheduler."""
    from arq import run_worker

    if "--scheduler" in sys.argv[1:]:
        from shopsync.workers.arq_scheduler import SchedulerSettings

        logger.info("Starting ARQ scheduler...")
        run_worker(SchedulerSettings)
    else:
        from shopsync.workers.arq_worker import WorkerSettings

        logger.info("Starting ARQ worker...")
        run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
