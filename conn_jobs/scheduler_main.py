"""CLI entrypoint for the scheduler."""

import argparse
import asyncio
import logging
import signal
import sys

from conn_jobs.config import ConnJobsConfig
from conn_jobs.models import EXCLUSIVE_JOB_TYPES, JobType
from conn_jobs.registry import executor_registry
from conn_jobs.runtime import load_handlers, open_orchestrator, setup_logging
from conn_jobs.scheduler import run_scheduler_loop


def main():
    """Main entrypoint for scheduler."""
    setup_logging()
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(description="Connection Jobs Scheduler")
    parser.add_argument(
        "--job-type",
        default=JobType.SYNC_ORDERS.value,
        choices=sorted(t.value for t in EXCLUSIVE_JOB_TYPES),
        help="Sync kind to schedule (default: SYNC_ORDERS)",
    )
    parser.add_argument(
        "--handlers-module",
        default=None,
        help="Module registering the connection source (default: $CONN_JOBS_HANDLERS_MODULE)",
    )
    args = parser.parse_args()

    try:
        config = ConnJobsConfig.from_env()
    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)

    if config.scheduler_interval_seconds <= 0:
        logger.info("Scheduler disabled (CONN_JOBS_SCHEDULER_INTERVAL_SECONDS not set)")
        return

    load_handlers(args.handlers_module, logger)

    shutdown_event = asyncio.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    async def run():
        """Async main function."""
        async with open_orchestrator(config, executor_registry, logger) as orchestrator:
            logger.info("Starting scheduler loop...")
            await run_scheduler_loop(
                orchestrator,
                logger,
                interval_seconds=config.scheduler_interval_seconds,
                min_interval_seconds=config.scheduler_min_interval_seconds,
                job_type=JobType(args.job_type),
                shutdown_event=shutdown_event,
            )

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error in scheduler: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
