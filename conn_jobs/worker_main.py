"""CLI entrypoint and programmatic interface for the worker."""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from conn_jobs.config import ConnJobsConfig
from conn_jobs.registry import ExecutorRegistry, executor_registry
from conn_jobs.runtime import load_handlers, open_orchestrator, setup_logging
from conn_jobs.worker import run_worker_loop


async def run_worker(
    config: Optional[ConnJobsConfig] = None,
    registry: Optional[ExecutorRegistry] = None,
    logger: Optional[logging.Logger] = None,
    shutdown_event: Optional[asyncio.Event] = None,
    max_messages: int = 10,
    wait_time_seconds: int = 20,
    handlers_module: Optional[str] = None,
    sqs_client=None,
):
    """
    Run the worker programmatically.

    Example:
        ```python
        from conn_jobs import ConnJobsConfig, run_worker
        import asyncio

        asyncio.run(run_worker(
            config=ConnJobsConfig.from_env(),
            handlers_module="myapp.marketplace.executors",
        ))
        ```
    """
    if config is None:
        config = ConnJobsConfig.from_env()
    if logger is None:
        logger = logging.getLogger(__name__)
    if registry is None:
        registry = executor_registry
    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    load_handlers(handlers_module, logger)

    async with open_orchestrator(config, registry, logger, sqs_client) as orchestrator:
        await run_worker_loop(
            orchestrator,
            logger,
            max_messages=max_messages,
            wait_time_seconds=wait_time_seconds,
            shutdown_event=shutdown_event,
        )


def main():
    """Main entrypoint for worker."""
    setup_logging()
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(description="Connection Jobs Worker")
    parser.add_argument(
        "--max-messages",
        type=int,
        default=10,
        help="Max messages to receive per poll (default: 10)",
    )
    parser.add_argument(
        "--wait-time-seconds",
        type=int,
        default=20,
        help="Long poll wait time in seconds (default: 20)",
    )
    parser.add_argument(
        "--handlers-module",
        default=None,
        help="Module registering executors (default: $CONN_JOBS_HANDLERS_MODULE)",
    )
    args = parser.parse_args()

    try:
        config = ConnJobsConfig.from_env()
    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)

    shutdown_event = asyncio.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        asyncio.run(
            run_worker(
                config=config,
                logger=logger,
                shutdown_event=shutdown_event,
                max_messages=args.max_messages,
                wait_time_seconds=args.wait_time_seconds,
                handlers_module=args.handlers_module,
            )
        )
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error in worker: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
