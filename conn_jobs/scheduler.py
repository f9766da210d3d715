"""Scheduler that starts incremental syncs for due connections."""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from conn_jobs.models import JobType
from conn_jobs.orchestrator import Orchestrator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def run_scheduler_tick(
    orchestrator: Orchestrator,
    logger: logging.Logger,
    job_type: JobType = JobType.SYNC_ORDERS,
    min_interval: timedelta = timedelta(minutes=5),
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    Start one sync per due connection.

    A connection is due when its last attempt of this sync kind is older than
    ``min_interval`` (or it has never been attempted). Errors for one
    connection are logged and do not stop the tick.

    Returns:
        Counts of enqueued, busy, skipped and failed connections
    """
    counts = {"enqueued": 0, "busy": 0, "skipped": 0, "failed": 0}
    list_connections = orchestrator.registry.list_connections
    if list_connections is None:
        logger.warning("No connection source registered, nothing to schedule")
        return counts

    now = now or _utcnow()
    connection_ids = await list_connections()
    logger.info(f"Scheduler tick over {len(connection_ids)} connections")

    for connection_id in connection_ids:
        try:
            state = await orchestrator.sync_state.get(connection_id, job_type)
            if state and state.last_attempt_at and now - state.last_attempt_at < min_interval:
                logger.debug(f"Skipping connection {connection_id}, not due yet")
                counts["skipped"] += 1
                continue

            result = await orchestrator.start_operation(connection_id, job_type)
            if result.busy:
                logger.info(f"Skipping connection {connection_id}, sync in progress")
                counts["busy"] += 1
            else:
                logger.info(
                    f"Scheduled {job_type.value} job {result.job_id} for connection {connection_id}"
                )
                counts["enqueued"] += 1
        except Exception as e:
            logger.error(f"Failed to schedule connection {connection_id}: {e}", exc_info=True)
            counts["failed"] += 1

    return counts


async def run_scheduler_loop(
    orchestrator: Orchestrator,
    logger: logging.Logger,
    interval_seconds: int,
    min_interval_seconds: int = 300,
    job_type: JobType = JobType.SYNC_ORDERS,
    shutdown_event: Optional[asyncio.Event] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> None:
    """
    Run a scheduler tick every ``interval_seconds``, starting immediately.

    Ticks run inline, so a slow tick delays the next one instead of
    overlapping it.
    """
    if interval_seconds <= 0:
        raise ValueError("interval_seconds must be positive")
    clock = clock or _utcnow
    min_interval = timedelta(seconds=min_interval_seconds)

    logger.info(
        f"Starting scheduler loop (every {interval_seconds}s, "
        f"min interval {min_interval_seconds}s)"
    )

    while True:
        if shutdown_event and shutdown_event.is_set():
            logger.info("Shutdown signal received, exiting scheduler loop")
            break

        try:
            counts = await run_scheduler_tick(
                orchestrator, logger, job_type, min_interval, now=clock()
            )
            logger.info(f"Scheduler tick done: {counts}")
        except Exception as e:
            logger.error(f"Error in scheduler loop: {e}", exc_info=True)

        if shutdown_event:
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
        else:
            await asyncio.sleep(interval_seconds)
