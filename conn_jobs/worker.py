"""Worker loop for connection jobs."""

import asyncio
import logging
from typing import Optional

from conn_jobs.orchestrator import Orchestrator

ERROR_PAUSE_SECONDS = 5


async def run_worker_loop(
    orchestrator: Orchestrator,
    logger: logging.Logger,
    max_messages: int = 10,
    wait_time_seconds: int = 20,
    shutdown_event: Optional[asyncio.Event] = None,
) -> None:
    """
    Run the worker loop that processes deliveries from SQS.

    Args:
        orchestrator: Orchestrator owning the queue and stores
        logger: Logger instance
        max_messages: Maximum messages to receive per poll
        wait_time_seconds: Long polling wait time
        shutdown_event: Optional event to signal shutdown
    """
    queue = orchestrator.queue
    logger.info(f"Starting worker loop for queue {queue.queue_url}")

    while True:
        if shutdown_event and shutdown_event.is_set():
            logger.info("Shutdown signal received, exiting worker loop")
            break

        try:
            deliveries = await queue.receive(
                max_messages=max_messages, wait_time_seconds=wait_time_seconds
            )
            if not deliveries:
                logger.debug("No messages received from SQS")
                continue

            logger.info(f"Received {len(deliveries)} messages from SQS")

            for delivery in deliveries:
                try:
                    await orchestrator.process_delivery(delivery)
                except Exception as e:
                    # left un-acked; SQS redelivers it after the visibility timeout
                    logger.error(
                        f"Error processing message {delivery.message_id}: {e}", exc_info=True
                    )

        except Exception as e:
            logger.error(f"Error in worker loop: {e}", exc_info=True)
            await asyncio.sleep(ERROR_PAUSE_SECONDS)
