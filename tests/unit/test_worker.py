"""Unit tests for the worker loop."""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conn_jobs.models import JobStatus
from conn_jobs.queue import Delivery
from conn_jobs.worker import run_worker_loop

logger = logging.getLogger("test_worker")


def make_orchestrator(batches, shutdown_event):
    orchestrator = MagicMock()
    orchestrator.queue.queue_url = "https://sqs.test/123/conn-jobs"
    remaining = list(batches)

    async def receive(max_messages, wait_time_seconds):
        if not remaining:
            shutdown_event.set()
            return []
        batch = remaining.pop(0)
        if isinstance(batch, Exception):
            raise batch
        return batch

    orchestrator.queue.receive = receive
    orchestrator.process_delivery = AsyncMock(return_value=JobStatus.SUCCESS)
    return orchestrator


def delivery(n):
    return Delivery(message=None, receipt_handle=f"rh-{n}", message_id=f"m-{n}", attempt=1)


@pytest.mark.asyncio
async def test_worker_processes_each_delivery():
    shutdown_event = asyncio.Event()
    orchestrator = make_orchestrator([[delivery(1), delivery(2)]], shutdown_event)

    await run_worker_loop(orchestrator, logger, shutdown_event=shutdown_event)

    handles = [call.args[0].receipt_handle for call in orchestrator.process_delivery.call_args_list]
    assert handles == ["rh-1", "rh-2"]


@pytest.mark.asyncio
async def test_worker_continues_after_processing_error():
    shutdown_event = asyncio.Event()
    orchestrator = make_orchestrator([[delivery(1), delivery(2)]], shutdown_event)
    orchestrator.process_delivery.side_effect = [RuntimeError("db down"), JobStatus.SUCCESS]

    await run_worker_loop(orchestrator, logger, shutdown_event=shutdown_event)

    assert orchestrator.process_delivery.call_count == 2


@pytest.mark.asyncio
async def test_worker_pauses_after_receive_error():
    shutdown_event = asyncio.Event()
    orchestrator = make_orchestrator([RuntimeError("sqs down"), [delivery(1)]], shutdown_event)

    with patch("conn_jobs.worker.asyncio.sleep", new=AsyncMock()) as sleep:
        await run_worker_loop(orchestrator, logger, shutdown_event=shutdown_event)

    sleep.assert_awaited_once_with(5)
    assert orchestrator.process_delivery.call_count == 1


@pytest.mark.asyncio
async def test_worker_exits_when_shutdown_already_set():
    shutdown_event = asyncio.Event()
    shutdown_event.set()
    orchestrator = make_orchestrator([[delivery(1)]], shutdown_event)

    await run_worker_loop(orchestrator, logger, shutdown_event=shutdown_event)

    orchestrator.process_delivery.assert_not_called()
