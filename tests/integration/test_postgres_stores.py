"""
Integration tests for the PostgreSQL stores.

Runs in two modes:
1. With testcontainers (default) - spins up its own Postgres
2. With external services (CI mode) - uses CONN_JOBS_DB_DSN
"""

import asyncio
import os
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import asyncpg
import pytest

from conn_jobs.ddl import ALL_TABLES_DDL
from conn_jobs.errors import InvalidJobTransitionError
from conn_jobs.idempotency import CommandStore, EventDeduplicator
from conn_jobs.models import CommandStatus, JobStatus, JobType, SyncStatus
from conn_jobs.store import JobStore, SyncStateStore

DROP_TABLES = "DROP TABLE IF EXISTS jobs, commands, webhook_events, sync_state"


def use_external_services():
    """Check if we should use external services (CI mode) or testcontainers."""
    return os.getenv("USE_EXTERNAL_SERVICES", "false").lower() == "true"


@pytest.fixture(scope="module")
def db_dsn():
    if use_external_services():
        yield os.environ["CONN_JOBS_DB_DSN"]
        return

    pytest.importorskip("testcontainers")
    from testcontainers.postgres import PostgresContainer

    try:
        container = PostgresContainer("postgres:15")
        container.start()
    except Exception as e:
        pytest.skip(f"Docker is not available: {e}")
    try:
        yield container.get_connection_url().replace("+psycopg2", "")
    finally:
        container.stop()


async def fresh_pool(dsn):
    pool = await asyncpg.create_pool(dsn, min_size=1, max_size=5)
    async with pool.acquire() as conn:
        await conn.execute(DROP_TABLES)
        await conn.execute(ALL_TABLES_DDL)
    return pool


@pytest.mark.asyncio
async def test_job_lifecycle(db_dsn):
    pool = await fresh_pool(db_dsn)
    try:
        store = JobStore(pool)
        job = await store.create("conn-1", JobType.SYNC_ORDERS, {"startDate": "2024-03-01"})

        running = await store.mark_running(job.id, is_first_attempt=True)
        assert running.status == JobStatus.RUNNING
        assert running.attempts == 1
        assert running.started_at is not None

        await store.mark_retrying(job.id, "Trendyol failed (503)")
        again = await store.mark_running(job.id, is_first_attempt=False)
        assert again.attempts == 2
        assert again.started_at == running.started_at
        assert again.error is None

        done = await store.mark_success(job.id, {"fetched": 4})
        assert done.status == JobStatus.SUCCESS
        assert done.summary == {"fetched": 4}
        assert done.params == {"startDate": "2024-03-01"}

        with pytest.raises(InvalidJobTransitionError):
            await store.mark_failed(job.id, "late failure")
        assert (await store.get_job(job.id)).status == JobStatus.SUCCESS

        assert await store.find_active("conn-1") == []
    finally:
        await pool.close()


@pytest.mark.asyncio
async def test_concurrent_mark_running_has_one_winner(db_dsn):
    pool = await fresh_pool(db_dsn)
    try:
        store = JobStore(pool)
        job = await store.create("conn-1", JobType.SYNC_ORDERS)

        results = await asyncio.gather(
            *(store.mark_running(job.id, is_first_attempt=True) for _ in range(5)),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(
            isinstance(r, InvalidJobTransitionError) for r in results if r not in winners
        )
    finally:
        await pool.close()


@pytest.mark.asyncio
async def test_command_ensure_is_read_or_create(db_dsn):
    pool = await fresh_pool(db_dsn)
    try:
        commands = CommandStore(pool)
        key = "ANSWER_QUESTION:q-1:abc:real"

        results = await asyncio.gather(
            *(
                commands.ensure("conn-1", JobType.ANSWER_QUESTION, key, {"targetId": "q-1"})
                for _ in range(5)
            )
        )

        assert sum(1 for r in results if r.created) == 1
        assert len({r.record.id for r in results}) == 1

        command_id = results[0].record.id
        assert await commands.attach_job(command_id, uuid4())
        assert not await commands.attach_job(command_id, uuid4())
        assert await commands.complete(command_id, CommandStatus.SUCCEEDED, {"ok": True})
        assert not await commands.complete(command_id, CommandStatus.FAILED, error="late")
        stored = await commands.get(command_id)
        assert stored.status == CommandStatus.SUCCEEDED
        assert stored.response == {"ok": True}
    finally:
        await pool.close()


@pytest.mark.asyncio
async def test_event_dedup(db_dsn):
    pool = await fresh_pool(db_dsn)
    try:
        events = EventDeduplicator(pool)

        first = await events.record("conn-1", "trendyol", "trendyol:evt-1", "h", {"a": 1})
        second = await events.record("conn-1", "trendyol", "trendyol:evt-1", "h", {"a": 1})

        assert first.created and not second.created
        assert second.record.id == first.record.id
        assert second.record.dedup_hit

        await events.discard(first.record.id)
        third = await events.record("conn-1", "trendyol", "trendyol:evt-1", "h", {"a": 1})
        assert third.created
    finally:
        await pool.close()


@pytest.mark.asyncio
async def test_sync_watermark_only_moves_forward(db_dsn):
    pool = await fresh_pool(db_dsn)
    try:
        states = SyncStateStore(pool)
        later = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        earlier = later - timedelta(hours=1)

        await states.mark_attempt("conn-1", JobType.SYNC_ORDERS, uuid4())
        await states.mark_success("conn-1", JobType.SYNC_ORDERS, uuid4(), later)
        await states.mark_success("conn-1", JobType.SYNC_ORDERS, uuid4(), earlier)
        await states.mark_success("conn-1", JobType.SYNC_ORDERS, uuid4(), None)

        state = await states.get("conn-1", JobType.SYNC_ORDERS)
        assert state.last_success_at == later
        assert state.last_status == SyncStatus.SUCCESS
        assert await states.get("conn-1", JobType.SYNC_CLAIMS) is None
    finally:
        await pool.close()
