"""Database store layer for jobs and per-connection sync state."""

import json
from datetime import datetime
from typing import Any, Iterable, Optional
from uuid import UUID, uuid4

import asyncpg

from conn_jobs.errors import InvalidJobTransitionError, JobNotFoundError
from conn_jobs.models import (
    ACTIVE_JOB_STATUSES,
    Job,
    JobStatus,
    JobType,
    SyncState,
    SyncStatus,
)


def _load_json(value: Any) -> Any:
    if value is not None and isinstance(value, str):
        return json.loads(value)
    return value


def _dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


class JobStore:
    """Database layer for job lifecycle operations.

    Every status change is a single-row compare-and-set: the UPDATE only
    matches while the job is in one of the states allowed to move into the
    target, so terminal jobs never change again.
    """

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def create(
        self,
        connection_id: str,
        type: JobType,
        params: Optional[dict[str, Any]] = None,
    ) -> Job:
        """Insert a new queued job."""
        job_id = uuid4()
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO jobs (id, connection_id, type, status, params)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING *
                """,
                job_id,
                connection_id,
                JobType(type).value,
                JobStatus.QUEUED.value,
                json.dumps(params or {}, default=str),
            )
        return self._row_to_job(row)

    async def get_job(self, job_id: UUID) -> Job:
        """Get a job by ID."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)

        if not row:
            raise JobNotFoundError(job_id)

        return self._row_to_job(row)

    async def list_jobs(
        self,
        connection_id: Optional[str] = None,
        type: Optional[JobType] = None,
        status: Optional[JobStatus] = None,
        limit: int = 50,
    ) -> list[Job]:
        """List jobs with optional filters, newest first."""
        query = "SELECT * FROM jobs WHERE 1=1"
        params = []
        param_idx = 1

        if connection_id:
            query += f" AND connection_id = ${param_idx}"
            params.append(connection_id)
            param_idx += 1

        if type:
            query += f" AND type = ${param_idx}"
            params.append(JobType(type).value)
            param_idx += 1

        if status:
            query += f" AND status = ${param_idx}"
            params.append(JobStatus(status).value)
            param_idx += 1

        query += f" ORDER BY created_at DESC LIMIT ${param_idx}"
        params.append(limit)

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(query, *params)

        return [self._row_to_job(row) for row in rows]

    async def find_active(
        self, connection_id: str, types: Optional[Iterable[JobType]] = None
    ) -> list[Job]:
        """Jobs for a connection that are queued, running or retrying."""
        statuses = [status.value for status in ACTIVE_JOB_STATUSES]
        async with self.db_pool.acquire() as conn:
            if types is None:
                rows = await conn.fetch(
                    """
                    SELECT * FROM jobs
                    WHERE connection_id = $1 AND status = ANY($2::text[])
                    ORDER BY created_at DESC
                    """,
                    connection_id,
                    statuses,
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT * FROM jobs
                    WHERE connection_id = $1
                      AND status = ANY($2::text[])
                      AND type = ANY($3::text[])
                    ORDER BY created_at DESC
                    """,
                    connection_id,
                    statuses,
                    [JobType(t).value for t in types],
                )
        return [self._row_to_job(row) for row in rows]

    async def mark_running(self, job_id: UUID, is_first_attempt: bool) -> Job:
        """Move a queued or retrying job to running.

        started_at is only stamped on the first attempt.
        """
        return await self._transition(
            job_id,
            JobStatus.RUNNING,
            """
            attempts = attempts + 1,
            started_at = CASE WHEN $3::boolean THEN now() ELSE COALESCE(started_at, now()) END,
            finished_at = NULL,
            error = NULL
            """,
            is_first_attempt,
        )

    async def mark_success(self, job_id: UUID, summary: dict[str, Any]) -> Job:
        """Mark a running job as succeeded and store its summary."""
        return await self._transition(
            job_id,
            JobStatus.SUCCESS,
            "summary = $3, error = NULL, finished_at = now()",
            _dump_json(summary),
        )

    async def mark_retrying(self, job_id: UUID, error: str) -> Job:
        """Record a retryable failure; the queue re-delivers the message."""
        return await self._transition(
            job_id, JobStatus.RETRYING, "error = $3, finished_at = NULL", error
        )

    async def mark_failed(
        self, job_id: UUID, error: str, summary: Optional[dict[str, Any]] = None
    ) -> Job:
        """Mark a job as permanently failed, keeping any partial summary."""
        return await self._transition(
            job_id,
            JobStatus.FAILED,
            "error = $3, summary = COALESCE($4::jsonb, summary), finished_at = now()",
            error,
            _dump_json(summary),
        )

    async def _transition(
        self, job_id: UUID, target: JobStatus, assignments: str, *args: Any
    ) -> Job:
        sources = [status.value for status in target.allowed_sources()]
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE jobs
                SET status = '{target.value}',
                    {assignments},
                    updated_at = now()
                WHERE id = $1 AND status = ANY($2::text[])
                RETURNING *
                """,
                job_id,
                sources,
                *args,
            )
            if row is None:
                current = await conn.fetchval(
                    "SELECT status FROM jobs WHERE id = $1", job_id
                )

        if row is None:
            if current is None:
                raise JobNotFoundError(job_id)
            raise InvalidJobTransitionError(job_id, JobStatus(current), target)

        return self._row_to_job(row)

    def _row_to_job(self, row: asyncpg.Record) -> Job:
        """Convert a database row to a Job model."""
        return Job(
            id=row["id"],
            connection_id=row["connection_id"],
            type=JobType(row["type"]),
            status=JobStatus(row["status"]),
            params=_load_json(row["params"]),
            attempts=row["attempts"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            summary=_load_json(row["summary"]),
            error=row["error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class SyncStateStore:
    """Incremental sync bookkeeping, one row per (connection, sync kind)."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def get(self, connection_id: str, job_type: JobType) -> Optional[SyncState]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM sync_state WHERE connection_id = $1 AND job_type = $2",
                connection_id,
                JobType(job_type).value,
            )
        if not row:
            return None
        return self._row_to_state(row)

    async def mark_attempt(self, connection_id: str, job_type: JobType, job_id: UUID) -> None:
        """Record that a sync attempt started."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO sync_state (
                    connection_id, job_type, last_attempt_at,
                    last_status, last_job_id, last_error
                ) VALUES ($1, $2, now(), $3, $4, NULL)
                ON CONFLICT (connection_id, job_type) DO UPDATE
                SET last_attempt_at = now(),
                    last_status = EXCLUDED.last_status,
                    last_job_id = EXCLUDED.last_job_id,
                    last_error = NULL,
                    updated_at = now()
                """,
                connection_id,
                JobType(job_type).value,
                SyncStatus.RUNNING.value,
                job_id,
            )

    async def mark_success(
        self,
        connection_id: str,
        job_type: JobType,
        job_id: UUID,
        watermark: Optional[datetime],
    ) -> None:
        """Record a successful sync; a non-null watermark advances last_success_at."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO sync_state (
                    connection_id, job_type, last_success_at, last_attempt_at,
                    last_status, last_job_id, last_error
                ) VALUES ($1, $2, $3, now(), $4, $5, NULL)
                ON CONFLICT (connection_id, job_type) DO UPDATE
                SET last_success_at = GREATEST(
                        sync_state.last_success_at, EXCLUDED.last_success_at
                    ),
                    last_status = EXCLUDED.last_status,
                    last_job_id = EXCLUDED.last_job_id,
                    last_error = NULL,
                    updated_at = now()
                """,
                connection_id,
                JobType(job_type).value,
                watermark,
                SyncStatus.SUCCESS.value,
                job_id,
            )

    async def mark_outcome(
        self,
        connection_id: str,
        job_type: JobType,
        job_id: UUID,
        status: SyncStatus,
        error: Optional[str] = None,
    ) -> None:
        """Record a RETRYING or FAIL outcome."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO sync_state (
                    connection_id, job_type, last_attempt_at,
                    last_status, last_job_id, last_error
                ) VALUES ($1, $2, now(), $3, $4, $5)
                ON CONFLICT (connection_id, job_type) DO UPDATE
                SET last_status = EXCLUDED.last_status,
                    last_job_id = EXCLUDED.last_job_id,
                    last_error = EXCLUDED.last_error,
                    updated_at = now()
                """,
                connection_id,
                JobType(job_type).value,
                SyncStatus(status).value,
                job_id,
                error,
            )

    def _row_to_state(self, row: asyncpg.Record) -> SyncState:
        return SyncState(
            connection_id=row["connection_id"],
            job_type=JobType(row["job_type"]),
            last_success_at=row["last_success_at"],
            last_attempt_at=row["last_attempt_at"],
            last_status=row["last_status"],
            last_job_id=row["last_job_id"],
            last_error=row["last_error"],
            updated_at=row["updated_at"],
        )
