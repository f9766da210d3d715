"""Idempotent write commands and inbound event deduplication."""

import hashlib
import json
import logging
from typing import Any, Dict, NamedTuple, Optional, Union
from uuid import UUID, uuid4

import asyncpg

from conn_jobs.models import Command, CommandMode, CommandStatus, JobType, WebhookEvent

EVENT_ID_FIELDS = ("eventId", "webhookEventId", "id", "notificationId")


def _strip_nulls(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _strip_nulls(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_strip_nulls(item) for item in value]
    return value


def canonical_json(payload: Any) -> str:
    normalized = _strip_nulls(payload)
    return json.dumps(
        normalized, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str
    )


def sha256_hex(data: Union[str, bytes]) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def derive_idempotency_key(
    kind: Union[JobType, str],
    target_id: str,
    payload: Dict[str, Any],
    mode: Union[CommandMode, str],
) -> str:
    """
    Deterministic key for a write intent.

    The mode is part of the key so a dry run never blocks the real write of
    the same payload.
    """
    kind_value = kind.value if isinstance(kind, JobType) else str(kind)
    mode_value = CommandMode(mode).value
    digest = sha256_hex(canonical_json(payload))[:24]
    return f"{kind_value}:{target_id}:{digest}:{mode_value}"


def derive_event_key(
    provider: str, payload: Any, raw_body: Union[str, bytes, None] = None
) -> str:
    """
    Key identifying one inbound event.

    Prefers a provider supplied id; falls back to a hash of the raw body (or of
    the canonical payload when no raw body is available).
    """
    if isinstance(payload, dict):
        for field in EVENT_ID_FIELDS:
            value = payload.get(field)
            if value is not None and str(value).strip() != "":
                return f"{provider}:{str(value).strip()}"

    body = raw_body if raw_body is not None else canonical_json(payload)
    return f"{provider}:body:{sha256_hex(body)}"


def _load_json(value: Any) -> Any:
    if value is not None and isinstance(value, str):
        return json.loads(value)
    return value


class EnsureResult(NamedTuple):
    created: bool
    record: Command


class DedupResult(NamedTuple):
    created: bool
    record: WebhookEvent


class CommandStore:
    """Read-or-create store for idempotent write commands."""

    def __init__(self, db_pool: asyncpg.Pool, logger: Optional[logging.Logger] = None):
        self.db_pool = db_pool
        self.logger = logger or logging.getLogger(__name__)

    async def ensure(
        self,
        connection_id: str,
        command_type: JobType,
        idempotency_key: str,
        request: Dict[str, Any],
    ) -> EnsureResult:
        """
        Create the command for this key, or return the one that already exists.

        The insert itself detects the duplicate through the unique index on
        (connection_id, idempotency_key), so two concurrent callers cannot both
        create a record. The existing record is returned untouched.
        """
        async with self.db_pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO commands (
                        id, connection_id, command_type, idempotency_key, status, request
                    ) VALUES ($1, $2, $3, $4, $5, $6)
                    RETURNING *
                    """,
                    uuid4(),
                    connection_id,
                    JobType(command_type).value,
                    idempotency_key,
                    CommandStatus.QUEUED.value,
                    json.dumps(request, default=str),
                )
                return EnsureResult(created=True, record=self._row_to_command(row))
            except asyncpg.UniqueViolationError:
                row = await conn.fetchrow(
                    """
                    SELECT * FROM commands
                    WHERE connection_id = $1 AND idempotency_key = $2
                    """,
                    connection_id,
                    idempotency_key,
                )

        if row is None:
            # the conflicting row must exist; a missing one means it was deleted
            raise RuntimeError(
                f"Command {idempotency_key} for connection {connection_id} "
                f"conflicted but could not be read back"
            )
        self.logger.info(
            f"Command {idempotency_key} for connection {connection_id} already exists"
        )
        return EnsureResult(created=False, record=self._row_to_command(row))

    async def get(self, command_id: UUID) -> Optional[Command]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM commands WHERE id = $1", command_id)
        return self._row_to_command(row) if row else None

    async def attach_job(self, command_id: UUID, job_id: UUID) -> bool:
        """Link the job created for this command; the first link wins."""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE commands
                SET job_id = $2, updated_at = now()
                WHERE id = $1 AND job_id IS NULL
                """,
                command_id,
                job_id,
            )
        return _affected(result) == 1

    async def complete(
        self,
        command_id: UUID,
        status: CommandStatus,
        response: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> bool:
        """
        Record the first outcome of a command.

        Returns False when an outcome was already recorded; it is never
        overwritten.
        """
        status = CommandStatus(status)
        if status == CommandStatus.QUEUED:
            raise ValueError("complete() needs a terminal command status")
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE commands
                SET status = $2, response = $3, error = $4, updated_at = now()
                WHERE id = $1 AND status = $5 AND response IS NULL
                """,
                command_id,
                status.value,
                json.dumps(response, default=str) if response is not None else None,
                error,
                CommandStatus.QUEUED.value,
            )
        return _affected(result) == 1

    async def discard(self, command_id: UUID) -> bool:
        """Delete a command that never reached the queue."""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM commands WHERE id = $1 AND status = $2",
                command_id,
                CommandStatus.QUEUED.value,
            )
        return _affected(result) == 1

    def _row_to_command(self, row: asyncpg.Record) -> Command:
        return Command(
            id=row["id"],
            connection_id=row["connection_id"],
            command_type=JobType(row["command_type"]),
            idempotency_key=row["idempotency_key"],
            status=CommandStatus(row["status"]),
            request=_load_json(row["request"]),
            response=_load_json(row["response"]),
            error=row["error"],
            job_id=row["job_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class EventDeduplicator:
    """Records inbound events once per event_key and flags repeat deliveries."""

    def __init__(self, db_pool: asyncpg.Pool, logger: Optional[logging.Logger] = None):
        self.db_pool = db_pool
        self.logger = logger or logging.getLogger(__name__)

    async def record(
        self,
        connection_id: str,
        provider: str,
        event_key: str,
        body_hash: str,
        payload: Any = None,
    ) -> DedupResult:
        """Insert the event; a repeat delivery sets dedup_hit on the stored row."""
        async with self.db_pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO webhook_events (
                        id, connection_id, provider, event_key, body_hash, payload, dedup_hit
                    ) VALUES ($1, $2, $3, $4, $5, $6, FALSE)
                    RETURNING *
                    """,
                    uuid4(),
                    connection_id,
                    provider,
                    event_key,
                    body_hash,
                    json.dumps(payload, default=str) if payload is not None else None,
                )
                return DedupResult(created=True, record=self._row_to_event(row))
            except asyncpg.UniqueViolationError:
                row = await conn.fetchrow(
                    """
                    UPDATE webhook_events
                    SET dedup_hit = TRUE
                    WHERE event_key = $1
                    RETURNING *
                    """,
                    event_key,
                )

        if row is None:
            raise RuntimeError(f"Event {event_key} conflicted but could not be read back")
        self.logger.info(f"Duplicate delivery of event {event_key}")
        return DedupResult(created=False, record=self._row_to_event(row))

    async def attach_job(self, event_id: UUID, job_id: UUID) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                "UPDATE webhook_events SET job_id = $2 WHERE id = $1 AND job_id IS NULL",
                event_id,
                job_id,
            )

    async def discard(self, event_id: UUID) -> None:
        """Forget an event whose job could not be started."""
        async with self.db_pool.acquire() as conn:
            await conn.execute("DELETE FROM webhook_events WHERE id = $1", event_id)

    def _row_to_event(self, row: asyncpg.Record) -> WebhookEvent:
        return WebhookEvent(
            id=row["id"],
            connection_id=row["connection_id"],
            provider=row["provider"],
            event_key=row["event_key"],
            body_hash=row["body_hash"],
            payload=_load_json(row["payload"]),
            dedup_hit=row["dedup_hit"],
            job_id=row["job_id"],
            received_at=row["received_at"],
        )


def _affected(result: Optional[str]) -> int:
    # asyncpg returns a status string like "UPDATE 1"
    return int(result.split()[-1]) if result else 0
