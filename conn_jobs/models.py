"""Data models for jobs, commands, inbound events and sync state."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional
from uuid import UUID

from pydantic import BaseModel


class JobStatus(str, Enum):
    """Job status values."""

    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCESS, JobStatus.FAILED)

    @property
    def is_active(self) -> bool:
        return not self.is_terminal

    def can_transition_to(self, target: "JobStatus") -> bool:
        """Check a transition against the job state machine."""
        return target in JOB_TRANSITIONS[self]

    def allowed_sources(self) -> FrozenSet["JobStatus"]:
        """Statuses from which a job may move into this one."""
        return frozenset(
            source for source, targets in JOB_TRANSITIONS.items() if self in targets
        )


# queued -> failed only happens when the enqueue side compensates.
JOB_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.SUCCESS, JobStatus.RETRYING, JobStatus.FAILED}
    ),
    JobStatus.RETRYING: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.SUCCESS: frozenset(),
    JobStatus.FAILED: frozenset(),
}

ACTIVE_JOB_STATUSES = (JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.RETRYING)


class JobType(str, Enum):
    """Operation kinds the orchestrator can run for a connection."""

    SYNC_ORDERS = "SYNC_ORDERS"
    SYNC_CLAIMS = "SYNC_CLAIMS"
    SYNC_QNA = "SYNC_QNA"
    SYNC_FINANCE = "SYNC_FINANCE"
    PUSH_INVENTORY = "PUSH_INVENTORY"
    PUSH_PRICE = "PUSH_PRICE"
    PUSH_PRODUCTS = "PUSH_PRODUCTS"
    WEBHOOK_EVENT = "WEBHOOK_EVENT"
    ANSWER_QUESTION = "ANSWER_QUESTION"
    APPROVE_CLAIM = "APPROVE_CLAIM"

    @property
    def is_exclusive(self) -> bool:
        """Syncs for the same connection must never overlap."""
        return self in EXCLUSIVE_JOB_TYPES

    @property
    def is_command(self) -> bool:
        return self in COMMAND_JOB_TYPES


EXCLUSIVE_JOB_TYPES: FrozenSet[JobType] = frozenset(
    {
        JobType.SYNC_ORDERS,
        JobType.SYNC_CLAIMS,
        JobType.SYNC_QNA,
        JobType.SYNC_FINANCE,
    }
)

COMMAND_JOB_TYPES: FrozenSet[JobType] = frozenset(
    {JobType.ANSWER_QUESTION, JobType.APPROVE_CLAIM}
)


class CommandStatus(str, Enum):
    """Outcome of an idempotent write command."""

    QUEUED = "queued"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class CommandMode(str, Enum):
    """Dry and real attempts never share an idempotency key."""

    DRY = "dry"
    REAL = "real"


class SyncStatus(str, Enum):
    """Last observed outcome of a connection's incremental sync."""

    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    RETRYING = "RETRYING"
    FAIL = "FAIL"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Job:
    """Represents a job record."""

    def __init__(
        self,
        id: UUID,
        connection_id: str,
        type: JobType,
        status: JobStatus,
        params: Optional[Dict[str, Any]] = None,
        attempts: int = 0,
        started_at: Optional[datetime] = None,
        finished_at: Optional[datetime] = None,
        summary: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.id = id
        self.connection_id = connection_id
        self.type = JobType(type) if isinstance(type, str) else type
        self.status = JobStatus(status) if isinstance(status, str) else status
        self.params = params or {}
        self.attempts = attempts
        self.started_at = started_at
        self.finished_at = finished_at
        self.summary = summary
        self.error = error
        self.created_at = created_at
        self.updated_at = updated_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for JSON serialization."""
        return {
            "id": str(self.id),
            "connection_id": self.connection_id,
            "type": self.type.value,
            "status": self.status.value,
            "params": self.params,
            "attempts": self.attempts,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "summary": self.summary,
            "error": self.error,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Command:
    """An idempotent write intent (answer a question, approve a claim line)."""

    def __init__(
        self,
        id: UUID,
        connection_id: str,
        command_type: JobType,
        idempotency_key: str,
        status: CommandStatus,
        request: Dict[str, Any],
        response: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        job_id: Optional[UUID] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.id = id
        self.connection_id = connection_id
        self.command_type = (
            JobType(command_type) if isinstance(command_type, str) else command_type
        )
        self.idempotency_key = idempotency_key
        self.status = CommandStatus(status) if isinstance(status, str) else status
        self.request = request
        self.response = response
        self.error = error
        self.job_id = job_id
        self.created_at = created_at
        self.updated_at = updated_at


class WebhookEvent:
    """One externally delivered event, unique by event_key."""

    def __init__(
        self,
        id: UUID,
        connection_id: str,
        provider: str,
        event_key: str,
        body_hash: str,
        payload: Optional[Any] = None,
        dedup_hit: bool = False,
        job_id: Optional[UUID] = None,
        received_at: Optional[datetime] = None,
    ):
        self.id = id
        self.connection_id = connection_id
        self.provider = provider
        self.event_key = event_key
        self.body_hash = body_hash
        self.payload = payload
        self.dedup_hit = dedup_hit
        self.job_id = job_id
        self.received_at = received_at


class SyncState:
    """Incremental sync bookkeeping for one (connection, sync kind)."""

    def __init__(
        self,
        connection_id: str,
        job_type: JobType,
        last_success_at: Optional[datetime] = None,
        last_attempt_at: Optional[datetime] = None,
        last_status: Optional[SyncStatus] = None,
        last_job_id: Optional[UUID] = None,
        last_error: Optional[str] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.connection_id = connection_id
        self.job_type = JobType(job_type)
        self.last_success_at = last_success_at
        self.last_attempt_at = last_attempt_at
        self.last_status = (
            SyncStatus(last_status) if isinstance(last_status, str) else last_status
        )
        self.last_job_id = last_job_id
        self.last_error = last_error
        self.updated_at = updated_at


class JobView(BaseModel):
    """Read-only job projection polled by the trigger surface."""

    id: str
    connection_id: str
    type: str
    status: str
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    summary: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobView":
        return cls(
            id=str(job.id),
            connection_id=job.connection_id,
            type=job.type.value,
            status=job.status.value,
            started_at=job.started_at,
            finished_at=job.finished_at,
            summary=job.summary,
            error=job.error,
            created_at=job.created_at,
        )


class StartResult(BaseModel):
    """Result of asking for an operation to start."""

    busy: bool = False
    job_id: Optional[str] = None
    status: Optional[str] = None
    type: Optional[str] = None


class CommandAck(BaseModel):
    """Response shape for idempotent write commands."""

    mode: str  # "queued" | "idempotent"
    job_id: Optional[str] = None
    command_id: str
    idempotency_key: str
    status: Optional[str] = None


class EventAck(BaseModel):
    """Acknowledgement for an inbound event delivery."""

    accepted: bool
    dedup: bool
    event_key: str
    job_id: Optional[str] = None
