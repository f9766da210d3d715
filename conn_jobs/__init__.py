"""Connection-scoped job orchestration for marketplace integrations."""

from conn_jobs.config import ConnJobsConfig
from conn_jobs.ddl import ALL_TABLES_DDL, JOBS_TABLE_DDL
from conn_jobs.errors import (
    ConfigurationError,
    ConnJobsError,
    ExecutorNotFoundError,
    InvalidJobTransitionError,
    JobNotFoundError,
    LockLostError,
    UpstreamError,
)
from conn_jobs.idempotency import CommandStore, EventDeduplicator
from conn_jobs.locks import ConnectionLockManager
from conn_jobs.models import (
    CommandAck,
    EventAck,
    Job,
    JobStatus,
    JobType,
    JobView,
    StartResult,
)
from conn_jobs.orchestrator import Orchestrator
from conn_jobs.queue import SqsDurableQueue
from conn_jobs.registry import ExecutorRegistry, executor_registry
from conn_jobs.retry import RetryPolicy, is_retryable
from conn_jobs.scheduler import run_scheduler_loop
from conn_jobs.store import JobStore, SyncStateStore
from conn_jobs.windows import Window, plan_sync_window, split_window
from conn_jobs.worker import run_worker_loop
from conn_jobs.worker_main import run_worker

__version__ = "0.1.0"

__all__ = [
    "ConnJobsConfig",
    "ALL_TABLES_DDL",
    "JOBS_TABLE_DDL",
    "ConfigurationError",
    "ConnJobsError",
    "ExecutorNotFoundError",
    "InvalidJobTransitionError",
    "JobNotFoundError",
    "LockLostError",
    "UpstreamError",
    "CommandStore",
    "EventDeduplicator",
    "ConnectionLockManager",
    "CommandAck",
    "EventAck",
    "Job",
    "JobStatus",
    "JobType",
    "JobView",
    "StartResult",
    "Orchestrator",
    "SqsDurableQueue",
    "ExecutorRegistry",
    "executor_registry",
    "RetryPolicy",
    "is_retryable",
    "run_scheduler_loop",
    "JobStore",
    "SyncStateStore",
    "Window",
    "plan_sync_window",
    "split_window",
    "run_worker_loop",
    "run_worker",
]
