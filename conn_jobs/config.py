"""Configuration for the connection job engine."""

import json
import os
from datetime import timedelta
from typing import Any, Dict, Iterable, Optional

from conn_jobs.models import JobType
from conn_jobs.retry import RetryPolicy
from conn_jobs.windows import WindowSettings

DEFAULT_BACKOFF_POLICY = {"type": "exponential", "base_seconds": 10}

_TRUE_VALUES = ("1", "true", "yes", "on")


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"Invalid integer in {name}: {raw!r}") from e


def _bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _require_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise ValueError(f"{name} environment variable is required")
    return value


class ConnJobsConfig:
    """Configuration object for the connection job engine."""

    def __init__(
        self,
        db_dsn: str,
        redis_url: str,
        sqs_queue_url: str,
        sqs_dead_letter_queue_url: Optional[str] = None,
        lock_ttl_seconds: int = 3600,
        lock_key_prefix: str = "lock",
        sync_overlap_minutes: int = 15,
        sync_safety_delay_minutes: int = 2,
        sync_bootstrap_hours: int = 24,
        sync_max_window_days: int = 14,
        max_attempts: int = 5,
        command_max_attempts: int = 3,
        per_type_max_attempts: Optional[Dict[str, int]] = None,
        backoff_policy: Optional[Dict[str, Any]] = None,
        retry_on_unknown_status: bool = False,
        extra_retryable_statuses: Optional[Iterable[int]] = None,
        visibility_extension_seconds: int = 900,
        scheduler_interval_seconds: int = 0,
        scheduler_min_interval_seconds: int = 300,
        write_enabled: bool = False,
    ):
        self.db_dsn = db_dsn
        self.redis_url = redis_url
        self.sqs_queue_url = sqs_queue_url
        self.sqs_dead_letter_queue_url = sqs_dead_letter_queue_url
        self.lock_ttl_seconds = lock_ttl_seconds
        self.lock_key_prefix = lock_key_prefix
        self.sync_overlap_minutes = sync_overlap_minutes
        self.sync_safety_delay_minutes = sync_safety_delay_minutes
        self.sync_bootstrap_hours = sync_bootstrap_hours
        self.sync_max_window_days = sync_max_window_days
        self.max_attempts = max_attempts
        self.command_max_attempts = command_max_attempts
        self.per_type_max_attempts = per_type_max_attempts or {}
        self.backoff_policy = backoff_policy or dict(DEFAULT_BACKOFF_POLICY)
        self.retry_on_unknown_status = retry_on_unknown_status
        self.extra_retryable_statuses = frozenset(extra_retryable_statuses or ())
        self.visibility_extension_seconds = visibility_extension_seconds
        self.scheduler_interval_seconds = scheduler_interval_seconds
        self.scheduler_min_interval_seconds = scheduler_min_interval_seconds
        self.write_enabled = write_enabled

    @classmethod
    def from_env(cls) -> "ConnJobsConfig":
        """Create config from environment variables."""
        db_dsn = _require_env("CONN_JOBS_DB_DSN")
        redis_url = _require_env("CONN_JOBS_REDIS_URL")
        sqs_queue_url = _require_env("CONN_JOBS_SQS_QUEUE_URL")

        backoff_policy = None
        backoff_str = os.getenv("CONN_JOBS_BACKOFF_POLICY")
        if backoff_str:
            try:
                backoff_policy = json.loads(backoff_str)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON in CONN_JOBS_BACKOFF_POLICY: {e}") from e

        per_type_max_attempts = None
        per_type_str = os.getenv("CONN_JOBS_PER_TYPE_MAX_ATTEMPTS")
        if per_type_str:
            try:
                per_type_max_attempts = json.loads(per_type_str)
            except json.JSONDecodeError as e:
                raise ValueError(
                    f"Invalid JSON in CONN_JOBS_PER_TYPE_MAX_ATTEMPTS: {e}"
                ) from e

        extra_statuses = []
        extra_str = os.getenv("CONN_JOBS_EXTRA_RETRYABLE_STATUSES", "")
        for part in extra_str.split(","):
            part = part.strip()
            if not part:
                continue
            if not part.isdigit():
                raise ValueError(
                    f"Invalid status code in CONN_JOBS_EXTRA_RETRYABLE_STATUSES: {part!r}"
                )
            extra_statuses.append(int(part))

        return cls(
            db_dsn=db_dsn,
            redis_url=redis_url,
            sqs_queue_url=sqs_queue_url,
            sqs_dead_letter_queue_url=os.getenv("CONN_JOBS_SQS_DEAD_LETTER_QUEUE_URL"),
            lock_ttl_seconds=_int_env("CONN_JOBS_LOCK_TTL_SECONDS", 3600),
            lock_key_prefix=os.getenv("CONN_JOBS_LOCK_KEY_PREFIX", "lock"),
            sync_overlap_minutes=_int_env("CONN_JOBS_SYNC_OVERLAP_MINUTES", 15),
            sync_safety_delay_minutes=_int_env("CONN_JOBS_SYNC_SAFETY_DELAY_MINUTES", 2),
            sync_bootstrap_hours=_int_env("CONN_JOBS_SYNC_BOOTSTRAP_HOURS", 24),
            sync_max_window_days=_int_env("CONN_JOBS_SYNC_MAX_WINDOW_DAYS", 14),
            max_attempts=_int_env("CONN_JOBS_MAX_ATTEMPTS", 5),
            command_max_attempts=_int_env("CONN_JOBS_COMMAND_MAX_ATTEMPTS", 3),
            per_type_max_attempts=per_type_max_attempts,
            backoff_policy=backoff_policy,
            retry_on_unknown_status=_bool_env("CONN_JOBS_RETRY_ON_UNKNOWN_STATUS"),
            extra_retryable_statuses=extra_statuses,
            visibility_extension_seconds=_int_env(
                "CONN_JOBS_VISIBILITY_EXTENSION_SECONDS", 900
            ),
            scheduler_interval_seconds=_int_env("CONN_JOBS_SCHEDULER_INTERVAL_SECONDS", 0),
            scheduler_min_interval_seconds=_int_env(
                "CONN_JOBS_SCHEDULER_MIN_INTERVAL_SECONDS", 300
            ),
            write_enabled=_bool_env("CONN_JOBS_WRITE_ENABLED"),
        )

    @property
    def lock_ttl(self) -> timedelta:
        return timedelta(seconds=self.lock_ttl_seconds)

    def window_settings(self) -> WindowSettings:
        """Incremental sync window settings."""
        return WindowSettings(
            overlap=timedelta(minutes=self.sync_overlap_minutes),
            safety_delay=timedelta(minutes=self.sync_safety_delay_minutes),
            bootstrap=timedelta(hours=self.sync_bootstrap_hours),
            max_window=timedelta(days=self.sync_max_window_days),
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            retry_on_unknown=self.retry_on_unknown_status,
            extra_retryable_statuses=self.extra_retryable_statuses,
        )

    def get_max_attempts_for_type(self, job_type: JobType) -> int:
        """Get max delivery attempts for a job type."""
        job_type = JobType(job_type)
        if job_type.value in self.per_type_max_attempts:
            return int(self.per_type_max_attempts[job_type.value])
        if job_type.is_command:
            return self.command_max_attempts
        return self.max_attempts
