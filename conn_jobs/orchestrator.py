"""Connection-scoped job orchestration.

The enqueue side (``start_operation``, ``submit_command``, ``accept_event``)
runs inside request handlers. The worker side (``process_delivery``) runs in
any number of worker processes. They share nothing but the lock, the stores
and the queue.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from conn_jobs.config import ConnJobsConfig
from conn_jobs.errors import (
    ConfigurationError,
    ExecutorNotFoundError,
    InvalidJobTransitionError,
    JobNotFoundError,
    LockLostError,
)
from conn_jobs.idempotency import (
    CommandStore,
    EventDeduplicator,
    canonical_json,
    derive_event_key,
    derive_idempotency_key,
    sha256_hex,
)
from conn_jobs.locks import ConnectionLockManager
from conn_jobs.models import (
    EXCLUSIVE_JOB_TYPES,
    CommandAck,
    CommandMode,
    CommandStatus,
    EventAck,
    Job,
    JobStatus,
    JobType,
    JobView,
    StartResult,
    SyncStatus,
)
from conn_jobs.queue import Delivery, SqsDurableQueue
from conn_jobs.registry import ExecutorRegistry, ExecutorSpec
from conn_jobs.retry import is_retryable
from conn_jobs.store import JobStore, SyncStateStore
from conn_jobs.windows import Window, manual_window, plan_from_settings, split_window

# Never retried, whatever the retry policy says.
FATAL_ERRORS = (ConfigurationError, ExecutorNotFoundError, LockLostError)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class WindowPlan:
    windows: List[Optional[Window]]
    window: Optional[Window] = None
    used_auto_window: bool = False


@dataclass
class Progress:
    """Running summary of the windows applied so far."""

    totals: Dict[str, Any] = field(default_factory=dict)
    windows: List[Dict[str, str]] = field(default_factory=list)
    completed: int = 0

    def add(self, window: Optional[Window], fragment: Optional[Dict[str, Any]]) -> None:
        self.completed += 1
        if window is not None:
            self.windows.append(window.to_dict())
        for key, value in (fragment or {}).items():
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                self.totals[key] = self.totals.get(key, 0) + value
            else:
                self.totals[key] = value

    def summary(
        self, plan: Optional[WindowPlan], started: float, partial: bool = False
    ) -> Dict[str, Any]:
        summary = dict(self.totals)
        summary["windowsCompleted"] = self.completed
        summary["durationMs"] = int((time.monotonic() - started) * 1000)
        if plan is not None:
            summary["windowsTotal"] = len(plan.windows)
            if plan.window is not None:
                summary["windowStart"] = plan.window.start.isoformat()
                summary["windowEnd"] = plan.window.end.isoformat()
                summary["usedAutoWindow"] = plan.used_auto_window
                summary["windows"] = list(self.windows)
        if partial:
            summary["partial"] = True
        return summary


class Orchestrator:
    """Runs connection jobs end to end."""

    def __init__(
        self,
        config: ConnJobsConfig,
        job_store: JobStore,
        locks: ConnectionLockManager,
        queue: SqsDurableQueue,
        commands: CommandStore,
        events: EventDeduplicator,
        sync_state: SyncStateStore,
        registry: ExecutorRegistry,
        logger: Optional[logging.Logger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.job_store = job_store
        self.locks = locks
        self.queue = queue
        self.commands = commands
        self.events = events
        self.sync_state = sync_state
        self.registry = registry
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock or _utcnow
        self.retry_policy = config.retry_policy()

    async def start_operation(
        self,
        connection_id: str,
        job_type: JobType,
        params: Optional[Dict[str, Any]] = None,
    ) -> StartResult:
        """
        Create and enqueue a job.

        Exclusive (sync) kinds first take the connection lock. When it is held
        the active job is reported back and nothing is created.

        Raises:
            Any store, lock or queue error, after the lock has been released
            and a created job marked failed.
        """
        job_type = JobType(job_type)
        if not job_type.is_exclusive:
            job = await self._create_and_enqueue(connection_id, job_type, params)
            return StartResult(job_id=str(job.id), status=job.status.value, type=job_type.value)

        token = await self.locks.acquire(connection_id, self.config.lock_ttl)
        if token is None:
            active = await self.job_store.find_active(connection_id, EXCLUSIVE_JOB_TYPES)
            current = active[0] if active else None
            self.logger.info(
                f"Sync already in progress for connection {connection_id}"
                + (f" (job {current.id}, {current.status.value})" if current else "")
            )
            return StartResult(
                busy=True,
                job_id=str(current.id) if current else None,
                status=current.status.value if current else None,
                type=current.type.value if current else None,
            )

        owner = token
        job = None
        try:
            job = await self.job_store.create(connection_id, job_type, params)
            if not await self.locks.rebind(
                connection_id, token, str(job.id), self.config.lock_ttl
            ):
                raise LockLostError(connection_id, token)
            owner = str(job.id)
            await self._enqueue(job)
        except Exception as e:
            self.logger.error(
                f"Failed to start {job_type.value} for connection {connection_id}: {e}"
            )
            await self._fail_unstarted_job(job, e)
            await self._release_quietly(connection_id, owner)
            raise

        self.logger.info(
            f"Enqueued job {job.id} ({job_type.value}) for connection {connection_id}"
        )
        return StartResult(job_id=str(job.id), status=job.status.value, type=job_type.value)

    async def submit_command(
        self,
        connection_id: str,
        command_type: JobType,
        target_id: str,
        payload: Dict[str, Any],
        dry_run: bool = False,
    ) -> CommandAck:
        """
        Queue an idempotent write (answer a question, approve a claim line).

        Writes run dry unless both the caller and the configuration allow
        them. Repeating the same intent returns the first command.
        """
        command_type = JobType(command_type)
        if not command_type.is_command:
            raise ValueError(f"{command_type.value} is not a command type")

        is_dry = dry_run or not self.config.write_enabled
        mode = CommandMode.DRY if is_dry else CommandMode.REAL
        idempotency_key = derive_idempotency_key(command_type, target_id, payload, mode)
        request = {"targetId": target_id, "payload": payload, "dryRun": is_dry}

        result = await self.commands.ensure(
            connection_id, command_type, idempotency_key, request
        )
        record = result.record
        if not result.created:
            return CommandAck(
                mode="idempotent",
                job_id=str(record.job_id) if record.job_id else None,
                command_id=str(record.id),
                idempotency_key=idempotency_key,
                status=record.status.value,
            )

        job = None
        try:
            job = await self.job_store.create(
                connection_id,
                command_type,
                {**request, "commandId": str(record.id)},
            )
            await self.commands.attach_job(record.id, job.id)
            await self._enqueue(job)
        except Exception as e:
            self.logger.error(f"Failed to queue command {idempotency_key}: {e}")
            await self._fail_unstarted_job(job, e)
            # let the caller retry the same intent
            await self.commands.discard(record.id)
            raise

        self.logger.info(
            f"Queued command {record.id} ({command_type.value}) as job {job.id}"
        )
        return CommandAck(
            mode="queued",
            job_id=str(job.id),
            command_id=str(record.id),
            idempotency_key=idempotency_key,
            status=CommandStatus.QUEUED.value,
        )

    async def accept_event(
        self,
        connection_id: str,
        provider: str,
        payload: Any,
        raw_body: Optional[str] = None,
    ) -> EventAck:
        """Record an inbound event and trigger its job once per event key."""
        body = raw_body if raw_body is not None else canonical_json(payload)
        event_key = derive_event_key(provider, payload, raw_body)
        result = await self.events.record(
            connection_id, provider, event_key, sha256_hex(body), payload
        )
        if not result.created:
            return EventAck(
                accepted=False,
                dedup=True,
                event_key=event_key,
                job_id=str(result.record.job_id) if result.record.job_id else None,
            )

        try:
            started = await self.start_operation(
                connection_id,
                JobType.WEBHOOK_EVENT,
                {"eventId": str(result.record.id), "eventKey": event_key, "payload": payload},
            )
        except Exception:
            # a redelivery of this event must not be mistaken for a duplicate
            await self.events.discard(result.record.id)
            raise
        await self.events.attach_job(result.record.id, UUID(started.job_id))

        self.logger.info(
            f"Accepted event {event_key} for connection {connection_id} as job {started.job_id}"
        )
        return EventAck(accepted=True, dedup=False, event_key=event_key, job_id=started.job_id)

    async def get_job_view(self, job_id: UUID) -> JobView:
        return JobView.from_job(await self.job_store.get_job(job_id))

    async def _create_and_enqueue(
        self, connection_id: str, job_type: JobType, params: Optional[Dict[str, Any]]
    ) -> Job:
        job = await self.job_store.create(connection_id, job_type, params)
        try:
            await self._enqueue(job)
        except Exception as e:
            await self._fail_unstarted_job(job, e)
            raise
        return job

    async def _enqueue(self, job: Job) -> str:
        return await self.queue.enqueue(
            job.type.value,
            {
                "job_id": str(job.id),
                "connection_id": job.connection_id,
                "params": job.params,
            },
            max_attempts=self.config.get_max_attempts_for_type(job.type),
            backoff_policy=self.config.backoff_policy,
        )

    async def _fail_unstarted_job(self, job: Optional[Job], error: Exception) -> None:
        if job is None:
            return
        try:
            await self.job_store.mark_failed(job.id, f"enqueue failed: {error}")
        except Exception:
            self.logger.exception(f"Could not mark job {job.id} as failed")

    async def _release_quietly(self, connection_id: str, owner: str) -> None:
        try:
            await self.locks.release(connection_id, owner)
        except Exception:
            self.logger.exception(f"Could not release lock for connection {connection_id}")

    async def process_delivery(self, delivery: Delivery) -> Optional[JobStatus]:
        """
        Run one delivered job.

        Returns the status the job was left in, or None when the delivery was
        dropped (unknown or finished job) or left for redelivery (job already
        running elsewhere).
        """
        message = delivery.message
        try:
            job_id = UUID(message.job_id)
        except ValueError:
            self.logger.error(f"Delivery {delivery.message_id} has invalid job id {message.job_id!r}")
            await self.queue.dead_letter(delivery, "invalid job id")
            return None

        try:
            job = await self.job_store.mark_running(
                job_id, is_first_attempt=delivery.attempt == 1
            )
        except JobNotFoundError:
            self.logger.warning(f"Job {job_id} not found, deleting message")
            await self.queue.ack(delivery)
            return None
        except InvalidJobTransitionError as e:
            if e.current == JobStatus.RUNNING:
                # left invisible; the broker redelivers it if the running attempt dies
                self.logger.warning(
                    f"Job {job_id} is already running, leaving message "
                    f"{delivery.message_id} for redelivery"
                )
                return None
            self.logger.warning(
                f"Job {job_id} is not runnable (status={e.current.value}), deleting message"
            )
            await self.queue.ack(delivery)
            return None

        max_attempts = message.max_attempts
        self.logger.info(
            f"Executing job {job.id} ({job.type.value}) for connection "
            f"{job.connection_id}, attempt {delivery.attempt}/{max_attempts}"
        )

        started = time.monotonic()
        progress = Progress()
        plan = None
        try:
            await self.queue.extend(delivery, self.config.visibility_extension_seconds)
            if job.type.is_exclusive:
                await self._hold_lock(job)
                await self.sync_state.mark_attempt(job.connection_id, job.type, job.id)
            spec = self.registry.require_executor(job.type)
            connection_config = await self._load_config(job.connection_id)
            plan = await self._plan(job, spec)

            for index, window in enumerate(plan.windows):
                if index > 0:
                    await self._heartbeat(job, delivery)
                ctx = {
                    "job": job,
                    "connection_id": job.connection_id,
                    "config": connection_config,
                    "attempt": delivery.attempt,
                    "window_index": index,
                    "logger": self.logger,
                }
                fragment = await spec.func(ctx, window, job.params)
                progress.add(window, fragment)
        except Exception as e:
            return await self._handle_failure(job, delivery, e, progress, plan, started)

        return await self._handle_success(job, delivery, progress, plan, started)

    async def _handle_success(
        self,
        job: Job,
        delivery: Delivery,
        progress: Progress,
        plan: WindowPlan,
        started: float,
    ) -> JobStatus:
        summary = progress.summary(plan, started)
        await self.job_store.mark_success(job.id, summary)

        try:
            if job.type.is_exclusive:
                watermark = plan.window.end if plan.used_auto_window and plan.window else None
                await self.sync_state.mark_success(job.connection_id, job.type, job.id, watermark)
            if job.type.is_command:
                await self._complete_command(job, CommandStatus.SUCCEEDED, response=summary)
        finally:
            if job.type.is_exclusive:
                await self._release(job)

        await self.queue.ack(delivery)
        self.logger.info(f"Job {job.id} completed successfully: {summary}")
        return JobStatus.SUCCESS

    async def _handle_failure(
        self,
        job: Job,
        delivery: Delivery,
        error: Exception,
        progress: Progress,
        plan: Optional[WindowPlan],
        started: float,
    ) -> JobStatus:
        error_text = str(error) or type(error).__name__
        retryable = self._is_retryable(error)

        if retryable and self.queue.has_attempts_left(delivery):
            await self.job_store.mark_retrying(job.id, error_text)
            if job.type.is_exclusive:
                await self.sync_state.mark_outcome(
                    job.connection_id, job.type, job.id, SyncStatus.RETRYING, error_text
                )
            delay = await self.queue.retry_later(delivery)
            self.logger.warning(
                f"Job {job.id} failed on attempt {delivery.attempt}/"
                f"{delivery.message.max_attempts}, retrying in {delay}s: {error_text}"
            )
            return JobStatus.RETRYING

        summary = progress.summary(plan, started, partial=True)
        await self.job_store.mark_failed(job.id, error_text, summary)
        try:
            if job.type.is_exclusive:
                await self.sync_state.mark_outcome(
                    job.connection_id, job.type, job.id, SyncStatus.FAIL, error_text
                )
            if job.type.is_command:
                await self._complete_command(job, CommandStatus.FAILED, error=error_text)
        finally:
            if job.type.is_exclusive:
                await self._release(job)

        if retryable:
            await self.queue.dead_letter(delivery, error_text)
            self.logger.error(
                f"Job {job.id} failed after {delivery.attempt} attempts: {error_text}"
            )
        else:
            await self.queue.ack(delivery)
            self.logger.error(f"Job {job.id} failed permanently: {error_text}")
        return JobStatus.FAILED

    def _is_retryable(self, error: Exception) -> bool:
        if isinstance(error, FATAL_ERRORS):
            return False
        return is_retryable(error, self.retry_policy)

    async def _load_config(self, connection_id: str) -> Any:
        loader = self.registry.load_config
        if loader is None:
            return None
        try:
            return await loader(connection_id)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(
                f"Failed to load config for connection {connection_id}: {e}"
            ) from e

    async def _plan(self, job: Job, spec: ExecutorSpec) -> WindowPlan:
        if not spec.windowed:
            return WindowPlan(windows=[None])

        now = self.clock()
        settings = self.config.window_settings()
        try:
            window = manual_window(
                job.params,
                default_end=now - settings.safety_delay,
                default_span=settings.bootstrap,
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid window params: {e}") from e

        used_auto_window = window is None
        if used_auto_window:
            last_success_at = None
            if job.type.is_exclusive:
                state = await self.sync_state.get(job.connection_id, job.type)
                last_success_at = state.last_success_at if state else None
            window = plan_from_settings(last_success_at, now, settings)

        if spec.max_request_span is not None:
            windows = split_window(window, spec.max_request_span, spec.newest_first)
        else:
            windows = [window]
        return WindowPlan(windows=windows, window=window, used_auto_window=used_auto_window)

    async def _hold_lock(self, job: Job) -> None:
        if not await self.locks.renew(job.connection_id, str(job.id), self.config.lock_ttl):
            raise LockLostError(job.connection_id, str(job.id))

    async def _heartbeat(self, job: Job, delivery: Delivery) -> None:
        if job.type.is_exclusive:
            await self._hold_lock(job)
        await self.queue.extend(delivery, self.config.visibility_extension_seconds)

    async def _release(self, job: Job) -> None:
        if not await self.locks.release(job.connection_id, str(job.id)):
            self.logger.warning(
                f"Lock for connection {job.connection_id} was not held by job {job.id}"
            )

    async def _complete_command(
        self,
        job: Job,
        status: CommandStatus,
        response: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        command_id = job.params.get("commandId")
        if not command_id:
            self.logger.warning(f"Command job {job.id} has no commandId")
            return
        if not await self.commands.complete(UUID(command_id), status, response, error):
            self.logger.info(f"Command {command_id} already has an outcome")
