"""Registry for operation executors and connection collaborators."""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from conn_jobs.errors import ExecutorNotFoundError
from conn_jobs.models import JobType


@dataclass(frozen=True)
class ExecutorSpec:
    """A registered executor and how its time range is cut."""

    job_type: JobType
    func: Callable
    windowed: bool = False
    max_request_span: Optional[timedelta] = None
    newest_first: bool = False


class ExecutorRegistry:
    """Registry for operation executors, the config loader and the connection source."""

    def __init__(self):
        self._executors: dict[JobType, ExecutorSpec] = {}
        self._config_loader: Optional[Callable] = None
        self._connection_source: Optional[Callable] = None

    def executor(
        self,
        job_type: JobType,
        *,
        windowed: bool = False,
        max_request_span: Optional[timedelta] = None,
        newest_first: bool = False,
    ):
        """
        Decorator to register an operation executor.

        Usage:
            @registry.executor(JobType.SYNC_ORDERS, windowed=True,
                               max_request_span=timedelta(days=14))
            async def sync_orders(ctx, window, params):
                ...
                return {"fetched": 10, "applied": 10}
        """

        def decorator(func: Callable):
            self._executors[JobType(job_type)] = ExecutorSpec(
                job_type=JobType(job_type),
                func=func,
                windowed=windowed,
                max_request_span=max_request_span,
                newest_first=newest_first,
            )
            return func

        return decorator

    def config_loader(self, func: Callable):
        """Decorator registering ``async def load_config(connection_id)``."""
        self._config_loader = func
        return func

    def connection_source(self, func: Callable):
        """Decorator registering ``async def list_connections()`` for the scheduler."""
        self._connection_source = func
        return func

    def get_executor(self, job_type: JobType) -> Optional[ExecutorSpec]:
        """Get an executor by job type."""
        return self._executors.get(JobType(job_type))

    def require_executor(self, job_type: JobType) -> ExecutorSpec:
        spec = self.get_executor(job_type)
        if spec is None:
            raise ExecutorNotFoundError(f"No executor registered for {JobType(job_type).value}")
        return spec

    def all_executors(self) -> dict[JobType, ExecutorSpec]:
        """Get all registered executors."""
        return self._executors.copy()

    @property
    def load_config(self) -> Optional[Callable]:
        return self._config_loader

    @property
    def list_connections(self) -> Optional[Callable]:
        return self._connection_source


# Global registry instance
executor_registry = ExecutorRegistry()
