"""Exception types for the connection job engine."""

from typing import Optional


class ConnJobsError(Exception):
    """Base exception for all connection job errors."""

    pass


class JobNotFoundError(ConnJobsError):
    """Raised when a job is not found."""

    def __init__(self, job_id, message: str = None):
        self.job_id = job_id
        if message is None:
            message = f"Job {job_id} not found"
        super().__init__(message)


class InvalidJobTransitionError(ConnJobsError):
    """Raised when a job cannot move to the requested status."""

    def __init__(self, job_id, current, target, message: str = None):
        self.job_id = job_id
        self.current = current
        self.target = target
        if message is None:
            message = f"Job {job_id} cannot move from {current} to {target}"
        super().__init__(message)


class ConfigurationError(ConnJobsError):
    """Raised when a connection's config or credentials cannot be loaded.

    Never retried.
    """

    pass


class UpstreamError(ConnJobsError):
    """Raised by executors when the marketplace API rejects a request."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: str = None,
    ):
        self.status_code = status_code
        self.response_body = response_body
        if status_code is not None:
            message = f"{message} ({status_code})"
        super().__init__(message)


class LockLostError(ConnJobsError):
    """Raised when a connection lock is no longer owned by the caller."""

    def __init__(self, connection_id: str, owner: str, message: str = None):
        self.connection_id = connection_id
        self.owner = owner
        if message is None:
            message = f"Sync lock for connection {connection_id} is not held by {owner}"
        super().__init__(message)


class ExecutorNotFoundError(ConnJobsError):
    """Raised when no executor is registered for a job type."""

    pass
