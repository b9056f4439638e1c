"""
Exception taxonomy for the job engine.
"""

from typing import Any


class JobForgeError(Exception):
    """Base exception for the job engine."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(JobForgeError):
    """Raised when a queue, job, or job class is unknown."""


class DrainingError(JobForgeError):
    """Raised when a job is admitted into a draining queue."""

    def __init__(self, queue_name: str, job_id: str | None = None):
        super().__init__(
            f"Queue '{queue_name}' is draining",
            {"queue": queue_name, "job_id": job_id},
        )
        self.queue_name = queue_name


class DispatchError(JobForgeError):
    """Raised on the producer side when the transport cannot send a job."""


class LockContention(JobForgeError):
    """
    Raised internally when a NO_OVERLAP lock is held elsewhere.

    Never surfaced to callers: the worker puts the job back on its waiting list.
    """

    def __init__(self, job_id: str, queue_name: str):
        super().__init__(
            f"Job {job_id} is locked in queue '{queue_name}'",
            {"job_id": job_id, "queue": queue_name},
        )


class ExecutionError(JobForgeError):
    """Wraps any exception raised by a job's execute hook."""

    def __init__(self, job_id: str, cause: BaseException):
        super().__init__(
            str(cause) or type(cause).__name__,
            {"job_id": job_id, "exception_type": type(cause).__name__},
        )
        self.cause = cause


class TransportError(JobForgeError):
    """Raised when the broker is unavailable or rejects an operation."""


class RegistrationError(JobForgeError):
    """Raised when a job class is registered again with different metadata."""
