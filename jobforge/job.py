"""
Job base class and lifecycle.

A job is a unit of work with a stable identity and a single ``execute``
coroutine. The worker that dequeues a job owns its mutable state until the
job reaches a terminal status.
"""

import logging
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from jobforge.constants import (
    DEFAULT_PRIORITY,
    DEFAULT_QUEUE,
    JobStatus,
    OverlapBehavior,
)
from jobforge.exceptions import ExecutionError

logger = logging.getLogger(__name__)

METADATA_ATTR = "__job_metadata__"


@dataclass(frozen=True)
class JobMetadata:
    """
    Class-level job configuration, attached once at registration.

    ``max_retries`` and ``retry_delay`` (seconds) override the queue defaults
    when set.
    """

    name: str
    queue: str = DEFAULT_QUEUE
    priority: int = DEFAULT_PRIORITY
    overlap_behavior: OverlapBehavior = OverlapBehavior.ALLOW_OVERLAP
    overlap_delay: float = 0.0
    max_retries: int | None = None
    retry_delay: float | None = None


def get_job_metadata(job_cls: type["Job"]) -> JobMetadata | None:
    """
    Get the metadata attached to a job class.

    Args:
        job_cls: The job class.

    Returns:
        JobMetadata | None: The metadata, or None if the class was never registered.
    """
    # Own attribute only; subclasses are registered separately
    return vars(job_cls).get(METADATA_ATTR)


def _unique_suffix() -> str:
    return f"{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def generate_dispatch_id() -> str:
    """Generate a dispatch ID, unique per submission."""
    return f"dispatch_{_unique_suffix()}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Job(ABC):
    """
    Base class for all jobs.

    Subclasses implement ``execute`` and forward identity overrides to this
    constructor::

        class SendEmail(Job):
            def __init__(self, to: str, **kwargs):
                super().__init__(**kwargs)
                self.to = to

            async def execute(self) -> None:
                ...

    Status transitions:
    - PENDING -> RUNNING -> COMPLETED | FAILED
    - PENDING | RUNNING -> CANCELLED
    """

    description: str = "A background job."

    def __init__(self, *, job_id: str | None = None, dispatch_id: str | None = None):
        """
        Initialize the job identity.

        Args:
            job_id: Stable job ID. Generated with ``generate_job_id()`` if omitted.
            dispatch_id: Per-submission ID. Generated if omitted.
        """
        self.id: str = job_id or type(self).generate_job_id()
        self.dispatch_id: str = dispatch_id or generate_dispatch_id()
        self.created_at: datetime = _utcnow()
        self.queue_name: str | None = None

        self._status = JobStatus.PENDING
        self._started_at: datetime | None = None
        self._completed_at: datetime | None = None
        self._last_error: BaseException | None = None
        self._retries = 0

    @classmethod
    def generate_job_id(cls, *args: Any) -> str:
        """
        Build the job ID for a dispatch.

        Override to derive a deterministic ID from the job arguments, e.g. to
        make NO_OVERLAP apply per entity.
        """
        return f"job_{_unique_suffix()}"

    @property
    def status(self) -> JobStatus:
        return self._status

    @property
    def started_at(self) -> datetime | None:
        return self._started_at

    @property
    def completed_at(self) -> datetime | None:
        return self._completed_at

    @property
    def last_error(self) -> BaseException | None:
        return self._last_error

    @property
    def retries(self) -> int:
        return self._retries

    @property
    def is_cancelled(self) -> bool:
        """Check whether the job was cancelled; long ``execute`` bodies may poll this."""
        return self._status == JobStatus.CANCELLED

    def increment_retries(self) -> None:
        """Bump the retry counter. Only the owning worker calls this."""
        self._retries += 1

    def reset_for_retry(self) -> None:
        """
        Re-arm a failed job for another attempt.

        Only the owning worker calls this, when the retry delay has elapsed.
        """
        if self._status != JobStatus.FAILED:
            return
        self._status = JobStatus.PENDING
        self._started_at = None
        self._completed_at = None

    async def run(self) -> None:
        """
        Execute the job.

        Exceptions raised by ``execute`` are wrapped in ``ExecutionError`` and
        recorded through ``fail``; they never propagate.
        """
        if self._status == JobStatus.CANCELLED:
            return

        self._status = JobStatus.RUNNING
        self._started_at = _utcnow()
        logger.debug(
            "Job started",
            extra={"job_id": self.id, "dispatch_id": self.dispatch_id, "queue": self.queue_name},
        )

        try:
            await self.execute()
        except Exception as e:
            error = ExecutionError(self.id, e)
            error.__cause__ = e
            self.fail(error)
            return

        # A cancel issued during execute wins
        if self._status == JobStatus.RUNNING:
            self._status = JobStatus.COMPLETED
            self._completed_at = _utcnow()
            logger.debug(
                "Job completed",
                extra={"job_id": self.id, "dispatch_id": self.dispatch_id, "retries": self._retries},
            )

    def fail(self, error: BaseException) -> None:
        """
        Record a failure.

        Args:
            error: The failure cause.
        """
        self._last_error = error

        if self._status == JobStatus.CANCELLED:
            return

        self._status = JobStatus.FAILED
        self._completed_at = _utcnow()
        logger.error(
            "Job failed",
            extra={
                "job_id": self.id,
                "dispatch_id": self.dispatch_id,
                "retries": self._retries,
                "error": str(error),
            },
        )

    def cancel(self) -> bool:
        """
        Cancel the job.

        Does not interrupt a running ``execute``; it only prevents the
        status from being overridden and the job from being scheduled again.

        Returns:
            bool: True if the job transitioned to CANCELLED.
        """
        if self._status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED):
            return False

        was_running = self._status == JobStatus.RUNNING
        self._status = JobStatus.CANCELLED

        if was_running:
            self._completed_at = _utcnow()

        logger.info(
            "Job cancelled",
            extra={"job_id": self.id, "dispatch_id": self.dispatch_id, "while_running": was_running},
        )
        return True

    @abstractmethod
    async def execute(self) -> None:
        """Perform the job's work."""

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} id={self.id!r} dispatch_id={self.dispatch_id!r} "
            f"status={self._status.value}>"
        )
