"""
Job-related type definitions shared by producers, workers and transports.
"""

from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from jobforge.constants import OverlapBehavior


class WireModel(BaseModel):
    """Base for models that travel through the broker with camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


@dataclass(frozen=True)
class JobDispatchId:
    """
    Identity of one dispatch.

    ``job_id`` is stable across retries and repeated dispatches of the same
    logical job; ``dispatch_id`` is unique per submission.
    """

    job_id: str
    dispatch_id: str


class DispatchOptions(WireModel):
    """
    Per-call dispatch options.

    Unset fields fall back to the job class metadata, then to the queue
    defaults configured on the worker.
    """

    job_id: str | None = None
    dispatch_id: str | None = None
    scheduled_for: datetime | None = None
    priority: int | None = None
    max_retries: int | None = None
    retry_delay: float | None = None
    overlap_behavior: OverlapBehavior | None = None
    overlap_delay: float | None = None

    def merged_with(self, defaults: "DispatchOptions") -> "DispatchOptions":
        """
        Return a copy where unset fields are filled from ``defaults``.

        Args:
            defaults: Options used where this instance has no value.

        Returns:
            DispatchOptions: The merged options.
        """
        merged = defaults.model_dump(exclude_none=True)
        merged.update(self.model_dump(exclude_none=True))
        return DispatchOptions(**merged)


class JobStatusInfo(WireModel):
    """
    Durable status record of one dispatch, as stored by the transport.

    This is the system of record producers read through ``Queue.get_job_status``.
    """

    job_id: str
    dispatch_id: str
    queue: str
    status: str
    error: str | None = None
    retries: int = 0
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None
    message_id: str | None = None
