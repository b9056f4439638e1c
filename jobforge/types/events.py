"""
Event type definitions for messages moved by a transport.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import Field, TypeAdapter

from jobforge.constants import (
    EVENT_JOB_CANCEL,
    EVENT_JOB_CANCEL_ALL,
    EVENT_JOB_PROCESS,
    EVENT_JOB_RESULT,
    EVENT_JOB_STATUS,
    EVENT_JOB_UPDATE,
    EVENT_WORKER_REGISTER,
    EVENT_WORKER_UNREGISTER,
    DEFAULT_QUEUE,
)
from jobforge.types.job import DispatchOptions, WireModel


class ProcessJobEvent(WireModel):
    """Request to run one dispatch of a job class on a queue."""

    type: Literal["job:process"] = EVENT_JOB_PROCESS
    job: str
    args: list[Any] = Field(default_factory=list)
    job_id: str
    dispatch_id: str
    queue: str = DEFAULT_QUEUE
    options: DispatchOptions = Field(default_factory=DispatchOptions)


class CancelJobEvent(WireModel):
    """Request to cancel every instance of a job id on a queue."""

    type: Literal["job:cancel"] = EVENT_JOB_CANCEL
    job_id: str
    dispatch_id: str = ""
    queue: str = DEFAULT_QUEUE


class CancelAllJobsEvent(WireModel):
    """Request to cancel every waiting or active job of a queue."""

    type: Literal["job:cancelAll"] = EVENT_JOB_CANCEL_ALL
    queue: str = DEFAULT_QUEUE


class JobStatusEvent(WireModel):
    """
    Status report from a worker.

    ``job:result`` is used for terminal statuses, ``job:status`` otherwise.
    """

    type: Literal["job:status", "job:result"] = EVENT_JOB_STATUS
    job_id: str
    dispatch_id: str
    queue: str = DEFAULT_QUEUE
    status: str
    error: str | None = None
    retries: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_result(self) -> bool:
        return self.type == EVENT_JOB_RESULT


class JobUpdateEvent(WireModel):
    """Out-of-band job notification, e.g. a NO_OVERLAP lock release."""

    type: Literal["job:update"] = EVENT_JOB_UPDATE
    job_id: str
    dispatch_id: str = ""
    queue: str = DEFAULT_QUEUE
    status: str
    updates: dict[str, Any] = Field(default_factory=dict)


class WorkerRegisterEvent(WireModel):
    """A worker announcing the queues it consumes."""

    type: Literal["worker:register"] = EVENT_WORKER_REGISTER
    worker_id: str
    queues: list[str] = Field(default_factory=list)


class WorkerUnregisterEvent(WireModel):
    """A worker leaving."""

    type: Literal["worker:unregister"] = EVENT_WORKER_UNREGISTER
    worker_id: str


TransportEvent = Annotated[
    Union[
        ProcessJobEvent,
        CancelJobEvent,
        CancelAllJobsEvent,
        JobStatusEvent,
        JobUpdateEvent,
        WorkerRegisterEvent,
        WorkerUnregisterEvent,
    ],
    Field(discriminator="type"),
]

transport_event_adapter: TypeAdapter[TransportEvent] = TypeAdapter(TransportEvent)


def parse_event(data: dict[str, Any]) -> TransportEvent:
    """
    Validate a plain mapping (camelCase or snake_case keys) into an event.

    Raises:
        pydantic.ValidationError: If the type is unknown or fields are missing.
    """
    return transport_event_adapter.validate_python(data)
