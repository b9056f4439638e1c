"""
Type definitions for the job engine.
Contains the wire and status types shared by queues, workers and transports.
"""

from jobforge.types.events import (
    CancelAllJobsEvent,
    CancelJobEvent,
    JobStatusEvent,
    JobUpdateEvent,
    ProcessJobEvent,
    TransportEvent,
    WorkerRegisterEvent,
    WorkerUnregisterEvent,
    parse_event,
)
from jobforge.types.job import (
    DispatchOptions,
    JobDispatchId,
    JobStatusInfo,
)

__all__ = [
    # Job types
    "DispatchOptions",
    "JobDispatchId",
    "JobStatusInfo",
    # Event types
    "TransportEvent",
    "ProcessJobEvent",
    "CancelJobEvent",
    "CancelAllJobsEvent",
    "JobStatusEvent",
    "JobUpdateEvent",
    "WorkerRegisterEvent",
    "WorkerUnregisterEvent",
    "parse_event",
]
