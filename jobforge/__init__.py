"""
Distributed Background Job Engine

Named queues, Redis-backed transport, and async workers with concurrency
limits, priority ordering, delayed retries, and cross-process NO_OVERLAP locks.
"""

__version__ = "1.0.0"

from jobforge.constants import JobStatus, OverlapBehavior, TransportMode, WorkerStatus
from jobforge.exceptions import (
    DispatchError,
    DrainingError,
    ExecutionError,
    JobForgeError,
    LockContention,
    NotFoundError,
    RegistrationError,
    TransportError,
)
from jobforge.job import Job, JobMetadata, get_job_metadata
from jobforge.queue import Queue, QueueRegistry
from jobforge.registry import JobRegistry
from jobforge.transport import RedisTransport, Transport
from jobforge.types.job import DispatchOptions, JobDispatchId
from jobforge.worker.main import Worker
from jobforge.worker.pool import WorkerPool
from jobforge.worker.state import QueueOptions, QueuedJob

__all__ = [
    "Job",
    "JobMetadata",
    "JobRegistry",
    "JobStatus",
    "OverlapBehavior",
    "get_job_metadata",
    "Queue",
    "QueueRegistry",
    "DispatchOptions",
    "JobDispatchId",
    "Transport",
    "TransportMode",
    "RedisTransport",
    "Worker",
    "WorkerPool",
    "WorkerStatus",
    "QueueOptions",
    "QueuedJob",
    "JobForgeError",
    "NotFoundError",
    "DrainingError",
    "DispatchError",
    "LockContention",
    "ExecutionError",
    "RegistrationError",
    "TransportError",
]
