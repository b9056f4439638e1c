"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> RUNNING (execution started)
    - RUNNING -> COMPLETED (success)
    - RUNNING -> FAILED (execute raised)
    - PENDING | RUNNING -> CANCELLED (cancel requested)
    - FAILED -> SCHEDULED_FOR_RETRY -> PENDING (worker retry policy)
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SCHEDULED_FOR_RETRY = "scheduled_for_retry"


TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)


class OverlapBehavior(StrEnum):
    """How a job behaves when several dispatches share the same job ID."""

    ALLOW_OVERLAP = "allow_overlap"
    NO_OVERLAP = "no_overlap"


class WorkerStatus(StrEnum):
    """Worker lifecycle states."""

    IDLE = "idle"
    ACTIVE = "active"
    PAUSED = "paused"
    DRAINING = "draining"
    STOPPING = "stopping"
    STOPPED = "stopped"
    DISCONNECTED = "disconnected"


class TransportMode(StrEnum):
    """Side of the broker a transport instance serves."""

    PRODUCER = "producer"
    CONSUMER = "consumer"


# Transport event types
EVENT_JOB_PROCESS = "job:process"
EVENT_JOB_CANCEL = "job:cancel"
EVENT_JOB_CANCEL_ALL = "job:cancelAll"
EVENT_JOB_STATUS = "job:status"
EVENT_JOB_RESULT = "job:result"
EVENT_JOB_UPDATE = "job:update"
EVENT_WORKER_REGISTER = "worker:register"
EVENT_WORKER_UNREGISTER = "worker:unregister"

# Status carried by job:update when a NO_OVERLAP lock is released
LOCK_RELEASED = "lock_released"

# Default values
DEFAULT_QUEUE = "default"
DEFAULT_PRIORITY = 10
DEFAULT_CONCURRENCY = 1
DEFAULT_MAX_RETRIES = 0
DEFAULT_RETRY_DELAY_SECONDS = 1.0

# Metrics names
METRIC_JOBS_DISPATCHED = "jobforge_jobs_dispatched_total"
METRIC_JOBS_COMPLETED = "jobforge_jobs_completed_total"
METRIC_JOBS_RETRIED = "jobforge_jobs_retried_total"
METRIC_JOB_DURATION = "jobforge_job_duration_seconds"
METRIC_QUEUE_DEPTH = "jobforge_queue_depth"
METRIC_LOCK_CONTENTION = "jobforge_lock_contention_total"
METRIC_TRANSPORT_ERRORS = "jobforge_transport_errors_total"
METRIC_CLEANUP_REMOVED = "jobforge_cleanup_removed_total"

# Trace span names
SPAN_DISPATCH_JOB = "dispatch_job"
SPAN_EXECUTE_JOB = "execute_job"
