"""
Per-queue bookkeeping held by a worker.
"""

import asyncio
import time
from dataclasses import dataclass, field

from jobforge.constants import (
    DEFAULT_CONCURRENCY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_PRIORITY,
    DEFAULT_QUEUE,
    DEFAULT_RETRY_DELAY_SECONDS,
    OverlapBehavior,
)
from jobforge.job import Job, get_job_metadata


@dataclass
class QueueOptions:
    """Configuration of one worker queue. ``retry_delay`` is in seconds."""

    name: str = DEFAULT_QUEUE
    concurrency: int = DEFAULT_CONCURRENCY
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS
    pause_on_error: bool = False

    def __post_init__(self) -> None:
        self.concurrency = max(1, self.concurrency)


@dataclass
class QueuedJob:
    """
    A job admitted to a worker queue.

    Timestamps (``enqueued_at``, ``scheduled_for``) are epoch seconds.
    Unset overrides fall back to the job class metadata, then to the queue.
    """

    job: Job
    queue_name: str
    enqueued_at: float = field(default_factory=time.time)
    retries: int = 0
    scheduled_for: float | None = None
    priority: int = DEFAULT_PRIORITY
    max_retries: int | None = None
    retry_delay: float | None = None
    overlap_behavior: OverlapBehavior = OverlapBehavior.ALLOW_OVERLAP
    overlap_delay: float = 0.0
    # Set while the job waits for another holder's NO_OVERLAP lock
    lock_blocked: bool = False
    retry_handle: asyncio.TimerHandle | None = field(default=None, repr=False)

    def is_ready(self, now: float) -> bool:
        return self.scheduled_for is None or self.scheduled_for <= now

    @property
    def exclusive(self) -> bool:
        return self.overlap_behavior == OverlapBehavior.NO_OVERLAP


def sort_waiting(waiting: list[QueuedJob]) -> None:
    """
    Order a waiting list in place.

    Three stable passes: enqueue time, then scheduled time (unscheduled jobs
    count as 0), then priority. Priority dominates; the earlier passes break
    its ties.
    """
    waiting.sort(key=lambda qj: qj.enqueued_at)
    waiting.sort(key=lambda qj: qj.scheduled_for or 0.0)
    waiting.sort(key=lambda qj: qj.priority)


class QueueState:
    """
    Runtime state of one named queue inside a worker.

    Jobs move between three places:
    - ``waiting``: admitted, sorted, not yet picked
    - ``claimed``: picked by the scheduler, keyed by dispatch ID; the subset
      currently executing is mirrored in ``active_jobs``
    - ``retrying_jobs``: failed, waiting for their retry timer
    """

    def __init__(self, options: QueueOptions):
        self.options = options
        self.waiting: list[QueuedJob] = []
        self.claimed: dict[str, QueuedJob] = {}
        self.active_jobs: dict[str, QueuedJob] = {}
        self.retrying_jobs: dict[str, QueuedJob] = {}
        self.exclusive_ids: set[str] = set()
        self.paused = False
        self.draining = False
        self.wakeup = asyncio.Event()
        self.scheduler_task: asyncio.Task | None = None
        self.tasks: set[asyncio.Task] = set()

    @property
    def name(self) -> str:
        return self.options.name

    @property
    def in_flight(self) -> int:
        return len(self.claimed)

    @property
    def free_slots(self) -> int:
        return max(0, self.options.concurrency - self.in_flight)

    def wake(self) -> None:
        self.wakeup.set()

    def insert(self, queued: QueuedJob) -> None:
        self.waiting.append(queued)
        sort_waiting(self.waiting)

    def has_ready_jobs(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return any(qj.is_ready(now) for qj in self.waiting)

    def next_scheduled(self, now: float) -> float | None:
        """Earliest future ``scheduled_for`` among waiting jobs."""
        upcoming = [
            qj.scheduled_for
            for qj in self.waiting
            if qj.scheduled_for is not None and qj.scheduled_for > now
        ]
        return min(upcoming) if upcoming else None

    def effective_max_retries(self, queued: QueuedJob) -> int:
        if queued.max_retries is not None:
            return queued.max_retries
        metadata = get_job_metadata(type(queued.job))
        if metadata is not None and metadata.max_retries is not None:
            return metadata.max_retries
        return self.options.max_retries

    def effective_retry_delay(self, queued: QueuedJob) -> float:
        if queued.retry_delay is not None:
            return queued.retry_delay
        metadata = get_job_metadata(type(queued.job))
        if metadata is not None and metadata.retry_delay is not None:
            return metadata.retry_delay
        return self.options.retry_delay

    def jobs(self) -> list[QueuedJob]:
        """Every job held by the queue, in any state."""
        return [*self.waiting, *self.claimed.values(), *self.retrying_jobs.values()]

    def stats(self) -> dict:
        return {
            "waiting": len(self.waiting),
            "active": len(self.active_jobs),
            "in_flight": self.in_flight,
            "retrying": len(self.retrying_jobs),
            "concurrency": self.options.concurrency,
            "paused": self.paused,
            "draining": self.draining,
        }
