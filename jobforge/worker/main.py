"""
Worker process for executing jobs.

The worker owns named queues, admits jobs delivered by its transport, runs
them within each queue's concurrency limit and priority order, retries
failures after a delay, enforces NO_OVERLAP through transport locks and
reports every status change back through the transport.
"""

import asyncio
import importlib
import logging
import os
import signal
import sys
import time
from datetime import datetime, timezone
from typing import Any

from prometheus_client import start_http_server

from jobforge.config import get_settings
from jobforge.constants import (
    DEFAULT_PRIORITY,
    DEFAULT_QUEUE,
    EVENT_JOB_RESULT,
    EVENT_JOB_STATUS,
    LOCK_RELEASED,
    SPAN_EXECUTE_JOB,
    TERMINAL_STATUSES,
    JobStatus,
    OverlapBehavior,
    TransportMode,
    WorkerStatus,
)
from jobforge.exceptions import (
    DrainingError,
    LockContention,
    NotFoundError,
    TransportError,
)
from jobforge.job import Job, get_job_metadata
from jobforge.observability.logging import log_success, setup_logging
from jobforge.observability.metrics import get_metrics
from jobforge.observability.tracing import create_span, setup_tracing
from jobforge.registry import JobRegistry
from jobforge.transport.base import Transport
from jobforge.types.events import (
    CancelAllJobsEvent,
    CancelJobEvent,
    JobStatusEvent,
    JobUpdateEvent,
    ProcessJobEvent,
    TransportEvent,
)
from jobforge.types.job import DispatchOptions
from jobforge.worker.state import QueuedJob, QueueOptions, QueueState, sort_waiting

logger = logging.getLogger(__name__)


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Worker:
    """
    Job worker that consumes named queues.

    Features:
    - One scheduler task per queue, woken by admissions, completions and
      lock releases, with the earliest scheduled job as a timeout
    - Priority ordering with stable tie-breaks
    - Per-queue concurrency limits, pause/resume/drain/clear
    - Delayed retries with per-job, per-class and per-queue settings
    - Cross-process NO_OVERLAP execution through transport locks
    - Heartbeat refreshing the worker registration
    - Graceful or forced shutdown
    """

    def __init__(
        self,
        transport: Transport,
        registry: JobRegistry,
        worker_id: str | None = None,
        queues: list[QueueOptions | str] | None = None,
        batch_size: int | None = None,
        scheduled_job_interval: float | None = None,
        heartbeat_interval: float | None = None,
        lock_retry_interval: float | None = None,
        stop_poll_interval: float | None = None,
    ):
        """
        Initialize the worker.

        Args:
            transport: Consumer-side transport.
            registry: Registry resolving job names carried by ``job:process`` events.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            queues: Queues to create. Defaults to a single ``default`` queue.
            batch_size: Maximum jobs picked per scheduling pass.
            scheduled_job_interval: Longest sleep of a queue scheduler, in seconds.
            heartbeat_interval: Seconds between registration refreshes.
            lock_retry_interval: Back-off before retrying a contended NO_OVERLAP job.
            stop_poll_interval: Poll period of a graceful stop.
        """
        settings = get_settings()

        self.transport = transport
        self.registry = registry
        self.worker_id = worker_id or settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.batch_size = batch_size or settings.worker_batch_size
        self.scheduled_job_interval = (
            scheduled_job_interval or settings.worker_scheduled_job_interval_seconds
        )
        self.heartbeat_interval = heartbeat_interval or settings.worker_heartbeat_interval_seconds
        self.lock_retry_interval = lock_retry_interval or settings.worker_lock_retry_seconds
        self.stop_poll_interval = stop_poll_interval or settings.worker_stop_poll_interval_seconds

        self.status = WorkerStatus.IDLE
        self.started_at: datetime | None = None

        self._queues: dict[str, QueueState] = {}
        self._running = False
        self._heartbeat_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._deferred_releases: set[asyncio.TimerHandle] = set()
        self._metrics = get_metrics()

        for queue in queues or [QueueOptions(name=DEFAULT_QUEUE)]:
            self.create_queue(queue)

        self.transport.on_message(self._handle_message)

    # ------------------------------------------------------------------
    # Queues
    # ------------------------------------------------------------------

    def create_queue(self, options: QueueOptions | str) -> QueueState:
        """
        Create a queue, or return the existing one with that name.

        Queues live as long as the worker.
        """
        if isinstance(options, str):
            options = QueueOptions(name=options)

        existing = self._queues.get(options.name)
        if existing is not None:
            return existing

        state = QueueState(options)
        self._queues[options.name] = state
        if self._running:
            self._start_scheduler(state)

        logger.info(
            "Queue created",
            extra={
                "worker_id": self.worker_id,
                "queue": options.name,
                "concurrency": options.concurrency,
            },
        )
        return state

    def get_queue(self, name: str) -> QueueState:
        """
        Get a queue's state.

        Raises:
            NotFoundError: If the queue does not exist.
        """
        state = self._queues.get(name)
        if state is None:
            raise NotFoundError(f"Queue '{name}' not found", {"queue": name})
        return state

    @property
    def queue_names(self) -> list[str]:
        return list(self._queues)

    def has_queue(self, name: str) -> bool:
        return name in self._queues

    def _select(self, queue_name: str | None) -> list[QueueState]:
        if queue_name is None:
            return list(self._queues.values())
        return [self.get_queue(queue_name)]

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def add_job(
        self,
        job: Job,
        queue_name: str = DEFAULT_QUEUE,
        options: DispatchOptions | None = None,
    ) -> QueuedJob:
        """
        Admit a job into a queue.

        Args:
            job: The job instance.
            queue_name: Target queue.
            options: Per-dispatch overrides of the class metadata.

        Returns:
            QueuedJob: The queued wrapper.

        Raises:
            NotFoundError: If the queue does not exist.
            DrainingError: If the queue is draining.
        """
        state = self.get_queue(queue_name)
        if state.draining:
            raise DrainingError(queue_name, job.id)

        options = options or DispatchOptions()
        metadata = get_job_metadata(type(job))

        job.queue_name = queue_name
        queued = QueuedJob(
            job=job,
            queue_name=queue_name,
            retries=job.retries,
            scheduled_for=options.scheduled_for.timestamp() if options.scheduled_for else None,
            priority=_first(
                options.priority, metadata.priority if metadata else None, DEFAULT_PRIORITY
            ),
            max_retries=_first(options.max_retries, metadata.max_retries if metadata else None),
            retry_delay=_first(options.retry_delay, metadata.retry_delay if metadata else None),
            overlap_behavior=OverlapBehavior(
                _first(
                    options.overlap_behavior,
                    metadata.overlap_behavior if metadata else None,
                    OverlapBehavior.ALLOW_OVERLAP,
                )
            ),
            overlap_delay=_first(
                options.overlap_delay, metadata.overlap_delay if metadata else None, 0.0
            ),
        )
        state.insert(queued)

        logger.debug(
            "Job admitted",
            extra={
                "worker_id": self.worker_id,
                "job_id": job.id,
                "dispatch_id": job.dispatch_id,
                "queue": queue_name,
                "priority": queued.priority,
            },
        )

        self._after_bookkeeping(state)
        state.wake()
        return queued

    def process_queue_jobs(self, queue_name: str) -> None:
        """Wake a queue's scheduler."""
        self.get_queue(queue_name).wake()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _start_scheduler(self, state: QueueState) -> None:
        if state.scheduler_task is None or state.scheduler_task.done():
            state.scheduler_task = asyncio.create_task(self._scheduler_loop(state))

    async def _scheduler_loop(self, state: QueueState) -> None:
        while self._running:
            state.wakeup.clear()
            try:
                self._process_batch(state)
            except Exception:
                logger.exception(
                    "Error in scheduler pass",
                    extra={"worker_id": self.worker_id, "queue": state.name},
                )

            timeout = self.scheduled_job_interval
            upcoming = state.next_scheduled(time.time())
            if upcoming is not None:
                timeout = max(0.0, min(timeout, upcoming - time.time()))
            try:
                await asyncio.wait_for(state.wakeup.wait(), timeout)
            except asyncio.TimeoutError:
                pass

    def _process_batch(self, state: QueueState) -> None:
        """Pick ready jobs up to the free concurrency and launch them."""
        if state.paused or not self._running:
            return

        limit = min(state.free_slots, self.batch_size)
        if limit <= 0:
            return

        now = time.time()
        batch: list[QueuedJob] = []
        for queued in state.waiting:
            if len(batch) >= limit:
                break
            if not queued.is_ready(now):
                continue
            # An exclusive group for this ID is already running here
            if queued.exclusive and queued.job.id in state.exclusive_ids:
                continue
            batch.append(queued)

        if not batch:
            return

        for queued in batch:
            state.waiting.remove(queued)
            state.claimed[queued.job.dispatch_id] = queued

        groups: dict[str, list[QueuedJob]] = {}
        for queued in batch:
            if queued.exclusive:
                groups.setdefault(queued.job.id, []).append(queued)
            else:
                self._launch(state, [queued])

        for job_id, group in groups.items():
            state.exclusive_ids.add(job_id)
            self._launch(state, group)

        self._after_bookkeeping(state)

    def _launch(self, state: QueueState, group: list[QueuedJob]) -> None:
        task = asyncio.create_task(self._run_group(state, group))
        state.tasks.add(task)
        task.add_done_callback(state.tasks.discard)

    async def _run_group(self, state: QueueState, group: list[QueuedJob]) -> None:
        """Run jobs sequentially; a NO_OVERLAP group shares one job ID."""
        remaining = list(group)
        try:
            while remaining:
                queued = remaining[0]
                try:
                    await self._run_one(state, queued)
                except LockContention:
                    self._metrics.record_lock_contention(state.name)
                    for blocked in remaining:
                        self._requeue_for_lock(state, blocked)
                    remaining.clear()
                    break
                except Exception:
                    logger.exception(
                        "Unexpected error running job",
                        extra={"job_id": queued.job.id, "queue": state.name},
                    )
                remaining.pop(0)
                state.claimed.pop(queued.job.dispatch_id, None)
                self._after_bookkeeping(state)
                state.wake()
        finally:
            for queued in remaining:
                state.claimed.pop(queued.job.dispatch_id, None)
            if group[0].exclusive:
                state.exclusive_ids.discard(group[0].job.id)
            state.wake()

    async def _run_one(self, state: QueueState, queued: QueuedJob) -> None:
        job = queued.job

        # Cancelled between being picked and running; already reported
        if job.status == JobStatus.CANCELLED:
            return

        locked = False
        if queued.exclusive:
            try:
                locked = await self.transport.acquire_job_lock(job.id, state.name)
            except TransportError as e:
                logger.warning(
                    "Lock acquisition failed",
                    extra={"job_id": job.id, "queue": state.name, "error": str(e)},
                )
            if not locked:
                raise LockContention(job.id, state.name)

            # Cancelled while the lock request was in flight; already reported
            if job.status == JobStatus.CANCELLED:
                await self._release_lock(job.id, state.name, 0)
                return

        state.active_jobs[job.dispatch_id] = queued
        self._after_bookkeeping(state)

        try:
            await self._report(queued, JobStatus.RUNNING, started_at=_utcnow())
            with create_span(
                SPAN_EXECUTE_JOB,
                job_id=job.id,
                dispatch_id=job.dispatch_id,
                job=type(job).__name__,
                queue=state.name,
                retries=queued.retries,
            ):
                await job.run()
        finally:
            state.active_jobs.pop(job.dispatch_id, None)
            if locked:
                await self._release_lock(job.id, state.name, queued.overlap_delay)

        await self._handle_job_result(state, queued)

    async def _handle_job_result(self, state: QueueState, queued: QueuedJob) -> None:
        job = queued.job
        duration = 0.0
        if job.started_at and job.completed_at:
            duration = (job.completed_at - job.started_at).total_seconds()

        if job.status == JobStatus.COMPLETED:
            self._metrics.record_job_completed(state.name, JobStatus.COMPLETED, duration)
            log_success(
                logger,
                "Job completed",
                worker_id=self.worker_id,
                job_id=job.id,
                dispatch_id=job.dispatch_id,
                queue=state.name,
                duration=f"{duration:.2f}s",
                retries=queued.retries,
            )
            await self._report(queued, JobStatus.COMPLETED, completed_at=job.completed_at)
        elif job.status == JobStatus.FAILED:
            await self.handle_job_failure(state, queued)
        elif job.status == JobStatus.CANCELLED:
            self._metrics.record_job_completed(state.name, JobStatus.CANCELLED, duration)
            await self._report(queued, JobStatus.CANCELLED, completed_at=job.completed_at)

    async def handle_job_failure(self, state: QueueState, queued: QueuedJob) -> None:
        """
        Apply the retry policy to a failed job.

        Retries left: schedule re-admission after the retry delay and report
        SCHEDULED_FOR_RETRY. Exhausted: report FAILED and pause the queue if
        it is configured to pause on error.
        """
        job = queued.job
        error = str(job.last_error) if job.last_error else None
        max_retries = state.effective_max_retries(queued)

        if queued.retries < max_retries:
            queued.retries += 1
            job.increment_retries()
            delay = state.effective_retry_delay(queued)

            state.retrying_jobs[job.dispatch_id] = queued
            self._metrics.record_job_retried(state.name)
            self._after_bookkeeping(state)

            logger.warning(
                "Job failed, retry scheduled",
                extra={
                    "worker_id": self.worker_id,
                    "job_id": job.id,
                    "queue": state.name,
                    "retries": queued.retries,
                    "max_retries": max_retries,
                    "retry_delay": delay,
                    "error": error,
                },
            )
            await self._report(queued, JobStatus.SCHEDULED_FOR_RETRY, error=error)

            # Armed after the report so re-admission never races the current run;
            # a cancel during the report has already removed the entry
            if job.dispatch_id in state.retrying_jobs:
                loop = asyncio.get_running_loop()
                queued.retry_handle = loop.call_later(delay, self._readmit_retry, state, queued)
            return

        duration = 0.0
        if job.started_at and job.completed_at:
            duration = (job.completed_at - job.started_at).total_seconds()
        self._metrics.record_job_completed(state.name, JobStatus.FAILED, duration)

        logger.error(
            "Job failed permanently",
            extra={
                "worker_id": self.worker_id,
                "job_id": job.id,
                "queue": state.name,
                "retries": queued.retries,
                "error": error,
            },
        )
        await self._report(queued, JobStatus.FAILED, error=error, completed_at=job.completed_at)

        if state.options.pause_on_error:
            logger.warning(
                "Pausing queue after failure",
                extra={"worker_id": self.worker_id, "queue": state.name},
            )
            self.pause(state.name)

    def _readmit_retry(self, state: QueueState, queued: QueuedJob) -> None:
        if state.retrying_jobs.pop(queued.job.dispatch_id, None) is None:
            return
        queued.retry_handle = None
        if not self._running:
            return

        queued.job.reset_for_retry()
        queued.enqueued_at = time.time()
        queued.scheduled_for = None
        # Retries are existing work: a draining queue still takes them back
        state.insert(queued)
        self._after_bookkeeping(state)
        state.wake()
        self._spawn(self._report(queued, JobStatus.PENDING))

    def _requeue_for_lock(self, state: QueueState, queued: QueuedJob) -> None:
        state.claimed.pop(queued.job.dispatch_id, None)
        if queued.job.status == JobStatus.CANCELLED:
            return
        queued.lock_blocked = True
        queued.scheduled_for = time.time() + self.lock_retry_interval
        state.insert(queued)
        logger.debug(
            "Job locked elsewhere, re-queued",
            extra={"job_id": queued.job.id, "queue": state.name},
        )

    def _on_lock_released(self, job_id: str, queue_name: str) -> None:
        state = self._queues.get(queue_name)
        if state is None:
            return
        released = False
        for queued in state.waiting:
            if queued.lock_blocked and queued.job.id == job_id:
                queued.lock_blocked = False
                queued.scheduled_for = None
                released = True
        if released:
            sort_waiting(state.waiting)
            state.wake()

    async def _release_lock(self, job_id: str, queue_name: str, delay: float) -> None:
        if delay > 0:
            loop = asyncio.get_running_loop()
            handle: asyncio.TimerHandle | None = None

            def _fire() -> None:
                self._deferred_releases.discard(handle)
                self._spawn(self._release_lock(job_id, queue_name, 0))

            handle = loop.call_later(delay, _fire)
            self._deferred_releases.add(handle)
            return

        try:
            await self.transport.release_job_lock(job_id, queue_name)
        except TransportError as e:
            logger.warning(
                "Lock release failed, lock will expire",
                extra={"job_id": job_id, "queue": queue_name, "error": str(e)},
            )

    # ------------------------------------------------------------------
    # Queue control
    # ------------------------------------------------------------------

    def pause(self, queue_name: str | None = None) -> None:
        """Stop picking new jobs; active jobs finish."""
        for state in self._select(queue_name):
            state.paused = True
            self._after_bookkeeping(state)
        logger.info("Queue paused", extra={"worker_id": self.worker_id, "queue": queue_name or "*"})

    def resume(self, queue_name: str | None = None) -> None:
        """Resume picking jobs."""
        for state in self._select(queue_name):
            state.paused = False
            self._after_bookkeeping(state)
            state.wake()
        logger.info("Queue resumed", extra={"worker_id": self.worker_id, "queue": queue_name or "*"})

    def drain(self, queue_name: str | None = None) -> None:
        """Finish existing work and reject new admissions."""
        for state in self._select(queue_name):
            state.draining = True
            self._after_bookkeeping(state)
            state.wake()
        logger.info("Queue draining", extra={"worker_id": self.worker_id, "queue": queue_name or "*"})

    async def clear(self, queue_name: str | None = None) -> int:
        """
        Cancel and remove waiting and retrying jobs.

        Returns:
            int: Number of jobs removed.
        """
        removed = 0
        for state in self._select(queue_name):
            removed += await self._cancel_queued(state, lambda qj: True)
        return removed

    async def _cancel_queued(self, state: QueueState, predicate: Any) -> int:
        """Cancel waiting and retrying jobs matching ``predicate`` and report CANCELLED."""
        cancelled: list[QueuedJob] = []

        for queued in [qj for qj in state.waiting if predicate(qj)]:
            queued.job.cancel()
            state.waiting.remove(queued)
            cancelled.append(queued)

        for dispatch_id, queued in list(state.retrying_jobs.items()):
            if not predicate(queued):
                continue
            if queued.retry_handle is not None:
                queued.retry_handle.cancel()
                queued.retry_handle = None
            # FAILED is terminal for cancel(); re-arm first
            queued.job.reset_for_retry()
            queued.job.cancel()
            del state.retrying_jobs[dispatch_id]
            cancelled.append(queued)

        self._after_bookkeeping(state)

        for queued in cancelled:
            await self._report(queued, JobStatus.CANCELLED, completed_at=_utcnow())
        return len(cancelled)

    async def _cancel_claimed(self, state: QueueState, predicate: Any) -> int:
        """Cancel picked jobs; only those not yet executing are reported here."""
        count = 0
        for dispatch_id, queued in list(state.claimed.items()):
            if not predicate(queued) or not queued.job.cancel():
                continue
            count += 1
            if dispatch_id not in state.active_jobs:
                await self._report(queued, JobStatus.CANCELLED, completed_at=_utcnow())
        return count

    async def cancel_job(self, job_id: str, queue_name: str | None = None) -> bool:
        """
        Cancel every dispatch of a job ID.

        Running dispatches are marked cancelled; their execution is not
        interrupted.

        Returns:
            bool: True if at least one dispatch was cancelled.
        """
        def matches(queued: QueuedJob) -> bool:
            return queued.job.id == job_id

        found = 0
        for state in self._select(queue_name):
            found += await self._cancel_queued(state, matches)
            found += await self._cancel_claimed(state, matches)
            state.wake()

        if found:
            logger.info(
                "Job cancelled",
                extra={"worker_id": self.worker_id, "job_id": job_id, "count": found},
            )
        return found > 0

    async def cancel_all_jobs(self, queue_name: str | None = None) -> int:
        """
        Cancel every job of a queue (or of all queues).

        Returns:
            int: Number of jobs cancelled.
        """
        count = 0
        for state in self._select(queue_name):
            count += await self._cancel_queued(state, lambda qj: True)
            count += await self._cancel_claimed(state, lambda qj: True)
        logger.info(
            "All jobs cancelled",
            extra={"worker_id": self.worker_id, "queue": queue_name or "*", "count": count},
        )
        return count

    def set_concurrency(self, queue_name: str, concurrency: int) -> None:
        """Change a queue's concurrency limit (minimum 1) and pick up work."""
        state = self.get_queue(queue_name)
        state.options.concurrency = max(1, concurrency)
        state.wake()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_job(self, job_id: str, queue_name: str | None = None) -> Job | None:
        """Find a job held by the worker in any state."""
        for state in self._select(queue_name):
            for queued in state.jobs():
                if queued.job.id == job_id:
                    return queued.job
        return None

    def size(self, queue_name: str = DEFAULT_QUEUE) -> int:
        """Number of waiting jobs in a queue."""
        return len(self.get_queue(queue_name).waiting)

    def total_size(self) -> int:
        """Number of waiting jobs across queues."""
        return sum(len(state.waiting) for state in self._queues.values())

    def get_stats(self) -> dict[str, dict[str, Any]]:
        return {name: state.stats() for name, state in self._queues.items()}

    def get_info(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "status": self.status.value,
            "queues": self.queue_names,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "stats": self.get_stats(),
        }

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _after_bookkeeping(self, state: QueueState) -> None:
        self._metrics.update_queue_depth(
            self.worker_id,
            state.name,
            len(state.waiting),
            len(state.active_jobs),
            len(state.retrying_jobs),
        )
        self._update_status()

    def _update_status(self) -> None:
        if self.status in (WorkerStatus.STOPPING, WorkerStatus.STOPPED):
            return

        states = list(self._queues.values())
        if any(state.draining for state in states):
            status = WorkerStatus.DRAINING
        elif any(state.claimed for state in states):
            status = WorkerStatus.ACTIVE
        elif states and all(state.paused for state in states):
            status = WorkerStatus.PAUSED
        elif any(state.waiting or state.retrying_jobs for state in states):
            status = WorkerStatus.ACTIVE
        else:
            status = WorkerStatus.IDLE

        if status != self.status:
            logger.debug(
                "Worker status changed",
                extra={"worker_id": self.worker_id, "from": self.status.value, "to": status.value},
            )
            self.status = status

    async def _report(
        self,
        queued: QueuedJob,
        status: JobStatus,
        *,
        error: str | None = None,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
    ) -> None:
        """Send a status event; broker failures are logged, never raised."""
        job = queued.job
        await self._send_status(
            job.id,
            job.dispatch_id,
            queued.queue_name,
            status,
            error=error,
            retries=queued.retries,
            started_at=started_at,
            completed_at=completed_at,
        )

    async def _send_status(
        self,
        job_id: str,
        dispatch_id: str,
        queue_name: str,
        status: JobStatus,
        **fields: Any,
    ) -> None:
        event = JobStatusEvent(
            type=EVENT_JOB_RESULT if status in TERMINAL_STATUSES else EVENT_JOB_STATUS,
            job_id=job_id,
            dispatch_id=dispatch_id,
            queue=queue_name,
            status=status,
            **fields,
        )
        try:
            await self.transport.send(event)
        except TransportError as e:
            logger.error(
                "Failed to report job status",
                extra={"job_id": job_id, "status": status.value, "error": str(e)},
            )

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Transport messages
    # ------------------------------------------------------------------

    async def _handle_message(self, event: TransportEvent) -> None:
        if isinstance(event, ProcessJobEvent):
            await self._on_process_job(event)
        elif isinstance(event, CancelJobEvent):
            if self.has_queue(event.queue):
                await self.cancel_job(event.job_id, event.queue)
        elif isinstance(event, CancelAllJobsEvent):
            if self.has_queue(event.queue):
                await self.cancel_all_jobs(event.queue)
        elif isinstance(event, JobUpdateEvent):
            if event.status == LOCK_RELEASED:
                self._on_lock_released(event.job_id, event.queue)

    async def _on_process_job(self, event: ProcessJobEvent) -> None:
        """
        Admit a delivered ``job:process`` event.

        Raises:
            DrainingError: If the queue is draining; the message stays
                unacknowledged so another worker can take it.
        """
        state = self._queues.get(event.queue)
        if state is None:
            logger.warning(
                "Job delivered for unknown queue",
                extra={"worker_id": self.worker_id, "job_id": event.job_id, "queue": event.queue},
            )
            return
        if state.draining:
            raise DrainingError(event.queue, event.job_id)

        try:
            job = self.registry.create(
                event.job,
                event.args,
                job_id=event.job_id,
                dispatch_id=event.dispatch_id,
            )
        except Exception as e:
            logger.error(
                "Cannot build job",
                extra={"job": event.job, "job_id": event.job_id, "error": str(e)},
            )
            await self._send_status(
                event.job_id,
                event.dispatch_id,
                event.queue,
                JobStatus.FAILED,
                error=str(e),
                retries=0,
                completed_at=_utcnow(),
            )
            return

        await self._send_status(
            event.job_id, event.dispatch_id, event.queue, JobStatus.PENDING, retries=0
        )
        self.add_job(job, event.queue, event.options)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Start the worker.

        Raises:
            TransportError: If the transport cannot connect or register the worker.
        """
        if self._running:
            return

        logger.info(
            "Worker starting",
            extra={"worker_id": self.worker_id, "queues": self.queue_names},
        )

        await self.transport.start()
        await self.transport.register_worker(self.worker_id, self.queue_names)

        self._running = True
        self.started_at = _utcnow()
        self.status = WorkerStatus.IDLE

        for state in self._queues.values():
            self._start_scheduler(state)
            self._after_bookkeeping(state)

        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def stop(self, force: bool = False) -> None:
        """
        Stop the worker.

        Args:
            force: Cancel everything immediately, including executing jobs.
                Otherwise drain every queue and wait for picked jobs to finish.
        """
        if not self._running:
            return

        logger.info(
            "Worker stopping",
            extra={"worker_id": self.worker_id, "force": force},
        )

        if force:
            self.status = WorkerStatus.STOPPING
            tasks: list[asyncio.Task] = []
            for state in self._queues.values():
                state.draining = True
                await self._cancel_queued(state, lambda qj: True)
                for queued in list(state.claimed.values()):
                    if queued.job.cancel():
                        await self._report(queued, JobStatus.CANCELLED, completed_at=_utcnow())
                tasks.extend(state.tasks)
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        else:
            self.drain()
            while any(
                state.claimed or (not state.paused and state.has_ready_jobs())
                for state in self._queues.values()
            ):
                await asyncio.sleep(self.stop_poll_interval)
            self.status = WorkerStatus.STOPPING
            # Delayed jobs, retries and paused queues cannot finish before shutdown
            for state in self._queues.values():
                await self._cancel_queued(state, lambda qj: True)

        self._running = False

        for state in self._queues.values():
            state.wake()
        schedulers = [s.scheduler_task for s in self._queues.values() if s.scheduler_task]
        others = [t for t in (self._heartbeat_task, *self._background) if t is not None]
        for task in [*schedulers, *others]:
            task.cancel()
        await asyncio.gather(*schedulers, *others, return_exceptions=True)
        for state in self._queues.values():
            state.scheduler_task = None
        self._heartbeat_task = None

        # Pending deferred releases are dropped; those locks expire on their own
        for handle in self._deferred_releases:
            handle.cancel()
        self._deferred_releases.clear()

        try:
            await self.transport.unregister_worker(self.worker_id)
        except TransportError as e:
            logger.warning(
                "Failed to unregister worker",
                extra={"worker_id": self.worker_id, "error": str(e)},
            )
        await self.transport.stop()

        self.status = WorkerStatus.STOPPED
        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def _heartbeat_loop(self) -> None:
        """Refresh the worker registration before its TTL expires."""
        while self._running:
            try:
                await asyncio.sleep(self.heartbeat_interval)
                await self.transport.heartbeat_worker(
                    self.worker_id, self.queue_names, self.status.value
                )
            except asyncio.CancelledError:
                break
            except TransportError as e:
                logger.warning(
                    "Heartbeat failed",
                    extra={"worker_id": self.worker_id, "error": str(e)},
                )


def load_job_modules(registry: JobRegistry, modules: list[str]) -> None:
    """
    Import job modules and let each register its classes.

    Every module must expose ``register_jobs(registry)``.
    """
    for name in modules:
        module = importlib.import_module(name)
        register = getattr(module, "register_jobs", None)
        if register is None:
            raise ImportError(f"Job module '{name}' has no register_jobs(registry)")
        register(registry)
        logger.info("Job module loaded", extra={"job_module": name})


async def run_async() -> None:
    """Run the worker asynchronously."""
    from jobforge.transport.redis import RedisTransport
    from jobforge.worker.handlers import register_builtin_jobs

    settings = get_settings()
    setup_logging()
    if settings.otel_enabled:
        setup_tracing()
    start_http_server(settings.prometheus_port)

    registry = JobRegistry()
    register_builtin_jobs(registry)
    load_job_modules(registry, settings.worker_job_modules)

    worker_id = settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"
    transport = RedisTransport(TransportMode.CONSUMER, consumer_name=worker_id)
    worker = Worker(
        transport,
        registry,
        worker_id=worker_id,
        queues=[
            QueueOptions(
                name=name,
                concurrency=settings.worker_concurrency,
                max_retries=settings.worker_max_retries,
                retry_delay=settings.worker_retry_delay_seconds,
                pause_on_error=settings.worker_pause_on_error,
            )
            for name in settings.worker_queues
        ],
    )

    stopped = asyncio.Event()

    async def _shutdown() -> None:
        await worker.stop()
        stopped.set()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(_shutdown()))

    await worker.start()
    await stopped.wait()


def run() -> None:
    """Run the worker."""
    try:
        asyncio.run(run_async())
    except TransportError as e:
        logger.critical("Worker cannot reach the broker", extra={"error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    run()
