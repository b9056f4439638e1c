"""
Producer-side queue handles.

A ``Queue`` submits, cancels and inspects jobs of one named queue; all broker
I/O goes through its transport. A ``QueueRegistry`` owns the handles of a
process, one per name.
"""

import logging
from collections.abc import Callable
from typing import Any

from jobforge.constants import SPAN_DISPATCH_JOB
from jobforge.exceptions import DispatchError, NotFoundError
from jobforge.job import Job, JobMetadata, generate_dispatch_id, get_job_metadata
from jobforge.observability.metrics import get_metrics
from jobforge.observability.tracing import create_span
from jobforge.transport.base import Transport
from jobforge.types.events import CancelAllJobsEvent, CancelJobEvent, ProcessJobEvent
from jobforge.types.job import DispatchOptions, JobDispatchId, JobStatusInfo

logger = logging.getLogger(__name__)


def _metadata_defaults(metadata: JobMetadata) -> DispatchOptions:
    return DispatchOptions(
        priority=metadata.priority,
        max_retries=metadata.max_retries,
        retry_delay=metadata.retry_delay,
        overlap_behavior=metadata.overlap_behavior,
        overlap_delay=metadata.overlap_delay,
    )


class Queue:
    """
    Named handle used by producers.

    Dispatch failures raise; cancellation and status lookups are advisory
    and report failure through their return value instead.
    """

    def __init__(self, name: str, transport: Transport, **options: Any):
        """
        Initialize the queue handle.

        Args:
            name: Queue name.
            transport: Producer-side transport.
            **options: Free-form queue options kept for callers
                (e.g. ``concurrency`` hints shared with worker configuration).
        """
        self.name = name
        self.transport = transport
        self._options: dict[str, Any] = dict(options)
        self._metrics = get_metrics()

    def get_options(self) -> dict[str, Any]:
        return dict(self._options)

    def update_options(self, **changes: Any) -> None:
        self._options.update(changes)

    async def dispatch(
        self,
        job_cls: type[Job],
        args: tuple | list = (),
        options: DispatchOptions | None = None,
    ) -> JobDispatchId:
        """
        Submit a job.

        Args:
            job_cls: A registered job class.
            args: Positional constructor arguments of the job.
            options: Per-call options; they override the class metadata.

        Returns:
            JobDispatchId: The job and dispatch IDs.

        Raises:
            NotFoundError: If the class was never registered.
            DispatchError: If the transport cannot send the job.
        """
        metadata = get_job_metadata(job_cls)
        if metadata is None:
            raise NotFoundError(
                f"Job class '{job_cls.__name__}' is not registered",
                {"job": job_cls.__name__},
            )

        options = options or DispatchOptions()
        job_id = options.job_id or job_cls.generate_job_id(*args)
        dispatch_id = options.dispatch_id or generate_dispatch_id()
        merged = options.merged_with(_metadata_defaults(metadata)).model_copy(
            update={"job_id": None, "dispatch_id": None}
        )

        event = ProcessJobEvent(
            job=metadata.name,
            args=list(args),
            job_id=job_id,
            dispatch_id=dispatch_id,
            queue=self.name,
            options=merged,
        )

        with create_span(SPAN_DISPATCH_JOB, job=metadata.name, job_id=job_id, queue=self.name):
            try:
                await self.transport.send(event)
            except Exception as e:
                logger.error(
                    "Failed to dispatch job",
                    extra={"job": metadata.name, "job_id": job_id, "queue": self.name, "error": str(e)},
                )
                raise DispatchError(
                    f"Failed to dispatch job {job_id}: {e}",
                    {"job_id": job_id, "dispatch_id": dispatch_id, "queue": self.name},
                ) from e

        self._metrics.record_job_dispatched(self.name)
        logger.info(
            "Job dispatched",
            extra={
                "job": metadata.name,
                "job_id": job_id,
                "dispatch_id": dispatch_id,
                "queue": self.name,
            },
        )
        return JobDispatchId(job_id=job_id, dispatch_id=dispatch_id)

    async def cancel_job(self, ids: JobDispatchId) -> bool:
        """
        Ask workers to cancel a job.

        Returns:
            bool: False if the request could not be sent.
        """
        try:
            await self.transport.send(
                CancelJobEvent(job_id=ids.job_id, dispatch_id=ids.dispatch_id, queue=self.name)
            )
        except Exception as e:
            logger.warning(
                "Failed to send cancel request",
                extra={"job_id": ids.job_id, "queue": self.name, "error": str(e)},
            )
            return False
        return True

    async def cancel_all_jobs(self) -> bool:
        """
        Ask workers to cancel every job of the queue.

        Returns:
            bool: False if the request could not be sent.
        """
        try:
            await self.transport.send(CancelAllJobsEvent(queue=self.name))
        except Exception as e:
            logger.warning(
                "Failed to send cancel-all request",
                extra={"queue": self.name, "error": str(e)},
            )
            return False
        return True

    async def get_job_status(self, ids: JobDispatchId) -> JobStatusInfo | None:
        """
        Read a dispatch's status.

        Returns:
            JobStatusInfo | None: The status, or None if unknown or unreadable.
        """
        try:
            return await self.transport.get_job_status(ids.job_id, ids.dispatch_id, self.name)
        except Exception as e:
            logger.warning(
                "Failed to read job status",
                extra={"job_id": ids.job_id, "queue": self.name, "error": str(e)},
            )
            return None

    async def start(self) -> None:
        await self.transport.start()

    async def stop(self) -> None:
        await self.transport.stop()


class QueueRegistry:
    """
    Process-owned set of queue handles, one per name.

    Usage::

        queues = QueueRegistry(lambda: RedisTransport(TransportMode.PRODUCER))
        emails = queues.get("emails")
        await queues.start_all()
        await queues.dispatch(SendEmail, "user@example.com")
    """

    def __init__(self, transport_factory: Callable[[], Transport] | None = None):
        """
        Initialize the registry.

        Args:
            transport_factory: Builds a transport for queues created without one.
        """
        self._transport_factory = transport_factory
        self._queues: dict[str, Queue] = {}

    def get(self, name: str, transport: Transport | None = None, **options: Any) -> Queue:
        """
        Get a queue by name, creating it on first use.

        Options and transport are only used when the queue is created.

        Raises:
            ValueError: If the queue must be created and no transport is available.
        """
        queue = self._queues.get(name)
        if queue is not None:
            return queue

        if transport is None:
            if self._transport_factory is None:
                raise ValueError(f"No transport given for new queue '{name}'")
            transport = self._transport_factory()

        queue = Queue(name, transport, **options)
        self._queues[name] = queue
        return queue

    def exists(self, name: str) -> bool:
        return name in self._queues

    def all(self) -> dict[str, Queue]:
        return dict(self._queues)

    def remove(self, name: str) -> Queue | None:
        return self._queues.pop(name, None)

    async def dispatch(
        self,
        job_cls: type[Job],
        *args: Any,
        options: DispatchOptions | None = None,
    ) -> JobDispatchId:
        """
        Dispatch a job to the queue named by its class metadata.

        Raises:
            NotFoundError: If the class is not registered or its queue was not created.
            DispatchError: If the transport cannot send the job.
        """
        metadata = get_job_metadata(job_cls)
        if metadata is None:
            raise NotFoundError(
                f"Job class '{job_cls.__name__}' is not registered",
                {"job": job_cls.__name__},
            )
        queue = self._queues.get(metadata.queue)
        if queue is None:
            raise NotFoundError(
                f"Queue '{metadata.queue}' not found", {"queue": metadata.queue}
            )
        return await queue.dispatch(job_cls, args, options)

    async def start_all(self) -> None:
        started: set[int] = set()
        for queue in self._queues.values():
            # Queues may share one transport
            if id(queue.transport) not in started:
                started.add(id(queue.transport))
                await queue.start()

    async def stop_all(self) -> None:
        stopped: set[int] = set()
        for queue in self._queues.values():
            if id(queue.transport) not in stopped:
                stopped.add(id(queue.transport))
                await queue.stop()
