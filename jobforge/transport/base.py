"""
Transport interface.

A transport moves job events between producers and workers through a broker,
stores the durable status of each dispatch, tracks worker membership and
provides the locks behind NO_OVERLAP jobs.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime

from jobforge.constants import TransportMode
from jobforge.types.events import TransportEvent
from jobforge.types.job import JobStatusInfo

logger = logging.getLogger(__name__)

MessageHandler = Callable[[TransportEvent], Awaitable[None]]


class Transport(ABC):
    """
    Abstract broker transport.

    Producers use it to send ``job:process`` and control events and to read
    status; consumers (workers) receive events through ``on_message``
    handlers and write status back.
    """

    def __init__(self, mode: TransportMode):
        self.mode = TransportMode(mode)
        self._handlers: list[MessageHandler] = []

    def on_message(self, handler: MessageHandler) -> None:
        """
        Register a coroutine called once per delivered event.

        Delivery is acknowledged only after every registered handler returned.
        """
        self._handlers.append(handler)

    async def _deliver(self, event: TransportEvent) -> bool:
        """
        Run every handler for an event.

        Returns:
            bool: True if all handlers succeeded.
        """
        ok = True
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception as e:
                ok = False
                logger.error(
                    "Message handler failed",
                    extra={"event_type": event.type, "error": str(e)},
                    exc_info=True,
                )
        return ok

    @abstractmethod
    async def start(self) -> None:
        """
        Connect to the broker.

        Raises:
            TransportError: If the broker is unreachable.
        """

    @abstractmethod
    async def stop(self) -> None:
        """Disconnect and release background tasks."""

    @abstractmethod
    async def send(self, event: TransportEvent) -> None:
        """
        Send an event.

        Raises:
            TransportError: If the broker rejects the operation.
        """

    @abstractmethod
    async def get_job_status(
        self, job_id: str, dispatch_id: str, queue: str
    ) -> JobStatusInfo | None:
        """Read the status record of one dispatch, or None if unknown."""

    @abstractmethod
    async def update_job_status(
        self,
        job_id: str,
        dispatch_id: str,
        queue: str,
        *,
        status: str | None = None,
        error: str | None = None,
        retries: int | None = None,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
    ) -> None:
        """Write fields of the status record of one dispatch."""

    @abstractmethod
    async def register_worker(self, worker_id: str, queues: list[str]) -> None:
        """Announce a worker and the queues it consumes."""

    @abstractmethod
    async def unregister_worker(self, worker_id: str) -> None:
        """Retract a worker's membership."""

    @abstractmethod
    async def heartbeat_worker(
        self, worker_id: str, queues: list[str], status: str | None = None
    ) -> None:
        """Refresh a worker's membership before it expires."""

    @abstractmethod
    async def acquire_job_lock(
        self, job_id: str, queue: str, duration: float | None = None
    ) -> bool:
        """
        Try to take the NO_OVERLAP lock of a job.

        Args:
            job_id: The job ID.
            queue: The queue name.
            duration: Lock lifetime in seconds before it expires on its own.

        Returns:
            bool: True if the lock was acquired.
        """

    @abstractmethod
    async def release_job_lock(self, job_id: str, queue: str) -> None:
        """Release a lock held by this transport and notify waiting workers."""

    @abstractmethod
    async def is_job_locked(self, job_id: str, queue: str) -> bool:
        """Check whether a job's lock is held by anyone."""
