"""
Pytest configuration and shared fixtures.
"""

import asyncio
import itertools
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime
from typing import Any

import pytest
import pytest_asyncio

from jobforge.config import Settings
from jobforge.constants import LOCK_RELEASED, TransportMode
from jobforge.exceptions import TransportError
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
from jobforge.types.job import JobStatusInfo
from jobforge.worker.main import Worker
from jobforge.worker.state import QueueOptions


class FakeBroker:
    """In-memory broker state shared by several fake transports."""

    def __init__(self) -> None:
        self.statuses: dict[tuple[str, str, str], JobStatusInfo] = {}
        self.history: list[tuple[str, str, str]] = []
        self.locks: dict[tuple[str, str], str] = {}
        self.workers: dict[str, list[str]] = {}
        self.consumers: list["FakeTransport"] = []
        self._cursor = itertools.count()

    def statuses_of(self, dispatch_id: str) -> list[str]:
        """Every status written for a dispatch, in order."""
        return [status for d, _, status in self.history if d == dispatch_id]


class FakeTransport(Transport):
    """
    In-memory transport.

    ``job:process`` events go to one consumer owning the queue (round-robin);
    control events and lock releases go to every consumer owning the queue.
    """

    _ids = itertools.count()

    def __init__(
        self,
        broker: FakeBroker,
        mode: TransportMode = TransportMode.CONSUMER,
        fail_start: bool = False,
    ):
        super().__init__(mode)
        self.broker = broker
        self.name = f"fake-{next(self._ids)}"
        self.fail_start = fail_start
        self.fail_send = False
        self.lock_delay = 0.0
        self.started = False
        self.queues: list[str] = []
        self.sent: list[TransportEvent] = []
        self.heartbeats = 0

    async def start(self) -> None:
        if self.fail_start:
            raise TransportError("broker unreachable")
        self.started = True
        if self.mode == TransportMode.CONSUMER and self not in self.broker.consumers:
            self.broker.consumers.append(self)

    async def stop(self) -> None:
        self.started = False
        if self in self.broker.consumers:
            self.broker.consumers.remove(self)

    async def deliver(self, event: TransportEvent) -> bool:
        """Push an event to this transport's handlers as if it came from the broker."""
        return await self._deliver(event)

    def _owners(self, queue: str) -> list["FakeTransport"]:
        return [t for t in self.broker.consumers if queue in t.queues]

    async def send(self, event: TransportEvent) -> None:
        if self.fail_send:
            raise TransportError("send failed")
        self.sent.append(event)

        if isinstance(event, ProcessJobEvent):
            await self.update_job_status(
                event.job_id, event.dispatch_id, event.queue, status="pending", retries=0
            )
            owners = self._owners(event.queue)
            if owners:
                target = owners[next(self.broker._cursor) % len(owners)]
                await target.deliver(event)
        elif isinstance(event, JobStatusEvent):
            await self.update_job_status(
                event.job_id,
                event.dispatch_id,
                event.queue,
                status=event.status,
                error=event.error,
                retries=event.retries,
                started_at=event.started_at,
                completed_at=event.completed_at,
            )
        elif isinstance(event, (CancelJobEvent, CancelAllJobsEvent, JobUpdateEvent)):
            for owner in self._owners(event.queue):
                await owner.deliver(event)

    async def get_job_status(
        self, job_id: str, dispatch_id: str, queue: str
    ) -> JobStatusInfo | None:
        return self.broker.statuses.get((queue, job_id, dispatch_id))

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
        key = (queue, job_id, dispatch_id)
        current = self.broker.statuses.get(key) or JobStatusInfo(
            job_id=job_id, dispatch_id=dispatch_id, queue=queue, status=status or "pending"
        )
        changes: dict[str, Any] = {
            "status": status,
            "error": error,
            "retries": retries,
            "started_at": started_at,
            "completed_at": completed_at,
        }
        self.broker.statuses[key] = current.model_copy(
            update={k: v for k, v in changes.items() if v is not None}
        )
        if status is not None:
            self.broker.history.append((dispatch_id, job_id, str(status)))

    async def register_worker(self, worker_id: str, queues: list[str]) -> None:
        self.queues = list(queues)
        self.broker.workers[worker_id] = list(queues)

    async def unregister_worker(self, worker_id: str) -> None:
        self.broker.workers.pop(worker_id, None)

    async def heartbeat_worker(
        self, worker_id: str, queues: list[str], status: str | None = None
    ) -> None:
        self.heartbeats += 1

    async def acquire_job_lock(
        self, job_id: str, queue: str, duration: float | None = None
    ) -> bool:
        if self.lock_delay:
            await asyncio.sleep(self.lock_delay)
        key = (queue, job_id)
        if key in self.broker.locks:
            return False
        self.broker.locks[key] = self.name
        return True

    async def release_job_lock(self, job_id: str, queue: str) -> None:
        key = (queue, job_id)
        if self.broker.locks.get(key) != self.name:
            return
        del self.broker.locks[key]
        for owner in self._owners(queue):
            await owner.deliver(JobUpdateEvent(job_id=job_id, queue=queue, status=LOCK_RELEASED))

    async def is_job_locked(self, job_id: str, queue: str) -> bool:
        return (queue, job_id) in self.broker.locks


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        redis_key_prefix="jobforge-test",
        redis_poll_interval_seconds=0.05,
        worker_scheduled_job_interval_seconds=0.05,
        worker_stop_poll_interval_seconds=0.01,
        log_level="DEBUG",
        log_format="console",
    )


@pytest.fixture
def broker() -> FakeBroker:
    """Create an in-memory broker."""
    return FakeBroker()


@pytest.fixture
def transport(broker: FakeBroker) -> FakeTransport:
    """Create a consumer-side fake transport."""
    return FakeTransport(broker)


@pytest.fixture
def producer_transport(broker: FakeBroker) -> FakeTransport:
    """Create a producer-side fake transport on the same broker."""
    return FakeTransport(broker, mode=TransportMode.PRODUCER)


@pytest.fixture
def unreachable_transport(broker: FakeBroker) -> FakeTransport:
    """Create a transport whose start fails like an unreachable broker."""
    return FakeTransport(broker, fail_start=True)


@pytest.fixture
def registry() -> JobRegistry:
    """Create an empty job registry."""
    return JobRegistry()


@pytest_asyncio.fixture
async def make_worker(
    broker: FakeBroker, registry: JobRegistry
) -> AsyncGenerator[Callable[..., Worker]]:
    """
    Factory building workers with short scheduler intervals.

    Every worker built is force-stopped at teardown.
    """
    workers: list[Worker] = []

    def _make(
        queues: list[QueueOptions | str] | None = None,
        transport: FakeTransport | None = None,
        **kwargs: Any,
    ) -> Worker:
        kwargs.setdefault("worker_id", f"worker-{len(workers)}")
        kwargs.setdefault("scheduled_job_interval", 0.05)
        kwargs.setdefault("stop_poll_interval", 0.01)
        kwargs.setdefault("lock_retry_interval", 0.05)
        kwargs.setdefault("heartbeat_interval", 60.0)
        worker = Worker(
            transport or FakeTransport(broker),
            registry,
            queues=queues,
            **kwargs,
        )
        workers.append(worker)
        return worker

    yield _make

    for worker in workers:
        await worker.stop(force=True)


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    """Poll a predicate until it holds or a timeout expires."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)

    return _wait
