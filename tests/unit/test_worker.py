"""
Unit tests for the worker, over the in-memory transport.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest

from jobforge.constants import JobStatus, OverlapBehavior, WorkerStatus
from jobforge.exceptions import DrainingError, NotFoundError, TransportError
from jobforge.job import Job
from jobforge.queue import Queue
from jobforge.types.events import (
    CancelAllJobsEvent,
    CancelJobEvent,
    JobStatusEvent,
    ProcessJobEvent,
)
from jobforge.types.job import DispatchOptions
from jobforge.worker.state import QueueOptions

TRACE: list[tuple[str, str]] = []


class TraceJob(Job):
    """Records its start and end in TRACE."""

    def __init__(self, label: str = "", delay: float = 0.0, **kwargs):
        super().__init__(**kwargs)
        self.label = label
        self.delay = delay

    async def execute(self) -> None:
        TRACE.append(("start", self.label))
        if self.delay:
            await asyncio.sleep(self.delay)
        TRACE.append(("end", self.label))


class AlwaysFails(Job):
    async def execute(self) -> None:
        raise RuntimeError("boom")


class CountingJob(Job):
    """Tracks how many instances execute at once."""

    running = 0
    peak = 0

    async def execute(self) -> None:
        cls = type(self)
        cls.running += 1
        cls.peak = max(cls.peak, cls.running)
        await asyncio.sleep(0.05)
        cls.running -= 1


@pytest.fixture(autouse=True)
def reset_traces():
    TRACE.clear()
    CountingJob.running = 0
    CountingJob.peak = 0


NO_OVERLAP = DispatchOptions(overlap_behavior=OverlapBehavior.NO_OVERLAP)


class TestExecution:
    """Tests for running admitted jobs."""

    @pytest.mark.asyncio
    async def test_runs_admitted_job(self, make_worker, broker, wait_until):
        """Test that an admitted job runs and its statuses are reported."""
        worker = make_worker()
        await worker.start()

        job = TraceJob("a")
        worker.add_job(job)
        await wait_until(lambda: broker.statuses_of(job.dispatch_id)[-1:] == ["completed"])

        assert job.status == JobStatus.COMPLETED
        assert job.queue_name == "default"
        assert broker.statuses_of(job.dispatch_id) == ["running", "completed"]

        result = [e for e in worker.transport.sent if isinstance(e, JobStatusEvent)][-1]
        assert result.is_result
        assert result.completed_at is not None

    @pytest.mark.asyncio
    async def test_priority_order(self, make_worker, wait_until):
        """Test that lower priority values run first, FIFO within a priority."""
        worker = make_worker()
        worker.add_job(TraceJob("A"), options=DispatchOptions(priority=5))
        worker.add_job(TraceJob("B"), options=DispatchOptions(priority=1))
        worker.add_job(TraceJob("C"), options=DispatchOptions(priority=5))

        await worker.start()
        await wait_until(lambda: len(TRACE) == 6)

        starts = [label for event, label in TRACE if event == "start"]
        assert starts == ["B", "A", "C"]

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, make_worker, wait_until):
        """Test that a queue never runs more jobs than its concurrency."""
        worker = make_worker([QueueOptions(concurrency=2)])
        jobs = [CountingJob() for _ in range(6)]
        for job in jobs:
            worker.add_job(job)

        await worker.start()
        await wait_until(lambda: all(j.status == JobStatus.COMPLETED for j in jobs))

        assert CountingJob.peak == 2

    @pytest.mark.asyncio
    async def test_scheduled_job_waits(self, make_worker, wait_until):
        """Test that a job does not start before its scheduled time."""
        worker = make_worker()
        await worker.start()
        when = datetime.now(timezone.utc) + timedelta(milliseconds=200)

        job = TraceJob("later")
        worker.add_job(job, options=DispatchOptions(scheduled_for=when))
        await asyncio.sleep(0.05)
        assert job.status == JobStatus.PENDING

        await wait_until(lambda: job.status == JobStatus.COMPLETED)
        assert job.started_at >= when

    def test_add_job_unknown_queue(self, make_worker):
        """Test that admission into a missing queue fails."""
        worker = make_worker()

        with pytest.raises(NotFoundError):
            worker.add_job(TraceJob(), "missing")

    def test_set_concurrency_clamps(self, make_worker):
        """Test that concurrency cannot drop below 1."""
        worker = make_worker()

        worker.set_concurrency("default", 0)
        assert worker.get_queue("default").options.concurrency == 1

        worker.set_concurrency("default", 4)
        assert worker.get_queue("default").options.concurrency == 4


class TestRetries:
    """Tests for the retry policy."""

    @pytest.mark.asyncio
    async def test_retries_until_exhausted(self, make_worker, broker, wait_until):
        """Test that a failing job runs max_retries + 1 times, then fails."""
        worker = make_worker([QueueOptions(max_retries=2, retry_delay=0.01)])
        await worker.start()

        job = AlwaysFails()
        worker.add_job(job)
        await wait_until(lambda: broker.statuses_of(job.dispatch_id)[-1:] == ["failed"])

        history = broker.statuses_of(job.dispatch_id)
        assert history.count("running") == 3
        assert history.count("scheduled_for_retry") == 2
        assert history.count("pending") == 2

        info = broker.statuses[("default", job.id, job.dispatch_id)]
        assert info.retries == 2
        assert info.error == "boom"
        assert job.retries == 2
        assert worker.get_queue("default").retrying_jobs == {}

    @pytest.mark.asyncio
    async def test_dispatch_options_override_queue_retries(self, make_worker, broker, wait_until):
        """Test that per-dispatch retry settings win over the queue."""
        worker = make_worker([QueueOptions(max_retries=5, retry_delay=10.0)])
        await worker.start()

        job = AlwaysFails()
        worker.add_job(job, options=DispatchOptions(max_retries=1, retry_delay=0.01))
        await wait_until(lambda: broker.statuses_of(job.dispatch_id)[-1:] == ["failed"])

        assert broker.statuses_of(job.dispatch_id).count("running") == 2

    @pytest.mark.asyncio
    async def test_no_retries_by_default(self, make_worker, broker, wait_until):
        """Test that queues do not retry unless configured to."""
        worker = make_worker()
        await worker.start()

        job = AlwaysFails()
        worker.add_job(job)
        await wait_until(lambda: broker.statuses_of(job.dispatch_id)[-1:] == ["failed"])

        assert broker.statuses_of(job.dispatch_id) == ["running", "failed"]

    @pytest.mark.asyncio
    async def test_pause_on_error(self, make_worker, broker, wait_until):
        """Test that a permanent failure pauses a queue configured to pause."""
        worker = make_worker([QueueOptions(pause_on_error=True)])
        await worker.start()

        failing = AlwaysFails()
        worker.add_job(failing)
        await wait_until(lambda: worker.get_queue("default").paused)

        follower = TraceJob("after")
        worker.add_job(follower)
        await asyncio.sleep(0.1)

        assert follower.status == JobStatus.PENDING
        assert worker.size() == 1
        assert worker.status == WorkerStatus.PAUSED

        worker.resume()
        await wait_until(lambda: follower.status == JobStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_cancel_retrying_job(self, make_worker, broker, wait_until):
        """Test that a job waiting for its retry can be cancelled."""
        worker = make_worker([QueueOptions(max_retries=3, retry_delay=60.0)])
        await worker.start()

        job = AlwaysFails()
        worker.add_job(job)
        await wait_until(lambda: job.dispatch_id in worker.get_queue("default").retrying_jobs)

        assert await worker.cancel_job(job.id) is True
        assert worker.get_queue("default").retrying_jobs == {}
        assert broker.statuses_of(job.dispatch_id)[-1] == "cancelled"
        assert job.status == JobStatus.CANCELLED


class TestNoOverlap:
    """Tests for NO_OVERLAP exclusivity."""

    @pytest.mark.asyncio
    async def test_same_worker_runs_sequentially(self, make_worker, wait_until):
        """Test that dispatches sharing a job ID never overlap on one worker."""
        worker = make_worker([QueueOptions(concurrency=3)])
        for label in ("first", "second"):
            worker.add_job(TraceJob(label, delay=0.05, job_id="shared"), options=NO_OVERLAP)
        worker.add_job(TraceJob("other", delay=0.05))

        await worker.start()
        await wait_until(lambda: len(TRACE) == 6)

        shared = [entry for entry in TRACE if entry[1] != "other"]
        assert shared == [
            ("start", "first"),
            ("end", "first"),
            ("start", "second"),
            ("end", "second"),
        ]

    @pytest.mark.asyncio
    async def test_cancel_during_lock_acquire(self, make_worker, broker, transport, wait_until):
        """Test that a job cancelled while its lock is being acquired never runs."""
        transport.lock_delay = 0.2
        worker = make_worker(transport=transport)
        await worker.start()
        state = worker.get_queue("default")

        job = TraceJob("x", job_id="x")
        worker.add_job(job, options=NO_OVERLAP)
        await wait_until(lambda: job.dispatch_id in state.claimed)

        assert await worker.cancel_job("x") is True
        await wait_until(lambda: job.dispatch_id not in state.claimed)

        assert broker.statuses_of(job.dispatch_id) == ["cancelled"]
        assert TRACE == []
        assert state.active_jobs == {}
        assert broker.locks == {}

    @pytest.mark.asyncio
    async def test_workers_exclude_each_other(self, make_worker, broker, wait_until):
        """Test that two workers never run the same NO_OVERLAP job at once."""
        one = make_worker([QueueOptions(concurrency=2)])
        two = make_worker([QueueOptions(concurrency=2)])
        await one.start()
        await two.start()

        first = TraceJob("one", delay=0.1, job_id="shared")
        second = TraceJob("two", delay=0.1, job_id="shared")
        one.add_job(first, options=NO_OVERLAP)
        two.add_job(second, options=NO_OVERLAP)
        await wait_until(
            lambda: first.status == JobStatus.COMPLETED and second.status == JobStatus.COMPLETED
        )

        assert [event for event, _ in TRACE] == ["start", "end", "start", "end"]
        assert TRACE[0][1] == TRACE[1][1]
        await wait_until(lambda: broker.locks == {})

    @pytest.mark.asyncio
    async def test_overlap_delay_keeps_lock(self, make_worker, broker, wait_until):
        """Test that the lock outlives execution by the overlap delay."""
        worker = make_worker()
        await worker.start()

        job = TraceJob("held", job_id="held")
        worker.add_job(
            job,
            options=DispatchOptions(overlap_behavior=OverlapBehavior.NO_OVERLAP, overlap_delay=0.2),
        )
        await wait_until(lambda: job.status == JobStatus.COMPLETED)

        assert ("default", "held") in broker.locks
        await wait_until(lambda: ("default", "held") not in broker.locks)

    @pytest.mark.asyncio
    async def test_allow_overlap_runs_concurrently(self, make_worker, wait_until):
        """Test that ALLOW_OVERLAP dispatches of one job ID run side by side."""
        worker = make_worker([QueueOptions(concurrency=2)])
        worker.add_job(TraceJob("x", delay=0.05, job_id="same"))
        worker.add_job(TraceJob("y", delay=0.05, job_id="same"))

        await worker.start()
        await wait_until(lambda: len(TRACE) == 4)

        assert [event for event, _ in TRACE[:2]] == ["start", "start"]


class TestQueueControl:
    """Tests for pause, cancel, clear and introspection."""

    @pytest.mark.asyncio
    async def test_cancel_waiting_job(self, make_worker, broker):
        """Test that a waiting job is removed and reported cancelled."""
        worker = make_worker()
        await worker.start()
        worker.pause()

        job = TraceJob("idle")
        worker.add_job(job)

        assert await worker.cancel_job(job.id) is True
        assert job.status == JobStatus.CANCELLED
        assert worker.size() == 0
        assert broker.statuses_of(job.dispatch_id) == ["cancelled"]
        assert await worker.cancel_job("unknown") is False

    @pytest.mark.asyncio
    async def test_cancel_running_job(self, make_worker, broker, wait_until):
        """Test that cancelling a running job marks it without interrupting it."""
        worker = make_worker()
        await worker.start()

        job = TraceJob("busy", delay=0.1)
        worker.add_job(job)
        await wait_until(lambda: job.status == JobStatus.RUNNING)

        assert await worker.cancel_job(job.id) is True
        await wait_until(lambda: len(TRACE) == 2)
        await wait_until(lambda: broker.statuses_of(job.dispatch_id)[-1:] == ["cancelled"])

        assert job.status == JobStatus.CANCELLED
        assert broker.statuses_of(job.dispatch_id).count("cancelled") == 1

    @pytest.mark.asyncio
    async def test_cancel_all_and_clear(self, make_worker):
        """Test bulk cancellation."""
        worker = make_worker(["default", "emails"])
        worker.pause()
        for _ in range(3):
            worker.add_job(TraceJob())
        worker.add_job(TraceJob(), "emails")

        assert await worker.cancel_all_jobs("default") == 3
        assert worker.total_size() == 1
        assert await worker.clear() == 1
        assert worker.total_size() == 0

    def test_get_job_and_info(self, make_worker):
        """Test lookups and stats."""
        worker = make_worker(worker_id="w-1")
        job = TraceJob(job_id="find-me")
        worker.add_job(job)

        assert worker.get_job("find-me") is job
        assert worker.get_job("nope") is None

        info = worker.get_info()
        assert info["worker_id"] == "w-1"
        assert info["queues"] == ["default"]
        assert info["stats"]["default"]["waiting"] == 1

    def test_status_follows_queues(self, make_worker):
        """Test the derived worker status."""
        worker = make_worker()
        assert worker.status == WorkerStatus.IDLE

        worker.add_job(TraceJob())
        assert worker.status == WorkerStatus.ACTIVE

        worker.pause()
        assert worker.status == WorkerStatus.PAUSED

        worker.drain()
        assert worker.status == WorkerStatus.DRAINING


class TestMessages:
    """Tests for events delivered by the transport."""

    @pytest.mark.asyncio
    async def test_dispatch_end_to_end(
        self, make_worker, registry, broker, producer_transport, wait_until
    ):
        """Test a dispatch from a producer queue through to completion."""
        registry.add(TraceJob, name="trace")
        worker = make_worker()
        await worker.start()
        queue = Queue("default", producer_transport)

        ids = await queue.dispatch(TraceJob, ("hello",))
        await wait_until(lambda: broker.statuses_of(ids.dispatch_id)[-1:] == ["completed"])

        info = await queue.get_job_status(ids)
        assert info.status == "completed"
        assert info.started_at is not None
        assert TRACE == [("start", "hello"), ("end", "hello")]

    @pytest.mark.asyncio
    async def test_unknown_job_name_fails(self, make_worker, broker, transport):
        """Test that an unresolvable job is reported FAILED and acknowledged."""
        worker = make_worker(transport=transport)
        await worker.start()

        delivered = await transport.deliver(
            ProcessJobEvent(job="missing", job_id="j", dispatch_id="d", queue="default")
        )

        assert delivered is True
        assert broker.statuses_of("d") == ["failed"]
        assert "missing" in broker.statuses[("default", "j", "d")].error
        assert worker.total_size() == 0

    @pytest.mark.asyncio
    async def test_draining_queue_rejects_delivery(self, make_worker, registry, transport):
        """Test that a draining queue leaves the message unhandled."""
        registry.add(TraceJob, name="trace")
        worker = make_worker(transport=transport)
        await worker.start()
        worker.drain()

        delivered = await transport.deliver(
            ProcessJobEvent(job="trace", job_id="j", dispatch_id="d", queue="default")
        )

        assert delivered is False
        assert worker.total_size() == 0

    @pytest.mark.asyncio
    async def test_unknown_queue_is_ignored(self, make_worker, registry, transport):
        """Test that jobs for queues the worker does not own are dropped."""
        registry.add(TraceJob, name="trace")
        worker = make_worker(transport=transport)
        await worker.start()

        delivered = await transport.deliver(
            ProcessJobEvent(job="trace", job_id="j", dispatch_id="d", queue="elsewhere")
        )

        assert delivered is True
        assert worker.total_size() == 0

    @pytest.mark.asyncio
    async def test_cancel_events(self, make_worker, transport):
        """Test that cancel events reach the worker."""
        worker = make_worker(transport=transport)
        await worker.start()
        worker.pause()
        keep = TraceJob(job_id="keep")
        drop = TraceJob(job_id="drop")
        worker.add_job(keep)
        worker.add_job(drop)

        await transport.deliver(CancelJobEvent(job_id="drop", queue="default"))
        assert drop.status == JobStatus.CANCELLED
        assert keep.status == JobStatus.PENDING

        await transport.deliver(CancelAllJobsEvent(queue="default"))
        assert keep.status == JobStatus.CANCELLED
        assert worker.size() == 0


class TestShutdown:
    """Tests for graceful and forced stops."""

    @pytest.mark.asyncio
    async def test_graceful_stop_drains(self, make_worker, broker, wait_until):
        """Test that a graceful stop rejects new jobs and finishes running ones."""
        worker = make_worker()
        await worker.start()

        job = TraceJob("slow", delay=0.2)
        worker.add_job(job)
        await wait_until(lambda: job.status == JobStatus.RUNNING)

        stopping = asyncio.create_task(worker.stop())
        await wait_until(lambda: worker.get_queue("default").draining)

        with pytest.raises(DrainingError):
            worker.add_job(TraceJob("late"))

        await stopping
        assert job.status == JobStatus.COMPLETED
        assert worker.status == WorkerStatus.STOPPED
        assert worker.transport.started is False
        assert broker.workers == {}

    @pytest.mark.asyncio
    async def test_graceful_stop_cancels_delayed_jobs(self, make_worker, broker):
        """Test that jobs that cannot start before shutdown are reported cancelled."""
        worker = make_worker()
        await worker.start()

        job = TraceJob("tomorrow")
        worker.add_job(
            job,
            options=DispatchOptions(scheduled_for=datetime.now(timezone.utc) + timedelta(hours=1)),
        )

        started = time.monotonic()
        await worker.stop()

        assert time.monotonic() - started < 1.0
        assert job.status == JobStatus.CANCELLED
        assert broker.statuses_of(job.dispatch_id) == ["cancelled"]

    @pytest.mark.asyncio
    async def test_force_stop_cancels_running_job(self, make_worker, broker, wait_until):
        """Test that a forced stop cancels executing jobs right away."""
        worker = make_worker()
        await worker.start()

        job = TraceJob("endless", delay=30)
        worker.add_job(job)
        await wait_until(lambda: job.status == JobStatus.RUNNING)

        await worker.stop(force=True)

        assert job.status == JobStatus.CANCELLED
        assert broker.statuses_of(job.dispatch_id)[-1] == "cancelled"
        assert worker.status == WorkerStatus.STOPPED
        assert TRACE == [("start", "endless")]

    @pytest.mark.asyncio
    async def test_start_failure_propagates(self, make_worker, unreachable_transport):
        """Test that a broker failure at start is raised."""
        worker = make_worker(transport=unreachable_transport)

        with pytest.raises(TransportError):
            await worker.start()
        assert worker.status == WorkerStatus.IDLE
