"""
In-process worker pool.

Spreads job submissions over several workers, round-robin per queue.
"""

import asyncio
import logging
from typing import Any

from jobforge.constants import DEFAULT_QUEUE, WorkerStatus
from jobforge.exceptions import DrainingError, NotFoundError
from jobforge.job import Job
from jobforge.types.job import DispatchOptions
from jobforge.worker.main import Worker
from jobforge.worker.state import QueuedJob

logger = logging.getLogger(__name__)

_UNAVAILABLE = frozenset(
    {WorkerStatus.DRAINING, WorkerStatus.STOPPING, WorkerStatus.STOPPED}
)


class WorkerPool:
    """
    Facade over a set of workers.

    Each queue keeps its own round-robin cursor, so queues served by
    different subsets of workers do not skew each other.
    """

    def __init__(self, workers: list[Worker] | None = None):
        self._workers: dict[str, Worker] = {}
        self._cursors: dict[str, int] = {}
        for worker in workers or []:
            self.add_worker(worker)

    def add_worker(self, worker: Worker) -> None:
        if worker.worker_id in self._workers:
            raise ValueError(f"Worker '{worker.worker_id}' is already in the pool")
        self._workers[worker.worker_id] = worker
        logger.info(
            "Worker added to pool",
            extra={"worker_id": worker.worker_id, "queues": worker.queue_names},
        )

    def remove_worker(self, worker_id: str) -> Worker | None:
        """Remove a worker from rotation. The worker itself is left running."""
        worker = self._workers.pop(worker_id, None)
        if worker is not None:
            logger.info("Worker removed from pool", extra={"worker_id": worker_id})
        return worker

    def get_workers(self, queue_name: str | None = None) -> list[Worker]:
        """Workers of the pool, optionally only those owning a queue."""
        if queue_name is None:
            return list(self._workers.values())
        return [w for w in self._workers.values() if w.has_queue(queue_name)]

    def add_job(
        self,
        job: Job,
        queue_name: str = DEFAULT_QUEUE,
        options: DispatchOptions | None = None,
    ) -> QueuedJob:
        """
        Hand a job to the next available worker owning the queue.

        Raises:
            NotFoundError: If no available worker owns the queue or accepts the job.
        """
        candidates = [
            w for w in self.get_workers(queue_name) if w.status not in _UNAVAILABLE
        ]
        if not candidates:
            raise NotFoundError(
                f"No available worker for queue '{queue_name}'", {"queue": queue_name}
            )

        start = self._cursors.get(queue_name, 0)
        for offset in range(len(candidates)):
            index = (start + offset) % len(candidates)
            worker = candidates[index]
            try:
                queued = worker.add_job(job, queue_name, options)
            except DrainingError:
                logger.debug(
                    "Worker queue draining, trying next",
                    extra={"worker_id": worker.worker_id, "queue": queue_name},
                )
                continue
            self._cursors[queue_name] = index + 1
            return queued

        raise NotFoundError(
            f"No worker accepted the job for queue '{queue_name}'",
            {"queue": queue_name, "job_id": job.id},
        )

    async def cancel_job(self, job_id: str, queue_name: str | None = None) -> bool:
        """Cancel a job ID on every worker. True if any worker held it."""
        results = [
            await worker.cancel_job(job_id, queue_name)
            for worker in self.get_workers(queue_name)
        ]
        return any(results)

    async def cancel_all_jobs(self, queue_name: str | None = None) -> int:
        count = 0
        for worker in self.get_workers(queue_name):
            count += await worker.cancel_all_jobs(queue_name)
        return count

    def get_stats(self) -> dict[str, Any]:
        return {
            "workers": len(self._workers),
            "by_worker": {wid: w.get_info() for wid, w in self._workers.items()},
        }

    async def start(self) -> None:
        await asyncio.gather(*(w.start() for w in self._workers.values()))

    async def stop(self, force: bool = False) -> None:
        await asyncio.gather(*(w.stop(force) for w in self._workers.values()))

    def __len__(self) -> int:
        return len(self._workers)
