"""
Redis transport.

Key layout (``{p}`` is the key prefix):
- ``{p}:stream:{queue}``: durable stream of ``job:process`` events, read
  through a consumer group
- ``{p}:status:{queue}:{job_id}:{dispatch_id}``: status hash with a TTL
- ``{p}:idx:queue:{queue}``, ``{p}:idx:status:{status}``, ``{p}:idx:priority``:
  sorted-set indices whose members are ``{job_id}:{dispatch_id}``
- ``{p}:worker:{worker_id}``: worker registration hash with a short TTL
- ``{p}:lock:{queue}:{job_id}``: NO_OVERLAP lock

Channels:
- ``{p}:queue:{queue}:new``: stream ID of a freshly added job
- ``{p}:queue:{queue}:control``: cancel / cancelAll events
- ``{p}:lock:{queue}:released``: job ID whose lock was released
- ``{p}:job:{job_id}:status``: status change notifications
- ``{p}:worker:coordination``: worker register / unregister events
"""

import asyncio
import json
import logging
import os
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError, ResponseError

from jobforge.config import get_settings
from jobforge.constants import (
    DEFAULT_PRIORITY,
    LOCK_RELEASED,
    TERMINAL_STATUSES,
    JobStatus,
    TransportMode,
)
from jobforge.exceptions import TransportError
from jobforge.observability.metrics import get_metrics
from jobforge.transport.base import Transport
from jobforge.transport.codec import (
    decode_control,
    decode_event,
    decode_status,
    encode_control,
    encode_event,
    encode_status,
)
from jobforge.types.events import (
    CancelAllJobsEvent,
    CancelJobEvent,
    JobStatusEvent,
    JobUpdateEvent,
    ProcessJobEvent,
    TransportEvent,
    WorkerRegisterEvent,
    WorkerUnregisterEvent,
)
from jobforge.types.job import JobStatusInfo

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    """Outcome of one maintenance pass."""

    trimmed_streams: list[str] = field(default_factory=list)
    removed_index_entries: int = 0
    removed_status_keys: int = 0


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _now_ms() -> int:
    return int(time.time() * 1000)


class RedisTransport(Transport):
    """
    Transport backed by Redis streams, pub/sub, hashes and sorted sets.

    Features:
    - Durable per-queue streams read through a consumer group
    - Pub/sub wake-ups, with a periodic poll as a safety net
    - Redelivery of unacknowledged entries (own pending entries at start,
      idle entries of dead consumers through XAUTOCLAIM)
    - Status records with TTL and multi-index lookups
    - SET NX PX locks for NO_OVERLAP jobs
    - Periodic stream trimming and index cleanup
    """

    def __init__(
        self,
        mode: TransportMode,
        *,
        client: Redis | None = None,
        url: str | None = None,
        key_prefix: str | None = None,
        consumer_group: str | None = None,
        consumer_name: str | None = None,
        batch_size: int | None = None,
        status_ttl: int | None = None,
        completed_job_retention: int | None = None,
        max_stream_size: int | None = None,
        cleanup_interval: float | None = None,
        cleanup_enabled: bool | None = None,
        poll_interval: float | None = None,
        claim_idle_time: float | None = None,
        lock_duration: float | None = None,
        worker_ttl: int | None = None,
    ):
        """
        Initialize the transport.

        Args:
            mode: PRODUCER to send jobs, CONSUMER to receive them.
            client: Existing Redis client (``decode_responses=True``). Created
                from ``url`` on start if omitted; an injected client is not
                closed on stop.
            url: Redis URL. Defaults to ``settings.redis_url``.
            key_prefix: Prefix of every key and channel.
            consumer_group: Stream consumer group shared by workers.
            consumer_name: This consumer's name in the group. Keep it stable
                across restarts so pending entries are redelivered to it.
            batch_size: Entries read per XREADGROUP call.
            status_ttl: Seconds a status record lives after its last write.
            completed_job_retention: Seconds terminal index entries are kept.
            max_stream_size: Approximate stream length kept by cleanup.
            cleanup_interval: Seconds between maintenance passes.
            cleanup_enabled: Run the maintenance loop in consumer mode.
            poll_interval: Seconds between safety-net stream reads.
            claim_idle_time: Seconds before another consumer's pending entry is claimed.
            lock_duration: Default NO_OVERLAP lock lifetime in seconds.
            worker_ttl: Seconds a worker registration lives without heartbeat.
        """
        super().__init__(mode)
        settings = get_settings()

        self._client = client
        self._owns_client = client is None
        self.url = url or settings.redis_url
        self.key_prefix = key_prefix or settings.redis_key_prefix
        self.consumer_group = consumer_group or settings.redis_consumer_group
        self.consumer_name = (
            consumer_name
            or settings.worker_id
            or f"{os.uname().nodename}-{os.getpid()}-{secrets.token_hex(3)}"
        )
        self.batch_size = batch_size or settings.redis_batch_size
        self.status_ttl = status_ttl or settings.redis_status_ttl_seconds
        self.completed_job_retention = (
            completed_job_retention or settings.redis_completed_job_retention_seconds
        )
        self.max_stream_size = max_stream_size or settings.redis_max_stream_size
        self.cleanup_interval = cleanup_interval or settings.redis_cleanup_interval_seconds
        self.cleanup_enabled = (
            settings.redis_cleanup_enabled if cleanup_enabled is None else cleanup_enabled
        )
        self.poll_interval = poll_interval or settings.redis_poll_interval_seconds
        self.claim_idle_time = claim_idle_time or settings.redis_claim_idle_seconds
        self.lock_duration = lock_duration or settings.redis_lock_duration_seconds
        self.worker_ttl = worker_ttl or settings.worker_registration_ttl_seconds

        self._pubsub: PubSub | None = None
        self._running = False
        self._queues: set[str] = set()
        self._channels: dict[str, tuple[str, str | None]] = {}
        self._read_locks: dict[str, asyncio.Lock] = {}
        self._locks: dict[tuple[str, str], float] = {}
        self._listener_task: asyncio.Task | None = None
        self._poll_task: asyncio.Task | None = None
        self._cleanup_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._metrics = get_metrics()

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def stream_key(self, queue: str) -> str:
        return f"{self.key_prefix}:stream:{queue}"

    def status_key(self, job_id: str, dispatch_id: str, queue: str) -> str:
        return f"{self.key_prefix}:status:{queue}:{job_id}:{dispatch_id}"

    def worker_key(self, worker_id: str) -> str:
        return f"{self.key_prefix}:worker:{worker_id}"

    def lock_key(self, job_id: str, queue: str) -> str:
        return f"{self.key_prefix}:lock:{queue}:{job_id}"

    def _queue_index(self, queue: str) -> str:
        return f"{self.key_prefix}:idx:queue:{queue}"

    def _status_index(self, status: str) -> str:
        return f"{self.key_prefix}:idx:status:{status}"

    @property
    def _priority_index(self) -> str:
        return f"{self.key_prefix}:idx:priority"

    @property
    def _coordination_channel(self) -> str:
        return f"{self.key_prefix}:worker:coordination"

    @property
    def client(self) -> Redis:
        if self._client is None:
            raise TransportError("Redis transport is not started")
        return self._client

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Connect to Redis and, in consumer mode, start background loops.

        Raises:
            TransportError: If Redis is unreachable.
        """
        if self._running:
            return

        if self._client is None:
            self._client = Redis.from_url(self.url, decode_responses=True)

        try:
            await self._client.ping()
        except (RedisError, OSError) as e:
            self._metrics.record_transport_error("connect")
            raise TransportError(
                f"Cannot connect to Redis: {e}", {"url": self.url}
            ) from e

        self._running = True

        if self.mode == TransportMode.CONSUMER:
            self._pubsub = self._client.pubsub()
            await self._subscribe({self._coordination_channel: ("coordination", None)})
            self._listener_task = asyncio.create_task(self._listen_loop())
            self._poll_task = asyncio.create_task(self._poll_loop())
            if self.cleanup_enabled:
                self._cleanup_task = asyncio.create_task(self._cleanup_loop())

        logger.info(
            "Redis transport started",
            extra={"mode": self.mode.value, "consumer": self.consumer_name},
        )

    async def stop(self) -> None:
        """Stop background loops and close connections."""
        if not self._running:
            return
        self._running = False

        tasks = [
            t
            for t in (self._listener_task, self._poll_task, self._cleanup_task, *self._tasks)
            if t is not None
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._listener_task = self._poll_task = self._cleanup_task = None

        if self._pubsub is not None:
            try:
                await self._pubsub.aclose()
            except RedisError as e:
                logger.warning("Error closing pub/sub connection", extra={"error": str(e)})
            self._pubsub = None

        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

        self._channels.clear()
        self._queues.clear()
        self._locks.clear()

        logger.info("Redis transport stopped", extra={"mode": self.mode.value})

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(self, event: TransportEvent) -> None:
        """
        Send an event.

        Raises:
            TransportError: If Redis rejects the operation.
        """
        try:
            if isinstance(event, ProcessJobEvent):
                await self._send_process(event)
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
                await self.client.publish(
                    f"{self.key_prefix}:queue:{event.queue}:control",
                    encode_control(event),
                )
            elif isinstance(event, (WorkerRegisterEvent, WorkerUnregisterEvent)):
                await self.client.publish(self._coordination_channel, encode_control(event))
        except RedisError as e:
            self._metrics.record_transport_error("send")
            logger.error(
                "Failed to send message",
                extra={"event_type": event.type, "error": str(e)},
            )
            raise TransportError(f"Failed to send {event.type}: {e}") from e

    async def _send_process(self, event: ProcessJobEvent) -> None:
        queue = event.queue
        member = f"{event.job_id}:{event.dispatch_id}"
        now_ms = _now_ms()
        priority = event.options.priority
        if priority is None:
            priority = DEFAULT_PRIORITY

        # The status record is written before the stream entry so a fast
        # worker's RUNNING update can never be overwritten by PENDING.
        info = JobStatusInfo(
            job_id=event.job_id,
            dispatch_id=event.dispatch_id,
            queue=queue,
            status=JobStatus.PENDING,
            retries=0,
            created_at=_now(),
            updated_at=_now(),
        )
        status_key = self.status_key(event.job_id, event.dispatch_id, queue)
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.hset(status_key, mapping=encode_status(info))
            pipe.expire(status_key, self.status_ttl)
            pipe.zadd(self._queue_index(queue), {member: now_ms})
            pipe.zadd(self._status_index(JobStatus.PENDING), {member: now_ms})
            pipe.zadd(self._priority_index, {member: priority})
            await pipe.execute()

        message_id = await self.client.xadd(self.stream_key(queue), encode_event(event))
        await self.client.hset(status_key, "messageId", message_id)
        await self.client.publish(f"{self.key_prefix}:queue:{queue}:new", message_id)

        logger.debug(
            "Job dispatched",
            extra={"job_id": event.job_id, "queue": queue, "message_id": message_id},
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_job_status(
        self, job_id: str, dispatch_id: str, queue: str
    ) -> JobStatusInfo | None:
        """
        Read a dispatch's status record, falling back to the indices.

        Returns:
            JobStatusInfo | None: The record, or None if the dispatch is unknown.

        Raises:
            TransportError: If Redis rejects the operation.
        """
        try:
            fields = await self.client.hgetall(self.status_key(job_id, dispatch_id, queue))
            if fields and fields.get("jobId"):
                fields.setdefault("queue", queue)
                return decode_status(fields)
            return await self._status_from_index(job_id, dispatch_id, queue)
        except RedisError as e:
            self._metrics.record_transport_error("get_job_status")
            raise TransportError(f"Failed to read job status: {e}") from e

    async def _status_from_index(
        self, job_id: str, dispatch_id: str, queue: str
    ) -> JobStatusInfo | None:
        member = f"{job_id}:{dispatch_id}"
        score = await self.client.zscore(self._queue_index(queue), member)
        if score is None:
            return None

        for status in JobStatus:
            if await self.client.zscore(self._status_index(status), member) is not None:
                return JobStatusInfo(
                    job_id=job_id,
                    dispatch_id=dispatch_id,
                    queue=queue,
                    status=status,
                    created_at=datetime.fromtimestamp(score / 1000, tz=timezone.utc),
                )
        return None

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
        """
        Write status fields, re-index and publish the change.

        An empty ``error`` string clears a previous error.

        Raises:
            TransportError: If Redis rejects the operation.
        """
        status_key = self.status_key(job_id, dispatch_id, queue)
        member = f"{job_id}:{dispatch_id}"
        now = _now()

        mapping: dict[str, str] = {
            "jobId": job_id,
            "dispatchId": dispatch_id,
            "queue": queue,
            "updatedAt": now.isoformat(),
        }
        if status is not None:
            mapping["status"] = str(status)
        if error is not None:
            mapping["error"] = error
        if retries is not None:
            mapping["retries"] = str(retries)
        if started_at is not None:
            mapping["startedAt"] = started_at.isoformat()
        if completed_at is not None:
            mapping["completedAt"] = completed_at.isoformat()

        try:
            async with self.client.pipeline(transaction=False) as pipe:
                pipe.hset(status_key, mapping=mapping)
                pipe.hsetnx(status_key, "createdAt", now.isoformat())
                pipe.hsetnx(status_key, "retries", "0")
                pipe.expire(status_key, self.status_ttl)
                if status is not None:
                    for other in JobStatus:
                        if other != status:
                            pipe.zrem(self._status_index(other), member)
                    pipe.zadd(self._status_index(str(status)), {member: _now_ms()})
                await pipe.execute()

            await self.client.publish(
                f"{self.key_prefix}:job:{job_id}:status",
                json.dumps(
                    {
                        "dispatchId": dispatch_id,
                        "queue": queue,
                        "status": status,
                        "error": error,
                        "retries": retries,
                        "timestamp": _now_ms(),
                    }
                ),
            )
        except RedisError as e:
            self._metrics.record_transport_error("update_job_status")
            raise TransportError(f"Failed to update job status: {e}") from e

        logger.debug(
            "Job status updated",
            extra={"job_id": job_id, "dispatch_id": dispatch_id, "status": status},
        )

    async def list_jobs(
        self, queue: str, status: str | None = None, limit: int = 100
    ) -> list[JobStatusInfo]:
        """
        List the most recent dispatches of a queue.

        Args:
            queue: Queue name.
            status: Only return dispatches currently indexed under this status.
            limit: Maximum number of records.

        Returns:
            list[JobStatusInfo]: Records, newest first.
        """
        try:
            members = await self.client.zrevrange(self._queue_index(queue), 0, -1)
            results: list[JobStatusInfo] = []
            for member in members:
                if len(results) >= limit:
                    break
                if status is not None and (
                    await self.client.zscore(self._status_index(status), member) is None
                ):
                    continue
                job_id, _, dispatch_id = member.rpartition(":")
                info = await self.get_job_status(job_id, dispatch_id, queue)
                if info is not None:
                    results.append(info)
            return results
        except RedisError as e:
            self._metrics.record_transport_error("list_jobs")
            raise TransportError(f"Failed to list jobs: {e}") from e

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def register_worker(self, worker_id: str, queues: list[str]) -> None:
        """
        Register a worker, create consumer groups and start consuming its queues.

        Raises:
            TransportError: If Redis rejects the operation.
        """
        try:
            for queue in queues:
                await self._ensure_consumer_group(queue)

            await self._write_worker(worker_id, queues, "active")
            await self.client.publish(
                self._coordination_channel,
                encode_control(WorkerRegisterEvent(worker_id=worker_id, queues=queues)),
            )

            if self.mode == TransportMode.CONSUMER:
                new_queues = [q for q in queues if q not in self._queues]
                self._queues.update(new_queues)
                channels: dict[str, tuple[str, str | None]] = {}
                for queue in new_queues:
                    channels[f"{self.key_prefix}:queue:{queue}:new"] = ("new", queue)
                    channels[f"{self.key_prefix}:queue:{queue}:control"] = ("control", queue)
                    channels[f"{self.key_prefix}:lock:{queue}:released"] = ("released", queue)
                if channels:
                    await self._subscribe(channels)
                for queue in new_queues:
                    self._spawn(self._read_pending(queue))
        except RedisError as e:
            self._metrics.record_transport_error("register_worker")
            raise TransportError(f"Failed to register worker: {e}") from e

        logger.info(
            "Worker registered",
            extra={"worker_id": worker_id, "queues": queues},
        )

    async def unregister_worker(self, worker_id: str) -> None:
        """
        Remove a worker's registration.

        Raises:
            TransportError: If Redis rejects the operation.
        """
        try:
            await self.client.delete(self.worker_key(worker_id))
            await self.client.publish(
                self._coordination_channel,
                encode_control(WorkerUnregisterEvent(worker_id=worker_id)),
            )
        except RedisError as e:
            self._metrics.record_transport_error("unregister_worker")
            raise TransportError(f"Failed to unregister worker: {e}") from e

        logger.info("Worker unregistered", extra={"worker_id": worker_id})

    async def heartbeat_worker(
        self, worker_id: str, queues: list[str], status: str | None = None
    ) -> None:
        """
        Refresh a worker's registration TTL.

        Raises:
            TransportError: If Redis rejects the operation.
        """
        try:
            await self._write_worker(worker_id, queues, status or "active")
        except RedisError as e:
            self._metrics.record_transport_error("heartbeat_worker")
            raise TransportError(f"Failed to refresh worker registration: {e}") from e

    async def _write_worker(self, worker_id: str, queues: list[str], status: str) -> None:
        key = self.worker_key(worker_id)
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.hset(
                key,
                mapping={
                    "id": worker_id,
                    "status": status,
                    "lastSeen": _now().isoformat(),
                    "queues": json.dumps(queues),
                },
            )
            pipe.expire(key, self.worker_ttl)
            await pipe.execute()

    async def list_workers(self) -> list[dict[str, Any]]:
        """
        List live worker registrations.

        Returns:
            list[dict]: One dict per worker with ``id``, ``status``,
            ``last_seen`` and ``queues``.
        """
        workers: list[dict[str, Any]] = []
        try:
            async for key in self.client.scan_iter(match=f"{self.key_prefix}:worker:*"):
                if key == self._coordination_channel:
                    continue
                data = await self.client.hgetall(key)
                if not data:
                    continue
                workers.append(
                    {
                        "id": data.get("id"),
                        "status": data.get("status"),
                        "last_seen": data.get("lastSeen"),
                        "queues": json.loads(data.get("queues") or "[]"),
                    }
                )
        except RedisError as e:
            self._metrics.record_transport_error("list_workers")
            raise TransportError(f"Failed to list workers: {e}") from e
        return sorted(workers, key=lambda w: w["id"] or "")

    async def _ensure_consumer_group(self, queue: str) -> None:
        try:
            await self.client.xgroup_create(
                self.stream_key(queue), self.consumer_group, id="0", mkstream=True
            )
            logger.debug(
                "Created consumer group",
                extra={"queue": queue, "group": self.consumer_group},
            )
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    async def acquire_job_lock(
        self, job_id: str, queue: str, duration: float | None = None
    ) -> bool:
        """
        Try to take a job's NO_OVERLAP lock with SET NX PX.

        Raises:
            TransportError: If Redis rejects the operation.
        """
        duration = duration or self.lock_duration
        value = f"{self.consumer_name}:{_now_ms()}"
        try:
            acquired = await self.client.set(
                self.lock_key(job_id, queue), value, nx=True, px=int(duration * 1000)
            )
        except RedisError as e:
            self._metrics.record_transport_error("acquire_job_lock")
            raise TransportError(f"Failed to acquire lock: {e}") from e

        if acquired:
            self._locks[(queue, job_id)] = time.monotonic() + duration
            logger.debug("Lock acquired", extra={"job_id": job_id, "queue": queue})
            return True
        return False

    async def release_job_lock(self, job_id: str, queue: str) -> None:
        """
        Release a lock if this transport still owns it, then notify workers.

        Raises:
            TransportError: If Redis rejects the operation.
        """
        key = self.lock_key(job_id, queue)
        owner_prefix = f"{self.consumer_name}:"
        self._locks.pop((queue, job_id), None)

        async def _delete_if_owner(pipe: Any) -> bool:
            value = await pipe.get(key)
            if value is None or not value.startswith(owner_prefix):
                return False
            pipe.multi()
            pipe.delete(key)
            return True

        try:
            released = await self.client.transaction(
                _delete_if_owner, key, value_from_callable=True
            )
            if released:
                await self.client.publish(f"{self.key_prefix}:lock:{queue}:released", job_id)
        except RedisError as e:
            self._metrics.record_transport_error("release_job_lock")
            raise TransportError(f"Failed to release lock: {e}") from e

        if released:
            logger.debug("Lock released", extra={"job_id": job_id, "queue": queue})
        else:
            logger.warning(
                "Lock not owned at release, left to expire",
                extra={"job_id": job_id, "queue": queue},
            )

    async def is_job_locked(self, job_id: str, queue: str) -> bool:
        """
        Check whether a job's lock is held.

        Raises:
            TransportError: If Redis rejects the operation.
        """
        expires_at = self._locks.get((queue, job_id))
        if expires_at is not None and expires_at > time.monotonic():
            return True
        try:
            return await self.client.exists(self.lock_key(job_id, queue)) > 0
        except RedisError as e:
            self._metrics.record_transport_error("is_job_locked")
            raise TransportError(f"Failed to check lock: {e}") from e

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    async def _subscribe(self, channels: dict[str, tuple[str, str | None]]) -> None:
        if self._pubsub is None:
            return
        self._channels.update(channels)
        await self._pubsub.subscribe(*channels)

    async def _listen_loop(self) -> None:
        while self._running:
            pubsub = self._pubsub
            if pubsub is None or not pubsub.subscribed:
                await asyncio.sleep(self.poll_interval)
                continue
            try:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except (RedisError, OSError) as e:
                self._metrics.record_transport_error("pubsub")
                logger.error("Pub/sub read failed", extra={"error": str(e)})
                await asyncio.sleep(self.poll_interval)
                continue

            if message is None or message.get("type") != "message":
                continue

            try:
                await self._on_channel_message(message["channel"], message["data"])
            except Exception as e:
                logger.error(
                    "Error handling channel message",
                    extra={"channel": message["channel"], "error": str(e)},
                    exc_info=True,
                )

    async def _on_channel_message(self, channel: str, data: str) -> None:
        kind, queue = self._channels.get(channel, (None, None))

        if kind == "new" and queue is not None:
            self._spawn(self._consume(queue))
        elif kind == "control":
            try:
                event = decode_control(data)
            except ValueError as e:
                logger.warning(
                    "Dropping malformed control message",
                    extra={"channel": channel, "error": str(e)},
                )
                return
            await self._deliver(event)
        elif kind == "released" and queue is not None:
            self._locks.pop((queue, data), None)
            await self._deliver(
                JobUpdateEvent(job_id=data, queue=queue, status=LOCK_RELEASED)
            )
        elif kind == "coordination":
            try:
                event = decode_control(data)
            except ValueError:
                return
            logger.debug("Worker coordination event", extra={"event_type": event.type})
            await self._deliver(event)

    async def _read_pending(self, queue: str) -> None:
        """Redeliver entries this consumer received but never acknowledged."""
        stream = self.stream_key(queue)
        try:
            async with self._read_lock(queue):
                response = await self.client.xreadgroup(
                    self.consumer_group,
                    self.consumer_name,
                    {stream: "0"},
                    count=self.batch_size * 10,
                )
                for _, entries in response or []:
                    for message_id, fields in entries:
                        await self._handle_entry(queue, message_id, fields)
        except RedisError as e:
            self._metrics.record_transport_error("read_pending")
            logger.error("Failed to read pending entries", extra={"queue": queue, "error": str(e)})
        await self._consume(queue)

    async def _consume(self, queue: str) -> None:
        """Read and handle new entries of a queue until the stream is drained."""
        stream = self.stream_key(queue)
        try:
            async with self._read_lock(queue):
                while self._running:
                    response = await self.client.xreadgroup(
                        self.consumer_group,
                        self.consumer_name,
                        {stream: ">"},
                        count=self.batch_size,
                    )
                    entries = response[0][1] if response else []
                    for message_id, fields in entries:
                        await self._handle_entry(queue, message_id, fields)
                    if len(entries) < self.batch_size:
                        break
        except RedisError as e:
            self._metrics.record_transport_error("consume")
            logger.error("Failed to read stream", extra={"queue": queue, "error": str(e)})

    async def _claim_stale(self, queue: str) -> None:
        """Take over entries left pending by consumers that stopped acknowledging."""
        stream = self.stream_key(queue)
        try:
            async with self._read_lock(queue):
                result = await self.client.xautoclaim(
                    stream,
                    self.consumer_group,
                    self.consumer_name,
                    min_idle_time=int(self.claim_idle_time * 1000),
                    start_id="0-0",
                    count=self.batch_size,
                )
                for message_id, fields in result[1] if result else []:
                    logger.info(
                        "Claimed stale stream entry",
                        extra={"queue": queue, "message_id": message_id},
                    )
                    await self._handle_entry(queue, message_id, fields)
        except RedisError as e:
            self._metrics.record_transport_error("autoclaim")
            logger.error("Failed to claim stale entries", extra={"queue": queue, "error": str(e)})

    async def _handle_entry(
        self, queue: str, message_id: str, fields: dict[str, str] | None
    ) -> None:
        stream = self.stream_key(queue)

        # Trimmed or deleted entries come back without fields
        if not fields:
            await self.client.xack(stream, self.consumer_group, message_id)
            return

        try:
            event = decode_event(fields, queue)
        except ValueError as e:
            logger.warning(
                "Dropping malformed stream entry",
                extra={"queue": queue, "message_id": message_id, "error": str(e)},
            )
            await self.client.xack(stream, self.consumer_group, message_id)
            return

        if await self._deliver(event):
            await self.client.xack(stream, self.consumer_group, message_id)
        else:
            logger.warning(
                "Stream entry left pending for redelivery",
                extra={"queue": queue, "message_id": message_id},
            )

    def _read_lock(self, queue: str) -> asyncio.Lock:
        lock = self._read_locks.get(queue)
        if lock is None:
            lock = self._read_locks[queue] = asyncio.Lock()
        return lock

    async def _poll_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.poll_interval)
            for queue in list(self._queues):
                await self._consume(queue)
                await self._claim_stale(queue)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def _cleanup_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.cleanup_interval)
            try:
                await self.perform_cleanup()
            except TransportError as e:
                logger.error("Cleanup failed", extra={"error": str(e)})

    async def perform_cleanup(self) -> CleanupReport:
        """
        Trim streams and purge stale status records.

        - Terminal status index entries older than the retention window are removed
        - Queue and priority index members are dropped once their status hash
          has expired, or once they finished and were dispatched before the
          retention window
        - Streams longer than ``max_stream_size`` are trimmed (approximately)
        - Status hashes that lost their TTL are deleted

        Returns:
            CleanupReport: What was removed.

        Raises:
            TransportError: If Redis rejects the operation.
        """
        report = CleanupReport()
        cutoff = _now_ms() - self.completed_job_retention * 1000

        try:
            for status in TERMINAL_STATUSES:
                removed = await self.client.zremrangebyscore(
                    self._status_index(status), "-inf", cutoff
                )
                report.removed_index_entries += removed

            queue_prefix = self._queue_index("")
            async for key in self.client.scan_iter(match=f"{queue_prefix}*"):
                queue = key[len(queue_prefix):]
                report.removed_index_entries += await self._prune_queue_index(queue, cutoff)

            async for key in self.client.scan_iter(match=f"{self.key_prefix}:stream:*"):
                length = await self.client.xlen(key)
                if length > self.max_stream_size:
                    await self.client.xtrim(key, maxlen=self.max_stream_size, approximate=True)
                    report.trimmed_streams.append(key)
                    logger.debug(
                        "Trimmed stream",
                        extra={"stream": key, "length": length, "max": self.max_stream_size},
                    )

            async for key in self.client.scan_iter(match=f"{self.key_prefix}:status:*"):
                if await self.client.ttl(key) == -1:
                    await self.client.delete(key)
                    report.removed_status_keys += 1
        except RedisError as e:
            self._metrics.record_transport_error("cleanup")
            raise TransportError(f"Cleanup failed: {e}") from e

        self._metrics.record_cleanup("index_entries", report.removed_index_entries)
        self._metrics.record_cleanup("status_keys", report.removed_status_keys)
        self._metrics.record_cleanup("streams", len(report.trimmed_streams))

        logger.info(
            "Cleanup completed",
            extra={
                "trimmed_streams": len(report.trimmed_streams),
                "removed_index_entries": report.removed_index_entries,
                "removed_status_keys": report.removed_status_keys,
            },
        )
        return report

    async def _prune_queue_index(self, queue: str, cutoff: int) -> int:
        """Drop a queue's index members whose record expired or finished before ``cutoff``."""
        stale: list[str] = []
        async for member, score in self.client.zscan_iter(self._queue_index(queue)):
            job_id, _, dispatch_id = member.rpartition(":")
            status = await self.client.hget(self.status_key(job_id, dispatch_id, queue), "status")
            if status is None or (score <= cutoff and status in TERMINAL_STATUSES):
                stale.append(member)

        if not stale:
            return 0

        async with self.client.pipeline(transaction=False) as pipe:
            pipe.zrem(self._queue_index(queue), *stale)
            pipe.zrem(self._priority_index, *stale)
            for status in JobStatus:
                pipe.zrem(self._status_index(status), *stale)
            await pipe.execute()

        logger.debug("Pruned queue index", extra={"queue": queue, "removed": len(stale)})
        return len(stale)
