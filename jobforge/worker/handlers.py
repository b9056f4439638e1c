"""
Built-in jobs.

Jobs must be idempotent: delivery is at-least-once, so the same dispatch may
run more than once after a worker crash.
"""

import asyncio
import logging
from typing import Any

import httpx

from jobforge.job import Job
from jobforge.registry import JobRegistry

logger = logging.getLogger(__name__)


class EchoJob(Job):
    """Logs its payload. Useful to check a deployment end to end."""

    description = "Echo the payload back into the logs."

    def __init__(self, payload: Any = None, **kwargs: Any):
        super().__init__(**kwargs)
        self.payload = payload
        self.output: Any = None

    async def execute(self) -> None:
        logger.info("Echo job executing", extra={"job_id": self.id, "payload": self.payload})
        self.output = {"echo": self.payload}


class SleepJob(Job):
    """
    Sleeps for a while, checking for cancellation every ``checkpoint`` seconds.
    """

    description = "Sleep for a number of seconds."

    def __init__(self, duration_seconds: float = 1.0, checkpoint: float = 1.0, **kwargs: Any):
        super().__init__(**kwargs)
        self.duration_seconds = duration_seconds
        self.checkpoint = checkpoint

    async def execute(self) -> None:
        logger.info(
            "Sleep job starting",
            extra={"job_id": self.id, "duration": self.duration_seconds},
        )
        elapsed = 0.0
        while elapsed < self.duration_seconds:
            if self.is_cancelled:
                logger.info("Sleep job cancelled", extra={"job_id": self.id, "elapsed": elapsed})
                return
            step = min(self.checkpoint, self.duration_seconds - elapsed)
            await asyncio.sleep(step)
            elapsed += step


class FailingJob(Job):
    """Always fails, for exercising the retry policy."""

    description = "Fail on every attempt."

    def __init__(self, message: str = "Intentional failure", **kwargs: Any):
        super().__init__(**kwargs)
        self.message = message

    async def execute(self) -> None:
        logger.info(
            "Failing job executing (will fail)",
            extra={"job_id": self.id, "retries": self.retries},
        )
        raise RuntimeError(f"{self.message} on attempt {self.retries + 1}")


class HttpRequestJob(Job):
    """
    Make an HTTP request.

    Non-2xx responses fail the job so the retry policy applies.
    """

    description = "Perform an HTTP request."

    def __init__(
        self,
        url: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        body: Any = None,
        timeout: float = 30.0,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.url = url
        self.method = method.upper()
        self.headers = headers or {}
        self.body = body
        self.timeout = timeout
        self.output: dict[str, Any] | None = None

    async def execute(self) -> None:
        logger.info(
            "HTTP request job",
            extra={"job_id": self.id, "method": self.method, "url": self.url},
        )

        async with httpx.AsyncClient() as client:
            response = await client.request(
                method=self.method,
                url=self.url,
                headers=self.headers,
                json=self.body if self.method in ("POST", "PUT", "PATCH") else None,
                timeout=self.timeout,
            )

        self.output = {
            "status_code": response.status_code,
            "body": response.text[:1000],  # Truncate response
        }
        response.raise_for_status()


def register_builtin_jobs(registry: JobRegistry) -> None:
    """Register the built-in jobs under short names."""
    registry.add(EchoJob, name="echo")
    registry.add(SleepJob, name="sleep")
    registry.add(FailingJob, name="failing_job")
    registry.add(HttpRequestJob, name="http_request", max_retries=3, retry_delay=5.0)
