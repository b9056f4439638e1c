"""
Unit tests for the built-in jobs.
"""

import json

import httpx
import pytest

from jobforge.constants import JobStatus
from jobforge.exceptions import ExecutionError
from jobforge.job import get_job_metadata
from jobforge.registry import JobRegistry
from jobforge.worker import handlers
from jobforge.worker.handlers import (
    EchoJob,
    FailingJob,
    HttpRequestJob,
    SleepJob,
    register_builtin_jobs,
)


class TestBuiltinJobs:
    """Tests for the built-in jobs."""

    def test_register_builtin_jobs(self, registry: JobRegistry):
        """Test that the built-in jobs are registered under short names."""
        register_builtin_jobs(registry)

        assert set(registry.names()) == {"echo", "sleep", "failing_job", "http_request"}
        assert registry.resolve("echo") is EchoJob
        assert get_job_metadata(HttpRequestJob).max_retries == 3

    @pytest.mark.asyncio
    async def test_echo_job(self):
        """Test the echo job."""
        job = EchoJob({"message": "test"})

        await job.run()

        assert job.status == JobStatus.COMPLETED
        assert job.output == {"echo": {"message": "test"}}

    @pytest.mark.asyncio
    async def test_failing_job(self):
        """Test the failing job."""
        job = FailingJob()

        await job.run()

        assert job.status == JobStatus.FAILED
        assert isinstance(job.last_error, ExecutionError)
        assert "Intentional failure on attempt 1" in str(job.last_error)

    @pytest.mark.asyncio
    async def test_sleep_job(self):
        """Test the sleep job with a short duration."""
        job = SleepJob(duration_seconds=0.02, checkpoint=0.01)

        await job.run()

        assert job.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_sleep_job_stops_when_cancelled(self):
        """Test that the sleep job returns early once cancelled."""
        job = SleepJob(duration_seconds=60, checkpoint=0.01)
        job.cancel()

        await job.execute()

        assert job.status == JobStatus.CANCELLED


class TestHttpRequestJob:
    """Tests for the HTTP request job."""

    @pytest.fixture
    def mock_http(self, monkeypatch):
        """Route the job's HTTP client through a mock transport."""
        requests: list[httpx.Request] = []
        real_client = httpx.AsyncClient

        def respond(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.path == "/missing":
                return httpx.Response(404, text="not found")
            return httpx.Response(200, json={"ok": True})

        monkeypatch.setattr(
            handlers.httpx,
            "AsyncClient",
            lambda **kwargs: real_client(transport=httpx.MockTransport(respond), **kwargs),
        )
        return requests

    @pytest.mark.asyncio
    async def test_post_sends_json(self, mock_http):
        """Test a successful POST."""
        job = HttpRequestJob(
            "https://example.test/hook",
            method="post",
            headers={"X-Token": "abc"},
            body={"a": 1},
        )

        await job.run()

        assert job.status == JobStatus.COMPLETED
        assert job.output["status_code"] == 200
        request = mock_http[0]
        assert request.method == "POST"
        assert request.headers["X-Token"] == "abc"
        assert json.loads(request.content) == {"a": 1}

    @pytest.mark.asyncio
    async def test_error_status_fails(self, mock_http):
        """Test that non-2xx responses fail the job."""
        job = HttpRequestJob("https://example.test/missing")

        await job.run()

        assert job.status == JobStatus.FAILED
        assert job.output["status_code"] == 404
        assert isinstance(job.last_error.cause, httpx.HTTPStatusError)
