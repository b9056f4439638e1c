"""
Unit tests for the job registry.
"""

import pytest

from jobforge.constants import OverlapBehavior
from jobforge.exceptions import NotFoundError, RegistrationError
from jobforge.job import Job, get_job_metadata
from jobforge.registry import JobRegistry


class GreetJob(Job):
    def __init__(self, name: str = "world", **kwargs):
        super().__init__(**kwargs)
        self.name = name

    async def execute(self) -> None:
        pass


class TestJobRegistry:
    """Tests for JobRegistry."""

    def test_decorator_attaches_metadata(self, registry: JobRegistry):
        """Test that registration attaches class metadata."""

        @registry.register(
            queue="emails",
            priority=1,
            overlap_behavior=OverlapBehavior.NO_OVERLAP,
            overlap_delay=2.5,
            max_retries=3,
            retry_delay=0.5,
        )
        class SendEmail(Job):
            async def execute(self) -> None:
                pass

        metadata = get_job_metadata(SendEmail)
        assert metadata.name == "SendEmail"
        assert metadata.queue == "emails"
        assert metadata.priority == 1
        assert metadata.overlap_behavior == OverlapBehavior.NO_OVERLAP
        assert metadata.overlap_delay == 2.5
        assert metadata.max_retries == 3
        assert metadata.retry_delay == 0.5
        assert "SendEmail" in registry

    def test_defaults(self, registry: JobRegistry):
        """Test default metadata values."""
        metadata = registry.add(GreetJob, name="greet")

        assert metadata.queue == "default"
        assert metadata.priority == 10
        assert metadata.overlap_behavior == OverlapBehavior.ALLOW_OVERLAP
        assert metadata.max_retries is None
        assert metadata.retry_delay is None

    def test_resolve_unknown(self, registry: JobRegistry):
        """Test that unknown names raise NotFoundError."""
        with pytest.raises(NotFoundError):
            registry.resolve("missing")

    def test_create_with_identity(self, registry: JobRegistry):
        """Test construction from a name, arguments and IDs."""
        registry.add(GreetJob, name="greet")

        job = registry.create("greet", ["alice"], job_id="j-1", dispatch_id="d-1")

        assert isinstance(job, GreetJob)
        assert job.name == "alice"
        assert job.id == "j-1"
        assert job.dispatch_id == "d-1"

    def test_create_with_kwargs(self, registry: JobRegistry):
        """Test construction with keyword arguments."""
        registry.add(GreetJob, name="greet")

        job = registry.create("greet", kwargs={"name": "bob"})

        assert job.name == "bob"
        assert job.id.startswith("job_")

    def test_reregistration_replaces(self, registry: JobRegistry):
        """Test that a name registered twice resolves to the latest class."""

        class Other(Job):
            async def execute(self) -> None:
                pass

        registry.add(GreetJob, name="greet")
        registry.add(Other, name="greet")

        assert registry.resolve("greet") is Other
        assert len(registry) == 1

    def test_subclass_does_not_inherit_metadata(self, registry: JobRegistry):
        """Test that metadata belongs to the registered class only."""
        registry.add(GreetJob, name="greet")

        class LoudGreet(GreetJob):
            pass

        assert get_job_metadata(LoudGreet) is None

        registry.add(LoudGreet, name="loud", priority=1)
        assert get_job_metadata(LoudGreet).name == "loud"
        assert get_job_metadata(GreetJob).name == "greet"
        assert registry.resolve("loud") is LoudGreet

    def test_same_metadata_registers_again(self, registry: JobRegistry):
        """Test that registering a class twice with the same metadata is allowed."""
        first = registry.add(GreetJob, name="greet")
        second = JobRegistry().add(GreetJob, name="greet")

        assert first == second

    def test_conflicting_registration(self, registry: JobRegistry):
        """Test that a class cannot be registered again with different metadata."""

        class Nightly(Job):
            async def execute(self) -> None:
                pass

        registry.add(Nightly, queue="batch")

        with pytest.raises(RegistrationError) as exc_info:
            registry.add(Nightly, queue="other")

        assert exc_info.value.details["job"] == "Nightly"
        assert get_job_metadata(Nightly).queue == "batch"

    def test_iteration(self, registry: JobRegistry):
        """Test names, length and iteration."""
        registry.add(GreetJob, name="greet")

        class Other(Job):
            async def execute(self) -> None:
                pass

        registry.add(Other)

        assert registry.names() == ["greet", "Other"]
        assert list(registry) == ["greet", "Other"]
        assert len(registry) == 2
