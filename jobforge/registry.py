"""
Explicit job class registry.

Workers turn the job name carried by a ``job:process`` event back into a
class through a ``JobRegistry`` populated at start-up.
"""

import logging
from collections.abc import Callable, Iterator, Sequence
from typing import Any, TypeVar

from jobforge.constants import DEFAULT_PRIORITY, DEFAULT_QUEUE, OverlapBehavior
from jobforge.exceptions import NotFoundError, RegistrationError
from jobforge.job import METADATA_ATTR, Job, JobMetadata, get_job_metadata

logger = logging.getLogger(__name__)

J = TypeVar("J", bound=type[Job])


class JobRegistry:
    """
    Mapping of job name to job class.

    Usage::

        registry = JobRegistry()

        @registry.register(queue="emails", max_retries=3)
        class SendEmail(Job):
            ...
    """

    def __init__(self) -> None:
        self._jobs: dict[str, type[Job]] = {}

    def register(
        self,
        name: str | None = None,
        queue: str = DEFAULT_QUEUE,
        priority: int = DEFAULT_PRIORITY,
        overlap_behavior: OverlapBehavior = OverlapBehavior.ALLOW_OVERLAP,
        overlap_delay: float = 0.0,
        max_retries: int | None = None,
        retry_delay: float | None = None,
    ) -> Callable[[J], J]:
        """
        Class decorator registering a job class.

        Args:
            name: Logical name carried on the wire. Defaults to the class name.
            queue: Target queue.
            priority: Lower values run first.
            overlap_behavior: Whether dispatches sharing a job ID may run concurrently.
            overlap_delay: Seconds to keep the NO_OVERLAP lock after execution.
            max_retries: Overrides the queue's retry limit.
            retry_delay: Overrides the queue's retry delay, in seconds.

        Returns:
            The decorator.
        """

        def decorator(job_cls: J) -> J:
            self.add(
                job_cls,
                name=name,
                queue=queue,
                priority=priority,
                overlap_behavior=overlap_behavior,
                overlap_delay=overlap_delay,
                max_retries=max_retries,
                retry_delay=retry_delay,
            )
            return job_cls

        return decorator

    def add(self, job_cls: type[Job], name: str | None = None, **props: Any) -> JobMetadata:
        """
        Register a job class without the decorator syntax.

        Args:
            job_cls: The job class.
            name: Logical name. Defaults to the class name.
            **props: Any other ``JobMetadata`` field.

        Returns:
            JobMetadata: The metadata attached to the class.

        Raises:
            RegistrationError: If the class was already registered with
                different metadata.
        """
        metadata = JobMetadata(name=name or job_cls.__name__, **props)
        current = get_job_metadata(job_cls)
        if current is not None and current != metadata:
            raise RegistrationError(
                f"Job class {job_cls.__qualname__} is already registered as '{current.name}'",
                {"job": current.name},
            )
        setattr(job_cls, METADATA_ATTR, metadata)

        existing = self._jobs.get(metadata.name)
        if existing is not None and existing is not job_cls:
            logger.warning(
                "Job name re-registered",
                extra={"job": metadata.name, "previous": existing.__qualname__},
            )
        self._jobs[metadata.name] = job_cls
        return metadata

    def resolve(self, name: str) -> type[Job]:
        """
        Look up a job class by name.

        Raises:
            NotFoundError: If no class is registered under ``name``.
        """
        try:
            return self._jobs[name]
        except KeyError:
            raise NotFoundError(f"Job class '{name}' is not registered", {"job": name}) from None

    def create(
        self,
        name: str,
        args: Sequence[Any] = (),
        kwargs: dict[str, Any] | None = None,
        job_id: str | None = None,
        dispatch_id: str | None = None,
    ) -> Job:
        """
        Resolve a class and construct an instance with an identity override.

        Raises:
            NotFoundError: If no class is registered under ``name``.
        """
        job_cls = self.resolve(name)
        return job_cls(*args, **(kwargs or {}), job_id=job_id, dispatch_id=dispatch_id)

    def names(self) -> list[str]:
        return list(self._jobs)

    def __contains__(self, name: object) -> bool:
        return name in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def __iter__(self) -> Iterator[str]:
        return iter(self._jobs)
