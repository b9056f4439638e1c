"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from jobforge.constants import (
    METRIC_CLEANUP_REMOVED,
    METRIC_JOB_DURATION,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_DISPATCHED,
    METRIC_JOBS_RETRIED,
    METRIC_LOCK_CONTENTION,
    METRIC_QUEUE_DEPTH,
    METRIC_TRANSPORT_ERRORS,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job engine.

    Collects metrics for:
    - Jobs dispatched by producers
    - Job completions by final status and execution duration
    - Retries scheduled
    - Waiting/active/retrying depth per queue
    - NO_OVERLAP lock contention
    - Transport errors and cleanup activity
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.jobs_dispatched = Counter(
            METRIC_JOBS_DISPATCHED,
            "Total number of jobs dispatched",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of jobs finished",
            ["queue", "status"],
            registry=self._registry,
        )

        self.jobs_retried = Counter(
            METRIC_JOBS_RETRIED,
            "Total number of retries scheduled",
            ["queue"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["queue", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        # state is one of waiting, active, retrying
        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs held by a worker queue",
            ["worker_id", "queue", "state"],
            registry=self._registry,
        )

        self.lock_contention = Counter(
            METRIC_LOCK_CONTENTION,
            "Total number of NO_OVERLAP lock acquisitions refused",
            ["queue"],
            registry=self._registry,
        )

        self.transport_errors = Counter(
            METRIC_TRANSPORT_ERRORS,
            "Total number of broker operation failures",
            ["operation"],
            registry=self._registry,
        )

        self.cleanup_removed = Counter(
            METRIC_CLEANUP_REMOVED,
            "Total number of broker records removed by cleanup",
            ["kind"],
            registry=self._registry,
        )

    def record_job_dispatched(self, queue: str) -> None:
        """Record a job dispatch."""
        self.jobs_dispatched.labels(queue=queue).inc()

    def record_job_completed(
        self,
        queue: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record a job reaching a terminal status."""
        self.jobs_completed.labels(queue=queue, status=status).inc()
        self.job_duration.labels(queue=queue, status=status).observe(
            duration_seconds
        )

    def record_job_retried(self, queue: str) -> None:
        """Record a retry being scheduled."""
        self.jobs_retried.labels(queue=queue).inc()

    def record_lock_contention(self, queue: str) -> None:
        """Record a refused lock acquisition."""
        self.lock_contention.labels(queue=queue).inc()

    def record_transport_error(self, operation: str) -> None:
        """Record a broker failure."""
        self.transport_errors.labels(operation=operation).inc()

    def record_cleanup(self, kind: str, count: int) -> None:
        """Record records removed by the maintenance pass."""
        if count:
            self.cleanup_removed.labels(kind=kind).inc(count)

    def update_queue_depth(
        self,
        worker_id: str,
        queue: str,
        waiting: int,
        active: int,
        retrying: int,
    ) -> None:
        """Update the depth gauges of one worker queue."""
        self.queue_depth.labels(worker_id=worker_id, queue=queue, state="waiting").set(waiting)
        self.queue_depth.labels(worker_id=worker_id, queue=queue, state="active").set(active)
        self.queue_depth.labels(worker_id=worker_id, queue=queue, state="retrying").set(retrying)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
