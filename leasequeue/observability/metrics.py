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
    start_http_server,
)

from leasequeue.constants import (
    METRIC_JOB_DURATION,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FINISHED,
    METRIC_LEASE_ACQUIRED,
    METRIC_LEASE_EXPIRED,
    METRIC_LEASE_RENEWED,
    METRIC_QUEUE_DEPTH,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for job queues.

    Collects metrics for:
    - Queue depth per status
    - Job submissions and outcomes
    - Time from lease acquisition to ack
    - Lease acquisitions, renewals and expiries
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs in the queue",
            ["queue", "status"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["queue", "priority"],
            registry=self._registry,
        )

        # outcome is success, retried or failed
        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of job attempts that ended",
            ["queue", "outcome"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Seconds from lease acquisition to ack",
            ["queue"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.lease_expired = Counter(
            METRIC_LEASE_EXPIRED,
            "Total number of expired leases reclaimed",
            ["queue"],
            registry=self._registry,
        )

        self.lease_acquired = Counter(
            METRIC_LEASE_ACQUIRED,
            "Total number of leases acquired",
            ["queue", "worker_id"],
            registry=self._registry,
        )

        self.lease_renewed = Counter(
            METRIC_LEASE_RENEWED,
            "Total number of leases renewed",
            ["queue"],
            registry=self._registry,
        )

    def record_jobs_enqueued(self, queue: str, priority: int, count: int = 1) -> None:
        """Record job submissions."""
        self.jobs_enqueued.labels(queue=queue, priority=str(priority)).inc(count)

    def record_job_finished(
        self,
        queue: str,
        outcome: str,
        duration_seconds: float | None = None,
    ) -> None:
        """Record the end of a job attempt."""
        self.jobs_finished.labels(queue=queue, outcome=outcome).inc()
        if duration_seconds is not None:
            self.job_duration.labels(queue=queue).observe(duration_seconds)

    def record_lease_expired(self, queue: str, count: int = 1) -> None:
        """Record reclaimed leases."""
        self.lease_expired.labels(queue=queue).inc(count)

    def record_lease_acquired(self, queue: str, worker_id: str | None) -> None:
        """Record lease acquisition."""
        self.lease_acquired.labels(queue=queue, worker_id=worker_id or "").inc()

    def record_lease_renewed(self, queue: str) -> None:
        """Record a lease renewal."""
        self.lease_renewed.labels(queue=queue).inc()

    def update_queue_depth(self, queue: str, counts: dict[str, int]) -> None:
        """Update queue depth gauges from a status -> count mapping."""
        for status, depth in counts.items():
            self.queue_depth.labels(queue=queue, status=status).set(depth)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST

    def serve(self, port: int) -> None:
        """Expose this registry on a background HTTP server."""
        start_http_server(port, registry=self._registry)


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
    Get the process-wide metrics collector, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
