"""Prometheus metrics exposed by the mail queue."""

from typing import Dict

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class QueueMetrics:
    """Wrapper around the Prometheus registry used by the queue."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.completed = Counter("amq_completed_total", "Jobs delivered", registry=self.registry)
        self.failed = Counter("amq_failed_total", "Jobs marked failed", registry=self.registry)
        self.rate_limited = Counter(
            "amq_rate_limited_total", "Dispatches returned to pending by a rate limit", registry=self.registry
        )
        self.reclaimed = Counter(
            "amq_reclaimed_total", "Jobs reclaimed after their processing lease expired", registry=self.registry
        )
        self.pending = Gauge("amq_pending_jobs", "Jobs waiting for delivery", registry=self.registry)
        self.processing = Gauge("amq_processing_jobs", "Jobs currently claimed", registry=self.registry)

    def inc_completed(self):
        self.completed.inc()

    def inc_failed(self):
        self.failed.inc()

    def inc_rate_limited(self):
        self.rate_limited.inc()

    def inc_reclaimed(self, count: int = 1):
        if count > 0:
            self.reclaimed.inc(count)

    def set_status_counts(self, counts: Dict[str, int]):
        """Update the gauges from a ``status -> count`` mapping."""
        self.pending.set(counts.get("pending", 0))
        self.processing.set(counts.get("processing", 0))

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
