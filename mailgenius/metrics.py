"""Prometheus metrics exposed by the send queue."""

from typing import Dict

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

WORKER_STATUSES = ("idle", "busy", "offline")


class QueueMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("mailgenius_sent_total", "Emails delivered", ["workspace_id"], registry=self.registry)
        self.failed = Counter(
            "mailgenius_failed_total", "Emails permanently failed", ["workspace_id"], registry=self.registry
        )
        self.retried = Counter(
            "mailgenius_retried_total", "Retries scheduled", ["workspace_id"], registry=self.registry
        )
        self.rate_limited = Counter(
            "mailgenius_rate_limited_total", "Sends held back by the rate limiter", ["workspace_id"],
            registry=self.registry,
        )
        self.pending_jobs = Gauge("mailgenius_pending_jobs", "Jobs waiting to be claimed", registry=self.registry)
        self.workers = Gauge("mailgenius_workers", "Workers by status", ["status"], registry=self.registry)

    def inc_sent(self, workspace_id: str):
        self.sent.labels(workspace_id=workspace_id or "default").inc()

    def inc_failed(self, workspace_id: str):
        self.failed.labels(workspace_id=workspace_id or "default").inc()

    def inc_retried(self, workspace_id: str):
        self.retried.labels(workspace_id=workspace_id or "default").inc()

    def inc_rate_limited(self, workspace_id: str):
        self.rate_limited.labels(workspace_id=workspace_id or "default").inc()

    def set_pending(self, value: int):
        """Update the gauge tracking claimable jobs."""
        self.pending_jobs.set(value)

    def set_workers(self, counts: Dict[str, int]):
        for status in WORKER_STATUSES:
            self.workers.labels(status=status).set(int(counts.get(status, 0)))

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
