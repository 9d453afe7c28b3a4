"""Prometheus metrics for the task subsystem.

Provides metrics collection and exposure:
- Lock operation counts by outcome
- Leadership transitions and current leadership per election
- Job outcomes, durations and in-flight counts per queue

Recording is fire-and-forget: helpers never raise into the caller.

Usage:
    from arcana.observability.metrics import get_metrics

    metrics = get_metrics()
    metrics.jobs_total.labels(queue="background-high", status="completed").inc()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram
from prometheus_client import generate_latest as _generate_latest

from arcana.config import settings

logger = logging.getLogger(__name__)


@dataclass
class MetricsRegistry:
    """Registry for Prometheus metrics."""

    # Lock metrics
    lock_operations_total: Any = None

    # Leader election metrics
    leadership_transitions_total: Any = None
    is_leader: Any = None

    # Job metrics
    jobs_total: Any = None
    job_duration_seconds: Any = None
    jobs_in_progress: Any = None

    enabled: bool = True

    # Internal state
    _initialized: bool = field(default=False, repr=False)
    _registry: CollectorRegistry | None = field(default=None, repr=False)

    def initialize(self) -> None:
        """Initialize Prometheus metrics."""
        if self._initialized:
            return

        if not self.enabled:
            logger.info("Metrics are disabled")
            self._initialized = True
            return

        self._registry = CollectorRegistry()

        self.lock_operations_total = Counter(
            "arcana_lock_operations_total",
            "Lock operations by outcome",
            ["operation", "result"],
            registry=self._registry,
        )

        self.leadership_transitions_total = Counter(
            "arcana_leadership_transitions_total",
            "Leadership transitions",
            ["election", "transition"],
            registry=self._registry,
        )

        self.is_leader = Gauge(
            "arcana_is_leader",
            "1 if this instance currently believes it is leader",
            ["election"],
            registry=self._registry,
        )

        self.jobs_total = Counter(
            "arcana_jobs_total",
            "Job outcomes",
            ["queue", "status"],
            registry=self._registry,
        )

        self.job_duration_seconds = Histogram(
            "arcana_job_duration_seconds",
            "Job handler duration in seconds",
            ["queue", "job_type"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
            registry=self._registry,
        )

        self.jobs_in_progress = Gauge(
            "arcana_jobs_in_progress",
            "Jobs currently being processed",
            ["queue"],
            registry=self._registry,
        )

        self._initialized = True
        logger.info("Prometheus metrics initialized")

    def generate_latest(self) -> bytes:
        """Generate Prometheus metrics in exposition format."""
        if self._registry is None:
            return b"# Metrics disabled\n"
        return _generate_latest(self._registry)


# Global metrics registry
metrics_registry = MetricsRegistry(enabled=settings.enable_metrics)


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry.

    Initializes metrics on first access.
    """
    if not metrics_registry._initialized:
        metrics_registry.initialize()
    return metrics_registry


def record_lock_operation(operation: str, result: str) -> None:
    """Record a lock operation.

    Args:
        operation: acquire, release or renew
        result: ok, contended or error
    """
    metrics = get_metrics()
    if metrics.lock_operations_total:
        metrics.lock_operations_total.labels(operation=operation, result=result).inc()


def record_leadership(election: str, is_leader: bool) -> None:
    """Record a leadership transition for an election."""
    metrics = get_metrics()
    if metrics.leadership_transitions_total:
        metrics.leadership_transitions_total.labels(
            election=election,
            transition="acquired" if is_leader else "lost",
        ).inc()
    if metrics.is_leader:
        metrics.is_leader.labels(election=election).set(1 if is_leader else 0)


def record_job_outcome(queue: str, status: str) -> None:
    """Record a job outcome (completed, retried, failed, stalled)."""
    metrics = get_metrics()
    if metrics.jobs_total:
        metrics.jobs_total.labels(queue=queue, status=status).inc()


def record_job_duration(queue: str, job_type: str, duration: float) -> None:
    """Record how long a handler ran.

    Args:
        queue: Queue name
        job_type: Job type tag
        duration: Handler duration in seconds
    """
    metrics = get_metrics()
    if metrics.job_duration_seconds:
        metrics.job_duration_seconds.labels(queue=queue, job_type=job_type).observe(duration)


def track_in_progress(queue: str, delta: int) -> None:
    """Adjust the in-progress gauge for a queue."""
    metrics = get_metrics()
    if metrics.jobs_in_progress:
        metrics.jobs_in_progress.labels(queue=queue).inc(delta)
