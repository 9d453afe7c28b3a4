"""Observability module for Arcana tasks.

Provides metrics and structured logging:
- Prometheus metrics for locks, elections and jobs
- JSON structured logging with job correlation
"""

from arcana.observability.logging import (
    LogContext,
    configure_logging,
    get_logger,
    instance_id_var,
    job_id_var,
    queue_var,
)
from arcana.observability.metrics import (
    get_metrics,
    metrics_registry,
)

__all__ = [
    # Logging
    "configure_logging",
    "get_logger",
    "LogContext",
    "job_id_var",
    "queue_var",
    "instance_id_var",
    # Metrics
    "metrics_registry",
    "get_metrics",
]
