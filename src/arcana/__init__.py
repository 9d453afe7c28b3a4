"""Arcana: distributed coordination and background jobs.

Packages:
- arcana.distributed: locks and leader election on a shared store
- arcana.jobs: priority lanes, workers, retries and cron scheduling
- arcana.observability: structured logging and Prometheus metrics
"""

__version__ = "0.1.0"
