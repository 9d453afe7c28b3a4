"""Tests for Prometheus metrics."""

from __future__ import annotations

from arcana.observability.metrics import (
    MetricsRegistry,
    get_metrics,
    record_job_outcome,
    record_leadership,
    record_lock_operation,
)


class TestMetricsRegistry:
    """Tests for MetricsRegistry."""

    def test_disabled_registry(self) -> None:
        registry = MetricsRegistry(enabled=False)
        registry.initialize()

        assert registry.jobs_total is None
        assert registry.generate_latest() == b"# Metrics disabled\n"

    def test_separate_registries(self) -> None:
        """Each registry owns its collectors, so two can coexist."""
        first = MetricsRegistry()
        second = MetricsRegistry()
        first.initialize()
        second.initialize()

        first.jobs_total.labels(queue="q", status="completed").inc()

        assert b'arcana_jobs_total{queue="q",status="completed"} 1.0' in first.generate_latest()
        assert b'queue="q"' not in second.generate_latest()


class TestRecorders:
    """Tests for the recording helpers."""

    def test_record_helpers_update_global_registry(self) -> None:
        metrics = get_metrics()
        before = metrics.jobs_total.labels(queue="metrics-test", status="failed")._value.get()

        record_job_outcome("metrics-test", "failed")
        record_lock_operation("acquire", "ok")
        record_leadership("metrics-test", True)

        assert (
            metrics.jobs_total.labels(queue="metrics-test", status="failed")._value.get()
            == before + 1
        )
        assert metrics.is_leader.labels(election="metrics-test")._value.get() == 1
