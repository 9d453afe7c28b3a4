"""Tests for the arcana CLI."""

from __future__ import annotations

import pytest
from typer.testing import CliRunner

from arcana.cli import app
from arcana.config import settings

runner = CliRunner(env={"COLUMNS": "200"})


@pytest.fixture
def memory_backend(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "task_backend", "memory")


class TestSchedulesCommand:
    def test_lists_recurring_jobs(self) -> None:
        result = runner.invoke(app, ["schedules"])

        assert result.exit_code == 0
        assert "recurring-cleanup-tokens" in result.output
        assert "0 2 * * *" in result.output


class TestTriggerCommand:
    """Tests for `arcana trigger`."""

    def test_invalid_json_payload(self) -> None:
        result = runner.invoke(app, ["trigger", "cleanup-expired-tokens", "--payload", "{bad"])

        assert result.exit_code == 2
        assert "Invalid JSON payload" in result.output

    def test_payload_must_be_object(self) -> None:
        result = runner.invoke(app, ["trigger", "cleanup-expired-tokens", "-p", "[1, 2]"])

        assert result.exit_code == 2

    def test_trigger_queues_job(self, memory_backend: None) -> None:
        result = runner.invoke(
            app, ["trigger", "cleanup-inactive-users", "--payload", '{"inactive_days": 30}']
        )

        assert result.exit_code == 0, result.output
        assert "Queued" in result.output
        assert "manual-cleanup-inactive-users-" in result.output

    def test_unknown_job_type(self, memory_backend: None) -> None:
        result = runner.invoke(app, ["trigger", "reticulate-splines"])

        assert result.exit_code == 1
        assert "Error" in result.output


class TestStatsCommand:
    def test_empty_queue(self, memory_backend: None) -> None:
        result = runner.invoke(app, ["stats", "background-high", "--schedules"])

        assert result.exit_code == 0, result.output
        assert "pending" in result.output
        assert "Queue: background-high" in result.output
