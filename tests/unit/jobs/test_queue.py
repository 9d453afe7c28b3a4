"""Tests for the per-lane job queue."""

from __future__ import annotations

from datetime import timedelta

import pytest

from arcana.config import settings
from arcana.errors import ConfigurationError
from arcana.jobs.broker import InMemoryJobBroker
from arcana.jobs.models import (
    BackoffPolicy,
    BackoffType,
    Job,
    JobOptions,
    JobStatus,
    LaneConfig,
)
from arcana.jobs.queue import JobQueue


@pytest.fixture
def queue(broker: InMemoryJobBroker) -> JobQueue:
    q = JobQueue(
        LaneConfig(
            "background-low",
            attempts=2,
            backoff=BackoffPolicy(BackoffType.FIXED, 5.0),
        ),
        broker,
    )
    q.register_type("export-user-data")
    return q


class TestBackoffPolicy:
    """Tests for retry delays."""

    def test_exponential(self) -> None:
        policy = BackoffPolicy(BackoffType.EXPONENTIAL, 1.0)

        assert [policy.compute(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_fixed(self) -> None:
        policy = BackoffPolicy(BackoffType.FIXED, 5.0)

        assert [policy.compute(n) for n in (1, 2, 3)] == [5.0, 5.0, 5.0]


class TestSettingsDefaults:
    """Tests for defaults read from settings at construction time."""

    def test_attempts_and_backoff_follow_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "default_job_attempts", 5)
        monkeypatch.setattr(settings, "default_backoff_delay", 2.0)

        assert LaneConfig("background-low").attempts == 5
        assert BackoffPolicy().delay == 2.0
        job = Job(id="j", queue="background-low", type="send-email", payload={})
        assert job.max_attempts == 5
        assert job.backoff.compute(2) == 4.0

    def test_from_dict_falls_back_to_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        job = Job(id="j", queue="background-low", type="send-email", payload={})
        data = job.to_dict()
        del data["max_attempts"]
        monkeypatch.setattr(settings, "default_job_attempts", 7)

        assert Job.from_dict(data).max_attempts == 7


class TestJobSerialization:
    """Tests for Job serialization."""

    def test_from_dict_restores_job(self) -> None:
        """A serialized job deserializes to an equal job."""
        job = Job(
            id="j1",
            queue="background-low",
            type="export-user-data",
            payload={"request_id": "r1"},
            status=JobStatus.ACTIVE,
            attempts_made=1,
            dedup_key="export-r1",
        )

        assert Job.from_dict(job.to_dict()) == job


class TestJobQueue:
    """Tests for JobQueue."""

    @pytest.mark.asyncio
    async def test_add_job_uses_lane_defaults(self, queue: JobQueue) -> None:
        """Attempts and backoff default to the lane's policy."""
        job = await queue.add_job("export-user-data", {"request_id": "r1"})

        assert job is not None
        assert job.status is JobStatus.PENDING
        assert job.max_attempts == 2
        assert job.backoff == BackoffPolicy(BackoffType.FIXED, 5.0)
        assert await queue.get_job(job.id) == job

    @pytest.mark.asyncio
    async def test_add_job_overrides(self, queue: JobQueue, broker: InMemoryJobBroker) -> None:
        """Per-job options override lane defaults."""
        job = await queue.add_job(
            "export-user-data",
            {},
            JobOptions(attempts=5, backoff=BackoffPolicy(), job_id="custom", delay=30),
        )

        assert job is not None
        assert job.id == "custom"
        assert job.max_attempts == 5
        assert job.backoff.type is BackoffType.EXPONENTIAL
        assert job.scheduled_for == broker.now() + timedelta(seconds=30)

    @pytest.mark.asyncio
    async def test_unknown_job_type_rejected(self, queue: JobQueue) -> None:
        """Enqueueing a type with no registered handler is a configuration error."""
        with pytest.raises(ConfigurationError):
            await queue.add_job("send-sms", {})

    @pytest.mark.asyncio
    async def test_add_unique_job(self, queue: JobQueue, broker: InMemoryJobBroker) -> None:
        """Duplicates are skipped until the holder finishes."""
        first = await queue.add_unique_job("export-user-data", {"n": 1}, "export-r1")
        second = await queue.add_unique_job("export-user-data", {"n": 2}, "export-r1")

        assert first is not None
        assert second is None

        [claimed] = await broker.claim(queue.name, limit=1, lease=30)
        await broker.complete(claimed, {"ok": True}, retain=100)

        third = await queue.add_unique_job("export-user-data", {"n": 3}, "export-r1")
        assert third is not None
        assert third.id != first.id

    @pytest.mark.asyncio
    async def test_cron_option_registers_schedule(self, queue: JobQueue) -> None:
        """A cron option upserts a schedule by fixed id instead of adding a job."""
        result = await queue.add_job(
            "export-user-data",
            {"request_id": "nightly"},
            JobOptions(cron="0 2 * * *", job_id="nightly-export"),
        )

        assert result is None
        [schedule] = await queue.list_schedules()
        assert schedule.fixed_id == "nightly-export"
        assert schedule.attempts == 2
        assert (await queue.get_stats())["pending"] == 0

        assert await queue.remove_schedule("nightly-export") is True
        assert await queue.list_schedules() == []

    @pytest.mark.asyncio
    async def test_cron_requires_job_id(self, queue: JobQueue) -> None:
        with pytest.raises(ConfigurationError, match="job_id"):
            await queue.add_job("export-user-data", {}, JobOptions(cron="0 * * * *"))

    @pytest.mark.asyncio
    async def test_malformed_cron_rejected(self, queue: JobQueue) -> None:
        with pytest.raises(ConfigurationError):
            await queue.add_job(
                "export-user-data", {}, JobOptions(cron="0 25 * * *", job_id="bad")
            )
