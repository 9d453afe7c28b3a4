"""Tests for the task runtime registry."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock

import pytest

from arcana.config import settings
from arcana.distributed.lock import InMemoryLockStore
from arcana.errors import ConfigurationError
from arcana.jobs.models import LaneConfig, RateLimit
from arcana.jobs.runtime import TaskRuntime, create_lock_service
from arcana.jobs.types import JobType


class TestTaskRuntime:
    """Tests for TaskRuntime."""

    def test_create_queue_is_idempotent(self, runtime: TaskRuntime) -> None:
        first = runtime.create_queue(LaneConfig("background-high", concurrency=5))
        second = runtime.create_queue(LaneConfig("background-high", concurrency=1))

        assert first is second
        assert first.lane.concurrency == 5

    def test_unknown_queue(self, runtime: TaskRuntime) -> None:
        with pytest.raises(ConfigurationError, match="Unknown queue"):
            runtime.get_queue("background-urgent")

    def test_register_worker_validates_type(self, runtime: TaskRuntime) -> None:
        """Only JobType members can be registered."""
        runtime.create_queue(LaneConfig("background-high"))
        handler = AsyncMock(return_value=None)

        runtime.register_worker("background-high", JobType.SEND_EMAIL, handler)

        assert runtime.has_handler("background-high", "send-email")
        assert not runtime.has_handler("background-low", "send-email")
        with pytest.raises(ConfigurationError):
            runtime.register_worker("background-high", "reticulate-splines", handler)
        with pytest.raises(ConfigurationError):
            runtime.register_worker("background-high", JobType.SEND_EMAIL, handler)

    @pytest.mark.asyncio
    async def test_enqueue_and_stats(self, runtime: TaskRuntime) -> None:
        runtime.create_queue(LaneConfig("background-high"))
        runtime.register_worker("background-high", JobType.SEND_EMAIL, AsyncMock())

        job = await runtime.enqueue("background-high", JobType.SEND_EMAIL, {"to": "a@b.c"})

        assert job is not None
        assert await runtime.get_job("background-high", job.id) == job
        assert (await runtime.get_queue_stats("background-high"))["pending"] == 1

    @pytest.mark.asyncio
    async def test_start_worker_overrides(self, runtime: TaskRuntime) -> None:
        """start_worker takes lane defaults unless told otherwise."""
        runtime.create_queue(LaneConfig("background-low", concurrency=1))
        limiter = RateLimit(max=5, duration=1.0)

        worker = await runtime.start_worker("background-low", concurrency=4, limiter=limiter)
        try:
            assert worker.is_running
            assert worker.config.concurrency == 4
            assert worker.config.limiter is limiter
        finally:
            await runtime.close(timeout=1.0)

        assert not worker.is_running
        assert runtime.queues == {}
        assert runtime.workers == {}

    @pytest.mark.asyncio
    async def test_close_drains_workers_concurrently(self, runtime: TaskRuntime) -> None:
        """Busy lanes share one drain timeout instead of waiting in turn."""
        release = asyncio.Event()
        started: list[str] = []

        async def handler(payload: dict[str, Any]) -> None:
            started.append(payload["lane"])
            await release.wait()

        lanes = ("background-high", "background-low")
        for lane in lanes:
            runtime.create_queue(LaneConfig(lane))
            runtime.register_worker(lane, JobType.SEND_EMAIL, handler)
            await runtime.enqueue(lane, JobType.SEND_EMAIL, {"lane": lane})
            await runtime.start_worker(lane)

        for _ in range(200):
            if len(started) == len(lanes):
                break
            await asyncio.sleep(0.01)
        assert sorted(started) == sorted(lanes)

        loop = asyncio.get_running_loop()
        began = loop.time()
        await runtime.close(timeout=0.2)
        elapsed = loop.time() - began

        release.set()
        await asyncio.sleep(0)
        assert elapsed < 0.35
        assert runtime.workers == {}


class TestCreateLockService:
    def test_memory_backend(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "task_backend", "memory")

        assert isinstance(create_lock_service().store, InMemoryLockStore)
