"""Tests for background lanes, enqueue helpers and built-in handlers."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from arcana.config import settings
from arcana.errors import ConfigurationError
from arcana.jobs.background import (
    BACKGROUND_LANES,
    initialize_background_tasks,
    queue_email,
    queue_user_data_export,
    queue_user_registration,
    queue_webhook,
)
from arcana.jobs.models import BackoffType, JobStatus
from arcana.jobs.runtime import TaskRuntime
from arcana.jobs.tasks import (
    BACKGROUND_QUEUE_HIGH,
    BACKGROUND_QUEUE_LOW,
    build_background_handlers,
    handle_cleanup_inactive_users,
    make_export_handler,
    make_user_registration_handler,
    make_webhook_handler,
)
from arcana.jobs.testing import assert_idempotent, replay_twice
from arcana.jobs.types import JobType


def mock_client_factory(status_code: int, seen: list[httpx.Request] | None = None):
    def respond(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status_code, json={"ok": status_code < 400})

    transport = httpx.MockTransport(respond)
    return lambda: httpx.AsyncClient(transport=transport)


@pytest.fixture
def lanes(runtime: TaskRuntime) -> TaskRuntime:
    """Runtime with every background lane wired but no worker running."""
    handlers = build_background_handlers(runtime, mock_client_factory(200))
    for lane in BACKGROUND_LANES:
        runtime.create_queue(lane)
        for job_type, handler in handlers.items():
            runtime.register_worker(lane.name, job_type, handler)
    return runtime


class TestBackgroundLanes:
    """Tests for lane configuration."""

    def test_lane_policies(self) -> None:
        high, default, low = BACKGROUND_LANES

        assert (high.name, high.concurrency) == ("background-high", 5)
        assert (default.name, default.concurrency) == ("background-default", 3)
        assert (low.name, low.concurrency, low.attempts) == ("background-low", 1, 2)
        assert low.backoff.type is BackoffType.FIXED
        assert low.backoff.delay == 5.0
        assert low.limiter is not None
        assert (low.limiter.max, low.limiter.duration) == (10, 60.0)

    @pytest.mark.asyncio
    async def test_initialize_processes_jobs(
        self, runtime: TaskRuntime, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Initialized lanes pick up and complete queued work."""
        monkeypatch.setattr(settings, "poll_interval", 0.01)
        await initialize_background_tasks(runtime, mock_client_factory(200))
        try:
            assert set(runtime.workers) == {lane.name for lane in BACKGROUND_LANES}
            job = await queue_email(runtime, "a@example.com", "Hi", "hello")
            assert job is not None

            for _ in range(200):
                stored = await runtime.broker.get(BACKGROUND_QUEUE_HIGH, job.id)
                if stored is not None and stored.status is JobStatus.COMPLETED:
                    break
                await asyncio.sleep(0.01)
            else:
                pytest.fail("email job never completed")

            assert stored.result == {"sent": True}
        finally:
            await runtime.close(timeout=1.0)


class TestEnqueueHelpers:
    """Tests for the public enqueue helpers."""

    @pytest.mark.asyncio
    async def test_queue_email(self, lanes: TaskRuntime) -> None:
        job = await queue_email(lanes, "a@example.com", "Hi", "hello", {"name": "Ada"})

        assert job is not None
        assert job.queue == "background-high"
        assert job.type == "send-email"
        assert job.payload == {
            "to": "a@example.com",
            "subject": "Hi",
            "template": "hello",
            "data": {"name": "Ada"},
        }

    @pytest.mark.asyncio
    async def test_registration_is_deduplicated(self, lanes: TaskRuntime) -> None:
        """A second registration for the same user is skipped while in flight."""
        first = await queue_user_registration(lanes, 7, "u@example.com", "ada")
        second = await queue_user_registration(lanes, 7, "u@example.com", "ada")
        other = await queue_user_registration(lanes, 8, "v@example.com", "bob")

        assert first is not None
        assert first.dedup_key == "user-registration-7"
        assert second is None
        assert other is not None

    @pytest.mark.asyncio
    async def test_export_goes_to_low_lane(self, lanes: TaskRuntime) -> None:
        job = await queue_user_data_export(lanes, 7, "csv", "req-1")
        duplicate = await queue_user_data_export(lanes, 7, "csv", "req-1")

        assert job is not None
        assert job.queue == BACKGROUND_QUEUE_LOW
        assert job.max_attempts == 2
        assert duplicate is None

    @pytest.mark.asyncio
    async def test_queue_webhook(self, lanes: TaskRuntime) -> None:
        job = await queue_webhook(lanes, "https://hooks.example.com/x", {"event": "created"})

        assert job is not None
        assert job.queue == "background-default"
        assert job.payload["headers"] == {}

    @pytest.mark.asyncio
    async def test_unknown_queue_or_type(self, lanes: TaskRuntime) -> None:
        with pytest.raises(ConfigurationError):
            await lanes.enqueue("background-urgent", JobType.SEND_EMAIL, {})
        with pytest.raises(ConfigurationError):
            await lanes.enqueue(BACKGROUND_QUEUE_HIGH, "send-sms", {})


class TestHandlers:
    """Tests for built-in handlers."""

    @pytest.mark.asyncio
    async def test_registration_queues_welcome_email(self, lanes: TaskRuntime) -> None:
        handler = make_user_registration_handler(lanes)

        result = await handler({"user_id": 7, "email": "u@example.com", "username": "ada"})

        assert result == {"processed": True}
        email = await lanes.broker.get(BACKGROUND_QUEUE_HIGH, "welcome-email-7")
        assert email is not None
        assert email.payload["to"] == "u@example.com"
        assert email.payload["template"] == "welcome"

    @pytest.mark.asyncio
    async def test_registration_replay_is_idempotent(self, lanes: TaskRuntime) -> None:
        """Replaying a registration never queues a second welcome email."""
        handler = make_user_registration_handler(lanes)

        async def snapshot() -> dict[str, int]:
            return await lanes.broker.stats(BACKGROUND_QUEUE_HIGH)

        await assert_idempotent(
            handler, {"user_id": 7, "email": "u@example.com", "username": "ada"}, snapshot
        )

    @pytest.mark.asyncio
    async def test_registration_skips_when_locked(self, lanes: TaskRuntime) -> None:
        """Another instance holding the user's lock means nothing happens here."""
        token = await lanes.lock_service.acquire("user-registration:7")
        assert token is not None
        handler = make_user_registration_handler(lanes)

        result = await handler({"user_id": 7, "email": "u@example.com", "username": "ada"})

        assert result == {"processed": False}
        assert await lanes.broker.get(BACKGROUND_QUEUE_HIGH, "welcome-email-7") is None

    @pytest.mark.asyncio
    async def test_export_returns_file_url(self, lanes: TaskRuntime) -> None:
        handler = make_export_handler(lanes)

        first, second = await replay_twice(
            handler, {"user_id": 7, "format": "csv", "request_id": "req-1"}
        )

        assert first == {"file_url": "https://storage.example.com/exports/req-1.csv"}
        assert second == first

    @pytest.mark.asyncio
    async def test_webhook_delivered(self) -> None:
        seen: list[httpx.Request] = []
        handler = make_webhook_handler(mock_client_factory(202, seen))

        result = await handler(
            {
                "url": "https://hooks.example.com/x",
                "payload": {"event": "created"},
                "headers": {"X-Signature": "abc"},
            }
        )

        assert result == {"delivered": True, "status_code": 202}
        [request] = seen
        assert request.method == "POST"
        assert request.headers["X-Signature"] == "abc"
        assert json.loads(request.content) == {"event": "created"}

    @pytest.mark.asyncio
    async def test_webhook_error_status_raises(self) -> None:
        """A non-2xx response raises so the job is retried."""
        handler = make_webhook_handler(mock_client_factory(500))

        with pytest.raises(httpx.HTTPStatusError):
            await handler({"url": "https://hooks.example.com/x", "payload": {}})

    @pytest.mark.asyncio
    async def test_cleanup_inactive_users_default(self) -> None:
        assert await handle_cleanup_inactive_users({}) == {
            "processed_count": 0,
            "inactive_days": 365,
        }
