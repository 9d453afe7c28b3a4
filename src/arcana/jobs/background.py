"""Background lanes and their public enqueue helpers.

Three priority lanes, each with its own worker pool:
- background-high: emails and user registration (concurrency 5)
- background-default: webhooks (concurrency 3)
- background-low: exports (concurrency 1, 2 attempts, fixed 5 s backoff,
  at most 10 jobs per minute fleet-wide)
"""

from __future__ import annotations

import logging
from typing import Any, Callable

import httpx

from arcana.jobs.models import BackoffPolicy, BackoffType, Job, LaneConfig, RateLimit
from arcana.jobs.runtime import TaskRuntime
from arcana.jobs.tasks import (
    BACKGROUND_QUEUE_DEFAULT,
    BACKGROUND_QUEUE_HIGH,
    BACKGROUND_QUEUE_LOW,
    build_background_handlers,
)
from arcana.jobs.types import JobType

logger = logging.getLogger(__name__)

BACKGROUND_LANES = (
    LaneConfig(BACKGROUND_QUEUE_HIGH, concurrency=5),
    LaneConfig(BACKGROUND_QUEUE_DEFAULT, concurrency=3),
    LaneConfig(
        BACKGROUND_QUEUE_LOW,
        concurrency=1,
        attempts=2,
        backoff=BackoffPolicy(BackoffType.FIXED, 5.0),
        limiter=RateLimit(max=10, duration=60.0),
    ),
)


async def initialize_background_tasks(
    runtime: TaskRuntime,
    http_client_factory: Callable[[], httpx.AsyncClient] | None = None,
) -> None:
    """Create the background lanes, register their handlers and start workers."""
    for lane in BACKGROUND_LANES:
        runtime.create_queue(lane)
        for job_type, handler in build_background_handlers(runtime, http_client_factory).items():
            runtime.register_worker(lane.name, job_type, handler)

    for lane in BACKGROUND_LANES:
        await runtime.start_worker(lane.name)

    logger.info("Background tasks initialized")


async def queue_email(
    runtime: TaskRuntime,
    to: str,
    subject: str,
    template: str,
    data: dict[str, Any] | None = None,
) -> Job | None:
    """Queue an email to be sent."""
    return await runtime.enqueue(
        BACKGROUND_QUEUE_HIGH,
        JobType.SEND_EMAIL,
        {"to": to, "subject": subject, "template": template, "data": data or {}},
    )


async def queue_user_registration(
    runtime: TaskRuntime, user_id: int, email: str, username: str
) -> Job | None:
    """Queue post-registration processing, once per user while in flight."""
    return await runtime.add_unique_job(
        BACKGROUND_QUEUE_HIGH,
        JobType.PROCESS_USER_REGISTRATION,
        {"user_id": user_id, "email": email, "username": username},
        dedup_key=f"user-registration-{user_id}",
    )


async def queue_user_data_export(
    runtime: TaskRuntime, user_id: int, export_format: str, request_id: str
) -> Job | None:
    """Queue a data export, once per request while in flight."""
    return await runtime.add_unique_job(
        BACKGROUND_QUEUE_LOW,
        JobType.EXPORT_USER_DATA,
        {"user_id": user_id, "format": export_format, "request_id": request_id},
        dedup_key=f"export-{request_id}",
    )


async def queue_webhook(
    runtime: TaskRuntime,
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str] | None = None,
) -> Job | None:
    """Queue a webhook delivery."""
    return await runtime.enqueue(
        BACKGROUND_QUEUE_DEFAULT,
        JobType.WEBHOOK_DELIVERY,
        {"url": url, "payload": payload, "headers": headers or {}},
    )
