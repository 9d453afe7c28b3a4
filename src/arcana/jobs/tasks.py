"""Built-in job handlers.

Handlers are thin orchestration shells: domain work (mail delivery, user
storage, exports) belongs to collaborators outside the task system. Every
handler may be delivered more than once and must tolerate replays.

Scheduled maintenance:
- cleanup-expired-tokens
- cleanup-inactive-users
- generate-reports
- sync-data

Background:
- send-email
- process-user-registration (under a per-user lock)
- export-user-data (under a per-request lock)
- webhook-delivery (HTTP POST, raises on non-2xx so the job is retried)

Example:
    from arcana.jobs.tasks import build_background_handlers

    for job_type, handler in build_background_handlers(runtime).items():
        runtime.register_worker("background-high", job_type, handler)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

import httpx

from arcana.jobs.models import JobOptions
from arcana.jobs.types import JobType
from arcana.jobs.worker import JobHandler

if TYPE_CHECKING:
    from arcana.jobs.runtime import TaskRuntime

logger = logging.getLogger(__name__)

BACKGROUND_QUEUE_HIGH = "background-high"
BACKGROUND_QUEUE_DEFAULT = "background-default"
BACKGROUND_QUEUE_LOW = "background-low"

REGISTRATION_LOCK_TTL = 60.0
EXPORT_LOCK_TTL = 300.0
WEBHOOK_TIMEOUT = 10.0


# Scheduled maintenance


async def handle_cleanup_expired_tokens(payload: dict[str, Any]) -> dict[str, Any]:
    """Remove expired OAuth tokens.

    Payload:
        triggered_at: ISO timestamp of the run
        manual: True when triggered by an operator

    Returns:
        deleted_count: Number of tokens removed
    """
    logger.info(f"Starting expired tokens cleanup (triggered_at={payload.get('triggered_at')})")
    result = {"deleted_count": 0}
    logger.info(f"Cleaned up {result['deleted_count']} expired tokens")
    return result


async def handle_cleanup_inactive_users(payload: dict[str, Any]) -> dict[str, Any]:
    """Mark users inactive for longer than inactive_days (default 365)."""
    inactive_days = int(payload.get("inactive_days", 365))
    logger.info(
        f"Starting inactive users cleanup: inactive_days={inactive_days}, "
        f"triggered_at={payload.get('triggered_at')}"
    )
    return {"processed_count": 0, "inactive_days": inactive_days}


async def handle_generate_reports(payload: dict[str, Any]) -> dict[str, Any]:
    logger.info("Generating reports")
    return {"generated": True}


async def handle_sync_data(payload: dict[str, Any]) -> dict[str, Any]:
    logger.info("Syncing data")
    return {"synced": True}


SCHEDULED_HANDLERS: dict[JobType, JobHandler] = {
    JobType.CLEANUP_EXPIRED_TOKENS: handle_cleanup_expired_tokens,
    JobType.CLEANUP_INACTIVE_USERS: handle_cleanup_inactive_users,
    JobType.GENERATE_REPORTS: handle_generate_reports,
    JobType.SYNC_DATA: handle_sync_data,
}


# Background


async def handle_send_email(payload: dict[str, Any]) -> dict[str, Any]:
    """Send an email.

    Payload:
        to: Recipient address
        subject: Subject line
        template: Template name
        data: Template variables
    """
    logger.info(f"Sending email to {payload['to']} (subject={payload.get('subject')!r})")
    return {"sent": True}


def make_user_registration_handler(runtime: TaskRuntime) -> JobHandler:
    """Post-registration work for a new user, run under a per-user lock.

    The welcome email carries a deterministic job id, so a replayed
    registration job never queues a second email.
    """

    async def handle_user_registration(payload: dict[str, Any]) -> dict[str, Any]:
        user_id = payload["user_id"]
        logger.info(f"Processing registration for user {user_id}")

        async def register() -> dict[str, Any]:
            await runtime.enqueue(
                BACKGROUND_QUEUE_HIGH,
                JobType.SEND_EMAIL,
                {
                    "to": payload["email"],
                    "subject": "Welcome to Arcana Cloud",
                    "template": "welcome",
                    "data": {"username": payload.get("username")},
                },
                JobOptions(job_id=f"welcome-email-{user_id}"),
            )
            return {"processed": True}

        result = await runtime.lock_service.with_lock(
            f"user-registration:{user_id}", register, ttl=REGISTRATION_LOCK_TTL
        )
        return result or {"processed": False}

    return handle_user_registration


def make_export_handler(runtime: TaskRuntime) -> JobHandler:
    """Export a user's data, run under a per-request lock."""

    async def handle_export_user_data(payload: dict[str, Any]) -> dict[str, Any]:
        request_id = payload["request_id"]
        export_format = payload.get("format", "json")
        logger.info(f"Exporting data for user {payload['user_id']} (format={export_format})")

        async def export() -> dict[str, Any]:
            return {
                "file_url": f"https://storage.example.com/exports/{request_id}.{export_format}"
            }

        result = await runtime.lock_service.with_lock(
            f"export:{request_id}", export, ttl=EXPORT_LOCK_TTL
        )
        return result or {}

    return handle_export_user_data


def make_webhook_handler(
    client_factory: Callable[[], httpx.AsyncClient] | None = None,
) -> JobHandler:
    """Deliver a webhook with an HTTP POST.

    Non-2xx responses and transport errors raise, so the queue retries the
    delivery with backoff.
    """

    def default_client() -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT)

    factory = client_factory or default_client

    async def handle_webhook_delivery(payload: dict[str, Any]) -> dict[str, Any]:
        url = payload["url"]
        logger.info(f"Delivering webhook to {url}")

        async with factory() as client:
            response = await client.post(
                url,
                json=payload.get("payload") or {},
                headers=payload.get("headers") or {},
            )
            response.raise_for_status()

        return {"delivered": True, "status_code": response.status_code}

    return handle_webhook_delivery


def build_background_handlers(
    runtime: TaskRuntime,
    http_client_factory: Callable[[], httpx.AsyncClient] | None = None,
) -> dict[JobType, JobHandler]:
    """Handlers served by every background lane."""
    return {
        JobType.SEND_EMAIL: handle_send_email,
        JobType.PROCESS_USER_REGISTRATION: make_user_registration_handler(runtime),
        JobType.EXPORT_USER_DATA: make_export_handler(runtime),
        JobType.WEBHOOK_DELIVERY: make_webhook_handler(http_client_factory),
    }
