"""Closed set of job types known to the task system."""

from __future__ import annotations

from enum import Enum

from arcana.errors import ConfigurationError


class JobType(str, Enum):
    # Background
    SEND_EMAIL = "send-email"
    SEND_BULK_EMAIL = "send-bulk-email"
    PROCESS_USER_REGISTRATION = "process-user-registration"
    PROCESS_PASSWORD_RESET = "process-password-reset"
    EXPORT_USER_DATA = "export-user-data"
    SEND_PUSH_NOTIFICATION = "send-push-notification"
    SEND_SMS = "send-sms"
    PROCESS_FILE_UPLOAD = "process-file-upload"
    GENERATE_THUMBNAIL = "generate-thumbnail"
    PROCESS_IMPORT = "process-import"
    SYNC_EXTERNAL_SERVICE = "sync-external-service"
    WEBHOOK_DELIVERY = "webhook-delivery"

    # Scheduled
    CLEANUP_EXPIRED_TOKENS = "cleanup-expired-tokens"
    CLEANUP_INACTIVE_USERS = "cleanup-inactive-users"
    GENERATE_REPORTS = "generate-reports"
    SYNC_DATA = "sync-data"


def parse_job_type(value: str | JobType) -> JobType:
    """Coerce a string to a JobType.

    Raises:
        ConfigurationError: If the value names no known job type
    """
    try:
        return JobType(value)
    except ValueError as e:
        raise ConfigurationError(f"Unknown job type: {value}") from e
