"""Background job processing for Arcana.

Provides a distributed job queue with:
- Redis-backed or in-memory brokers
- Priority lanes with bounded-concurrency workers
- Retry with fixed or exponential backoff
- Deduplication and fleet-wide rate limiting
- At-least-once delivery with stalled-job redelivery
- Cron schedules registered by an elected leader

Example:
    from arcana.jobs import initialize_tasks, get_runtime, queue_email

    if await initialize_tasks():
        await queue_email(get_runtime(), "a@example.com", "Hi", "hello")
"""

from arcana.jobs.background import (
    BACKGROUND_LANES,
    initialize_background_tasks,
    queue_email,
    queue_user_data_export,
    queue_user_registration,
    queue_webhook,
)
from arcana.jobs.broker import InMemoryJobBroker, JobBroker, RedisJobBroker, create_broker
from arcana.jobs.cron import SCHEDULE_PRESETS, CronExpression
from arcana.jobs.lifecycle import get_runtime, get_scheduler, initialize_tasks, shutdown_tasks
from arcana.jobs.models import (
    BackoffPolicy,
    BackoffType,
    Job,
    JobOptions,
    JobStatus,
    LaneConfig,
    RateLimit,
    RecurringSchedule,
)
from arcana.jobs.queue import JobQueue
from arcana.jobs.runtime import TaskRuntime, create_lock_service
from arcana.jobs.scheduler import SCHEDULED_JOBS, SCHEDULED_QUEUE, ScheduledJob, Scheduler
from arcana.jobs.tasks import (
    BACKGROUND_QUEUE_DEFAULT,
    BACKGROUND_QUEUE_HIGH,
    BACKGROUND_QUEUE_LOW,
)
from arcana.jobs.types import JobType
from arcana.jobs.worker import JobHandler, JobWorker, WorkerConfig

__all__ = [
    # Models
    "Job",
    "JobStatus",
    "JobOptions",
    "BackoffPolicy",
    "BackoffType",
    "RateLimit",
    "LaneConfig",
    "RecurringSchedule",
    "JobType",
    # Brokers
    "JobBroker",
    "InMemoryJobBroker",
    "RedisJobBroker",
    "create_broker",
    # Queue and worker
    "JobQueue",
    "JobWorker",
    "WorkerConfig",
    "JobHandler",
    # Runtime
    "TaskRuntime",
    "create_lock_service",
    "initialize_tasks",
    "shutdown_tasks",
    "get_runtime",
    "get_scheduler",
    # Scheduler
    "Scheduler",
    "ScheduledJob",
    "SCHEDULED_QUEUE",
    "SCHEDULED_JOBS",
    "CronExpression",
    "SCHEDULE_PRESETS",
    # Background
    "BACKGROUND_LANES",
    "BACKGROUND_QUEUE_HIGH",
    "BACKGROUND_QUEUE_DEFAULT",
    "BACKGROUND_QUEUE_LOW",
    "initialize_background_tasks",
    "queue_email",
    "queue_user_registration",
    "queue_user_data_export",
    "queue_webhook",
]
