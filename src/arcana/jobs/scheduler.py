"""Cron-like job scheduler bound to leader election.

Every instance runs a worker for the scheduled-tasks queue, but only the
elected leader registers the recurring schedules. Registration is an upsert
by fixed id, so a new leader re-registering after failover refreshes the
existing schedules instead of duplicating them. Losing leadership does not
deregister anything: schedules live in the broker, and workers on every
instance keep promoting and processing them.

Example:
    scheduler = Scheduler(runtime)
    await scheduler.initialize()

    # Run one cleanup now, regardless of leadership
    await scheduler.trigger_scheduled_job(JobType.CLEANUP_EXPIRED_TOKENS)

    await scheduler.shutdown(timeout=30)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from arcana.config import settings
from arcana.distributed.leader import LeaderElection
from arcana.errors import ConfigurationError, TransientStoreError
from arcana.jobs.cron import SCHEDULE_PRESETS, CronExpression
from arcana.jobs.models import Job, JobOptions, LaneConfig, to_ms
from arcana.jobs.queue import JobQueue
from arcana.jobs.runtime import TaskRuntime
from arcana.jobs.tasks import SCHEDULED_HANDLERS
from arcana.jobs.types import JobType, parse_job_type
from arcana.jobs.worker import JobHandler

logger = logging.getLogger(__name__)

SCHEDULED_QUEUE = "scheduled-tasks"


@dataclass(frozen=True)
class ScheduledJob:
    """A recurring job definition."""

    job_type: JobType
    cron: str
    fixed_id: str
    payload: dict[str, Any] = field(default_factory=dict)


SCHEDULED_JOBS: tuple[ScheduledJob, ...] = (
    # Every hour
    ScheduledJob(JobType.CLEANUP_EXPIRED_TOKENS, "0 * * * *", "recurring-cleanup-tokens"),
    # Daily at 2 AM
    ScheduledJob(
        JobType.CLEANUP_INACTIVE_USERS,
        "0 2 * * *",
        "recurring-cleanup-users",
        {"inactive_days": 365},
    ),
)


class Scheduler:
    """Registers recurring jobs once fleet-wide and runs scheduled work.

    Implements LeadershipListener for its embedded election.

    Args:
        runtime: Task runtime providing the broker and lock service
        schedules: Recurring job table
        handlers: Handlers for the scheduled-tasks queue
        concurrency: Worker concurrency for the scheduled-tasks queue
        lease_ttl: Election lock TTL in seconds
        poll_interval: Election poll interval in seconds
    """

    def __init__(
        self,
        runtime: TaskRuntime,
        schedules: tuple[ScheduledJob, ...] = SCHEDULED_JOBS,
        handlers: dict[JobType, JobHandler] | None = None,
        concurrency: int | None = None,
        lease_ttl: float | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self.runtime = runtime
        self.schedules = schedules
        self.handlers = handlers if handlers is not None else dict(SCHEDULED_HANDLERS)
        self.concurrency = concurrency or settings.scheduler_concurrency
        self.election = LeaderElection(
            SCHEDULED_QUEUE,
            lock_service=runtime.lock_service,
            listener=self,
            lease_ttl=lease_ttl or settings.election_ttl,
            poll_interval=poll_interval or settings.election_interval,
        )
        self._queue: JobQueue | None = None

    @property
    def is_leader(self) -> bool:
        return self.election.is_leader

    @property
    def queue(self) -> JobQueue:
        if self._queue is None:
            raise ConfigurationError("Scheduler is not initialized")
        return self._queue

    def validate(self) -> None:
        """Check every schedule before anything starts.

        Raises:
            ConfigurationError: Malformed cron, unknown job type, or no
                handler for a scheduled type
        """
        for schedule in self.schedules:
            CronExpression(schedule.cron)
            job_type = parse_job_type(schedule.job_type)
            if job_type not in self.handlers:
                raise ConfigurationError(f"No handler for scheduled job type: {job_type.value}")

    def prepare(self) -> JobQueue:
        """Validate schedules, create the queue and register its handlers.

        Enough to enqueue scheduled work; nothing is started.
        """
        if self._queue is not None:
            return self._queue

        self.validate()
        queue = self.runtime.create_queue(LaneConfig(SCHEDULED_QUEUE, concurrency=self.concurrency))
        for job_type, handler in self.handlers.items():
            self.runtime.register_worker(SCHEDULED_QUEUE, job_type, handler)
        self._queue = queue
        return queue

    async def initialize(self) -> None:
        """Create the scheduled-tasks queue and worker, then join the election."""
        self.prepare()
        await self.runtime.start_worker(SCHEDULED_QUEUE, concurrency=self.concurrency)

        await self.election.start()
        logger.info("Scheduled tasks initialized")

    async def on_become_leader(self) -> None:
        logger.info("This instance is now the scheduler leader")
        await self.register_recurring_jobs()

    async def on_lose_leadership(self) -> None:
        logger.warning("This instance lost scheduler leadership")

    async def register_recurring_jobs(self) -> None:
        """Upsert every recurring job by its fixed id."""
        for schedule in self.schedules:
            try:
                await self.queue.add_job(
                    schedule.job_type.value,
                    schedule.payload,
                    JobOptions(cron=schedule.cron, job_id=schedule.fixed_id),
                )
            except TransientStoreError as e:
                logger.warning(f"Could not register recurring job {schedule.fixed_id}: {e}")

        logger.info("Recurring jobs scheduled")

    async def trigger_scheduled_job(
        self,
        job_type: JobType | str,
        payload: dict[str, Any] | None = None,
    ) -> Job | None:
        """Enqueue one immediate run of a scheduled job type.

        Works on any instance, leader or not.

        Returns:
            The job, or None if an identical manual id was already taken
            within the same millisecond
        """
        parsed = parse_job_type(job_type)
        now = self.runtime.broker.now()
        data = {
            **(payload or {}),
            "triggered_at": now.isoformat(),
            "manual": True,
        }
        job = await self.queue.add_job(
            parsed.value,
            data,
            JobOptions(job_id=f"manual-{parsed.value}-{to_ms(now)}"),
        )
        if job is not None:
            logger.info(f"Manually triggered scheduled job: {job.id}")
        return job

    async def shutdown(self, timeout: float | None = None) -> None:
        """Leave the election, then drain the scheduled-tasks worker."""
        await self.election.stop(drain_timeout=timeout)

        worker = self.runtime.workers.get(SCHEDULED_QUEUE)
        if worker is not None:
            await worker.close(timeout=timeout)

        logger.info("Scheduled tasks shutdown")


__all__ = [
    "SCHEDULED_QUEUE",
    "SCHEDULED_JOBS",
    "SCHEDULE_PRESETS",
    "CronExpression",
    "ScheduledJob",
    "Scheduler",
]
