"""Job queue for one priority lane.

A JobQueue is the producer side of a lane: it validates and builds jobs,
then hands them to the broker. Consumers are JobWorker instances bound to
the same queue.

Features:
- Per-lane default attempts and backoff, overridable per job
- Deduplication by dedup key while a job is pending or active
- Caller-supplied job ids (insert skipped while the id is retained)
- Delayed jobs
- Recurring schedules upserted by fixed id

Example:
    queue = JobQueue(LaneConfig("background-default", concurrency=3), broker)
    queue.register_type("send-email")

    job = await queue.add_job("send-email", {"to": "a@example.com"})
    dup = await queue.add_unique_job("send-email", payload, dedup_key="welcome-1")
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from arcana.errors import ConfigurationError
from arcana.jobs.broker import JobBroker
from arcana.jobs.cron import CronExpression
from arcana.jobs.models import (
    Job,
    JobOptions,
    LaneConfig,
    RecurringSchedule,
    delay_from,
)

logger = logging.getLogger(__name__)


class JobQueue:
    """Producer handle for one lane backed by a JobBroker."""

    def __init__(self, lane: LaneConfig, broker: JobBroker) -> None:
        self.lane = lane
        self.broker = broker
        self._types: set[str] = set()

    @property
    def name(self) -> str:
        return self.lane.name

    @property
    def job_types(self) -> frozenset[str]:
        """Job types accepted by this queue."""
        return frozenset(self._types)

    def register_type(self, job_type: str) -> None:
        """Accept jobs of this type at enqueue."""
        self._types.add(job_type)

    def _check_type(self, job_type: str) -> None:
        if job_type not in self._types:
            raise ConfigurationError(
                f"No handler registered for job type '{job_type}' on queue '{self.name}'"
            )

    async def add_job(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        options: JobOptions | None = None,
    ) -> Job | None:
        """Submit a job to the queue.

        Args:
            job_type: Registered job type
            payload: JSON-compatible job data
            options: Per-job overrides

        Returns:
            The created job, or None if it was deduplicated or a cron
            option registered a schedule instead

        Raises:
            ConfigurationError: Unknown job type, malformed cron, or cron
                without a job_id
        """
        self._check_type(job_type)
        options = options or JobOptions()
        payload = dict(payload or {})

        if options.cron is not None:
            if not options.job_id:
                raise ConfigurationError("Recurring jobs require a job_id (the fixed id)")
            await self.upsert_recurring(
                RecurringSchedule(
                    job_type=job_type,
                    cron=options.cron,
                    fixed_id=options.job_id,
                    payload=payload,
                    attempts=options.attempts or self.lane.attempts,
                    backoff=options.backoff or self.lane.backoff,
                )
            )
            return None

        now = self.broker.now()
        job = Job(
            id=options.job_id or str(uuid4()),
            queue=self.name,
            type=job_type,
            payload=payload,
            max_attempts=options.attempts or self.lane.attempts,
            backoff=options.backoff or self.lane.backoff,
            dedup_key=options.dedup_key,
            scheduled_for=delay_from(now, options.delay),
            created_at=now,
            updated_at=now,
        )

        if not await self.broker.add(job):
            logger.info(
                f"Skipped duplicate job on {self.name}: "
                f"id={job.id} dedup_key={job.dedup_key}"
            )
            return None

        logger.debug(f"Job submitted: {job.id} ({job_type}) to {self.name}")
        return job

    async def add_unique_job(
        self,
        job_type: str,
        payload: dict[str, Any] | None,
        dedup_key: str,
        delay: float = 0.0,
    ) -> Job | None:
        """Submit a job unless one with the same dedup key is in flight."""
        return await self.add_job(
            job_type, payload, JobOptions(dedup_key=dedup_key, delay=delay)
        )

    async def upsert_recurring(self, schedule: RecurringSchedule) -> RecurringSchedule:
        """Register or refresh a recurring schedule by its fixed id."""
        self._check_type(schedule.job_type)
        CronExpression(schedule.cron)
        stored = await self.broker.upsert_schedule(self.name, schedule)
        logger.info(
            f"Recurring job upserted on {self.name}: {stored.fixed_id} "
            f"({stored.cron}, next run {stored.next_run})"
        )
        return stored

    async def get_job(self, job_id: str) -> Job | None:
        return await self.broker.get(self.name, job_id)

    async def get_stats(self) -> dict[str, int]:
        """Get pending/active/completed/failed counts."""
        return await self.broker.stats(self.name)

    async def list_schedules(self) -> list[RecurringSchedule]:
        return await self.broker.list_schedules(self.name)

    async def remove_schedule(self, fixed_id: str) -> bool:
        removed = await self.broker.remove_schedule(self.name, fixed_id)
        if removed:
            logger.info(f"Recurring job removed from {self.name}: {fixed_id}")
        return removed
