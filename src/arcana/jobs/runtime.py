"""Task runtime: the registry of lanes, workers and handlers for a process.

The runtime owns one broker and one lock service shared by every lane, and
exposes the process-facing surface:

    runtime = TaskRuntime(broker, lock_service)
    runtime.create_queue(LaneConfig("background-high", concurrency=5))
    runtime.register_worker("background-high", JobType.SEND_EMAIL, send_email)
    await runtime.start_worker("background-high")

    await runtime.enqueue("background-high", JobType.SEND_EMAIL, {...})
    await runtime.close(timeout=30)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from arcana.config import settings
from arcana.distributed.lock import InMemoryLockStore, LockService
from arcana.errors import ConfigurationError
from arcana.jobs.broker import JobBroker, create_broker
from arcana.jobs.models import Job, JobOptions, LaneConfig, RateLimit
from arcana.jobs.queue import JobQueue
from arcana.jobs.types import JobType, parse_job_type
from arcana.jobs.worker import JobHandler, JobWorker, WorkerConfig

logger = logging.getLogger(__name__)


def create_lock_service() -> LockService:
    """Build the lock service selected by settings.task_backend."""
    if settings.task_backend == "memory":
        return LockService(store=InMemoryLockStore())
    return LockService()


class TaskRuntime:
    """Queues and workers sharing one broker and lock service."""

    def __init__(
        self,
        broker: JobBroker | None = None,
        lock_service: LockService | None = None,
    ) -> None:
        self.broker = broker or create_broker()
        self.lock_service = lock_service or create_lock_service()
        self._queues: dict[str, JobQueue] = {}
        self._workers: dict[str, JobWorker] = {}

    @property
    def queues(self) -> dict[str, JobQueue]:
        return dict(self._queues)

    @property
    def workers(self) -> dict[str, JobWorker]:
        return dict(self._workers)

    def create_queue(self, lane: LaneConfig) -> JobQueue:
        """Create a lane, or return it if it already exists."""
        existing = self._queues.get(lane.name)
        if existing is not None:
            return existing

        queue = JobQueue(lane, self.broker)
        self._queues[lane.name] = queue
        logger.info(f"Queue created: {lane.name}")
        return queue

    def get_queue(self, name: str) -> JobQueue:
        """Look up a lane by name.

        Raises:
            ConfigurationError: If the lane was never created
        """
        try:
            return self._queues[name]
        except KeyError:
            raise ConfigurationError(f"Unknown queue: {name}") from None

    def _worker_for(self, queue: JobQueue) -> JobWorker:
        worker = self._workers.get(queue.name)
        if worker is None:
            worker = JobWorker(queue)
            self._workers[queue.name] = worker
        return worker

    def register_worker(self, queue: str, job_type: JobType | str, handler: JobHandler) -> None:
        """Bind a handler for a job type on a lane.

        Raises:
            ConfigurationError: Unknown queue or job type, or a handler is
                already registered for the type on that lane
        """
        parsed = parse_job_type(job_type)
        self._worker_for(self.get_queue(queue)).register_handler(parsed.value, handler)

    def has_handler(self, queue: str, job_type: JobType | str) -> bool:
        q = self._queues.get(queue)
        return q is not None and parse_job_type(job_type).value in q.job_types

    async def start_worker(
        self,
        queue: str,
        concurrency: int | None = None,
        limiter: RateLimit | None = None,
    ) -> JobWorker:
        """Start consuming a lane.

        concurrency and limiter default to the lane's configuration.
        """
        worker = self._worker_for(self.get_queue(queue))
        lane = worker.queue.lane
        worker.config = WorkerConfig(
            concurrency=concurrency or lane.concurrency,
            limiter=limiter or lane.limiter,
        )
        await worker.start()
        return worker

    async def enqueue(
        self,
        queue: str,
        job_type: JobType | str,
        payload: dict[str, Any] | None = None,
        options: JobOptions | None = None,
    ) -> Job | None:
        """Submit a job to a lane.

        Returns:
            The job, or None on a dedup skip or a cron registration

        Raises:
            ConfigurationError: Unknown queue or job type
        """
        parsed = parse_job_type(job_type)
        return await self.get_queue(queue).add_job(parsed.value, payload, options)

    add_job = enqueue

    async def add_unique_job(
        self,
        queue: str,
        job_type: JobType | str,
        payload: dict[str, Any] | None,
        dedup_key: str,
        delay: float = 0.0,
    ) -> Job | None:
        parsed = parse_job_type(job_type)
        return await self.get_queue(queue).add_unique_job(parsed.value, payload, dedup_key, delay)

    async def get_job(self, queue: str, job_id: str) -> Job | None:
        return await self.get_queue(queue).get_job(job_id)

    async def get_queue_stats(self, queue: str) -> dict[str, int]:
        """Pending/active/completed/failed counts for a lane."""
        return await self.get_queue(queue).get_stats()

    async def close(self, timeout: float | None = None) -> None:
        """Drain every worker concurrently, then release the broker.

        Workers share one drain budget: shutdown takes at most `timeout`
        seconds however many lanes are running.
        """
        workers = list(self._workers.items())
        results = await asyncio.gather(
            *(worker.close(timeout=timeout) for _, worker in workers),
            return_exceptions=True,
        )
        for (name, _), result in zip(workers, results):
            if isinstance(result, Exception):
                logger.error(f"Error closing worker {name}: {result}", exc_info=result)

        self._workers.clear()
        self._queues.clear()
        await self.broker.close()
        logger.info("Task runtime closed")
