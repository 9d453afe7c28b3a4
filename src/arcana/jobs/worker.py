"""Background worker for processing queued jobs.

Provides a worker that:
- Claims due jobs up to its free concurrency slots
- Extends each job's lease while its handler runs
- Handles retries with the job's backoff policy
- Enforces the lane's fleet-wide rate limit
- Redelivers stalled jobs and promotes due recurring schedules
- Drains in-flight jobs on close without cancelling them

Example:
    worker = JobWorker(queue, WorkerConfig(concurrency=3))
    worker.register_handler("send-email", send_email)
    await worker.start()
    ...
    await worker.close(timeout=30)
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any, Awaitable, Callable

from arcana.config import settings
from arcana.errors import ConfigurationError, JobHandlerError, TransientStoreError
from arcana.jobs.models import Job, RateLimit
from arcana.jobs.queue import JobQueue
from arcana.observability.logging import LogContext
from arcana.observability.metrics import (
    record_job_duration,
    record_job_outcome,
    track_in_progress,
)

logger = logging.getLogger(__name__)

# Type alias for job handlers: payload in, JSON-compatible result out
JobHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any] | None]]


@dataclass
class WorkerConfig:
    """Worker configuration.

    Attributes:
        concurrency: Max jobs processed in parallel by this worker
        limiter: Fleet-wide admission cap for the lane
        poll_interval: Seconds between claim attempts when idle
        lock_duration: Lease length in seconds; extended every half lease
        stalled_check_interval: Seconds between stalled-job sweeps
    """

    concurrency: int = 1
    limiter: RateLimit | None = None
    poll_interval: float = field(default_factory=lambda: settings.poll_interval)
    lock_duration: float = field(default_factory=lambda: settings.job_lock_duration)
    stalled_check_interval: float = field(default_factory=lambda: settings.stalled_check_interval)


class JobWorker:
    """Bounded-concurrency consumer for one queue.

    Handler failures never escape the worker: each one is recorded on the
    job, which is retried or failed. Store errors are logged and the loop
    tries again on its next poll.
    """

    def __init__(
        self,
        queue: JobQueue,
        config: WorkerConfig | None = None,
        handlers: dict[str, JobHandler] | None = None,
    ) -> None:
        self.queue = queue
        self.config = config or WorkerConfig(
            concurrency=queue.lane.concurrency, limiter=queue.lane.limiter
        )
        self._handlers: dict[str, JobHandler] = {}
        self._running = False
        self._loop_task: asyncio.Task[None] | None = None
        self._in_flight: set[asyncio.Task[None]] = set()
        self._wake = asyncio.Event()
        self._paused_until = 0.0
        self._next_stalled_check = 0.0

        for job_type, handler in (handlers or {}).items():
            self.register_handler(job_type, handler)

    @property
    def name(self) -> str:
        return self.queue.name

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def register_handler(self, job_type: str, handler: JobHandler) -> None:
        """Register a handler for a job type.

        Raises:
            ConfigurationError: If the type already has a handler
        """
        if job_type in self._handlers:
            raise ConfigurationError(
                f"Handler for job type '{job_type}' already registered on '{self.name}'"
            )
        self._handlers[job_type] = handler
        self.queue.register_type(job_type)
        logger.info(f"Registered handler for {self.name}: {job_type}")

    async def start(self) -> None:
        """Start the claim loop on a background task."""
        if self._running:
            return

        self._running = True
        self._wake.clear()
        self._loop_task = asyncio.create_task(self._run())
        logger.info(f"Worker started: {self.name} (concurrency {self.config.concurrency})")

    async def close(self, timeout: float | None = None) -> None:
        """Stop claiming and wait for in-flight jobs.

        In-flight handlers are never cancelled. Jobs still running after
        `timeout` seconds are logged; their leases lapse and the broker
        redelivers them.
        """
        logger.info(f"Stopping worker: {self.name}")
        self._running = False
        self._wake.set()

        task, self._loop_task = self._loop_task, None
        if task is not None:
            await task

        if self._in_flight:
            _, pending = await asyncio.wait(set(self._in_flight), timeout=timeout)
            if pending:
                logger.warning(
                    f"Worker {self.name} closed with {len(pending)} job(s) still running; "
                    "they will be redelivered after lease expiry"
                )

        logger.info(f"Worker stopped: {self.name}")

    async def _run(self) -> None:
        """Main loop: maintain the queue, then fill free slots."""
        while self._running:
            try:
                await self._maintain()
                for job in await self._claim_batch():
                    self._spawn(job)
            except TransientStoreError as e:
                logger.warning(f"Worker {self.name} store error: {e}")
            except Exception:
                logger.exception(f"Unexpected error in worker loop for {self.name}")

            if not self._running:
                break

            self._wake.clear()
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self.config.poll_interval)

    async def _maintain(self) -> None:
        """Promote due schedules and periodically redeliver stalled jobs."""
        broker = self.queue.broker
        promoted = await broker.promote_schedules(self.name)
        for job in promoted:
            logger.info(f"Recurring job due on {self.name}: {job.id}")

        now = time.monotonic()
        if now >= self._next_stalled_check:
            self._next_stalled_check = now + self.config.stalled_check_interval
            for job_id in await broker.recover_stalled(self.name):
                logger.warning(f"Stalled job returned to pending on {self.name}: {job_id}")
                record_job_outcome(self.name, "stalled")

    async def _claim_batch(self) -> list[Job]:
        """Claim due jobs for the free slots, subject to the rate limit."""
        free = self.config.concurrency - len(self._in_flight)
        if free <= 0 or time.monotonic() < self._paused_until:
            return []

        broker = self.queue.broker
        claimed = await broker.claim(self.name, free, self.config.lock_duration)
        limiter = self.config.limiter
        if limiter is None:
            return claimed

        admitted: list[Job] = []
        for index, job in enumerate(claimed):
            wait = await broker.consume_rate(self.name, limiter)
            if wait <= 0:
                admitted.append(job)
                continue

            # Window exhausted: hand back the rest without charging an attempt
            self._paused_until = time.monotonic() + wait
            for deferred in claimed[index:]:
                await broker.retry(deferred, wait, deferred.error)
                record_job_outcome(self.name, "rate_limited")
            logger.info(f"Rate limit reached on {self.name}, pausing {wait:.2f}s")
            break

        return admitted

    def _spawn(self, job: Job) -> None:
        task = asyncio.create_task(self._process_job(job))
        self._in_flight.add(task)
        task.add_done_callback(self._on_job_done)

    def _on_job_done(self, task: asyncio.Task[None]) -> None:
        self._in_flight.discard(task)
        self._wake.set()

    async def _heartbeat(self, job: Job) -> None:
        """Extend the job's lease every half lease until cancelled."""
        interval = self.config.lock_duration / 2
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.queue.broker.extend_lease(job, self.config.lock_duration):
                    logger.warning(f"Lease lost for job {job.id} on {self.name}")
                    return
            except TransientStoreError as e:
                logger.warning(f"Lease extension failed for job {job.id}: {e}")

    async def _process_job(self, job: Job) -> None:
        """Process a single claimed job."""
        with LogContext(job_id=job.id, queue=self.name):
            try:
                await self._execute(job)
            except TransientStoreError as e:
                logger.warning(f"Could not record outcome of job {job.id}: {e}")

    async def _execute(self, job: Job) -> None:
        broker = self.queue.broker
        handler = self._handlers.get(job.type)

        if handler is None:
            logger.error(f"No handler for job type: {job.type}")
            await broker.fail(job, f"Unknown job type: {job.type}", self.queue.lane.remove_on_fail)
            record_job_outcome(self.name, "failed")
            return

        logger.info(f"Processing job: {job.id} ({job.type}) attempt {job.attempts_made + 1}")
        track_in_progress(self.name, 1)
        heartbeat = asyncio.create_task(self._heartbeat(job))
        start = time.perf_counter()

        try:
            result = await handler(dict(job.payload))
        except Exception as e:
            error = JobHandlerError(job.id, job.type, job.attempts_made + 1, e)
            await self._handle_failure(job, error)
        else:
            await broker.complete(job, result, self.queue.lane.remove_on_complete)
            record_job_outcome(self.name, "completed")
            logger.info(f"Job completed successfully: {job.id}")
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat
            track_in_progress(self.name, -1)
            record_job_duration(self.name, job.type, time.perf_counter() - start)

    async def _handle_failure(self, job: Job, error: JobHandlerError) -> None:
        broker = self.queue.broker
        job.attempts_made += 1

        if job.attempts_made >= job.max_attempts:
            await broker.fail(job, str(error.cause), self.queue.lane.remove_on_fail)
            record_job_outcome(self.name, "failed")
            logger.error(
                f"Job permanently failed after {job.attempts_made} attempt(s): {error}"
            )
            return

        delay = job.backoff.compute(job.attempts_made)
        await broker.retry(job, delay, str(error.cause))
        record_job_outcome(self.name, "retried")
        logger.warning(f"{error}; retrying in {delay:.2f}s")

    async def run_once(self) -> int:
        """Process one batch of jobs and return.

        Useful for testing or cron-like execution.

        Returns:
            Number of jobs processed
        """
        await self._maintain()
        jobs = await self._claim_batch()
        for job in jobs:
            await self._process_job(job)
        return len(jobs)

    async def __aenter__(self) -> "JobWorker":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
