"""Process-wide startup and shutdown of the task system.

Example:
    if await initialize_tasks():
        runtime = get_runtime()
        await queue_email(runtime, "a@example.com", "Hi", "hello")
    ...
    await shutdown_tasks()
"""

from __future__ import annotations

import logging
from typing import Callable

import httpx

from arcana.config import settings
from arcana.errors import ConfigurationError, TransientStoreError
from arcana.jobs.background import initialize_background_tasks
from arcana.jobs.runtime import TaskRuntime
from arcana.jobs.scheduler import Scheduler
from arcana.store.redis import close_redis

logger = logging.getLogger(__name__)

_runtime: TaskRuntime | None = None
_scheduler: Scheduler | None = None


def get_runtime() -> TaskRuntime:
    """Get the active task runtime.

    Raises:
        ConfigurationError: If the task system is not initialized
    """
    if _runtime is None:
        raise ConfigurationError("Task system is not initialized")
    return _runtime


def get_scheduler() -> Scheduler:
    if _scheduler is None:
        raise ConfigurationError("Task system is not initialized")
    return _scheduler


async def initialize_tasks(
    runtime: TaskRuntime | None = None,
    http_client_factory: Callable[[], httpx.AsyncClient] | None = None,
) -> bool:
    """Initialize background lanes and the scheduler.

    Returns:
        True if the task system is running, False if it is disabled (no
        Redis configured) or the store was unreachable during startup

    Raises:
        ConfigurationError: Invalid schedules or handler wiring
    """
    global _runtime, _scheduler

    if _runtime is not None:
        return True

    if runtime is None and settings.task_backend == "redis" and not settings.redis_url:
        logger.warning("Redis not configured - task system disabled")
        return False

    runtime = runtime or TaskRuntime()
    scheduler = Scheduler(runtime)

    try:
        await initialize_background_tasks(runtime, http_client_factory)
        await scheduler.initialize()
    except TransientStoreError as e:
        logger.error(f"Failed to initialize task system: {e}")
        await scheduler.shutdown(timeout=0)
        await runtime.close(timeout=0)
        return False
    except ConfigurationError:
        await runtime.close(timeout=0)
        raise

    _runtime, _scheduler = runtime, scheduler
    logger.info("Task system initialized successfully")
    return True


async def shutdown_tasks(timeout: float | None = None) -> None:
    """Gracefully shut down the scheduler, workers and store connection."""
    global _runtime, _scheduler

    timeout = settings.shutdown_timeout if timeout is None else timeout
    logger.info("Shutting down task system...")

    try:
        if _scheduler is not None:
            await _scheduler.shutdown(timeout=timeout)
        if _runtime is not None:
            await _runtime.close(timeout=timeout)
        await close_redis()
        logger.info("Task system shutdown complete")
    except Exception:
        logger.exception("Error during task system shutdown")
    finally:
        _runtime = None
        _scheduler = None
