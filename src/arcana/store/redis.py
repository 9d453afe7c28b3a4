"""Shared Redis client for locks and the job broker.

Uses the redis-py async client for connection pooling. The client is
created lazily on first use and shared by every component in the process.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import redis.asyncio as redis

from arcana.config import settings
from arcana.errors import ConfigurationError

if TYPE_CHECKING:
    from redis.asyncio import Redis

# Module-level connection pool
_redis_client: Redis | None = None


async def get_redis() -> Redis:
    """Get or create the Redis client.

    Raises:
        ConfigurationError: If no Redis URL is configured.
    """
    global _redis_client
    if _redis_client is None:
        if not settings.redis_url:
            raise ConfigurationError("Redis required for distributed locking and job queues")
        _redis_client = redis.from_url(  # type: ignore[no-untyped-call]
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
    return _redis_client


async def close_redis() -> None:
    """Close Redis connections."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
