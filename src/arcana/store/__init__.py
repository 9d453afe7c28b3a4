"""Shared store access for Arcana tasks.

Provides the process-wide Redis client and the key schema used by the
lock service and the job broker.
"""

from arcana.store.keys import StoreKeys
from arcana.store.redis import close_redis, get_redis

__all__ = [
    "StoreKeys",
    "get_redis",
    "close_redis",
]
