"""Time-bounded distributed locks on a shared store.

A lock is a single store key whose value is the holder token and whose TTL
is the lock expiry. Every mutation is a single-key atomic operation:

1. acquire: SET key token NX PX ttl
2. release: compare token, then DEL (Lua script)
3. renew: compare token, then PEXPIRE (Lua script)

The lock service fails closed: contention and store errors both mean "not
acquired" and never raise into the caller.

Example:
    locks = LockService()

    token = await locks.acquire("export:42", ttl=60)
    if token:
        try:
            await export()
        finally:
            await locks.release("export:42", token)

    # Or let the service manage it
    result = await locks.with_lock("export:42", export, ttl=60)
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from contextlib import suppress
from types import TracebackType
from typing import TYPE_CHECKING, Awaitable, Callable, TypeVar, cast
from uuid import uuid4

from redis.exceptions import RedisError

from arcana.config import settings
from arcana.errors import LockNotAcquiredError, TransientStoreError
from arcana.observability.metrics import record_lock_operation
from arcana.store.keys import StoreKeys
from arcana.store.redis import get_redis

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

R = TypeVar("R")

# Only delete if we own it
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# Only extend if we own it
EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""


def _generate_instance_id() -> str:
    """Generate a unique instance ID for lock ownership."""
    hostname = os.environ.get("HOSTNAME", os.environ.get("POD_NAME", settings.instance_id))
    return f"{hostname}-{uuid4().hex[:8]}"


def _ttl_ms(ttl: float) -> int:
    return max(1, int(ttl * 1000))


class LockStore(ABC):
    """Atomic single-key primitives backing the lock service.

    Implementations raise TransientStoreError when the store is unreachable.
    """

    @abstractmethod
    async def set_if_absent(self, key: str, token: str, ttl: float) -> bool:
        """Set key to token with expiry, only if no live value exists."""
        pass

    @abstractmethod
    async def compare_and_delete(self, key: str, token: str) -> bool:
        """Delete key only if it currently holds token."""
        pass

    @abstractmethod
    async def compare_and_extend(self, key: str, token: str, ttl: float) -> bool:
        """Reset the expiry of key only if it currently holds token."""
        pass

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the live value of key, if any."""
        pass


class InMemoryLockStore(LockStore):
    """Process-local lock store.

    Suitable for tests and single-instance deployments. Atomicity follows from
    the event loop: no operation awaits between its read and its write.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}

    def _live(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        token, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return token

    async def set_if_absent(self, key: str, token: str, ttl: float) -> bool:
        if self._live(key) is not None:
            return False
        self._entries[key] = (token, self._clock() + ttl)
        return True

    async def compare_and_delete(self, key: str, token: str) -> bool:
        if self._live(key) != token:
            return False
        del self._entries[key]
        return True

    async def compare_and_extend(self, key: str, token: str, ttl: float) -> bool:
        if self._live(key) != token:
            return False
        self._entries[key] = (token, self._clock() + ttl)
        return True

    async def get(self, key: str) -> str | None:
        return self._live(key)


class RedisLockStore(LockStore):
    """Redis lock store using SET NX PX and Lua compare scripts."""

    def __init__(self, client: Redis | None = None) -> None:
        self._redis = client

    async def _get_redis(self) -> Redis:
        """Get Redis client."""
        if self._redis is None:
            self._redis = await get_redis()
        return self._redis

    async def set_if_absent(self, key: str, token: str, ttl: float) -> bool:
        redis = await self._get_redis()
        try:
            acquired = await redis.set(key, token, nx=True, px=_ttl_ms(ttl))
        except (RedisError, OSError) as e:
            raise TransientStoreError("set_if_absent", e) from e
        return bool(acquired)

    async def compare_and_delete(self, key: str, token: str) -> bool:
        redis = await self._get_redis()
        try:
            result = await cast(Awaitable[int], redis.eval(RELEASE_SCRIPT, 1, key, token))
        except (RedisError, OSError) as e:
            raise TransientStoreError("compare_and_delete", e) from e
        return result == 1

    async def compare_and_extend(self, key: str, token: str, ttl: float) -> bool:
        redis = await self._get_redis()
        try:
            result = await cast(
                Awaitable[int],
                redis.eval(EXTEND_SCRIPT, 1, key, token, _ttl_ms(ttl)),
            )
        except (RedisError, OSError) as e:
            raise TransientStoreError("compare_and_extend", e) from e
        return result == 1

    async def get(self, key: str) -> str | None:
        redis = await self._get_redis()
        try:
            value = await redis.get(key)
        except (RedisError, OSError) as e:
            raise TransientStoreError("get", e) from e
        if value is None:
            return None
        return value.decode() if isinstance(value, bytes) else value


class LockService:
    """Acquire, release and renew named locks.

    Args:
        store: Backing store (Redis by default)
        keys: Key schema used to namespace lock names
        instance_id: Prefix for holder tokens (auto-generated if None)
        default_ttl: TTL in seconds used when a call passes none
    """

    def __init__(
        self,
        store: LockStore | None = None,
        keys: StoreKeys | None = None,
        instance_id: str | None = None,
        default_ttl: float | None = None,
    ) -> None:
        self.store = store or RedisLockStore()
        self.keys = keys or StoreKeys()
        self.instance_id = instance_id or _generate_instance_id()
        self.default_ttl = default_ttl if default_ttl is not None else settings.lock_ttl

    def new_token(self) -> str:
        """Generate a holder token unique to this instance and call."""
        return f"{self.instance_id}-{uuid4().hex[:12]}"

    async def acquire(self, name: str, ttl: float | None = None) -> str | None:
        """Try to acquire a lock without blocking.

        Returns:
            The holder token, or None on contention or store failure
        """
        token = self.new_token()
        try:
            acquired = await self.store.set_if_absent(
                self.keys.lock(name), token, ttl or self.default_ttl
            )
        except TransientStoreError as e:
            logger.warning(f"Lock acquire failed for '{name}': {e}")
            record_lock_operation("acquire", "error")
            return None

        if not acquired:
            logger.debug(f"Lock '{name}' is held elsewhere")
            record_lock_operation("acquire", "contended")
            return None

        logger.info(f"Lock acquired: {name}")
        record_lock_operation("acquire", "ok")
        return token

    async def release(self, name: str, token: str) -> bool:
        """Release a lock if token still owns it."""
        try:
            released = await self.store.compare_and_delete(self.keys.lock(name), token)
        except TransientStoreError as e:
            logger.warning(f"Lock release failed for '{name}': {e}")
            record_lock_operation("release", "error")
            return False

        if released:
            logger.info(f"Lock released: {name}")
            record_lock_operation("release", "ok")
        else:
            logger.warning(f"Lock not released (not owner): {name}")
            record_lock_operation("release", "contended")
        return released

    async def renew(self, name: str, token: str, ttl: float | None = None) -> bool:
        """Extend a lock's TTL if token still owns it."""
        try:
            renewed = await self.store.compare_and_extend(
                self.keys.lock(name), token, ttl or self.default_ttl
            )
        except TransientStoreError as e:
            logger.warning(f"Lock renew failed for '{name}': {e}")
            record_lock_operation("renew", "error")
            return False

        record_lock_operation("renew", "ok" if renewed else "contended")
        return renewed

    async def get_holder(self, name: str) -> str | None:
        """Token currently holding the lock (diagnostic read)."""
        try:
            return await self.store.get(self.keys.lock(name))
        except TransientStoreError as e:
            logger.warning(f"Lock lookup failed for '{name}': {e}")
            return None

    async def with_lock(
        self,
        name: str,
        fn: Callable[[], Awaitable[R]],
        ttl: float | None = None,
        retries: int = 0,
        wait: float = 1.0,
    ) -> R | None:
        """Run fn while holding the named lock.

        Args:
            name: Lock name
            fn: Coroutine function to run under the lock
            ttl: Lock TTL in seconds
            retries: Extra acquire attempts after the first fails
            wait: Seconds between acquire attempts

        Returns:
            fn's result, or None if the lock could not be acquired (fn not run)
        """
        for attempt in range(retries + 1):
            token = await self.acquire(name, ttl)

            if token is not None:
                try:
                    return await fn()
                finally:
                    await self.release(name, token)

            if attempt < retries:
                await asyncio.sleep(wait)

        logger.warning(f"Could not acquire lock: {name}")
        return None


class DistributedLock:
    """A named lock holding its own token, with optional auto-renewal.

    While held with auto_renew, a background task extends the lock every
    half TTL and stops once an extension fails.

    Example:
        async with DistributedLock("reindex", locks, ttl=60):
            await reindex()
    """

    def __init__(
        self,
        name: str,
        service: LockService | None = None,
        ttl: float | None = None,
        auto_renew: bool = True,
    ) -> None:
        self.name = name
        self.service = service or LockService()
        self.ttl = ttl or self.service.default_ttl
        self.auto_renew = auto_renew
        self._token: str | None = None
        self._renew_task: asyncio.Task[None] | None = None

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def is_held(self) -> bool:
        """Whether this object believes it holds the lock."""
        return self._token is not None

    async def acquire(self) -> bool:
        """Acquire the lock and start auto-renewal."""
        if self._token is not None:
            return True

        token = await self.service.acquire(self.name, self.ttl)
        if token is None:
            return False

        self._token = token
        if self.auto_renew:
            self._renew_task = asyncio.create_task(self._renewal_loop())
        return True

    async def release(self) -> bool:
        """Release the lock if we own it."""
        await self._stop_renewal()

        if self._token is None:
            return False

        token, self._token = self._token, None
        return await self.service.release(self.name, token)

    async def extend(self, ttl: float | None = None) -> bool:
        """Extend the lock TTL if we still own it."""
        if self._token is None:
            return False
        return await self.service.renew(self.name, self._token, ttl or self.ttl)

    async def _renewal_loop(self) -> None:
        while True:
            await asyncio.sleep(self.ttl / 2)
            if not await self.extend():
                logger.warning(f"Failed to extend lock: {self.name}")
                self._token = None
                self._renew_task = None
                return

    async def _stop_renewal(self) -> None:
        task, self._renew_task = self._renew_task, None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def __aenter__(self) -> "DistributedLock":
        if not await self.acquire():
            raise LockNotAcquiredError(self.name)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.release()
