"""Leader election for distributed background work.

Builds on the lock service to ensure only one instance per named election
acts as leader at a time. This is critical for:
- Registering recurring schedules
- Any fleet-wide singleton action

The election uses a lease-based approach:
1. A follower tries to acquire the election lock with a TTL
2. The leader renews the lock on every poll
3. If a leader dies or is partitioned, the lock expires and another
   instance claims it

Leadership is bounded, not absolute: a partitioned leader may keep
believing it leads for up to one poll interval after its lease expired.
Handlers triggered by leadership must be idempotent.

Example:
    class Registrar:
        async def on_become_leader(self) -> None:
            await register_schedules()

        async def on_lose_leadership(self) -> None:
            logger.warning("No longer registering schedules")

    election = LeaderElection("scheduled-tasks", listener=Registrar())
    await election.start()
    ...
    await election.stop()

    # Or once, as a context manager
    async with LeaderElection("cleanup-job") as leader:
        if leader.is_leader:
            await run_cleanup()
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from contextlib import suppress
from enum import Enum
from types import TracebackType
from typing import Any, Awaitable, Callable, ParamSpec, Protocol, TypeVar

from arcana.config import settings
from arcana.distributed.lock import LockService
from arcana.observability.metrics import record_leadership

logger = logging.getLogger(__name__)

DEFAULT_LEASE_TTL = 30.0  # Seconds
POLL_INTERVAL = 10.0  # Poll well before the TTL runs out


class ElectionState(str, Enum):
    """Local view of an election."""

    FOLLOWER = "follower"
    LEADER = "leader"


class LeadershipListener(Protocol):
    """Observer notified of leadership transitions.

    Notifications are awaited on the polling task: keep them short, or hand
    long work to a separate task.
    """

    async def on_become_leader(self) -> None: ...

    async def on_lose_leadership(self) -> None: ...


class CallbackListener:
    """Adapts two plain callables (sync or async) to LeadershipListener."""

    def __init__(
        self,
        on_become_leader: Callable[[], Any] | None = None,
        on_lose_leadership: Callable[[], Any] | None = None,
    ) -> None:
        self._on_become_leader = on_become_leader
        self._on_lose_leadership = on_lose_leadership

    async def on_become_leader(self) -> None:
        if self._on_become_leader is not None:
            result = self._on_become_leader()
            if inspect.isawaitable(result):
                await result

    async def on_lose_leadership(self) -> None:
        if self._on_lose_leadership is not None:
            result = self._on_lose_leadership()
            if inspect.isawaitable(result):
                await result


class LeaderElection:
    """Lock-based leader election for one coordination domain.

    Leadership is owned by this object and exposed only through is_leader,
    which reads the locally cached state and never queries the store.

    Args:
        name: Name of the election (e.g., "scheduled-tasks")
        lock_service: Lock service to build on (Redis-backed if None)
        listener: Observer for leadership transitions
        lease_ttl: Lock TTL in seconds (default 30)
        poll_interval: Seconds between acquire/renew attempts (default 10)
    """

    def __init__(
        self,
        name: str,
        lock_service: LockService | None = None,
        listener: LeadershipListener | None = None,
        lease_ttl: float = DEFAULT_LEASE_TTL,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        self.name = name
        self.lease_ttl = lease_ttl
        self.poll_interval = poll_interval
        self.listener = listener
        self.epoch = 0

        self._lock = lock_service or LockService(default_ttl=settings.election_ttl)
        self._lock_name = self._lock.keys.leader(name)
        self._state = ElectionState.FOLLOWER
        self._token: str | None = None
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._wake = asyncio.Event()

        # Waiters for wait_for_leadership()
        self._on_elected: list[asyncio.Future[None]] = []

    @property
    def is_leader(self) -> bool:
        """Check if this instance is currently the leader."""
        return self._state is ElectionState.LEADER

    @property
    def state(self) -> ElectionState:
        return self._state

    @property
    def instance_id(self) -> str:
        return self._lock.instance_id

    @property
    def lock_name(self) -> str:
        """The lock name used for this election."""
        return self._lock_name

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start participating in leader election.

        The first poll runs immediately; later polls run every
        poll_interval seconds on a background task.
        """
        if self._running:
            return

        self._running = True
        self._wake.clear()
        self._task = asyncio.create_task(self._election_loop())
        logger.info(f"Started leader election for '{self.name}' as {self.instance_id}")

    async def stop(self, drain_timeout: float | None = None) -> None:
        """Stop participating in leader election.

        Polling halts after the current iteration. If this instance is the
        leader, the lock is released so another instance can take over and
        the listener is told leadership was lost.

        Args:
            drain_timeout: Seconds to wait for the current poll before
                cancelling it (None waits for it to finish)
        """
        self._running = False
        self._wake.set()

        task, self._task = self._task, None
        if task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Election poll for '{self.name}' did not drain, cancelling")
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

        if self.is_leader and self._token is not None:
            await self._lock.release(self._lock_name, self._token)
            await self._handle_demotion(reason="stopped")

        logger.info(f"Stopped leader election for '{self.name}'")

    async def _election_loop(self) -> None:
        """Main election loop."""
        while self._running:
            await self.poll_once()

            if not self._running:
                break

            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)

    async def poll_once(self) -> bool:
        """Run one acquire-or-renew iteration.

        Returns:
            Whether this instance is leader after the iteration
        """
        try:
            if self.is_leader and self._token is not None:
                renewed = await self._lock.renew(self._lock_name, self._token, self.lease_ttl)
                if not renewed:
                    await self._handle_demotion(reason="renewal failed")
                else:
                    logger.debug(f"Renewed leadership for '{self.name}'")
            else:
                token = await self._lock.acquire(self._lock_name, self.lease_ttl)
                if token is not None:
                    await self._handle_election(token)
        except Exception as e:
            logger.error(f"Error in election loop for '{self.name}': {e}")
            if self.is_leader:
                await self._handle_demotion(reason="poll error")

        return self.is_leader

    async def _handle_election(self, token: str) -> None:
        """Handle being elected as leader."""
        self._state = ElectionState.LEADER
        self._token = token
        self.epoch += 1
        logger.info(f"Elected as leader for '{self.name}' (epoch {self.epoch})")
        record_leadership(self.name, True)

        for future in self._on_elected:
            if not future.done():
                future.set_result(None)
        self._on_elected.clear()

        if self.listener is not None:
            try:
                await self.listener.on_become_leader()
            except Exception:
                logger.exception(f"Leadership listener failed on election for '{self.name}'")

    async def _handle_demotion(self, reason: str) -> None:
        """Handle losing leadership."""
        self._state = ElectionState.FOLLOWER
        self._token = None
        logger.warning(f"Lost leadership for '{self.name}' ({reason})")
        record_leadership(self.name, False)

        if self.listener is not None:
            try:
                await self.listener.on_lose_leadership()
            except Exception:
                logger.exception(f"Leadership listener failed on demotion for '{self.name}'")

    async def wait_for_leadership(self, timeout: float | None = None) -> bool:
        """Wait until this instance becomes the leader.

        Args:
            timeout: Maximum time to wait in seconds (None = wait forever)

        Returns:
            True if leadership was acquired, False if timeout
        """
        if self.is_leader:
            return True

        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._on_elected.append(future)

        try:
            await asyncio.wait_for(future, timeout=timeout)
            return True
        except asyncio.TimeoutError:
            if future in self._on_elected:
                self._on_elected.remove(future)
            return False

    async def get_current_leader(self) -> str | None:
        """Get the token of the current leader (reads the store)."""
        return await self._lock.get_holder(self._lock_name)

    async def __aenter__(self) -> "LeaderElection":
        """Context manager entry - try to acquire leadership once."""
        token = await self._lock.acquire(self._lock_name, self.lease_ttl)
        if token is not None:
            self._state = ElectionState.LEADER
            self._token = token
            self.epoch += 1
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Context manager exit - release leadership if held."""
        if self.is_leader and self._token is not None:
            await self._lock.release(self._lock_name, self._token)
        self._state = ElectionState.FOLLOWER
        self._token = None


P = ParamSpec("P")
R = TypeVar("R")


def leader_only(
    name: str,
    lock_service: LockService | None = None,
    lease_ttl: float = DEFAULT_LEASE_TTL,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R | None]]]:
    """Decorator that makes a coroutine only run on the leader instance.

    Each call makes a one-shot acquisition; callers that lose return None.

    Example:
        @leader_only("daily-report")
        async def generate_daily_report():
            ...
    """

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R | None]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R | None:
            election = LeaderElection(name, lock_service=lock_service, lease_ttl=lease_ttl)
            async with election:
                if election.is_leader:
                    return await func(*args, **kwargs)
                logger.debug(f"Skipping {func.__name__} - not leader for '{name}'")
                return None

        return wrapper

    return decorator
