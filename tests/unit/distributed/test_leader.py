"""Tests for lock-based leader election."""

from __future__ import annotations

import asyncio

import pytest

from arcana.distributed.leader import (
    CallbackListener,
    ElectionState,
    LeaderElection,
    leader_only,
)
from arcana.distributed.lock import InMemoryLockStore, LockService, LockStore
from arcana.errors import TransientStoreError


class PartitionableStore(LockStore):
    """Wraps a shared store; while partitioned every call fails."""

    def __init__(self, inner: LockStore) -> None:
        self.inner = inner
        self.partitioned = False

    def _check(self) -> None:
        if self.partitioned:
            raise TransientStoreError("partitioned")

    async def set_if_absent(self, key: str, token: str, ttl: float) -> bool:
        self._check()
        return await self.inner.set_if_absent(key, token, ttl)

    async def compare_and_delete(self, key: str, token: str) -> bool:
        self._check()
        return await self.inner.compare_and_delete(key, token)

    async def compare_and_extend(self, key: str, token: str, ttl: float) -> bool:
        self._check()
        return await self.inner.compare_and_extend(key, token, ttl)

    async def get(self, key: str) -> str | None:
        self._check()
        return await self.inner.get(key)


class Recorder:
    """Listener recording transitions in order."""

    def __init__(self) -> None:
        self.events: list[str] = []

    async def on_become_leader(self) -> None:
        self.events.append("elected")

    async def on_lose_leadership(self) -> None:
        self.events.append("lost")


def make_participants(
    lock_store: InMemoryLockStore, count: int
) -> tuple[list[LeaderElection], list[PartitionableStore], list[Recorder]]:
    elections, stores, recorders = [], [], []
    for i in range(count):
        store = PartitionableStore(lock_store)
        recorder = Recorder()
        service = LockService(store=store, instance_id=f"node-{i}")
        elections.append(
            LeaderElection("scheduled-tasks", lock_service=service, listener=recorder, lease_ttl=30)
        )
        stores.append(store)
        recorders.append(recorder)
    return elections, stores, recorders


class TestLeaderElection:
    """Tests for election polling."""

    @pytest.mark.asyncio
    async def test_single_leader_among_participants(self, lock_store: InMemoryLockStore) -> None:
        """Exactly one of three participants leads at steady state."""
        elections, _, recorders = make_participants(lock_store, 3)

        for _ in range(3):
            for election in elections:
                await election.poll_once()

        leaders = [e for e in elections if e.is_leader]
        assert len(leaders) == 1
        assert leaders[0].state is ElectionState.LEADER
        assert leaders[0].epoch == 1
        assert sum(r.events.count("elected") for r in recorders) == 1

    @pytest.mark.asyncio
    async def test_failover_after_partition(self, lock_store: InMemoryLockStore, clock) -> None:
        """A partitioned leader is replaced once its lease expires."""
        elections, stores, recorders = make_participants(lock_store, 3)
        leader, second, third = elections

        assert await leader.poll_once() is True
        assert await second.poll_once() is False
        assert await third.poll_once() is False

        stores[0].partitioned = True
        clock.advance(30)

        assert await second.poll_once() is True
        assert await third.poll_once() is False

        # The old leader learns it lost on its next poll
        assert await leader.poll_once() is False
        assert recorders[0].events == ["elected", "lost"]
        assert recorders[1].events == ["elected"]
        assert [e.is_leader for e in elections] == [False, True, False]

    @pytest.mark.asyncio
    async def test_renewal_keeps_leadership(self, lock_store: InMemoryLockStore, clock) -> None:
        """A leader that keeps renewing is never displaced."""
        elections, _, _ = make_participants(lock_store, 2)
        leader, follower = elections

        await leader.poll_once()
        for _ in range(5):
            clock.advance(10)
            await leader.poll_once()
            await follower.poll_once()

        assert leader.is_leader
        assert not follower.is_leader
        assert leader.epoch == 1

    @pytest.mark.asyncio
    async def test_epoch_increments_per_acquisition(
        self, lock_store: InMemoryLockStore, clock
    ) -> None:
        """Every successful acquisition bumps the local epoch."""
        elections, stores, _ = make_participants(lock_store, 1)
        election = elections[0]

        await election.poll_once()
        stores[0].partitioned = True
        await election.poll_once()
        stores[0].partitioned = False
        clock.advance(30)
        await election.poll_once()

        assert election.is_leader
        assert election.epoch == 2

    @pytest.mark.asyncio
    async def test_listener_errors_are_swallowed(self, lock_service: LockService) -> None:
        """A failing listener does not block the transition."""

        def explode() -> None:
            raise RuntimeError("listener bug")

        election = LeaderElection(
            "jobs",
            lock_service=lock_service,
            listener=CallbackListener(on_become_leader=explode),
        )

        assert await election.poll_once() is True
        assert election.is_leader

    @pytest.mark.asyncio
    async def test_start_and_stop_releases_lock(self, lock_service: LockService) -> None:
        """stop() releases a held lock and reports the loss."""
        lost: list[bool] = []
        election = LeaderElection(
            "jobs",
            lock_service=lock_service,
            listener=CallbackListener(on_lose_leadership=lambda: lost.append(True)),
            poll_interval=0.01,
        )

        await election.start()
        assert await election.wait_for_leadership(timeout=1.0)
        assert await election.get_current_leader() is not None

        await election.stop(drain_timeout=1.0)

        assert not election.is_running
        assert not election.is_leader
        assert lost == [True]
        assert await lock_service.get_holder(election.lock_name) is None

    @pytest.mark.asyncio
    async def test_wait_for_leadership_times_out(self, lock_service: LockService) -> None:
        """A follower waiting for leadership gives up after the timeout."""
        holder = LeaderElection("jobs", lock_service=lock_service)
        await holder.poll_once()
        follower = LeaderElection("jobs", lock_service=lock_service)

        assert await follower.wait_for_leadership(timeout=0.01) is False

    @pytest.mark.asyncio
    async def test_context_manager_one_shot(self, lock_service: LockService) -> None:
        """The context manager acquires once and releases on exit."""
        async with LeaderElection("cleanup", lock_service=lock_service) as first:
            assert first.is_leader
            async with LeaderElection("cleanup", lock_service=lock_service) as second:
                assert not second.is_leader

        assert not first.is_leader
        assert await lock_service.get_holder(first.lock_name) is None


class TestLeaderOnly:
    """Tests for the leader_only decorator."""

    @pytest.mark.asyncio
    async def test_runs_when_lock_is_free(self, lock_service: LockService) -> None:
        @leader_only("daily-report", lock_service=lock_service)
        async def report() -> str:
            return "generated"

        assert await report() == "generated"

    @pytest.mark.asyncio
    async def test_skips_when_another_instance_leads(self, lock_service: LockService) -> None:
        calls = 0

        @leader_only("daily-report", lock_service=lock_service)
        async def report() -> str:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.02)
            return "generated"

        results = await asyncio.gather(report(), report())

        assert results.count(None) == 1
        assert "generated" in results
        assert calls == 1
