"""Global pytest configuration and fixtures."""

from __future__ import annotations

import pytest

from arcana.distributed.lock import InMemoryLockStore, LockService
from arcana.jobs.broker import InMemoryJobBroker
from arcana.jobs.runtime import TaskRuntime


class FakeClock:
    """Manually advanced clock in epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def lock_store(clock: FakeClock) -> InMemoryLockStore:
    return InMemoryLockStore(clock=clock)


@pytest.fixture
def lock_service(lock_store: InMemoryLockStore) -> LockService:
    return LockService(store=lock_store, instance_id="test", default_ttl=30.0)


@pytest.fixture
def broker(clock: FakeClock) -> InMemoryJobBroker:
    return InMemoryJobBroker(clock=clock)


@pytest.fixture
def runtime(broker: InMemoryJobBroker, lock_service: LockService) -> TaskRuntime:
    return TaskRuntime(broker=broker, lock_service=lock_service)
