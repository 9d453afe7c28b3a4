"""Distributed coordination primitives for Arcana tasks.

Provides infrastructure for horizontal scaling:
- Time-bounded distributed locks
- Leader election for singleton work

Example:
    from arcana.distributed import LeaderElection, LockService

    locks = LockService()
    await locks.with_lock("export:42", run_export, ttl=300)

    election = LeaderElection("my-worker", lock_service=locks)
    await election.start()
"""

from arcana.distributed.leader import (
    CallbackListener,
    ElectionState,
    LeaderElection,
    LeadershipListener,
    leader_only,
)
from arcana.distributed.lock import (
    DistributedLock,
    InMemoryLockStore,
    LockService,
    LockStore,
    RedisLockStore,
)

__all__ = [
    # Locks
    "LockStore",
    "InMemoryLockStore",
    "RedisLockStore",
    "LockService",
    "DistributedLock",
    # Leader election
    "LeaderElection",
    "ElectionState",
    "LeadershipListener",
    "CallbackListener",
    "leader_only",
]
