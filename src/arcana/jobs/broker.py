"""Job brokers: durable storage and state transitions for queued jobs.

Two implementations share one contract:
- InMemoryJobBroker: for tests and single-instance deployments
- RedisJobBroker: for fleets sharing one Redis

Per queue, a broker tracks:
- pending jobs ordered by the time they become eligible
- active jobs with a lease deadline; expired leases are redelivered
- the most recent completed and failed jobs (retention)
- dedup keys owned by in-flight jobs
- recurring schedules keyed by fixed id
- a rate-limit counter per time window

Transitions:
    add -> PENDING -> claim -> ACTIVE -> complete -> COMPLETED
                                      -> retry    -> PENDING (later)
                                      -> fail     -> FAILED
                                      -> lease expiry -> PENDING (redelivery)
"""

from __future__ import annotations

import copy
import logging
import time
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar, cast

import orjson
from redis.exceptions import RedisError

from arcana.config import settings
from arcana.distributed.lock import RELEASE_SCRIPT
from arcana.errors import TransientStoreError
from arcana.jobs.cron import CronExpression
from arcana.jobs.models import (
    Job,
    JobStatus,
    RateLimit,
    RecurringSchedule,
    delay_from,
    to_ms,
)
from arcana.store.keys import StoreKeys
from arcana.store.redis import get_redis

if TYPE_CHECKING:
    from redis.asyncio import Redis

T = TypeVar("T")

logger = logging.getLogger(__name__)


def _await_redis(result: Awaitable[T] | T) -> Awaitable[T]:
    """Cast redis-py async results to an awaitable for mypy."""
    return cast(Awaitable[T], result)


def _decode(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else value


class JobBroker(ABC):
    """Storage and state transitions for jobs.

    Every method may raise TransientStoreError when the backing store is
    unreachable; callers retry on their next poll.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), UTC)

    @abstractmethod
    async def add(self, job: Job) -> bool:
        """Insert a pending job.

        Returns False, inserting nothing, if the job id is still retained or
        the job's dedup key is owned by another pending or active job.
        """
        pass

    @abstractmethod
    async def get(self, queue: str, job_id: str) -> Job | None:
        pass

    @abstractmethod
    async def claim(self, queue: str, limit: int, lease: float) -> list[Job]:
        """Move up to `limit` due pending jobs to active with a lease."""
        pass

    @abstractmethod
    async def extend_lease(self, job: Job, lease: float) -> bool:
        """Push an active job's lease deadline forward."""
        pass

    @abstractmethod
    async def complete(self, job: Job, result: dict[str, Any] | None, retain: int) -> None:
        pass

    @abstractmethod
    async def retry(self, job: Job, delay: float, error: str | None) -> None:
        """Return an active job to pending, eligible after `delay` seconds.

        The caller owns the attempt count: it is persisted as given.
        """
        pass

    @abstractmethod
    async def fail(self, job: Job, error: str, retain: int) -> None:
        pass

    @abstractmethod
    async def recover_stalled(self, queue: str) -> list[str]:
        """Return active jobs whose lease expired to pending."""
        pass

    @abstractmethod
    async def consume_rate(self, queue: str, limit: RateLimit) -> float:
        """Count one admission against the current window.

        Returns:
            0.0 if admitted, else seconds until the window resets
        """
        pass

    @abstractmethod
    async def stats(self, queue: str) -> dict[str, int]:
        pass

    @abstractmethod
    async def _load_schedule(self, queue: str, fixed_id: str) -> RecurringSchedule | None:
        pass

    @abstractmethod
    async def _save_schedule(self, queue: str, schedule: RecurringSchedule) -> None:
        pass

    @abstractmethod
    async def list_schedules(self, queue: str) -> list[RecurringSchedule]:
        pass

    @abstractmethod
    async def remove_schedule(self, queue: str, fixed_id: str) -> bool:
        pass

    async def close(self) -> None:
        """Release backend resources."""
        return None

    async def upsert_schedule(self, queue: str, schedule: RecurringSchedule) -> RecurringSchedule:
        """Register a schedule by fixed id.

        Re-registering an identical cron keeps the pending next run, so
        repeated upserts are a no-op refresh. A changed cron recomputes it.
        """
        existing = await self._load_schedule(queue, schedule.fixed_id)
        if existing is not None and existing.cron == schedule.cron and existing.next_run:
            stored = replace(schedule, next_run=existing.next_run)
        else:
            stored = replace(schedule, next_run=CronExpression(schedule.cron).next_run(self.now()))

        await self._save_schedule(queue, stored)
        return stored

    async def promote_schedules(self, queue: str) -> list[Job]:
        """Materialize one job for every schedule whose next run is due.

        Job ids derive from the fixed id and the run time, so concurrent
        promotion by several workers inserts each run once.
        """
        now = self.now()
        promoted: list[Job] = []

        for schedule in await self.list_schedules(queue):
            if schedule.next_run is None or schedule.next_run > now:
                continue

            run_at = schedule.next_run
            job = Job(
                id=f"repeat:{schedule.fixed_id}:{to_ms(run_at)}",
                queue=queue,
                type=schedule.job_type,
                payload={**schedule.payload, "triggered_at": run_at.isoformat()},
                max_attempts=schedule.attempts,
                backoff=schedule.backoff,
                repeat_id=schedule.fixed_id,
                scheduled_for=run_at,
                created_at=now,
                updated_at=now,
            )
            if await self.add(job):
                promoted.append(job)

            next_run = CronExpression(schedule.cron).next_run(now)
            await self._save_schedule(queue, replace(schedule, next_run=next_run))

        return promoted


class InMemoryJobBroker(JobBroker):
    """Process-local broker.

    Records are stored serialized so callers never share mutable state with
    the broker. Atomicity follows from the event loop: no method awaits
    between reading and writing its state.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        super().__init__(clock)
        self._records: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._pending: dict[str, dict[str, float]] = defaultdict(dict)
        self._active: dict[str, dict[str, float]] = defaultdict(dict)
        self._completed: dict[str, deque[str]] = defaultdict(deque)
        self._failed: dict[str, deque[str]] = defaultdict(deque)
        self._dedup: dict[str, dict[str, str]] = defaultdict(dict)
        self._schedules: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._windows: dict[tuple[str, int], int] = {}

    def _store(self, job: Job) -> None:
        self._records[job.queue][job.id] = copy.deepcopy(job.to_dict())

    def _load(self, queue: str, job_id: str) -> Job | None:
        data = self._records[queue].get(job_id)
        return Job.from_dict(copy.deepcopy(data)) if data is not None else None

    def _release_dedup(self, job: Job) -> None:
        if job.dedup_key and self._dedup[job.queue].get(job.dedup_key) == job.id:
            del self._dedup[job.queue][job.dedup_key]

    def _retain(self, queue: str, finished: deque[str], job_id: str, retain: int) -> None:
        finished.appendleft(job_id)
        while len(finished) > max(retain, 0):
            expired = finished.pop()
            self._records[queue].pop(expired, None)

    async def add(self, job: Job) -> bool:
        records = self._records[job.queue]
        if job.id in records:
            return False

        if job.dedup_key:
            holder_id = self._dedup[job.queue].get(job.dedup_key)
            holder = self._load(job.queue, holder_id) if holder_id else None
            if holder is not None and not holder.is_terminal:
                return False
            self._dedup[job.queue][job.dedup_key] = job.id

        self._store(job)
        self._pending[job.queue][job.id] = job.scheduled_for.timestamp()
        return True

    async def get(self, queue: str, job_id: str) -> Job | None:
        return self._load(queue, job_id)

    async def claim(self, queue: str, limit: int, lease: float) -> list[Job]:
        if limit <= 0:
            return []

        now_ts = self._clock()
        pending = self._pending[queue]
        due = sorted((ts, job_id) for job_id, ts in pending.items() if ts <= now_ts)[:limit]

        claimed: list[Job] = []
        now = self.now()
        for _, job_id in due:
            del pending[job_id]
            job = self._load(queue, job_id)
            if job is None:
                continue
            job.status = JobStatus.ACTIVE
            job.started_at = now
            job.touch(now)
            self._store(job)
            self._active[queue][job_id] = now_ts + lease
            claimed.append(job)

        return claimed

    async def extend_lease(self, job: Job, lease: float) -> bool:
        active = self._active[job.queue]
        if job.id not in active:
            return False
        active[job.id] = self._clock() + lease
        return True

    async def complete(self, job: Job, result: dict[str, Any] | None, retain: int) -> None:
        now = self.now()
        job.status = JobStatus.COMPLETED
        job.result = result
        job.finished_at = now
        job.touch(now)

        self._active[job.queue].pop(job.id, None)
        self._pending[job.queue].pop(job.id, None)
        self._store(job)
        self._release_dedup(job)
        self._retain(job.queue, self._completed[job.queue], job.id, retain)

    async def retry(self, job: Job, delay: float, error: str | None) -> None:
        now = self.now()
        job.status = JobStatus.PENDING
        job.error = error
        job.scheduled_for = delay_from(now, delay)
        job.touch(now)

        self._store(job)
        self._active[job.queue].pop(job.id, None)
        self._pending[job.queue][job.id] = job.scheduled_for.timestamp()

    async def fail(self, job: Job, error: str, retain: int) -> None:
        now = self.now()
        job.status = JobStatus.FAILED
        job.error = error
        job.finished_at = now
        job.touch(now)

        self._active[job.queue].pop(job.id, None)
        self._pending[job.queue].pop(job.id, None)
        self._store(job)
        self._release_dedup(job)
        self._retain(job.queue, self._failed[job.queue], job.id, retain)

    async def recover_stalled(self, queue: str) -> list[str]:
        now_ts = self._clock()
        active = self._active[queue]
        stalled = [job_id for job_id, deadline in active.items() if deadline <= now_ts]

        for job_id in stalled:
            del active[job_id]
            job = self._load(queue, job_id)
            if job is None:
                continue
            job.status = JobStatus.PENDING
            job.touch(self.now())
            self._store(job)
            self._pending[queue][job_id] = now_ts

        return stalled

    async def consume_rate(self, queue: str, limit: RateLimit) -> float:
        now_ts = self._clock()
        window = int(now_ts // limit.duration)

        for key in [k for k in self._windows if k[0] == queue and k[1] < window]:
            del self._windows[key]

        count = self._windows.get((queue, window), 0) + 1
        self._windows[(queue, window)] = count
        if count <= limit.max:
            return 0.0
        return (window + 1) * limit.duration - now_ts

    async def stats(self, queue: str) -> dict[str, int]:
        return {
            "pending": len(self._pending[queue]),
            "active": len(self._active[queue]),
            "completed": len(self._completed[queue]),
            "failed": len(self._failed[queue]),
        }

    async def _load_schedule(self, queue: str, fixed_id: str) -> RecurringSchedule | None:
        data = self._schedules[queue].get(fixed_id)
        return RecurringSchedule.from_dict(data) if data is not None else None

    async def _save_schedule(self, queue: str, schedule: RecurringSchedule) -> None:
        self._schedules[queue][schedule.fixed_id] = schedule.to_dict()

    async def list_schedules(self, queue: str) -> list[RecurringSchedule]:
        return [RecurringSchedule.from_dict(data) for data in self._schedules[queue].values()]

    async def remove_schedule(self, queue: str, fixed_id: str) -> bool:
        return self._schedules[queue].pop(fixed_id, None) is not None


# Atomically move due members between sorted sets.
# KEYS[1]=source KEYS[2]=destination ARGV[1]=max score ARGV[2]=limit ARGV[3]=new score
MOVE_DUE_SCRIPT = """
local ids = redis.call("zrangebyscore", KEYS[1], "-inf", ARGV[1], "LIMIT", 0, tonumber(ARGV[2]))
for _, id in ipairs(ids) do
    redis.call("zrem", KEYS[1], id)
    redis.call("zadd", KEYS[2], ARGV[3], id)
end
return ids
"""

# Move one member between sorted sets if it is still in the source.
# KEYS[1]=source KEYS[2]=destination ARGV[1]=member ARGV[2]=new score
MOVE_ONE_SCRIPT = """
if redis.call("zrem", KEYS[1], ARGV[1]) == 1 then
    redis.call("zadd", KEYS[2], ARGV[2], ARGV[1])
    return 1
end
return 0
"""

# Insert a job record, its pending entry and its dedup claim in one step.
# KEYS[1]=job record KEYS[2]=pending KEYS[3]=dedup key (optional)
# ARGV[1]=job id ARGV[2]=record ARGV[3]=ttl seconds ARGV[4]=score
# ARGV[5]=holder id known to be finished, or "" if none
ADD_SCRIPT = """
if KEYS[3] then
    local holder = redis.call("get", KEYS[3])
    if holder and holder ~= ARGV[5] then
        return 0
    end
end
if not redis.call("set", KEYS[1], ARGV[2], "EX", ARGV[3], "NX") then
    return 0
end
if KEYS[3] then
    redis.call("set", KEYS[3], ARGV[1], "EX", ARGV[3])
end
redis.call("zadd", KEYS[2], ARGV[4], ARGV[1])
return 1
"""

STALLED_BATCH = 1000


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (RedisError, OSError) as e:
        raise TransientStoreError(operation, e) from e


class RedisJobBroker(JobBroker):
    """Redis-backed broker.

    Uses sorted sets for queue management:
    - pending scored by eligibility time, active scored by lease deadline
    - Lua scripts to move ids between them atomically
    - job records stored as orjson-encoded strings with a TTL
    - one insert script claims the job id and dedup key together

    Horizontally scalable: any number of workers may share a queue.
    """

    def __init__(
        self,
        client: Redis | None = None,
        keys: StoreKeys | None = None,
        job_ttl: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(clock)
        self._redis = client
        self.keys = keys or StoreKeys()
        self.job_ttl = job_ttl or settings.job_ttl

    async def _get_redis(self) -> Redis:
        """Get Redis client, initializing if needed."""
        if self._redis is None:
            self._redis = await get_redis()
        return self._redis

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def _save(self, redis: Redis, job: Job) -> None:
        await _await_redis(
            redis.set(
                self.keys.job(job.queue, job.id),
                orjson.dumps(job.to_dict()),
                ex=self.job_ttl,
            )
        )

    async def _release_dedup(self, redis: Redis, job: Job) -> None:
        if job.dedup_key:
            await _await_redis(
                redis.eval(RELEASE_SCRIPT, 1, self.keys.dedup(job.queue, job.dedup_key), job.id)
            )

    async def _finished_holder(self, redis: Redis, queue: str, dedup_key: str) -> str:
        """Id of a dedup key's holder if that holder is terminal, else "".

        A holder whose record is missing counts as live until its dedup key
        expires.
        """
        holder_id = await _await_redis(redis.get(dedup_key))
        if holder_id is None:
            return ""
        holder = await self.get(queue, _decode(holder_id))
        if holder is not None and holder.is_terminal:
            return holder.id
        return ""

    async def add(self, job: Job) -> bool:
        redis = await self._get_redis()
        keys = [self.keys.job(job.queue, job.id), self.keys.pending(job.queue)]

        with _store_errors("add"):
            finished = ""
            if job.dedup_key:
                dedup_key = self.keys.dedup(job.queue, job.dedup_key)
                keys.append(dedup_key)
                finished = await self._finished_holder(redis, job.queue, dedup_key)

            added = await _await_redis(
                redis.eval(
                    ADD_SCRIPT,
                    len(keys),
                    *keys,
                    job.id,
                    orjson.dumps(job.to_dict()),
                    self.job_ttl,
                    to_ms(job.scheduled_for),
                    finished,
                )
            )

        return bool(added)

    async def get(self, queue: str, job_id: str) -> Job | None:
        redis = await self._get_redis()
        with _store_errors("get"):
            data = await _await_redis(redis.get(self.keys.job(queue, job_id)))

        if data is None:
            return None
        return Job.from_dict(orjson.loads(data))

    async def claim(self, queue: str, limit: int, lease: float) -> list[Job]:
        if limit <= 0:
            return []

        redis = await self._get_redis()
        now_ms = self._now_ms()

        with _store_errors("claim"):
            ids = await _await_redis(
                redis.eval(
                    MOVE_DUE_SCRIPT,
                    2,
                    self.keys.pending(queue),
                    self.keys.active(queue),
                    now_ms,
                    limit,
                    now_ms + int(lease * 1000),
                )
            )

            claimed: list[Job] = []
            now = self.now()
            for raw_id in cast(list[Any], ids):
                job_id = _decode(raw_id)
                job = await self.get(queue, job_id)

                if job is None:
                    # Job expired or deleted, remove from active
                    await _await_redis(redis.zrem(self.keys.active(queue), job_id))
                    continue

                job.status = JobStatus.ACTIVE
                job.started_at = now
                job.touch(now)
                await self._save(redis, job)
                claimed.append(job)

        return claimed

    async def extend_lease(self, job: Job, lease: float) -> bool:
        redis = await self._get_redis()
        key = self.keys.active(job.queue)

        with _store_errors("extend_lease"):
            if await _await_redis(redis.zscore(key, job.id)) is None:
                return False
            await _await_redis(
                redis.zadd(key, {job.id: self._now_ms() + int(lease * 1000)}, xx=True)
            )
        return True

    async def _finish(self, redis: Redis, job: Job, finished_key: str, retain: int) -> None:
        await self._save(redis, job)
        await _await_redis(redis.zrem(self.keys.active(job.queue), job.id))
        await _await_redis(redis.zrem(self.keys.pending(job.queue), job.id))
        await self._release_dedup(redis, job)

        retain = max(retain, 0)
        await _await_redis(redis.lpush(finished_key, job.id))
        overflow = await _await_redis(redis.lrange(finished_key, retain, -1))
        if not overflow:
            return

        await _await_redis(redis.delete(*(self.keys.job(job.queue, _decode(i)) for i in overflow)))
        # LTRIM 0 -1 keeps everything, so an empty retention drops the list
        if retain == 0:
            await _await_redis(redis.delete(finished_key))
        else:
            await _await_redis(redis.ltrim(finished_key, 0, retain - 1))

    async def complete(self, job: Job, result: dict[str, Any] | None, retain: int) -> None:
        redis = await self._get_redis()
        now = self.now()
        job.status = JobStatus.COMPLETED
        job.result = result
        job.finished_at = now
        job.touch(now)

        with _store_errors("complete"):
            await self._finish(redis, job, self.keys.completed(job.queue), retain)

    async def retry(self, job: Job, delay: float, error: str | None) -> None:
        redis = await self._get_redis()
        now = self.now()
        job.status = JobStatus.PENDING
        job.error = error
        job.scheduled_for = delay_from(now, delay)
        job.touch(now)

        with _store_errors("retry"):
            await self._save(redis, job)
            await _await_redis(
                redis.eval(
                    MOVE_ONE_SCRIPT,
                    2,
                    self.keys.active(job.queue),
                    self.keys.pending(job.queue),
                    job.id,
                    to_ms(job.scheduled_for),
                )
            )

    async def fail(self, job: Job, error: str, retain: int) -> None:
        redis = await self._get_redis()
        now = self.now()
        job.status = JobStatus.FAILED
        job.error = error
        job.finished_at = now
        job.touch(now)

        with _store_errors("fail"):
            await self._finish(redis, job, self.keys.failed(job.queue), retain)

    async def recover_stalled(self, queue: str) -> list[str]:
        redis = await self._get_redis()
        now_ms = self._now_ms()

        with _store_errors("recover_stalled"):
            ids = await _await_redis(
                redis.eval(
                    MOVE_DUE_SCRIPT,
                    2,
                    self.keys.active(queue),
                    self.keys.pending(queue),
                    now_ms,
                    STALLED_BATCH,
                    now_ms,
                )
            )

            recovered = [_decode(i) for i in cast(list[Any], ids)]
            for job_id in recovered:
                job = await self.get(queue, job_id)
                if job is not None:
                    job.status = JobStatus.PENDING
                    job.touch(self.now())
                    await self._save(redis, job)

        return recovered

    async def consume_rate(self, queue: str, limit: RateLimit) -> float:
        redis = await self._get_redis()
        now_ts = self._clock()
        window = int(now_ts // limit.duration)
        key = self.keys.limiter(queue, window)

        with _store_errors("consume_rate"):
            count = await _await_redis(redis.incr(key))
            if count == 1:
                await _await_redis(redis.pexpire(key, int(limit.duration * 1000) + 1000))

        if count <= limit.max:
            return 0.0
        return (window + 1) * limit.duration - now_ts

    async def stats(self, queue: str) -> dict[str, int]:
        redis = await self._get_redis()
        with _store_errors("stats"):
            return {
                "pending": await _await_redis(redis.zcard(self.keys.pending(queue))),
                "active": await _await_redis(redis.zcard(self.keys.active(queue))),
                "completed": await _await_redis(redis.llen(self.keys.completed(queue))),
                "failed": await _await_redis(redis.llen(self.keys.failed(queue))),
            }

    async def _load_schedule(self, queue: str, fixed_id: str) -> RecurringSchedule | None:
        redis = await self._get_redis()
        with _store_errors("load_schedule"):
            data = await _await_redis(redis.hget(self.keys.schedules(queue), fixed_id))
        return RecurringSchedule.from_dict(orjson.loads(data)) if data is not None else None

    async def _save_schedule(self, queue: str, schedule: RecurringSchedule) -> None:
        redis = await self._get_redis()
        with _store_errors("save_schedule"):
            await _await_redis(
                redis.hset(
                    self.keys.schedules(queue),
                    schedule.fixed_id,
                    orjson.dumps(schedule.to_dict()),
                )
            )

    async def list_schedules(self, queue: str) -> list[RecurringSchedule]:
        redis = await self._get_redis()
        with _store_errors("list_schedules"):
            entries = await _await_redis(redis.hgetall(self.keys.schedules(queue)))
        return [RecurringSchedule.from_dict(orjson.loads(data)) for data in entries.values()]

    async def remove_schedule(self, queue: str, fixed_id: str) -> bool:
        redis = await self._get_redis()
        with _store_errors("remove_schedule"):
            removed = await _await_redis(redis.hdel(self.keys.schedules(queue), fixed_id))
        return bool(removed)


def create_broker() -> JobBroker:
    """Build the broker selected by settings.task_backend."""
    if settings.task_backend == "memory":
        return InMemoryJobBroker()
    return RedisJobBroker()
