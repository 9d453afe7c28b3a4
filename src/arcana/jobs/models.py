"""Job, lane and schedule definitions shared by brokers, queues and workers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from arcana.config import settings

DEFAULT_REMOVE_ON_COMPLETE = 100
DEFAULT_REMOVE_ON_FAIL = 50


def default_attempts() -> int:
    return settings.default_job_attempts


def default_backoff_delay() -> float:
    """Base retry delay in seconds."""
    return settings.default_backoff_delay


def utcnow() -> datetime:
    return datetime.now(UTC)


def to_ms(dt: datetime) -> int:
    """Epoch milliseconds, used as sorted-set scores."""
    return int(dt.timestamp() * 1000)


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class JobStatus(str, Enum):
    """Job lifecycle status."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class BackoffType(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class BackoffPolicy:
    """Maps an attempt number to a retry delay.

    attempt is the number of failed attempts so far (1 for the first retry).
    Fixed backoff always waits `delay`; exponential waits
    `delay * 2 ** (attempt - 1)`.
    """

    type: BackoffType = BackoffType.EXPONENTIAL
    delay: float = field(default_factory=default_backoff_delay)

    def compute(self, attempt: int) -> float:
        if self.type is BackoffType.FIXED:
            return self.delay
        return self.delay * (2 ** max(attempt - 1, 0))

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "delay": self.delay}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> BackoffPolicy:
        if not data:
            return cls()
        return cls(type=BackoffType(data["type"]), delay=float(data["delay"]))


@dataclass(frozen=True)
class RateLimit:
    """At most `max` jobs admitted per `duration` seconds, fleet-wide."""

    max: int
    duration: float


@dataclass
class LaneConfig:
    """A priority lane: a named queue with its own worker pool and defaults."""

    name: str
    concurrency: int = 1
    attempts: int = field(default_factory=default_attempts)
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    limiter: RateLimit | None = None
    remove_on_complete: int = DEFAULT_REMOVE_ON_COMPLETE
    remove_on_fail: int = DEFAULT_REMOVE_ON_FAIL


@dataclass
class JobOptions:
    """Per-job overrides for enqueue.

    Attributes:
        attempts: Max attempts (lane default if None)
        backoff: Backoff policy (lane default if None)
        dedup_key: Suppress insertion while a job with this key is in flight
        cron: Register a recurring schedule instead of a single job
        job_id: Caller-supplied id; insertion is skipped if it is taken
        delay: Seconds before the job becomes eligible
    """

    attempts: int | None = None
    backoff: BackoffPolicy | None = None
    dedup_key: str | None = None
    cron: str | None = None
    job_id: str | None = None
    delay: float = 0.0


@dataclass
class Job:
    """Job definition with metadata and state."""

    id: str
    queue: str
    type: str
    payload: dict[str, Any]
    status: JobStatus = JobStatus.PENDING
    attempts_made: int = 0
    max_attempts: int = field(default_factory=default_attempts)
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    dedup_key: str | None = None
    repeat_id: str | None = None
    scheduled_for: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: dict[str, Any] | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def manual(self) -> bool:
        """Whether an operator triggered this job by hand."""
        return self.payload.get("manual") is True

    def touch(self, now: datetime | None = None) -> None:
        self.updated_at = now or utcnow()

    def to_dict(self) -> dict[str, Any]:
        """Serialize job to dictionary."""
        return {
            "id": self.id,
            "queue": self.queue,
            "type": self.type,
            "payload": self.payload,
            "status": self.status.value,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "backoff": self.backoff.to_dict(),
            "dedup_key": self.dedup_key,
            "repeat_id": self.repeat_id,
            "scheduled_for": self.scheduled_for.isoformat(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "result": self.result,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        """Deserialize job from dictionary."""
        return cls(
            id=data["id"],
            queue=data["queue"],
            type=data["type"],
            payload=data["payload"],
            status=JobStatus(data["status"]),
            attempts_made=data.get("attempts_made", 0),
            max_attempts=data.get("max_attempts") or default_attempts(),
            backoff=BackoffPolicy.from_dict(data.get("backoff")),
            dedup_key=data.get("dedup_key"),
            repeat_id=data.get("repeat_id"),
            scheduled_for=datetime.fromisoformat(data["scheduled_for"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            started_at=_parse_dt(data.get("started_at")),
            finished_at=_parse_dt(data.get("finished_at")),
            result=data.get("result"),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class RecurringSchedule:
    """A cron-driven job registration, unique per queue by fixed_id.

    next_run is owned by the broker: it is filled in on upsert and advanced
    each time the schedule produces a job.
    """

    job_type: str
    cron: str
    fixed_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    attempts: int = field(default_factory=default_attempts)
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    next_run: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_type": self.job_type,
            "cron": self.cron,
            "fixed_id": self.fixed_id,
            "payload": self.payload,
            "attempts": self.attempts,
            "backoff": self.backoff.to_dict(),
            "next_run": self.next_run.isoformat() if self.next_run else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecurringSchedule:
        return cls(
            job_type=data["job_type"],
            cron=data["cron"],
            fixed_id=data["fixed_id"],
            payload=data.get("payload") or {},
            attempts=data.get("attempts") or default_attempts(),
            backoff=BackoffPolicy.from_dict(data.get("backoff")),
            next_run=_parse_dt(data.get("next_run")),
        )


def delay_from(now: datetime, seconds: float) -> datetime:
    return now + timedelta(seconds=seconds)
