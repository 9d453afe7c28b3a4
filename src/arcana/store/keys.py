"""Store key schema.

Key format: {prefix}:{kind}:{name}[:{variant}]

Where:
- prefix: "arcana" by default (namespace for a shared Redis)
- kind: "lock" for locks, "q" for job queues
- name: lock name or queue name
- variant: per-queue structure ("pending", "active", "job:<id>", ...)

Leader election locks live under the lock namespace as "leader:<election>".
"""

from __future__ import annotations

from arcana.config import settings


class StoreKeys:
    """Key generator following a consistent naming convention."""

    def __init__(self, prefix: str | None = None) -> None:
        self.prefix = prefix or settings.key_prefix

    def lock(self, name: str) -> str:
        """Key for a mutual-exclusion lock."""
        return f"{self.prefix}:lock:{name}"

    def leader(self, election: str) -> str:
        """Lock name used by a leader election."""
        return f"leader:{election}"

    def job(self, queue: str, job_id: str) -> str:
        """Key for a serialized job record."""
        return f"{self.prefix}:q:{queue}:job:{job_id}"

    def pending(self, queue: str) -> str:
        """Sorted set of pending job ids scored by scheduled-for (ms)."""
        return f"{self.prefix}:q:{queue}:pending"

    def active(self, queue: str) -> str:
        """Sorted set of active job ids scored by lease deadline (ms)."""
        return f"{self.prefix}:q:{queue}:active"

    def completed(self, queue: str) -> str:
        """List of recently completed job ids, newest first."""
        return f"{self.prefix}:q:{queue}:completed"

    def failed(self, queue: str) -> str:
        """List of recently failed job ids, newest first."""
        return f"{self.prefix}:q:{queue}:failed"

    def dedup(self, queue: str, dedup_key: str) -> str:
        """Key holding the id of the in-flight job owning a dedup key."""
        return f"{self.prefix}:q:{queue}:dedup:{dedup_key}"

    def schedules(self, queue: str) -> str:
        """Hash of recurring schedules keyed by fixed id."""
        return f"{self.prefix}:q:{queue}:repeat"

    def limiter(self, queue: str, window: int) -> str:
        """Counter of admitted jobs for one rate-limit window."""
        return f"{self.prefix}:q:{queue}:limiter:{window}"

    def parse_job_key(self, key: str) -> dict[str, str] | None:
        """Parse a job key into queue and job id.

        Returns None if the key doesn't match the expected format.
        """
        parts = key.split(":", 4)
        if len(parts) != 5 or parts[0] != self.prefix or parts[1] != "q" or parts[3] != "job":
            return None
        return {"queue": parts[2], "job_id": parts[4]}
