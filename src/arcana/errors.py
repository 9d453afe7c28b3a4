"""Error taxonomy for the task subsystem.

- TransientStoreError: the shared store is unreachable or timed out. Callers
  inside the subsystem retry on their next poll; it is never raised past the
  lock, election or worker loops.
- JobHandlerError: a job handler raised. Drives retry/backoff and, once
  attempts are exhausted, the terminal Failed state.
- ConfigurationError: bad wiring detected at startup or registration time
  (malformed cron, unknown job type or queue). Surfaced to the caller.
"""

from __future__ import annotations


class ArcanaError(Exception):
    """Base exception for task subsystem errors."""

    pass


class TransientStoreError(ArcanaError):
    """Shared store unreachable or timed out."""

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Store operation '{operation}' failed{detail}")


class JobHandlerError(ArcanaError):
    """A job handler raised while processing a job."""

    def __init__(self, job_id: str, job_type: str, attempt: int, cause: BaseException) -> None:
        self.job_id = job_id
        self.job_type = job_type
        self.attempt = attempt
        self.cause = cause
        super().__init__(f"Job {job_id} ({job_type}) failed on attempt {attempt}: {cause}")


class LockNotAcquiredError(ArcanaError):
    """Raised when entering a lock context whose lock is held elsewhere."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Could not acquire lock: {name}")


class ConfigurationError(ArcanaError, ValueError):
    """Invalid configuration detected at startup or registration."""

    pass
