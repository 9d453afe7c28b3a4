"""Helpers for testing that job handlers tolerate duplicate delivery.

Delivery is at-least-once: a handler may see the same payload again after a
lease expires or a leader hands over. Replaying a handler must not change
externally visible state a second time.

Example:
    async def snapshot() -> list[dict]:
        return await runtime.broker.stats("background-high")

    await assert_idempotent(handler, {"user_id": 1, ...}, snapshot)
"""

from __future__ import annotations

import copy
import inspect
from typing import Any, Awaitable, Callable

from arcana.jobs.worker import JobHandler

Snapshot = Callable[[], Any | Awaitable[Any]]


async def _take(snapshot: Snapshot) -> Any:
    value = snapshot()
    if inspect.isawaitable(value):
        value = await value
    return copy.deepcopy(value)


async def replay_twice(
    handler: JobHandler, payload: dict[str, Any]
) -> tuple[dict[str, Any] | None, dict[str, Any] | None]:
    """Run a handler twice with independent copies of one payload."""
    first = await handler(copy.deepcopy(payload))
    second = await handler(copy.deepcopy(payload))
    return first, second


async def assert_idempotent(
    handler: JobHandler,
    payload: dict[str, Any],
    snapshot: Snapshot,
) -> None:
    """Assert a second delivery leaves externally visible state unchanged.

    Args:
        handler: Job handler under test
        payload: Payload delivered twice
        snapshot: Sync or async callable capturing the effects to compare

    Raises:
        AssertionError: If the replay changed the snapshot
    """
    await handler(copy.deepcopy(payload))
    after_first = await _take(snapshot)

    await handler(copy.deepcopy(payload))
    after_second = await _take(snapshot)

    assert after_first == after_second, (
        f"Handler is not idempotent: state after first delivery {after_first!r} "
        f"differs from state after replay {after_second!r}"
    )
