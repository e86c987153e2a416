"""Deadline tracking and non-cancelling timeout races.

Two pieces:

- ``Deadline`` tracks a monotonic deadline for the whole flow. The engine
  checks it before each step.
- ``race_with_timeout`` runs a coroutine as a task and waits for it with a
  time limit. On expiry the caller gets the timeout error while the task
  keeps running in the background. The task is never cancelled, so late
  side effects may still land. Handlers that can stop early should watch
  ``ctx.signal``.

Architecture:
    ::

        ┌────────────────────────────────────────────────────────────┐
        │ race_with_timeout(coro, 2.0, on_timeout=make_error)         │
        └────────────────────────────────────────────────────────────┘
                              │
                              ▼
        ┌────────────────────────────────────────────────────────────┐
        │ asyncio.create_task(coro)                                  │
        │ asyncio.wait({task}, timeout=2.0)                          │
        │   done     -> task.result()                                │
        │   pending  -> raise on_timeout()   (task keeps running)    │
        └────────────────────────────────────────────────────────────┘

Examples:
    >>> deadline = Deadline.start(30.0)
    >>> deadline.is_expired()
    False

    >>> result = await race_with_timeout(fetch(), 5.0)

Tags:
    timeout, deadline, asyncio, resilience, flume
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, TypeVar

from flume.core.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


class TimeoutExpired(TimeoutError):
    """Raised by ``race_with_timeout`` when no custom error is supplied.

    Attributes:
        timeout: The timeout value that was exceeded
        operation: Name/description of the operation
    """

    def __init__(self, timeout: float, operation: str = "operation"):
        self.timeout = timeout
        self.operation = operation
        super().__init__(f"Operation '{operation}' timed out after {timeout}s")


@dataclass
class Deadline:
    """Absolute deadline on the monotonic clock.

    Attributes:
        deadline: Absolute deadline timestamp (monotonic clock)
        timeout_seconds: Original timeout value in seconds
        start_time: When tracking started
    """

    deadline: float
    timeout_seconds: float
    start_time: float = field(default_factory=time.monotonic)

    @classmethod
    def start(cls, seconds: float) -> Deadline:
        if seconds <= 0:
            raise ValueError(f"Timeout must be positive, got {seconds}")
        now = time.monotonic()
        return cls(deadline=now + seconds, timeout_seconds=seconds, start_time=now)

    def remaining(self) -> float:
        """Seconds until the deadline, negative once expired."""
        return self.deadline - time.monotonic()

    @property
    def elapsed(self) -> float:
        """Elapsed time since start in seconds."""
        return time.monotonic() - self.start_time

    def is_expired(self) -> bool:
        """True if deadline has passed."""
        return time.monotonic() >= self.deadline


def _observe_late_outcome(operation: str) -> Callable[[asyncio.Task[Any]], None]:
    def callback(task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.debug("timeout.late_failure", operation=operation, error=str(error))
        else:
            logger.debug("timeout.late_completion", operation=operation)

    return callback


async def race_with_timeout(
    coro: Coroutine[Any, Any, T],
    seconds: float | None,
    *,
    operation: str = "operation",
    on_timeout: Callable[[], BaseException] | None = None,
) -> T:
    """Await ``coro`` for at most ``seconds``.

    Args:
        coro: Coroutine to run
        seconds: Limit in seconds; ``None`` awaits without a limit
        operation: Name used in log records and the default error
        on_timeout: Builds the exception raised on expiry

    Raises:
        The error built by ``on_timeout``, else ``TimeoutExpired``
    """
    if seconds is None:
        return await coro

    task = asyncio.create_task(coro)
    done, _ = await asyncio.wait({task}, timeout=seconds)
    if task in done:
        return task.result()

    # Left running; retrieve its outcome later so asyncio does not warn.
    task.add_done_callback(_observe_late_outcome(operation))
    raise on_timeout() if on_timeout is not None else TimeoutExpired(seconds, operation)


__all__ = [
    "Deadline",
    "TimeoutExpired",
    "race_with_timeout",
]
