"""Retry loop with capped multiplicative backoff.

The engine retries a failing step attempt according to its ``RetryPolicy``.
The first wait is exactly the policy's initial delay; each following wait is
the previous one multiplied by ``backoff_multiplier`` and capped at
``max_delay``. There is no jitter: runs are reproducible.

Example:
    >>> schedule = BackoffSchedule(delay=0.1, multiplier=2.0, max_delay=0.3)
    >>> schedule.delays(4)
    [0.1, 0.2, 0.3]
    >>>
    >>> ctx = RetryContext(policy)
    >>> result = await ctx.run_async(call_api)
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

from flume.core.errors import ValidationError

T = TypeVar("T")

RetryCallback = Callable[[int, int, BaseException, float], Awaitable[None] | None]


async def _sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


class RetryPolicyLike(Protocol):
    """Attributes the retry loop reads from a step's retry policy."""

    max_attempts: int
    delay: float
    backoff_multiplier: float
    max_delay: float | None
    should_retry: Callable[[BaseException], bool] | None


@dataclass
class BackoffSchedule:
    """Multiplicative backoff capped at ``max_delay``.

    Attributes:
        delay: Wait before the second attempt, in seconds
        multiplier: Factor applied after each wait (1 keeps the delay constant)
        max_delay: Upper bound for any single wait (None = unbounded)
    """

    delay: float
    multiplier: float = 1.0
    max_delay: float | None = None
    _current: float = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._current = self.delay

    def next_delay(self) -> float:
        """Return the next wait and advance the schedule."""
        current = self._current
        grown = current * self.multiplier
        self._current = grown if self.max_delay is None else min(grown, self.max_delay)
        return current

    def delays(self, max_attempts: int) -> list[float]:
        """All waits a run with ``max_attempts`` attempts could perform."""
        schedule = BackoffSchedule(self.delay, self.multiplier, self.max_delay)
        return [schedule.next_delay() for _ in range(max(max_attempts - 1, 0))]


@dataclass
class RetryContext:
    """Tracks attempts of one step and drives the retry loop.

    The loop stops and re-raises the failure when any of these hold:

    - the policy's ``should_retry`` predicate returns False for the error
    - the error is a ``ValidationError``
    - the last allowed attempt just failed

    Otherwise ``on_retry(attempt, max_attempts, error, delay)`` is called and
    the loop sleeps ``delay`` seconds before the next attempt.

    Example:
        >>> ctx = RetryContext(policy, on_retry=notify)
        >>> result = await ctx.run_async(lambda: charge(order))
    """

    policy: RetryPolicyLike
    on_retry: RetryCallback | None = None
    attempt: int = field(default=0, init=False)
    errors: list[tuple[int, BaseException]] = field(default_factory=list, init=False)

    @property
    def max_attempts(self) -> int:
        return self.policy.max_attempts

    @property
    def attempts(self) -> int:
        """Number of attempts made."""
        return self.attempt

    def should_retry(self, error: BaseException) -> bool:
        """Whether a failed attempt is followed by another one."""
        if isinstance(error, ValidationError):
            return False
        predicate = self.policy.should_retry
        if predicate is not None and not predicate(error):
            return False
        return self.attempt < self.policy.max_attempts

    async def run_async(self, func: Callable[[], Awaitable[T]]) -> T:
        """Execute ``func`` until it succeeds or the policy gives up.

        Raises:
            The last exception raised by ``func``
        """
        schedule = BackoffSchedule(
            delay=self.policy.delay,
            multiplier=self.policy.backoff_multiplier,
            max_delay=self.policy.max_delay,
        )

        while True:
            self.attempt += 1
            try:
                return await func()
            except Exception as e:
                self.errors.append((self.attempt, e))

                if not self.should_retry(e):
                    raise

                delay = schedule.next_delay()

                if self.on_retry is not None:
                    outcome = self.on_retry(self.attempt, self.policy.max_attempts, e, delay)
                    if inspect.isawaitable(outcome):
                        await outcome

                await _sleep(delay)


__all__ = [
    "BackoffSchedule",
    "RetryCallback",
    "RetryContext",
    "RetryPolicyLike",
]
