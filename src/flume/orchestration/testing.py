"""Test Harness: utilities for testing flows.

Manifesto:
Testing flows means faking collaborators, counting handler calls and
asserting on run results and lifecycle notifications. This module provides
off-the-shelf helpers so test code is concise and expressive.

ARCHITECTURE
────────────
::

    Test doubles:
      FlakyHandler              → fails N times, then returns a result
      SlowHandler               → sleeps, then returns a result
      InMemoryDatabase          → transactional db recording commits/rollbacks
      InMemoryEventPublisher    → publisher recording every event
      RecordingObserver         → records every observer hook call

    Assertion helpers:
      assert_flow_completed(result)
      assert_flow_broke(result, step=None)
      assert_flow_failed(result, error_type=None)
      assert_state(result, **expected)
      assert_hooks(observer, expected)

    Factories:
      make_flow(*handlers)      → quick flow from plain functions
      make_deps(...)            → Dependencies with in-memory collaborators

Example::

    from flume.orchestration.testing import FlakyHandler, assert_state, make_flow

    async def test_retry_recovers():
        handler = FlakyHandler(failures=2, result={"ok": True})
        flow = make_flow(handler, retry=RetryPolicy(max_attempts=3, delay=0))
        result = await flow.run({})
        assert_state(result, ok=True)
        assert handler.calls == 3

Tags:
    flume, orchestration, testing, harness, assertions, doubles
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from typing import Any

from flume.core.dependencies import Dependencies, InMemoryDatabase
from flume.core.events import InMemoryEventPublisher
from flume.orchestration.flow import Flow
from flume.orchestration.flow_context import FlowContext
from flume.orchestration.flow_runner import RunResult
from flume.orchestration.observer import RecordingObserver
from flume.orchestration.step_types import RetryPolicy, Step

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FlakyHandler:
    """Step handler raising ``error`` for the first ``failures`` calls.

    Parameters
    ----------
    failures
        Number of calls that fail before the handler succeeds.
    result
        Mapping returned once the handler succeeds.
    error
        Exception factory for failing calls.
    """

    def __init__(
        self,
        failures: int,
        result: dict[str, Any] | None = None,
        error: Callable[[int], BaseException] | None = None,
    ) -> None:
        self.failures = failures
        self.result = result if result is not None else {}
        self._error = error or (lambda call: RuntimeError(f"transient failure #{call}"))
        self.calls = 0
        self.contexts: list[FlowContext] = []

    async def __call__(self, ctx: FlowContext) -> dict[str, Any]:
        self.calls += 1
        self.contexts.append(ctx)
        if self.calls <= self.failures:
            raise self._error(self.calls)
        return dict(self.result)


class SlowHandler:
    """Step handler sleeping ``seconds`` before returning ``result``."""

    def __init__(self, seconds: float, result: dict[str, Any] | None = None) -> None:
        self.seconds = seconds
        self.result = result if result is not None else {}
        self.calls = 0
        self.finished = 0

    async def __call__(self, ctx: FlowContext) -> dict[str, Any]:
        self.calls += 1
        await asyncio.sleep(self.seconds)
        self.finished += 1
        return dict(self.result)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def make_flow(
    *handlers: Callable[[FlowContext], Any],
    name: str = "test.flow",
    retry: RetryPolicy | None = None,
) -> Flow:
    """Build a flow of compute steps named ``step_1``, ``step_2``, ...

    ``retry`` applies to every step.
    """
    steps = [
        Step.compute(f"step_{i}", handler, retry=retry)
        for i, handler in enumerate(handlers, start=1)
    ]
    return Flow.create(name, steps)


def make_deps(
    db: Any | None = None,
    event_publisher: Any | None = None,
) -> Dependencies:
    """Dependencies with fresh in-memory collaborators where none are given."""
    return Dependencies(
        db=db if db is not None else InMemoryDatabase(),
        event_publisher=event_publisher if event_publisher is not None else InMemoryEventPublisher(),
    )


# ---------------------------------------------------------------------------
# Assertion helpers
# ---------------------------------------------------------------------------


def assert_flow_completed(result: RunResult) -> None:
    """Assert the run finished normally (no break, no swallowed error)."""
    assert result.error is None, f"Flow '{result.flow_name}' failed: {result.error}"
    assert not result.did_break, (
        f"Flow '{result.flow_name}' short-circuited at '{result.break_step}'"
    )


def assert_flow_broke(result: RunResult, step: str | None = None) -> None:
    """Assert the run short-circuited, optionally at ``step``."""
    assert result.did_break, f"Flow '{result.flow_name}' did not short-circuit"
    if step is not None:
        assert result.break_step == step, (
            f"Expected break at '{step}', got '{result.break_step}'"
        )


def assert_flow_failed(
    result: RunResult,
    error_type: type[BaseException] | None = None,
) -> None:
    """Assert a swallowed failure (``throw_on_error=False``)."""
    assert result.error is not None, f"Flow '{result.flow_name}' did not fail"
    if error_type is not None:
        assert isinstance(result.error, error_type), (
            f"Expected {error_type.__name__}, got {type(result.error).__name__}"
        )


def assert_state(result: RunResult, **expected: Any) -> None:
    """Assert the final state contains ``expected`` key/value pairs."""
    for key, value in expected.items():
        assert key in result.value, f"State has no key '{key}': {sorted(result.value)}"
        actual = result.value[key]
        assert actual == value, f"State['{key}']: expected {value!r}, got {actual!r}"


def assert_hooks(observer: RecordingObserver, expected: Sequence[tuple[str, Any]]) -> None:
    """Assert the exact ``(hook, name)`` sequence recorded by ``observer``."""
    actual = observer.events
    assert actual == list(expected), f"Hook sequence mismatch:\n  expected {list(expected)}\n  actual   {actual}"


__all__ = [
    "FlakyHandler",
    "InMemoryDatabase",
    "InMemoryEventPublisher",
    "RecordingObserver",
    "SlowHandler",
    "assert_flow_broke",
    "assert_flow_completed",
    "assert_flow_failed",
    "assert_hooks",
    "assert_state",
    "make_deps",
    "make_flow",
]
