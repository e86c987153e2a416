"""
Flow observers - lifecycle hooks for logging, metrics and debugging.

The runner reports every lifecycle event of a run to an optional observer.
Every hook is optional: an observer implements only the ones it cares
about. A hook that raises is logged and ignored, so observability can never
break a run.

Hook order for a successful two-step run::

    on_flow_start(flow, input)
    on_step_start("a", ctx) -> on_step_complete("a", result, duration_ms, ctx)
    on_step_start("b", ctx) -> on_step_complete("b", result, duration_ms, ctx)
    on_flow_complete(flow, output, duration_ms)

Retries add ``on_step_retry`` plus another ``on_step_start`` per attempt.
A failure ends with ``on_step_error`` then ``on_flow_error``. A taken break
ends with ``on_step_complete`` of the break step then ``on_flow_break``;
``on_flow_complete`` is not called.

Implementations:
    NoOpObserver        silent
    ConsoleObserver     one plain text line per event
    StructlogObserver   one structlog record per event
    RecordingObserver   keeps every call, for tests

Tags:
    flume, orchestration, observer, hooks, structlog, observability
"""

from __future__ import annotations

import inspect
import sys
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Protocol, TextIO, runtime_checkable

from flume.core.errors import FlumeError
from flume.core.logging import get_logger

if TYPE_CHECKING:
    from flume.orchestration.flow_context import FlowContext

logger = get_logger(__name__)

HOOKS = (
    "on_flow_start",
    "on_flow_complete",
    "on_flow_error",
    "on_flow_break",
    "on_step_start",
    "on_step_complete",
    "on_step_error",
    "on_step_retry",
    "on_step_skipped",
)


@runtime_checkable
class FlowObserver(Protocol):
    """Lifecycle hooks of a run. All of them are optional.

    Hooks may be plain methods or coroutine methods. Durations are in
    milliseconds.
    """

    def on_flow_start(self, flow: str, input: Any) -> Any: ...

    def on_flow_complete(self, flow: str, output: Any, duration_ms: float) -> Any: ...

    def on_flow_error(self, flow: str, error: BaseException, duration_ms: float) -> Any: ...

    def on_flow_break(self, flow: str, step: str, value: Any, duration_ms: float) -> Any: ...

    def on_step_start(self, step: str, ctx: FlowContext) -> Any: ...

    def on_step_complete(
        self, step: str, result: Any, duration_ms: float, ctx: FlowContext
    ) -> Any: ...

    def on_step_error(
        self, step: str, error: BaseException, duration_ms: float, ctx: FlowContext
    ) -> Any: ...

    def on_step_retry(
        self, step: str, attempt: int, max_attempts: int, error: BaseException, ctx: FlowContext
    ) -> Any: ...

    def on_step_skipped(self, step: str, ctx: FlowContext) -> Any: ...


class ObserverNotifier:
    """Dispatches hooks to an observer, tolerating missing or failing hooks."""

    def __init__(self, observer: Any | None):
        self.observer = observer

    async def notify(self, hook: str, *args: Any) -> None:
        if self.observer is None:
            return
        method = getattr(self.observer, hook, None)
        if method is None:
            return
        try:
            outcome = method(*args)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning(
                "observer.hook_failed",
                hook=hook,
                observer=type(self.observer).__name__,
                error=str(e),
            )


def _error_fields(error: BaseException) -> dict[str, Any]:
    if isinstance(error, FlumeError):
        return error.to_dict()
    return {"error_type": type(error).__name__, "message": str(error)}


# =============================================================================
# Implementations
# =============================================================================


class NoOpObserver:
    """Observer that does nothing."""

    def on_flow_start(self, flow: str, input: Any) -> None:
        pass

    def on_flow_complete(self, flow: str, output: Any, duration_ms: float) -> None:
        pass

    def on_flow_error(self, flow: str, error: BaseException, duration_ms: float) -> None:
        pass

    def on_flow_break(self, flow: str, step: str, value: Any, duration_ms: float) -> None:
        pass

    def on_step_start(self, step: str, ctx: FlowContext) -> None:
        pass

    def on_step_complete(self, step: str, result: Any, duration_ms: float, ctx: FlowContext) -> None:
        pass

    def on_step_error(
        self, step: str, error: BaseException, duration_ms: float, ctx: FlowContext
    ) -> None:
        pass

    def on_step_retry(
        self, step: str, attempt: int, max_attempts: int, error: BaseException, ctx: FlowContext
    ) -> None:
        pass

    def on_step_skipped(self, step: str, ctx: FlowContext) -> None:
        pass


class ConsoleObserver:
    """Writes one human-readable line per event.

    Example output::

        [flume] Flow checkout started
        [flume] Step started: charge
        [flume] Step retry: charge (attempt 1/3) - card network unavailable
        [flume] Step completed: charge (12.4ms)
        [flume] Flow checkout completed (15.0ms)
    """

    def __init__(self, stream: TextIO | None = None, prefix: str = "[flume]"):
        self.stream = stream
        self.prefix = prefix

    def _write(self, message: str) -> None:
        stream = self.stream if self.stream is not None else sys.stderr
        stream.write(f"{self.prefix} {message}\n")

    def on_flow_start(self, flow: str, input: Any) -> None:
        self._write(f"Flow {flow} started")

    def on_flow_complete(self, flow: str, output: Any, duration_ms: float) -> None:
        self._write(f"Flow {flow} completed ({duration_ms:.1f}ms)")

    def on_flow_error(self, flow: str, error: BaseException, duration_ms: float) -> None:
        self._write(f"Flow failed: {flow} ({duration_ms:.1f}ms) - {error}")

    def on_flow_break(self, flow: str, step: str, value: Any, duration_ms: float) -> None:
        self._write(f"Flow {flow} short-circuited at '{step}' ({duration_ms:.1f}ms)")

    def on_step_start(self, step: str, ctx: FlowContext) -> None:
        self._write(f"Step started: {step}")

    def on_step_complete(self, step: str, result: Any, duration_ms: float, ctx: FlowContext) -> None:
        self._write(f"Step completed: {step} ({duration_ms:.1f}ms)")

    def on_step_error(
        self, step: str, error: BaseException, duration_ms: float, ctx: FlowContext
    ) -> None:
        self._write(f"Step failed: {step} ({duration_ms:.1f}ms) - {error}")

    def on_step_retry(
        self, step: str, attempt: int, max_attempts: int, error: BaseException, ctx: FlowContext
    ) -> None:
        self._write(f"Step retry: {step} (attempt {attempt}/{max_attempts}) - {error}")

    def on_step_skipped(self, step: str, ctx: FlowContext) -> None:
        self._write(f"Step skipped: {step}")


class StructlogObserver:
    """Emits one structlog record per event.

    Records carry ``flow`` / ``step``, ``durationMs``, ``attempt`` /
    ``maxAttempts`` and ``err`` where relevant, plus ``resultKeys`` for
    completed steps that returned a mapping and ``breakStep`` for
    short-circuited flows. Key names match the records other flume
    runtimes emit so dashboards can share queries.
    """

    def __init__(self, log: Any | None = None):
        self.log = (log if log is not None else get_logger("flume.observer")).bind(component="flow")

    def on_flow_start(self, flow: str, input: Any) -> None:
        self.log.info("flow.started", flow=flow)

    def on_flow_complete(self, flow: str, output: Any, duration_ms: float) -> None:
        self.log.info("flow.completed", flow=flow, durationMs=duration_ms)

    def on_flow_error(self, flow: str, error: BaseException, duration_ms: float) -> None:
        self.log.error("flow.failed", flow=flow, durationMs=duration_ms, err=_error_fields(error))

    def on_flow_break(self, flow: str, step: str, value: Any, duration_ms: float) -> None:
        self.log.info("flow.short_circuited", flow=flow, breakStep=step, durationMs=duration_ms)

    def on_step_start(self, step: str, ctx: FlowContext) -> None:
        self.log.debug("step.started", step=step)

    def on_step_complete(self, step: str, result: Any, duration_ms: float, ctx: FlowContext) -> None:
        fields: dict[str, Any] = {"step": step, "durationMs": duration_ms}
        if isinstance(result, Mapping):
            fields["resultKeys"] = list(result.keys())
        self.log.info("step.completed", **fields)

    def on_step_error(
        self, step: str, error: BaseException, duration_ms: float, ctx: FlowContext
    ) -> None:
        self.log.error("step.failed", step=step, durationMs=duration_ms, err=_error_fields(error))

    def on_step_retry(
        self, step: str, attempt: int, max_attempts: int, error: BaseException, ctx: FlowContext
    ) -> None:
        self.log.warning(
            "step.retrying",
            step=step,
            attempt=attempt,
            maxAttempts=max_attempts,
            err=_error_fields(error),
        )

    def on_step_skipped(self, step: str, ctx: FlowContext) -> None:
        self.log.debug("step.skipped", step=step)


class RecordingObserver:
    """Keeps every hook call in order.

    ``calls`` holds ``(hook, args)`` tuples; ``events`` holds ``(hook, name)``
    tuples where ``name`` is the step name for step hooks and the flow name
    for flow hooks.

    Example:
        >>> observer = RecordingObserver()
        >>> await flow.run({"email": "a@b.c"}, options=ExecutionOptions(observer=observer))
        >>> observer.steps_for("on_step_complete")
        ['checkInput', 'save']
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    def __getattr__(self, name: str) -> Any:
        if name not in HOOKS:
            raise AttributeError(name)

        def record(*args: Any) -> None:
            self.calls.append((name, args))

        return record

    @property
    def events(self) -> list[tuple[str, Any]]:
        return [(hook, args[0] if args else None) for hook, args in self.calls]

    @property
    def hooks(self) -> list[str]:
        """Hook names in call order."""
        return [hook for hook, _ in self.calls]

    def steps_for(self, hook: str) -> list[str]:
        """Step (or flow) names passed to ``hook``, in call order."""
        return [name for h, name in self.events if h == hook]

    def args_for(self, hook: str) -> list[tuple[Any, ...]]:
        """Argument tuples passed to ``hook``, in call order."""
        return [args for h, args in self.calls if h == hook]

    def clear(self) -> None:
        self.calls.clear()


__all__ = [
    "ConsoleObserver",
    "FlowObserver",
    "HOOKS",
    "NoOpObserver",
    "ObserverNotifier",
    "RecordingObserver",
    "StructlogObserver",
]
