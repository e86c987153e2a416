"""Flow Runner: executes flows step by step against an accumulating state.

The FlowRunner takes an ordered list of :class:`~flume.orchestration.step_types.Step`
objects and runs them one after another. For every step it:

- checks the flow deadline and the caller's cancellation signal
- evaluates the run condition (skipping the step when it is False)
- short-circuits the flow when a break step's condition holds
- dispatches by step type under the step's retry policy and timeout
- shallow-merges a mapping result into the state

Every lifecycle event is reported to the optional observer, and the run is
logged with ``flow`` and ``correlation_id`` bound to the structlog context.

Example::

    from flume.orchestration import ExecutionOptions, FlowRunner, RetryPolicy, Step

    steps = [
        Step.validate("checkInput", check_input),
        Step.compute("charge", charge, retry=RetryPolicy(max_attempts=3, delay=0.5)),
        Step.event("publishEvent", "orders", order_placed),
    ]

    runner = FlowRunner()
    result = await runner.execute(
        "checkout",
        steps,
        input={"order_id": "o-1"},
        deps=Dependencies(event_publisher=bus),
        options=ExecutionOptions(step_timeout=2.0),
    )

    if result.did_break:
        print("stopped early with", result.value)
    else:
        print("final state", result.value)
"""

from __future__ import annotations

import inspect
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from flume.core.dependencies import DB_CAPABILITY, PUBLISHER_CAPABILITY, get_capability
from flume.core.errors import (
    FlowCancelledError,
    FlowDefinitionError,
    FlowExecutionError,
    FlumeError,
    MissingDependencyError,
    StepExecutionError,
    StepTimeoutError,
)
from flume.core.events import enrich_event, normalize_events
from flume.core.logging import LogContext, get_logger
from flume.core.settings import FlumeSettings, get_settings
from flume.execution.cancellation import CancellationSignal
from flume.execution.retry import RetryContext
from flume.execution.timeout import Deadline, race_with_timeout
from flume.orchestration.flow_context import FlowContext, FlowMeta, freeze, new_correlation_id
from flume.orchestration.observer import ObserverNotifier
from flume.orchestration.step_types import Step, StepType

logger = get_logger(__name__)

# Result reported to observers when a break condition does not hold.
BREAK_NOT_MET = "__break_condition_met"


@dataclass(frozen=True)
class ErrorHandling:
    """What to do when a step needs a capability the deps do not have.

    ``True`` fails the step with ``MissingDependencyError``; ``False`` logs a
    warning and treats the step as a no-op.
    """

    throw_on_missing_database: bool = True
    throw_on_missing_event_publisher: bool = True


@dataclass
class ExecutionOptions:
    """Per-run options.

    Attributes:
        correlation_id: Run identifier; a uuid4 hex string is issued when None
        timeout: Flow deadline in seconds, checked before each step
        step_timeout: Default per-attempt deadline in seconds
        signal: External cancellation signal
        observer: Lifecycle observer (see ``flume.orchestration.observer``)
        throw_on_error: Raise failures (True) or return the partial state (False)
        error_handling: Missing-dependency policy
    """

    correlation_id: str | None = None
    timeout: float | None = None
    step_timeout: float | None = None
    signal: CancellationSignal | None = None
    observer: Any | None = None
    throw_on_error: bool = True
    error_handling: ErrorHandling = field(default_factory=ErrorHandling)

    def __post_init__(self) -> None:
        for name in ("timeout", "step_timeout"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise FlowDefinitionError(f"{name} must be > 0 seconds, got {value!r}")

    @classmethod
    def from_settings(
        cls, settings: FlumeSettings | None = None, **overrides: Any
    ) -> ExecutionOptions:
        """Build options from ``FlumeSettings``; keyword arguments win."""
        settings = settings if settings is not None else get_settings()
        values: dict[str, Any] = {
            "timeout": settings.timeout,
            "step_timeout": settings.step_timeout,
            "throw_on_error": settings.throw_on_error,
            "error_handling": ErrorHandling(
                throw_on_missing_database=settings.throw_on_missing_database,
                throw_on_missing_event_publisher=settings.throw_on_missing_event_publisher,
            ),
        }
        values.update(overrides)
        return cls(**values)


@dataclass
class RunResult:
    """Outcome of one run.

    Attributes:
        value: Final state, or the break payload when ``did_break``
        did_break: True when a break step short-circuited the flow
        flow_name: Name of the flow
        correlation_id: Correlation id of the run
        duration_ms: Wall time of the run
        error: The failure, only when it was swallowed (``throw_on_error=False``)
        break_step: Name of the break step that fired
    """

    value: Any
    did_break: bool
    flow_name: str
    correlation_id: str
    duration_ms: float
    error: BaseException | None = None
    break_step: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging/CLI output."""
        result: dict[str, Any] = {
            "flow": self.flow_name,
            "correlation_id": self.correlation_id,
            "did_break": self.did_break,
            "duration_ms": round(self.duration_ms, 3),
            "value": self.value,
        }
        if self.break_step is not None:
            result["break_step"] = self.break_step
        if self.error is not None:
            result["error"] = (
                self.error.to_dict()
                if isinstance(self.error, FlumeError)
                else {"error_type": type(self.error).__name__, "message": str(self.error)}
            )
        return result


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass
class _Run:
    """Mutable bookkeeping of a single run."""

    meta: FlowMeta
    input: Any
    deps: Any
    options: ExecutionOptions
    notifier: ObserverNotifier
    started: float = field(default_factory=time.monotonic)
    deadline: Deadline | None = None
    signal: CancellationSignal = field(default_factory=CancellationSignal)
    # Raised by a validate handler; reported as-is instead of wrapped.
    validation_failure: BaseException | None = None
    _owned_signals: list[CancellationSignal] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.meta.flow_name

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started) * 1000

    def context(self, state: Mapping[str, Any], signal: CancellationSignal | None = None) -> FlowContext:
        return FlowContext(
            input=self.input,
            state=dict(state),
            deps=self.deps,
            meta=self.meta,
            signal=signal if signal is not None else self.signal,
        )

    def open_signals(self) -> None:
        timeout = self.options.timeout
        deadline_signal = None
        if timeout is not None:
            self.deadline = Deadline.start(timeout)
            deadline_signal = CancellationSignal.after(
                timeout,
                StepTimeoutError(
                    f"Flow '{self.name}' exceeded its timeout of {timeout}s",
                    self.name,
                    timeout=timeout,
                ),
            )
            self._owned_signals.append(deadline_signal)
        self.signal = CancellationSignal.any(self.options.signal, deadline_signal)
        self._owned_signals.append(self.signal)

    def close_signals(self) -> None:
        for signal in self._owned_signals:
            signal.dispose()
        self._owned_signals.clear()


class FlowRunner:
    """Executes flows with retry, timeouts, conditions and short-circuiting.

    Supports:

    * **validate** steps - reject input, never retried
    * **step** steps - compute a partial state update
    * **transaction** steps - via ``deps.db.transaction``
    * **event** steps - via ``deps.event_publisher.publish``
    * **break** steps - return early with a payload

    The runner holds no per-run state; one instance can execute any number
    of flows concurrently.
    """

    async def execute(
        self,
        name: str,
        steps: Iterable[Step],
        input: Any = None,
        deps: Any = None,
        options: ExecutionOptions | None = None,
    ) -> RunResult:
        """
        Execute a flow.

        Args:
            name: Flow name used in logs, errors and notifications
            steps: Steps in execution order
            input: Run input; frozen before the first step
            deps: Caller-owned dependency bag
            options: Per-run options

        Returns:
            RunResult with the final state or break payload

        Raises:
            FlumeError: When a step fails and ``throw_on_error`` is True
        """
        options = options if options is not None else ExecutionOptions()
        steps = tuple(steps)
        meta = FlowMeta(
            flow_name=name,
            correlation_id=options.correlation_id or new_correlation_id(),
        )
        run = _Run(
            meta=meta,
            input=freeze(input),
            deps=deps,
            options=options,
            notifier=ObserverNotifier(options.observer),
        )

        async with LogContext(flow=name, correlation_id=meta.correlation_id):
            logger.info("flow.start", step_count=len(steps))
            await run.notifier.notify("on_flow_start", name, run.input)

            run.open_signals()
            try:
                return await self._run_steps(run, steps)
            finally:
                run.close_signals()

    async def _run_steps(self, run: _Run, steps: tuple[Step, ...]) -> RunResult:
        state: dict[str, Any] = {}

        try:
            for step in steps:
                self._check_run(run, step)
                run.meta = run.meta.at_step(step.name)

                if step.condition is not None:
                    ctx = run.context(state)
                    if not await _resolve(step.condition(ctx)):
                        logger.debug("step.skipped", step=step.name)
                        await run.notifier.notify("on_step_skipped", step.name, ctx)
                        continue

                if step.step_type is StepType.BREAK:
                    broke = await self._evaluate_break(run, step, state)
                    if broke is not None:
                        return broke
                    continue

                result = await self._execute_with_policy(run, step, state)
                state = self._merge(step, state, result)

        except Exception as error:
            return await self._fail(run, state, error)

        duration_ms = run.elapsed_ms()
        logger.info("flow.complete", duration_ms=round(duration_ms, 3), state_keys=list(state))
        await run.notifier.notify("on_flow_complete", run.name, state, duration_ms)

        return RunResult(
            value=state,
            did_break=False,
            flow_name=run.name,
            correlation_id=run.meta.correlation_id,
            duration_ms=duration_ms,
        )

    def _check_run(self, run: _Run, step: Step) -> None:
        """Fail before ``step`` when the flow deadline passed or the caller cancelled."""
        if run.deadline is not None and run.deadline.is_expired():
            raise StepTimeoutError(
                f"Flow execution timeout after {run.deadline.elapsed:.3f}s "
                f"(limit: {run.deadline.timeout_seconds}s)",
                run.name,
                step.name,
                timeout=run.deadline.timeout_seconds,
            )

        external = run.options.signal
        if external is not None and external.aborted:
            reason = external.reason
            raise FlowCancelledError(
                f"Flow '{run.name}' was cancelled before step '{step.name}': {reason}",
                run.name,
                step.name,
                cause=reason if isinstance(reason, BaseException) else None,
            )

    async def _evaluate_break(
        self, run: _Run, step: Step, state: dict[str, Any]
    ) -> RunResult | None:
        ctx = run.context(state)
        started = time.monotonic()
        await run.notifier.notify("on_step_start", step.name, ctx)

        assert step.break_condition is not None
        if not await _resolve(step.break_condition(ctx)):
            await run.notifier.notify(
                "on_step_complete",
                step.name,
                {BREAK_NOT_MET: False},
                (time.monotonic() - started) * 1000,
                ctx,
            )
            return None

        value = await _resolve(step.break_value(ctx)) if step.break_value else ctx.state
        step_ms = (time.monotonic() - started) * 1000
        await run.notifier.notify("on_step_complete", step.name, value, step_ms, ctx)

        duration_ms = run.elapsed_ms()
        logger.info("flow.break", step=step.name, duration_ms=round(duration_ms, 3))
        await run.notifier.notify("on_flow_break", run.name, step.name, value, duration_ms)

        return RunResult(
            value=value,
            did_break=True,
            flow_name=run.name,
            correlation_id=run.meta.correlation_id,
            duration_ms=duration_ms,
            break_step=step.name,
        )

    async def _execute_with_policy(
        self, run: _Run, step: Step, state: dict[str, Any]
    ) -> Any:
        """Run ``step`` under its retry policy and timeout, notifying per attempt."""
        policy = step.retry_policy
        step_timeout = (
            policy.step_timeout
            if policy is not None and policy.step_timeout is not None
            else run.options.step_timeout
        )
        last: dict[str, Any] = {"ctx": run.context(state), "duration_ms": 0.0}

        async def attempt() -> Any:
            step_signal = CancellationSignal.any(run.signal)
            ctx = run.context(state, step_signal)
            last["ctx"] = ctx
            started = time.monotonic()

            def timed_out() -> StepTimeoutError:
                error = StepTimeoutError(
                    f"Step '{step.name}' timed out after {step_timeout}s",
                    run.name,
                    step.name,
                    timeout=step_timeout,
                )
                logger.warning("step.timeout", step=step.name, timeout=step_timeout)
                step_signal.abort(error)
                return error

            await run.notifier.notify("on_step_start", step.name, ctx)
            try:
                result = await race_with_timeout(
                    self._dispatch(run, step, ctx),
                    step_timeout,
                    operation=step.name,
                    on_timeout=timed_out,
                )
            except Exception:
                last["duration_ms"] = (time.monotonic() - started) * 1000
                raise
            finally:
                step_signal.dispose()

            await run.notifier.notify(
                "on_step_complete", step.name, result, (time.monotonic() - started) * 1000, ctx
            )
            return result

        async def on_retry(
            attempt_no: int, max_attempts: int, error: BaseException, delay: float
        ) -> None:
            logger.warning(
                "step.retry",
                step=step.name,
                attempt=attempt_no,
                max_attempts=max_attempts,
                delay=delay,
                error=str(error),
            )
            await run.notifier.notify(
                "on_step_retry", step.name, attempt_no, max_attempts, error, last["ctx"]
            )

        try:
            if policy is None or step.step_type is StepType.VALIDATE:
                return await attempt()
            return await RetryContext(policy, on_retry=on_retry).run_async(attempt)
        except Exception as error:
            if step.step_type is StepType.VALIDATE:
                run.validation_failure = error
            failure = self._attribute(run, step.name, error)
            await run.notifier.notify(
                "on_step_error", step.name, failure, last["duration_ms"], last["ctx"]
            )
            if failure is error:
                raise
            raise failure from error

    async def _dispatch(self, run: _Run, step: Step, ctx: FlowContext) -> Any:
        assert step.handler is not None
        if step.step_type is StepType.VALIDATE:
            await _resolve(step.handler(ctx))
            return None
        if step.step_type is StepType.STEP:
            return await _resolve(step.handler(ctx))
        if step.step_type is StepType.TRANSACTION:
            return await self._execute_transaction(run, step, ctx)
        if step.step_type is StepType.EVENT:
            await self._execute_event(run, step, ctx)
            return None
        raise FlowExecutionError(f"Unknown step type: {step.step_type}", run.name, step.name)

    async def _execute_transaction(self, run: _Run, step: Step, ctx: FlowContext) -> Any:
        db = get_capability(run.deps, DB_CAPABILITY)
        if db is None:
            message = "No database found in dependencies for transaction"
            if run.options.error_handling.throw_on_missing_database:
                raise MissingDependencyError(
                    message, run.name, step.name, capability=DB_CAPABILITY
                )
            logger.warning("dependency.missing", step=step.name, capability=DB_CAPABILITY)
            return None

        async def unit_of_work(tx: Any) -> Any:
            return await _resolve(step.handler(ctx, tx))

        return await _resolve(db.transaction(unit_of_work))

    async def _execute_event(self, run: _Run, step: Step, ctx: FlowContext) -> None:
        publisher = get_capability(run.deps, PUBLISHER_CAPABILITY)
        if publisher is None:
            message = "No event publisher found in dependencies"
            if run.options.error_handling.throw_on_missing_event_publisher:
                raise MissingDependencyError(
                    message, run.name, step.name, capability=PUBLISHER_CAPABILITY
                )
            logger.warning("dependency.missing", step=step.name, capability=PUBLISHER_CAPABILITY)
            return

        publish = getattr(publisher, "publish", None)
        if not callable(publish):
            raise FlowExecutionError(
                "Event publisher must have a publish() method", run.name, step.name
            )

        events = normalize_events(await _resolve(step.handler(ctx)))
        for event in events:
            await _resolve(publish(step.channel, enrich_event(event, run.meta.correlation_id)))

        logger.debug("step.events_published", step=step.name, channel=step.channel, count=len(events))

    def _merge(self, step: Step, state: dict[str, Any], result: Any) -> dict[str, Any]:
        if step.step_type is StepType.EVENT or result is None:
            return state
        if not isinstance(result, Mapping):
            logger.debug(
                "step.result_ignored", step=step.name, result_type=type(result).__name__
            )
            return state
        return {**state, **result}

    def _attribute(
        self, run: _Run, step_name: str | None, error: BaseException
    ) -> BaseException:
        """Attach flow/step context, wrapping foreign exceptions.

        Failures of validate handlers are returned unchanged; only a
        ``FlumeError`` among them gains context.
        """
        if isinstance(error, FlumeError):
            failure = error
        elif error is run.validation_failure:
            return error
        else:
            failure = StepExecutionError(run.name, step_name or "<flow>", error)
        return failure.with_context(
            flow=run.name,
            step=step_name,
            correlation_id=run.meta.correlation_id,
        )

    async def _fail(self, run: _Run, state: dict[str, Any], error: Exception) -> RunResult:
        failure = self._attribute(run, run.meta.current_step, error)
        duration_ms = run.elapsed_ms()

        logger.error(
            "flow.failed",
            step=run.meta.current_step,
            duration_ms=round(duration_ms, 3),
            error_type=type(failure).__name__,
            error=str(failure),
        )
        await run.notifier.notify("on_flow_error", run.name, failure, duration_ms)

        if run.options.throw_on_error:
            if failure is error:
                raise failure
            raise failure from error

        return RunResult(
            value=state,
            did_break=False,
            flow_name=run.name,
            correlation_id=run.meta.correlation_id,
            duration_ms=duration_ms,
            error=failure,
        )


def get_flow_runner() -> FlowRunner:
    """Get a flow runner instance."""
    return FlowRunner()


__all__ = [
    "BREAK_NOT_MET",
    "ErrorHandling",
    "ExecutionOptions",
    "FlowRunner",
    "RunResult",
    "get_flow_runner",
]
