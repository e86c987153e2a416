"""
Tests for FlowRunner execution semantics.

Covers step ordering, state accumulation, retries, timeouts, break
short-circuiting, transaction and event steps, error attribution and
cancellation.
"""

import asyncio
import time

import pytest

from flume.core.dependencies import Dependencies
from flume.core.errors import (
    FlowCancelledError,
    FlowExecutionError,
    MissingDependencyError,
    StepExecutionError,
    StepTimeoutError,
    ValidationError,
)
from flume.execution import retry as retry_module
from flume.execution.cancellation import CancellationSignal
from flume.orchestration.flow_runner import (
    BREAK_NOT_MET,
    ErrorHandling,
    ExecutionOptions,
    FlowRunner,
)
from flume.orchestration.step_types import RetryPolicy, Step
from flume.orchestration.testing import (
    FlakyHandler,
    SlowHandler,
    assert_flow_broke,
    assert_flow_completed,
    assert_flow_failed,
    assert_state,
)


@pytest.fixture
def runner() -> FlowRunner:
    return FlowRunner()


@pytest.fixture
def sleeps(monkeypatch):
    """Record retry sleeps instead of waiting."""
    recorded: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        recorded.append(seconds)

    monkeypatch.setattr(retry_module, "_sleep", fake_sleep)
    return recorded


# =============================================================================
# Ordering and state
# =============================================================================


class TestStateAccumulation:
    """Test sequential execution and shallow state merging."""

    @pytest.mark.asyncio
    async def test_results_accumulate(self, runner):
        steps = [
            Step.compute("a", lambda ctx: {"a": 1}),
            Step.compute("b", lambda ctx: {"b": 2}),
        ]
        result = await runner.execute("acc", steps)
        assert_flow_completed(result)
        assert result.value == {"a": 1, "b": 2}

    @pytest.mark.asyncio
    async def test_later_step_overwrites_key(self, runner):
        steps = [
            Step.compute("a", lambda ctx: {"x": 1, "keep": True}),
            Step.compute("b", lambda ctx: {"x": 2}),
        ]
        result = await runner.execute("overwrite", steps)
        assert result.value == {"x": 2, "keep": True}

    @pytest.mark.asyncio
    async def test_steps_see_prior_state(self, runner):
        async def total(ctx):
            return {"total": ctx.state["price"] * ctx.input["qty"]}

        steps = [Step.compute("price", lambda ctx: {"price": 5}), Step.compute("total", total)]
        result = await runner.execute("pricing", steps, input={"qty": 3})
        assert_state(result, total=15)

    @pytest.mark.asyncio
    async def test_non_mapping_results_are_ignored(self, runner):
        steps = [
            Step.compute("a", lambda ctx: {"a": 1}),
            Step.compute("none", lambda ctx: None),
            Step.compute("number", lambda ctx: 42),
        ]
        result = await runner.execute("ignored", steps)
        assert result.value == {"a": 1}

    @pytest.mark.asyncio
    async def test_mutating_snapshot_does_not_leak(self, runner):
        def sneaky(ctx):
            ctx.state["injected"] = True
            return {"b": 2}

        steps = [Step.compute("a", lambda ctx: {"a": 1}), Step.compute("b", sneaky)]
        result = await runner.execute("snapshot", steps)
        assert result.value == {"a": 1, "b": 2}

    @pytest.mark.asyncio
    async def test_input_is_frozen(self, runner):
        def write_input(ctx):
            ctx.input["order_id"] = "forged"

        steps = [Step.compute("write", write_input)]
        result = await runner.execute(
            "frozen", steps, input={"order_id": "o-1"}, options=ExecutionOptions(throw_on_error=False)
        )
        assert_flow_failed(result, StepExecutionError)
        assert isinstance(result.error.cause, TypeError)

    @pytest.mark.asyncio
    async def test_meta_is_read_only_to_steps(self, runner):
        def forge(ctx):
            ctx.meta.correlation_id = "forged"

        result = await runner.execute(
            "meta",
            [Step.compute("forge", forge)],
            options=ExecutionOptions(correlation_id="run-1", throw_on_error=False),
        )
        assert_flow_failed(result, StepExecutionError)
        assert isinstance(result.error.cause, AttributeError)
        assert result.correlation_id == "run-1"

    @pytest.mark.asyncio
    async def test_each_step_sees_its_own_meta(self, runner):
        seen = []

        def record(ctx):
            seen.append(ctx)
            return {}

        await runner.execute(
            "meta", [Step.compute("first", record), Step.compute("second", record)]
        )
        assert [ctx.meta.current_step for ctx in seen] == ["first", "second"]
        assert seen[0].correlation_id == seen[1].correlation_id

    @pytest.mark.asyncio
    async def test_empty_flow(self, runner, observer):
        result = await runner.execute("empty", [], options=ExecutionOptions(observer=observer))
        assert result.value == {}
        assert observer.hooks == ["on_flow_start", "on_flow_complete"]


class TestObserverOrder:
    """Test lifecycle notification order."""

    @pytest.mark.asyncio
    async def test_step_hooks_in_declaration_order(self, runner, observer):
        steps = [
            Step.compute("a", lambda ctx: {"a": 1}),
            Step.compute("b", lambda ctx: {"b": 2}),
        ]
        await runner.execute("ordered", steps, options=ExecutionOptions(observer=observer))

        assert observer.events == [
            ("on_flow_start", "ordered"),
            ("on_step_start", "a"),
            ("on_step_complete", "a"),
            ("on_step_start", "b"),
            ("on_step_complete", "b"),
            ("on_flow_complete", "ordered"),
        ]

    @pytest.mark.asyncio
    async def test_complete_hook_receives_result_and_duration(self, runner, observer):
        await runner.execute(
            "args",
            [Step.compute("a", lambda ctx: {"a": 1})],
            options=ExecutionOptions(observer=observer),
        )
        step, result, duration_ms, ctx = observer.args_for("on_step_complete")[0]
        assert (step, result) == ("a", {"a": 1})
        assert duration_ms >= 0
        assert ctx.flow_name == "args"

        flow, output, _ = observer.args_for("on_flow_complete")[0]
        assert output == {"a": 1}

    @pytest.mark.asyncio
    async def test_condition_false_skips_step(self, runner, observer):
        handler = FlakyHandler(failures=0, result={"charged": True})
        steps = [
            Step.compute("charge", handler, condition=lambda ctx: ctx.input["amount"] > 0),
            Step.compute("after", lambda ctx: {"after": True}),
        ]
        result = await runner.execute(
            "conditional", steps, input={"amount": 0}, options=ExecutionOptions(observer=observer)
        )

        assert handler.calls == 0
        assert result.value == {"after": True}
        assert observer.steps_for("on_step_skipped") == ["charge"]
        assert "charge" not in observer.steps_for("on_step_start")

    @pytest.mark.asyncio
    async def test_async_condition(self, runner):
        async def enabled(ctx):
            return True

        steps = [Step.compute("a", lambda ctx: {"a": 1}, condition=enabled)]
        result = await runner.execute("async_condition", steps)
        assert result.value == {"a": 1}

    @pytest.mark.asyncio
    async def test_failing_observer_does_not_break_run(self, runner):
        class BrokenObserver:
            def on_step_start(self, step, ctx):
                raise RuntimeError("observer bug")

        result = await runner.execute(
            "robust",
            [Step.compute("a", lambda ctx: {"a": 1})],
            options=ExecutionOptions(observer=BrokenObserver()),
        )
        assert result.value == {"a": 1}


# =============================================================================
# Retry
# =============================================================================


class TestRetry:
    """Test retry policies applied by the runner."""

    @pytest.mark.asyncio
    async def test_fails_twice_then_succeeds(self, runner, observer, sleeps):
        handler = FlakyHandler(failures=2, result={"ok": True})
        policy = RetryPolicy(max_attempts=3, delay=0.1, backoff_multiplier=2)
        steps = [Step.compute("flaky", handler, retry=policy)]

        result = await runner.execute("retry", steps, options=ExecutionOptions(observer=observer))

        assert_state(result, ok=True)
        assert handler.calls == 3
        assert sleeps == pytest.approx([0.1, 0.2])
        assert observer.steps_for("on_step_start") == ["flaky"] * 3
        assert observer.steps_for("on_step_retry") == ["flaky"] * 2
        assert observer.steps_for("on_step_complete") == ["flaky"]
        assert observer.steps_for("on_step_error") == []

        attempts = [(args[1], args[2]) for args in observer.args_for("on_step_retry")]
        assert attempts == [(1, 3), (2, 3)]

    @pytest.mark.asyncio
    async def test_each_attempt_gets_fresh_snapshot(self, runner, sleeps):
        handler = FlakyHandler(failures=1, result={"ok": True})
        steps = [
            Step.compute("seed", lambda ctx: {"seed": 1}),
            Step.compute("flaky", handler, retry=RetryPolicy(max_attempts=2, delay=0)),
        ]
        await runner.execute("fresh", steps)
        first, second = handler.contexts
        assert first.state == second.state == {"seed": 1}
        assert first.state is not second.state

    @pytest.mark.asyncio
    async def test_exhausted_retries_wrap_error(self, runner, observer, sleeps):
        handler = FlakyHandler(failures=10)
        steps = [Step.compute("flaky", handler, retry=RetryPolicy(max_attempts=3, delay=0))]

        with pytest.raises(StepExecutionError) as exc_info:
            await runner.execute("exhausted", steps, options=ExecutionOptions(observer=observer))

        error = exc_info.value
        assert handler.calls == 3
        assert isinstance(error.cause, RuntimeError)
        assert str(error.cause) == "transient failure #3"
        assert error.context.flow == "exhausted"
        assert error.context.step == "flaky"
        assert observer.steps_for("on_step_error") == ["flaky"]
        assert observer.hooks[-1] == "on_flow_error"

    @pytest.mark.asyncio
    async def test_validate_step_runs_exactly_once(self, runner, observer, sleeps):
        calls = []

        def check(ctx):
            calls.append(1)
            raise ValidationError.single("email", "Email is required")

        step = Step.validate("checkInput", check).with_retry(RetryPolicy(max_attempts=5, delay=0))

        with pytest.raises(ValidationError) as exc_info:
            await runner.execute("signup", [step], options=ExecutionOptions(observer=observer))

        assert len(calls) == 1
        assert exc_info.value.field == "email"
        assert exc_info.value.context.step == "checkInput"
        assert observer.steps_for("on_step_retry") == []

    @pytest.mark.asyncio
    async def test_validate_step_never_retried_for_other_errors(self, runner, sleeps, observer):
        calls = []
        original = ConnectionError("lookup failed")

        def check(ctx):
            calls.append(1)
            raise original

        step = Step.validate("checkInput", check).with_retry(RetryPolicy(max_attempts=5, delay=0))
        with pytest.raises(ConnectionError) as exc_info:
            await runner.execute("signup", [step], options=ExecutionOptions(observer=observer))

        assert len(calls) == 1
        assert exc_info.value is original
        assert observer.args_for("on_step_error")[0][1] is original
        assert observer.args_for("on_flow_error")[0][1] is original

    @pytest.mark.asyncio
    async def test_validate_step_error_returned_unchanged(self, runner):
        original = LookupError("no such account")

        def check(ctx):
            raise original

        result = await runner.execute(
            "signup",
            [Step.validate("checkInput", check), Step.compute("after", lambda ctx: {"x": 1})],
            options=ExecutionOptions(throw_on_error=False),
        )

        assert result.error is original
        assert result.value == {}
        assert result.to_dict()["error"] == {"error_type": "LookupError", "message": "no such account"}

    @pytest.mark.asyncio
    async def test_validation_error_in_compute_step_not_retried(self, runner, sleeps):
        handler = FlakyHandler(failures=5, error=lambda n: ValidationError("bad input"))
        steps = [Step.compute("compute", handler, retry=RetryPolicy(max_attempts=5, delay=0))]
        with pytest.raises(ValidationError):
            await runner.execute("compute_validation", steps)
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_should_retry_predicate(self, runner, sleeps):
        handler = FlakyHandler(failures=5, error=lambda n: PermissionError("denied"))
        policy = RetryPolicy(
            max_attempts=5, delay=0, should_retry=lambda e: not isinstance(e, PermissionError)
        )
        with pytest.raises(StepExecutionError):
            await runner.execute("predicate", [Step.compute("s", handler, retry=policy)])
        assert handler.calls == 1


# =============================================================================
# Timeouts and cancellation
# =============================================================================


class TestTimeouts:
    """Test per-step and flow deadlines."""

    @pytest.mark.asyncio
    async def test_step_timeout_rejects_in_about_the_limit(self, runner):
        handler = SlowHandler(0.5, {"late": True})
        steps = [Step.compute("slow", handler)]

        started = time.monotonic()
        with pytest.raises(StepTimeoutError) as exc_info:
            await runner.execute("timeouts", steps, options=ExecutionOptions(step_timeout=0.05))
        elapsed = time.monotonic() - started

        assert elapsed < 0.4
        assert exc_info.value.step_name == "slow"
        assert exc_info.value.timeout == 0.05
        assert isinstance(exc_info.value, TimeoutError)

    @pytest.mark.asyncio
    async def test_policy_timeout_overrides_default(self, runner):
        handler = SlowHandler(0.05, {"done": True})
        policy = RetryPolicy(max_attempts=1, step_timeout=1.0)
        steps = [Step.compute("slowish", handler, retry=policy)]

        result = await runner.execute("override", steps, options=ExecutionOptions(step_timeout=0.01))
        assert_state(result, done=True)

    @pytest.mark.asyncio
    async def test_timed_out_attempt_is_retried(self, runner, sleeps):
        calls = []

        async def first_slow(ctx):
            calls.append(1)
            if len(calls) == 1:
                await asyncio.sleep(0.3)
            return {"attempts": len(calls)}

        policy = RetryPolicy(max_attempts=2, delay=0, step_timeout=0.05)
        result = await runner.execute("retry_timeout", [Step.compute("s", first_slow, retry=policy)])
        assert_state(result, attempts=2)

    @pytest.mark.asyncio
    async def test_step_signal_aborted_on_timeout(self, runner):
        seen = []

        async def watcher(ctx):
            reason = await ctx.signal.wait()
            seen.append(reason)

        with pytest.raises(StepTimeoutError):
            await runner.execute(
                "signal", [Step.compute("watch", watcher)], options=ExecutionOptions(step_timeout=0.02)
            )
        await asyncio.sleep(0.01)
        assert len(seen) == 1
        assert isinstance(seen[0], StepTimeoutError)

    @pytest.mark.asyncio
    async def test_flow_deadline_names_next_step(self, runner):
        steps = [
            Step.compute("slow", SlowHandler(0.1, {"slow": True})),
            Step.compute("next", lambda ctx: {"next": True}),
        ]
        result = await runner.execute(
            "deadline", steps, options=ExecutionOptions(timeout=0.05, throw_on_error=False)
        )

        assert_flow_failed(result, StepTimeoutError)
        assert result.error.step_name == "next"
        assert "Flow execution timeout" in str(result.error)
        assert result.value == {"slow": True}

    @pytest.mark.asyncio
    async def test_external_cancellation(self, runner):
        signal = CancellationSignal()

        def cancel(ctx):
            signal.abort("caller gave up")
            return {"first": True}

        steps = [Step.compute("first", cancel), Step.compute("second", lambda ctx: {"second": True})]
        with pytest.raises(FlowCancelledError) as exc_info:
            await runner.execute("cancelled", steps, options=ExecutionOptions(signal=signal))

        assert exc_info.value.step_name == "second"
        assert "caller gave up" in str(exc_info.value)


# =============================================================================
# Break
# =============================================================================


class TestBreak:
    """Test conditional short-circuiting."""

    @pytest.mark.asyncio
    async def test_true_break_skips_remaining_steps(self, runner, observer):
        later = FlakyHandler(failures=0, result={"later": True})
        steps = [
            Step.compute("a", lambda ctx: {"cached": "hit"}),
            Step.break_("stopIfCached", lambda ctx: ctx.state["cached"] == "hit", lambda ctx: {"from": "cache"}),
            Step.compute("later", later),
        ]
        result = await runner.execute("break", steps, options=ExecutionOptions(observer=observer))

        assert_flow_broke(result, "stopIfCached")
        assert result.value == {"from": "cache"}
        assert later.calls == 0
        assert observer.steps_for("on_flow_break") == ["break"]
        assert "on_flow_complete" not in observer.hooks
        flow, step, value, _ = observer.args_for("on_flow_break")[0]
        assert (step, value) == ("stopIfCached", {"from": "cache"})

    @pytest.mark.asyncio
    async def test_break_without_value_returns_state(self, runner):
        steps = [
            Step.compute("a", lambda ctx: {"a": 1}),
            Step.break_("stop", lambda ctx: True),
        ]
        result = await runner.execute("break_state", steps)
        assert result.did_break
        assert result.value == {"a": 1}

    @pytest.mark.asyncio
    async def test_false_break_reports_marker_only_to_observer(self, runner, observer):
        steps = [
            Step.break_("maybeStop", lambda ctx: False),
            Step.compute("b", lambda ctx: {"b": 2}),
        ]
        result = await runner.execute("no_break", steps, options=ExecutionOptions(observer=observer))

        assert_flow_completed(result)
        assert result.value == {"b": 2}
        completed = {args[0]: args[1] for args in observer.args_for("on_step_complete")}
        assert completed["maybeStop"] == {BREAK_NOT_MET: False}

    @pytest.mark.asyncio
    async def test_conditional_break_step_skipped(self, runner, observer):
        steps = [
            Step.break_("stop", lambda ctx: True).with_condition(lambda ctx: False),
            Step.compute("b", lambda ctx: {"b": 2}),
        ]
        result = await runner.execute("skipped_break", steps, options=ExecutionOptions(observer=observer))
        assert not result.did_break
        assert observer.steps_for("on_step_skipped") == ["stop"]


# =============================================================================
# Transaction and event steps
# =============================================================================


class TestTransactionSteps:
    """Test steps running inside deps.db.transaction."""

    @pytest.mark.asyncio
    async def test_commits_and_merges_result(self, runner, db, deps):
        async def save(ctx, tx):
            tx.insert("orders", {"id": ctx.input["order_id"]})
            return {"saved": True}

        result = await runner.execute(
            "tx", [Step.transaction("save", save)], input={"order_id": "o-1"}, deps=deps
        )
        assert_state(result, saved=True)
        assert db.rows("orders") == [{"id": "o-1"}]
        assert db.commits == 1

    @pytest.mark.asyncio
    async def test_rolls_back_on_error(self, runner, db, deps):
        def save(ctx, tx):
            tx.insert("orders", {"id": "o-1"})
            raise RuntimeError("constraint violated")

        with pytest.raises(StepExecutionError):
            await runner.execute("tx_fail", [Step.transaction("save", save)], deps=deps)
        assert db.rows("orders") == []
        assert db.rollbacks == 1

    @pytest.mark.asyncio
    async def test_missing_database_fails(self, runner):
        with pytest.raises(MissingDependencyError) as exc_info:
            await runner.execute("no_db", [Step.transaction("save", lambda ctx, tx: {"x": 1})])
        assert exc_info.value.capability == "db"
        assert exc_info.value.step_name == "save"

    @pytest.mark.asyncio
    async def test_missing_database_tolerated(self, runner):
        options = ExecutionOptions(error_handling=ErrorHandling(throw_on_missing_database=False))
        steps = [
            Step.transaction("save", lambda ctx, tx: {"x": 1}),
            Step.compute("after", lambda ctx: {"after": True}),
        ]
        result = await runner.execute("no_db_ok", steps, options=options)
        assert result.value == {"after": True}

    @pytest.mark.asyncio
    async def test_sync_database(self, runner):
        class SyncDb:
            def transaction(self, fn):
                return fn("tx")

        async def save(ctx, tx):
            return {"tx": tx}

        result = await runner.execute(
            "sync_db", [Step.transaction("save", save)], deps={"db": SyncDb()}
        )
        assert result.value == {"tx": "tx"}


class TestEventSteps:
    """Test steps publishing through deps.event_publisher."""

    @pytest.mark.asyncio
    async def test_publishes_enriched_events(self, runner, publisher, deps):
        steps = [
            Step.compute("create", lambda ctx: {"id": "u-1"}),
            Step.event(
                "publishEvent",
                "users",
                lambda ctx: [
                    {"eventType": "UserCreated", "id": ctx.state["id"]},
                    {"eventType": "WelcomeQueued", "correlationId": "forged"},
                    {"noType": True},
                ],
            ),
        ]
        result = await runner.execute(
            "events", steps, deps=deps, options=ExecutionOptions(correlation_id="run-1")
        )

        assert result.value == {"id": "u-1"}
        assert publisher.events_for("users") == [
            {"eventType": "UserCreated", "id": "u-1", "correlationId": "run-1"},
            {"eventType": "WelcomeQueued", "correlationId": "run-1"},
        ]

    @pytest.mark.asyncio
    async def test_generator_handler_publishes_each_event(self, runner, publisher, deps):
        def reminders(ctx):
            for day in (1, 7):
                yield {"eventType": "ReminderScheduled", "day": day}

        result = await runner.execute(
            "reminders",
            [Step.event("publishEvent", "users", reminders)],
            deps=deps,
            options=ExecutionOptions(correlation_id="run-2"),
        )

        assert result.ok
        assert publisher.events_for("users") == [
            {"eventType": "ReminderScheduled", "day": 1, "correlationId": "run-2"},
            {"eventType": "ReminderScheduled", "day": 7, "correlationId": "run-2"},
        ]

    @pytest.mark.asyncio
    async def test_event_handler_returning_none_publishes_nothing(self, runner, publisher, deps):
        await runner.execute("quiet", [Step.event("publishEvent", "users", lambda ctx: None)], deps=deps)
        assert publisher.published == []

    @pytest.mark.asyncio
    async def test_missing_publisher_fails(self, runner):
        with pytest.raises(MissingDependencyError) as exc_info:
            await runner.execute(
                "no_pub",
                [Step.event("publishEvent", "users", lambda ctx: {"eventType": "X"})],
                deps=Dependencies(),
            )
        assert exc_info.value.capability == "event_publisher"

    @pytest.mark.asyncio
    async def test_missing_publisher_tolerated(self, runner):
        options = ExecutionOptions(
            error_handling=ErrorHandling(throw_on_missing_event_publisher=False)
        )
        result = await runner.execute(
            "no_pub_ok",
            [Step.event("publishEvent", "users", lambda ctx: {"eventType": "X"})],
            options=options,
        )
        assert_flow_completed(result)

    @pytest.mark.asyncio
    async def test_publisher_without_publish_method(self, runner):
        with pytest.raises(FlowExecutionError, match="publish\\(\\) method"):
            await runner.execute(
                "bad_pub",
                [Step.event("publishEvent", "users", lambda ctx: {"eventType": "X"})],
                deps={"event_publisher": object()},
            )

    @pytest.mark.asyncio
    async def test_sync_publisher(self, runner):
        sent = []

        class SyncPublisher:
            def publish(self, channel, event):
                sent.append((channel, event["eventType"]))

        await runner.execute(
            "sync_pub",
            [Step.event("publishEvent", "users", lambda ctx: {"eventType": "X"})],
            deps={"event_publisher": SyncPublisher()},
        )
        assert sent == [("users", "X")]


# =============================================================================
# Errors and results
# =============================================================================


class TestFailures:
    """Test error attribution and throw_on_error."""

    @pytest.mark.asyncio
    async def test_foreign_error_wrapped_once(self, runner):
        original = KeyError("sku")

        def price(ctx):
            raise original

        with pytest.raises(StepExecutionError) as exc_info:
            await runner.execute("wrap", [Step.compute("price", price)])

        assert exc_info.value.cause is original
        assert exc_info.value.__cause__ is original

    @pytest.mark.asyncio
    async def test_correlation_id_attached(self, runner):
        with pytest.raises(StepExecutionError) as exc_info:
            await runner.execute(
                "corr",
                [Step.compute("boom", FlakyHandler(failures=1))],
                options=ExecutionOptions(correlation_id="abc"),
            )
        assert exc_info.value.context.correlation_id == "abc"

    @pytest.mark.asyncio
    async def test_condition_errors_are_attributed(self, runner):
        def broken_condition(ctx):
            raise ValueError("bad condition")

        with pytest.raises(StepExecutionError) as exc_info:
            await runner.execute("cond", [Step.compute("s", lambda ctx: {}, condition=broken_condition)])
        assert exc_info.value.step_name == "s"

    @pytest.mark.asyncio
    async def test_throw_on_error_false_returns_partial_state(self, runner, observer):
        steps = [
            Step.compute("a", lambda ctx: {"a": 1}),
            Step.compute("b", FlakyHandler(failures=1)),
            Step.compute("c", lambda ctx: {"c": 3}),
        ]
        result = await runner.execute(
            "partial", steps, options=ExecutionOptions(throw_on_error=False, observer=observer)
        )

        assert_flow_failed(result, StepExecutionError)
        assert not result.ok
        assert result.value == {"a": 1}
        assert observer.hooks[-1] == "on_flow_error"
        assert result.to_dict()["error"]["error_type"] == "StepExecutionError"

    @pytest.mark.asyncio
    async def test_correlation_id_issued_when_missing(self, runner):
        result = await runner.execute("issued", [Step.compute("a", lambda ctx: {"cid": ctx.correlation_id})])
        assert result.correlation_id
        assert result.value["cid"] == result.correlation_id

    @pytest.mark.asyncio
    async def test_run_result_to_dict(self, runner):
        result = await runner.execute(
            "serialize",
            [Step.break_("stop", lambda ctx: True, lambda ctx: {"early": True})],
            options=ExecutionOptions(correlation_id="abc"),
        )
        data = result.to_dict()
        assert data["flow"] == "serialize"
        assert data["correlation_id"] == "abc"
        assert data["did_break"] is True
        assert data["break_step"] == "stop"
        assert data["value"] == {"early": True}


class TestLogging:
    """Test the structlog records and context a run emits."""

    @pytest.mark.asyncio
    async def test_retry_is_logged(self, runner, sleeps):
        from structlog.testing import capture_logs

        steps = [Step.compute("flaky", FlakyHandler(failures=1), retry=RetryPolicy(max_attempts=2, delay=0))]
        with capture_logs() as logs:
            await runner.execute("logged", steps)

        events = [entry["event"] for entry in logs]
        assert events[0] == "flow.start"
        assert "step.retry" in events
        assert events[-1] == "flow.complete"
        retry_entry = next(entry for entry in logs if entry["event"] == "step.retry")
        assert retry_entry["step"] == "flaky"
        assert retry_entry["attempt"] == 1
        assert retry_entry["max_attempts"] == 2

    @pytest.mark.asyncio
    async def test_run_binds_flow_and_correlation_id(self, runner):
        import structlog

        seen = {}

        def capture(ctx):
            seen.update(structlog.contextvars.get_contextvars())

        await runner.execute(
            "bound", [Step.compute("a", capture)], options=ExecutionOptions(correlation_id="abc")
        )
        assert seen == {"flow": "bound", "correlation_id": "abc"}
        assert structlog.contextvars.get_contextvars() == {}
