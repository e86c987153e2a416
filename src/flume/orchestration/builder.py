"""
Flow Builder - fluent, immutable construction of flows.

Every builder method returns a NEW builder; the receiver is never changed.
Builders share their step history as a linked list of nodes, so branching
from a common prefix is cheap and safe::

    base = create_flow("orders").validate("checkInput", check)
    express = base.step("ship", ship_express)
    standard = base.step("ship", ship_standard)   # base is untouched

``build()`` materializes the steps in declaration order and rejects
duplicate step names.

Example:
    from flume import RetryPolicy, create_flow

    checkout = (
        create_flow("checkout")
        .validate("checkInput", check_input)
        .step("loadCart", load_cart)
        .break_if(lambda ctx: not ctx.state["items"], lambda ctx: {"empty": True})
        .step("charge", charge)
        .with_retry(RetryPolicy(max_attempts=3, delay=0.2, backoff_multiplier=2))
        .transaction("saveOrder", save_order)
        .event("orders", order_placed)
        .map(lambda input, state: {"order_id": state["order_id"]})
        .build()
    )

    output = await checkout.execute({"cart_id": "c-1"}, deps)

Tags:
    flume, orchestration, builder, fluent-api, immutable
"""

from __future__ import annotations

import inspect
from collections.abc import Callable, Sequence
from typing import Any, NamedTuple, TypeVar

from flume.core.events import normalize_events
from flume.merge import MergeStrategy
from flume.orchestration.composition import parallel as parallel_handler
from flume.orchestration.flow import Flow, OutputMapper
from flume.orchestration.flow_context import FlowContext
from flume.orchestration.step_types import (
    ConditionFn,
    RetryPolicy,
    Step,
    StepHandlerFn,
    TransactionHandlerFn,
)

R = TypeVar("R")

EventBuilderFn = Callable[[FlowContext], Any]


class _StepNode(NamedTuple):
    """One link of the shared step history (newest first)."""

    step: Step
    previous: _StepNode | None


class FlowBuilder:
    """Immutable fluent builder for a ``Flow``."""

    __slots__ = ("_name", "_head", "_length", "_output_mapper")

    def __init__(
        self,
        name: str,
        head: _StepNode | None = None,
        length: int = 0,
        output_mapper: OutputMapper | None = None,
    ):
        self._name = name
        self._head = head
        self._length = length
        self._output_mapper = output_mapper

    @property
    def name(self) -> str:
        return self._name

    @property
    def steps(self) -> tuple[Step, ...]:
        """Steps in declaration order."""
        collected: list[Step] = []
        node = self._head
        while node is not None:
            collected.append(node.step)
            node = node.previous
        return tuple(reversed(collected))

    @property
    def length(self) -> int:
        return self._length

    def __repr__(self) -> str:
        return f"FlowBuilder({self._name!r}, steps={[s.name for s in self.steps]})"

    def _append(self, step: Step) -> FlowBuilder:
        return FlowBuilder(
            self._name,
            _StepNode(step, self._head),
            self._length + 1,
            self._output_mapper,
        )

    # =========================================================================
    # Steps
    # =========================================================================

    def validate(self, name: str, handler: StepHandlerFn) -> FlowBuilder:
        """Add a validate step; raise ``ValidationError`` to reject the input."""
        return self._append(Step.validate(name, handler))

    def step(
        self,
        name: str,
        handler: StepHandlerFn,
        retry: RetryPolicy | None = None,
    ) -> FlowBuilder:
        """Add a compute step whose mapping result is merged into the state."""
        return self._append(Step.compute(name, handler, retry=retry))

    def step_if(
        self,
        name: str,
        condition: ConditionFn,
        handler: StepHandlerFn,
        retry: RetryPolicy | None = None,
    ) -> FlowBuilder:
        """Add a compute step that only runs when ``condition(ctx)`` is true."""
        return self._append(Step.compute(name, handler, condition=condition, retry=retry))

    def transaction(self, name: str, handler: TransactionHandlerFn) -> FlowBuilder:
        """Add a step running ``handler(ctx, tx)`` inside ``deps.db.transaction``."""
        return self._append(Step.transaction(name, handler))

    def event(
        self,
        channel: str,
        handler: EventBuilderFn,
        name: str = "publishEvent",
    ) -> FlowBuilder:
        """Add a step publishing the event(s) ``handler`` builds to ``channel``."""
        return self._append(Step.event(name, channel, handler))

    def events(
        self,
        channel: str,
        handlers: Sequence[EventBuilderFn],
        name: str = "publishEvents",
    ) -> FlowBuilder:
        """Add one step publishing the events of several builders, in order."""
        builders = tuple(handlers)

        async def build_events(ctx: FlowContext) -> list[Any] | None:
            collected: list[Any] = []
            for build in builders:
                produced = build(ctx)
                if inspect.isawaitable(produced):
                    produced = await produced
                collected.extend(normalize_events(produced))
            return collected or None

        return self._append(Step.event(name, channel, build_events))

    def break_if(
        self,
        condition: ConditionFn,
        value: StepHandlerFn | None = None,
    ) -> FlowBuilder:
        """Stop the flow when ``condition(ctx)`` holds.

        The flow then returns ``value(ctx)``, or the state when no value
        function is given, and skips the output mapper. The step is named
        ``break_<index>`` after its position.
        """
        return self._append(Step.break_(f"break_{self._length}", condition, value))

    def with_retry(self, policy: RetryPolicy) -> FlowBuilder:
        """Attach ``policy`` to the most recently added step."""
        if self._head is None:
            return self
        return FlowBuilder(
            self._name,
            _StepNode(self._head.step.with_retry(policy), self._head.previous),
            self._length,
            self._output_mapper,
        )

    def parallel(
        self,
        name: str,
        strategy: MergeStrategy | str,
        *handlers: StepHandlerFn,
    ) -> FlowBuilder:
        """Add a step running ``handlers`` concurrently, merged with ``strategy``."""
        return self._append(Step.compute(name, parallel_handler(name, strategy, *handlers)))

    # =========================================================================
    # Composition
    # =========================================================================

    def pipe(self, fn: Callable[[FlowBuilder], R]) -> R:
        """Apply a builder-to-builder function (reusable sub-flows)."""
        return fn(self)

    def map(self, mapper: OutputMapper) -> FlowBuilder:
        """Transform ``(input, state)`` into the flow's output on completion."""
        return FlowBuilder(self._name, self._head, self._length, mapper)

    def build(self) -> Flow:
        """Build the flow.

        Raises:
            DuplicateStepError: If two steps share a name
        """
        return Flow.create(self._name, self.steps, self._output_mapper)


def create_flow(name: str) -> FlowBuilder:
    """Start building a flow named ``name``."""
    return FlowBuilder(name)


__all__ = ["FlowBuilder", "create_flow"]
