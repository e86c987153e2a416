"""Step Types: definitions for flow step variants.

Manifesto:
A Flow is an ordered list of Steps, but steps come in different flavours:
validate (reject bad input), step (compute a partial result), transaction
(compute inside a database transaction), event (publish events) and break
(short-circuit the rest of the flow). This module defines the ``Step``
dataclass, its factory methods and the ``RetryPolicy`` so that flow authors
never deal with raw internals.

ARCHITECTURE
────────────
::

    Step
      ├── .validate(name, handler)               ── raise ValidationError to reject
      ├── .compute(name, handler)                ── return a partial state mapping
      ├── .transaction(name, handler)            ── handler(ctx, tx) inside deps.db
      ├── .event(name, channel, handler)         ── publish to deps.event_publisher
      └── .break_(name, condition, value)        ── stop early with a payload

    StepType      ── enum: VALIDATE, STEP, TRANSACTION, EVENT, BREAK
    RetryPolicy   ── attempts, capped backoff, retry predicate, step timeout

Handlers, conditions and break values receive the ``FlowContext`` and may be
plain functions or coroutine functions.

Example::

    from flume.orchestration import RetryPolicy, Step

    steps = [
        Step.validate("checkInput", check_input),
        Step.compute("charge", charge_card).with_retry(RetryPolicy(max_attempts=3, delay=0.5)),
        Step.break_("break_2", lambda ctx: ctx.state["declined"]),
        Step.event("publishEvent", "orders", order_placed),
    ]

Tags:
    flume, orchestration, step-types, retry-policy, break, event, transaction
"""

from __future__ import annotations

import dataclasses
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

from flume.core.errors import FlowDefinitionError

if TYPE_CHECKING:
    from flume.orchestration.flow_context import FlowContext


def _callable_ref(fn: Callable[..., Any] | None) -> str | None:
    """Return ``'module:qualname'`` for a named function, else ``None``.

    Lambdas, locals and ``None`` all return ``None`` because they cannot be
    reliably re-imported.
    """
    if fn is None:
        return None
    module = getattr(fn, "__module__", None)
    qualname = getattr(fn, "__qualname__", None)
    if not module or not qualname:
        return None
    if "<lambda>" in qualname or "<locals>" in qualname:
        return None
    return f"{module}:{qualname}"


class StepType(str, Enum):
    """Type of flow step."""

    VALIDATE = "validate"  # Reject input, never retried
    STEP = "step"  # Compute a partial state update
    TRANSACTION = "transaction"  # Compute inside deps.db.transaction
    EVENT = "event"  # Publish events, never writes state
    BREAK = "break"  # Conditional short-circuit


# Type aliases for user callables
MaybeAwaitable = Union[Awaitable[Any], Any]
StepHandlerFn = Callable[["FlowContext"], MaybeAwaitable]
TransactionHandlerFn = Callable[["FlowContext", Any], MaybeAwaitable]
ConditionFn = Callable[["FlowContext"], MaybeAwaitable]
RetryPredicate = Callable[[BaseException], bool]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry and timeout configuration for a step.

    Attributes:
        max_attempts: Total attempts including the first one (>= 1)
        delay: Wait before the second attempt, in seconds (>= 0)
        backoff_multiplier: Factor applied to the wait after each retry (>= 1)
        max_delay: Cap for a single wait, in seconds (None = unbounded)
        should_retry: Predicate on the raised error; False stops retrying
        step_timeout: Per-attempt deadline overriding the run's default

    Raises:
        FlowDefinitionError: On construction with out-of-range values
    """

    max_attempts: int = 3
    delay: float = 1.0
    backoff_multiplier: float = 1.0
    max_delay: float | None = None
    should_retry: RetryPredicate | None = field(default=None, compare=False)
    step_timeout: float | None = None

    def __post_init__(self) -> None:
        problems = []
        if not isinstance(self.max_attempts, int) or self.max_attempts < 1:
            problems.append(f"max_attempts must be an integer >= 1, got {self.max_attempts!r}")
        if not _is_finite(self.delay) or self.delay < 0:
            problems.append(f"delay must be >= 0, got {self.delay!r}")
        if not _is_finite(self.backoff_multiplier) or self.backoff_multiplier < 1:
            problems.append(f"backoff_multiplier must be >= 1, got {self.backoff_multiplier!r}")
        if self.max_delay is not None and (not _is_finite(self.max_delay) or self.max_delay < 0):
            problems.append(f"max_delay must be >= 0, got {self.max_delay!r}")
        if self.step_timeout is not None and (
            not _is_finite(self.step_timeout) or self.step_timeout <= 0
        ):
            problems.append(f"step_timeout must be > 0, got {self.step_timeout!r}")
        if self.should_retry is not None and not callable(self.should_retry):
            problems.append("should_retry must be callable")
        if problems:
            raise FlowDefinitionError("Invalid retry policy: " + "; ".join(problems))

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "max_attempts": self.max_attempts,
            "delay": self.delay,
            "backoff_multiplier": self.backoff_multiplier,
        }
        if self.max_delay is not None:
            result["max_delay"] = self.max_delay
        if self.step_timeout is not None:
            result["step_timeout"] = self.step_timeout
        return result


def _is_finite(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


# =============================================================================
# Step
# =============================================================================


@dataclass(frozen=True)
class Step:
    """
    A single step within a flow.

    Use the factory methods to create specific step types. Steps are
    immutable; ``with_retry`` and ``with_condition`` return new steps.
    """

    name: str
    step_type: StepType
    handler: Callable[..., Any] | None = None
    condition: ConditionFn | None = None
    retry_policy: RetryPolicy | None = None

    # Type-specific fields
    channel: str | None = None  # Event
    break_condition: ConditionFn | None = None  # Break
    break_value: StepHandlerFn | None = None  # Break

    def __post_init__(self) -> None:
        if not self.name:
            raise FlowDefinitionError("Step name must be a non-empty string")
        if self.step_type is StepType.BREAK:
            if self.break_condition is None:
                raise FlowDefinitionError(f"Break step '{self.name}' needs a break condition")
        elif self.handler is None:
            raise FlowDefinitionError(f"Step '{self.name}' needs a handler")
        if self.step_type is StepType.EVENT and not self.channel:
            raise FlowDefinitionError(f"Event step '{self.name}' needs a channel")

    # =========================================================================
    # Factory Methods
    # =========================================================================

    @classmethod
    def validate(cls, name: str, handler: StepHandlerFn) -> Step:
        """
        Create a validate step.

        The handler raises ``ValidationError`` to reject the input. Its
        return value is ignored and it is never retried.
        """
        return cls(name=name, step_type=StepType.VALIDATE, handler=handler)

    @classmethod
    def compute(
        cls,
        name: str,
        handler: StepHandlerFn,
        condition: ConditionFn | None = None,
        retry: RetryPolicy | None = None,
    ) -> Step:
        """
        Create a compute step.

        Args:
            name: Unique step name within the flow
            handler: Function (ctx) -> mapping merged into state
            condition: Function (ctx) -> bool; the step is skipped when False
            retry: Retry policy for failed attempts
        """
        return cls(
            name=name,
            step_type=StepType.STEP,
            handler=handler,
            condition=condition,
            retry_policy=retry,
        )

    @classmethod
    def transaction(cls, name: str, handler: TransactionHandlerFn) -> Step:
        """
        Create a transaction step.

        ``handler(ctx, tx)`` runs inside ``deps.db.transaction``.
        """
        return cls(name=name, step_type=StepType.TRANSACTION, handler=handler)

    @classmethod
    def event(cls, name: str, channel: str, handler: StepHandlerFn) -> Step:
        """
        Create an event step.

        ``handler(ctx)`` returns ``None``, one event mapping or a list of
        them; each is published to ``channel``.
        """
        return cls(name=name, step_type=StepType.EVENT, handler=handler, channel=channel)

    @classmethod
    def break_(
        cls,
        name: str,
        condition: ConditionFn,
        value: StepHandlerFn | None = None,
    ) -> Step:
        """
        Create a break step.

        Args:
            name: Unique step name within the flow
            condition: Function (ctx) -> bool; True stops the flow
            value: Function (ctx) -> payload returned instead of the state
        """
        return cls(
            name=name,
            step_type=StepType.BREAK,
            break_condition=condition,
            break_value=value,
        )

    # =========================================================================
    # Utilities
    # =========================================================================

    def with_retry(self, policy: RetryPolicy) -> Step:
        """Return a copy of this step using ``policy``."""
        return dataclasses.replace(self, retry_policy=policy)

    def with_condition(self, condition: ConditionFn) -> Step:
        """Return a copy of this step that only runs when ``condition`` holds."""
        return dataclasses.replace(self, condition=condition)

    def to_dict(self) -> dict[str, Any]:
        """Serialize a description of the step (callables by reference)."""
        result: dict[str, Any] = {
            "name": self.name,
            "type": self.step_type.value,
            "conditional": self.condition is not None,
        }

        if self.retry_policy is not None:
            result["retry"] = self.retry_policy.to_dict()
        if self.step_type == StepType.EVENT:
            result["channel"] = self.channel

        ref = _callable_ref(self.break_condition if self.step_type == StepType.BREAK else self.handler)
        if ref:
            result["handler_ref"] = ref
        return result

    def __repr__(self) -> str:
        if self.step_type == StepType.EVENT:
            return f"Step.event({self.name!r}, channel={self.channel!r})"
        elif self.step_type == StepType.BREAK:
            return f"Step.break_({self.name!r})"
        return f"Step({self.name!r}, type={self.step_type.value})"


__all__ = [
    "ConditionFn",
    "RetryPolicy",
    "RetryPredicate",
    "Step",
    "StepHandlerFn",
    "StepType",
    "TransactionHandlerFn",
]
