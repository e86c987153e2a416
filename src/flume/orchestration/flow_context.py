"""
Flow Context - the view of a run handed to every step.

Every handler, condition and break value receives a ``FlowContext``:

- ``input``  the caller's input, frozen once at run start
- ``state``  a fresh shallow copy of the accumulated state for this attempt
- ``deps``   the caller-owned dependency bag, passed through untouched
- ``meta``   run metadata (flow name, start time, current step, correlation id)
- ``signal`` cooperative cancellation for this step attempt

Handlers return a mapping of new keys; the runner merges it into the state
between steps. Mutating ``ctx.state`` has no effect on the run, and writing
to ``ctx.input`` raises ``TypeError``.

Example:
    from flume.orchestration import FlowContext

    def price_order(ctx: FlowContext) -> dict:
        items = ctx.input["items"]
        discount = ctx.state.get("discount", 0)
        return {"total": sum(i["price"] for i in items) - discount}

Tags:
    flume, orchestration, context, frozen-input, state-snapshot
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any

from flume.execution.cancellation import CancellationSignal


def freeze(value: Any) -> Any:
    """Return a read-only deep view of ``value``.

    Mappings become ``MappingProxyType`` views over frozen copies, lists
    and tuples become tuples, sets become frozensets. Anything else is
    returned unchanged.

    Example:
        >>> frozen = freeze({"items": [1, 2], "tags": {"a"}})
        >>> frozen["items"]
        (1, 2)
        >>> frozen["x"] = 1
        Traceback (most recent call last):
        TypeError: 'mappingproxy' object does not support item assignment
    """
    if isinstance(value, Mapping):
        return MappingProxyType({key: freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(value)
    return value


def new_correlation_id() -> str:
    """Issue a fresh correlation id."""
    return uuid.uuid4().hex


@dataclass(frozen=True)
class FlowMeta:
    """
    Metadata of one run, read-only to steps.

    The runner moves to the next step with ``at_step``, which returns a new
    instance; contexts handed out earlier keep the meta they were built with.

    Attributes:
        flow_name: Name of the flow being executed
        correlation_id: Caller-supplied or engine-issued run identifier
        started_at: When the run began (UTC)
        current_step: Name of the step being evaluated, if any
    """

    flow_name: str
    correlation_id: str = field(default_factory=new_correlation_id)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    current_step: str | None = None

    def at_step(self, step: str) -> FlowMeta:
        return replace(self, current_step=step)

    def to_dict(self) -> dict[str, Any]:
        return {
            "flow_name": self.flow_name,
            "correlation_id": self.correlation_id,
            "started_at": self.started_at.isoformat(),
            "current_step": self.current_step,
        }


@dataclass(frozen=True)
class FlowContext:
    """
    Context passed to step handlers.

    Attributes:
        input: Frozen run input
        state: Snapshot of the accumulated state for this attempt
        deps: Dependency bag supplied by the caller
        meta: Run metadata
        signal: Cancellation signal for the current step attempt
    """

    input: Any
    state: dict[str, Any]
    deps: Any
    meta: FlowMeta
    signal: CancellationSignal = field(default_factory=CancellationSignal)

    @property
    def flow_name(self) -> str:
        return self.meta.flow_name

    @property
    def correlation_id(self) -> str:
        return self.meta.correlation_id

    def get(self, key: str, default: Any = None) -> Any:
        """Read ``key`` from the state snapshot."""
        return self.state.get(key, default)


__all__ = [
    "FlowContext",
    "FlowMeta",
    "freeze",
    "new_correlation_id",
]
