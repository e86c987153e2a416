"""
Flow - a named, validated, runnable sequence of steps.

A ``Flow`` is what ``FlowBuilder.build()`` and ``compose_flows()`` return.
It owns its steps and an optional output mapper and runs them through a
``FlowRunner``.

Two entry points:

- ``run()`` returns the full ``RunResult`` (value, did_break, timing, error)
- ``execute()`` returns just the value: the break payload when the flow
  short-circuited, otherwise ``mapper(input, state)`` or the state

Example:
    flow = create_flow("signup").validate("checkInput", check).step("save", save).build()

    state = await flow.execute({"email": "a@b.c"}, deps)
    result = await flow.run({"email": "a@b.c"}, deps, ExecutionOptions(timeout=5))
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from flume.core.errors import DuplicateStepError
from flume.orchestration.flow_runner import ExecutionOptions, FlowRunner, RunResult, get_flow_runner
from flume.orchestration.step_types import Step

OutputMapper = Callable[[Any, dict[str, Any]], Any]


def find_duplicate_names(steps: Iterable[Step]) -> list[str]:
    """Names used by more than one step, in order of their second use."""
    seen: set[str] = set()
    duplicates: list[str] = []
    for step in steps:
        if step.name in seen:
            duplicates.append(step.name)
        seen.add(step.name)
    return duplicates


@dataclass(frozen=True)
class Flow:
    """
    A runnable flow definition.

    Attributes:
        name: Flow name used in logs, errors and notifications
        steps: Steps in execution order
        output_mapper: Function (input, state) -> output applied on completion
        runner: Runner executing the steps
    """

    name: str
    steps: tuple[Step, ...]
    output_mapper: OutputMapper | None = None
    runner: FlowRunner = field(default_factory=get_flow_runner, compare=False, repr=False)

    @classmethod
    def create(
        cls,
        name: str,
        steps: Iterable[Step],
        output_mapper: OutputMapper | None = None,
    ) -> Flow:
        """Create a flow, rejecting duplicate step names."""
        steps = tuple(steps)
        duplicates = find_duplicate_names(steps)
        if duplicates:
            raise DuplicateStepError(name, duplicates)
        return cls(name=name, steps=steps, output_mapper=output_mapper)

    @property
    def step_names(self) -> list[str]:
        return [step.name for step in self.steps]

    async def run(
        self,
        input: Any = None,
        deps: Any = None,
        options: ExecutionOptions | None = None,
    ) -> RunResult:
        """Run the flow and return the full result."""
        return await self.runner.execute(self.name, self.steps, input, deps, options)

    async def execute(
        self,
        input: Any = None,
        deps: Any = None,
        options: ExecutionOptions | None = None,
    ) -> Any:
        """Run the flow and return its output value."""
        result = await self.run(input, deps, options)
        if result.did_break or result.error is not None:
            return result.value
        if self.output_mapper is not None:
            return self.output_mapper(input, result.value)
        return result.value

    def to_dict(self) -> dict[str, Any]:
        """Describe the flow (for ``flume inspect``)."""
        return {
            "name": self.name,
            "steps": [step.to_dict() for step in self.steps],
            "has_output_mapper": self.output_mapper is not None,
        }

    def __repr__(self) -> str:
        return f"Flow({self.name!r}, steps={self.step_names})"


__all__ = ["Flow", "OutputMapper", "find_duplicate_names"]
