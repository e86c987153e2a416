"""Flume Orchestration -- steps, flows, the runner and observers.

Architecture::

    step_types.py      Step variants (validate/step/transaction/event/break) + RetryPolicy
    flow_context.py    FlowContext handed to handlers, FlowMeta, freeze()
    flow_runner.py     FlowRunner executing steps; ExecutionOptions, RunResult
    flow.py            Flow: named, validated, runnable step sequence
    builder.py         Immutable fluent FlowBuilder / create_flow()
    composition.py     compose_flows(), parallel(), sequence()
    observer.py        Lifecycle hooks: Console, Structlog, Recording observers
    testing.py         Test doubles and assertion helpers
"""

from flume.orchestration.builder import FlowBuilder, create_flow
from flume.orchestration.composition import compose_flows, parallel, sequence
from flume.orchestration.flow import Flow
from flume.orchestration.flow_context import FlowContext, FlowMeta, freeze
from flume.orchestration.flow_runner import (
    BREAK_NOT_MET,
    ErrorHandling,
    ExecutionOptions,
    FlowRunner,
    RunResult,
    get_flow_runner,
)
from flume.orchestration.observer import (
    ConsoleObserver,
    FlowObserver,
    NoOpObserver,
    RecordingObserver,
    StructlogObserver,
)
from flume.orchestration.step_types import RetryPolicy, Step, StepType

__all__ = [
    # steps
    "StepType",
    "RetryPolicy",
    "Step",
    # context
    "FlowContext",
    "FlowMeta",
    "freeze",
    # runner
    "BREAK_NOT_MET",
    "ErrorHandling",
    "ExecutionOptions",
    "FlowRunner",
    "RunResult",
    "get_flow_runner",
    # flows
    "Flow",
    "FlowBuilder",
    "create_flow",
    "compose_flows",
    "parallel",
    "sequence",
    # observers
    "FlowObserver",
    "NoOpObserver",
    "ConsoleObserver",
    "StructlogObserver",
    "RecordingObserver",
]
