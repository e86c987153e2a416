"""
flume - in-process asyncio flow runner.

A flow is an ordered list of named steps sharing an accumulating state.
Steps validate input, compute partial state updates, run inside a caller's
database transaction, publish events, or short-circuit the flow with an
early result. Each step may retry with backoff and run under a timeout.

Example:
    from flume import Dependencies, InMemoryEventPublisher, RetryPolicy, create_flow

    flow = (
        create_flow("signup")
        .validate("checkInput", check_email)
        .step("createUser", create_user)
        .with_retry(RetryPolicy(max_attempts=3, delay=0.1, backoff_multiplier=2))
        .event("users", lambda ctx: {"eventType": "UserCreated", "id": ctx.state["id"]})
        .build()
    )

    state = await flow.execute({"email": "a@b.c"}, Dependencies(event_publisher=InMemoryEventPublisher()))
"""

__version__ = "0.1.0"

from flume.core import (
    Dependencies,
    DuplicateStepError,
    ErrorCategory,
    EventPublisher,
    FlowCancelledError,
    FlowDefinitionError,
    FlowExecutionError,
    FlumeError,
    FlumeSettings,
    InMemoryDatabase,
    InMemoryEventPublisher,
    MergeConflictError,
    MissingDependencyError,
    StepExecutionError,
    StepTimeoutError,
    TransactionalDatabase,
    ValidationError,
    ValidationIssue,
    configure_logging,
    get_logger,
    get_settings,
)
from flume.execution import CancellationSignal
from flume.merge import MergeStrategy, deep_merge, merge_results, merge_without_conflicts, shallow_merge
from flume.orchestration import (
    ConsoleObserver,
    ErrorHandling,
    ExecutionOptions,
    Flow,
    FlowBuilder,
    FlowContext,
    FlowObserver,
    FlowRunner,
    NoOpObserver,
    RecordingObserver,
    RetryPolicy,
    RunResult,
    Step,
    StepType,
    StructlogObserver,
    compose_flows,
    create_flow,
    parallel,
    sequence,
)

__all__ = [
    "__version__",
    # building
    "create_flow",
    "compose_flows",
    "parallel",
    "sequence",
    "Flow",
    "FlowBuilder",
    "Step",
    "StepType",
    "RetryPolicy",
    # running
    "FlowRunner",
    "FlowContext",
    "ExecutionOptions",
    "ErrorHandling",
    "RunResult",
    "CancellationSignal",
    # merging
    "MergeStrategy",
    "merge_results",
    "shallow_merge",
    "merge_without_conflicts",
    "deep_merge",
    # observers
    "FlowObserver",
    "NoOpObserver",
    "ConsoleObserver",
    "StructlogObserver",
    "RecordingObserver",
    # dependencies
    "Dependencies",
    "TransactionalDatabase",
    "EventPublisher",
    "InMemoryDatabase",
    "InMemoryEventPublisher",
    # errors
    "ErrorCategory",
    "FlumeError",
    "ValidationError",
    "ValidationIssue",
    "FlowDefinitionError",
    "DuplicateStepError",
    "FlowExecutionError",
    "StepExecutionError",
    "MissingDependencyError",
    "FlowCancelledError",
    "StepTimeoutError",
    "MergeConflictError",
    # ambient
    "FlumeSettings",
    "get_settings",
    "configure_logging",
    "get_logger",
]
