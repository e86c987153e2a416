"""Composition Operators: functional helpers for flow construction.

ARCHITECTURE
────────────
::

    Composition operators:
      compose_flows(name, flows)              → one flow running all steps in order
      parallel(name, strategy, *handlers)     → handler fanning out concurrently
      sequence(name, *handlers)               → handler chaining sub-handlers

    ``parallel`` and ``sequence`` return ordinary step handlers, so they
    plug into ``FlowBuilder.step`` or ``Step.compute`` like any function.

BEST PRACTICES
──────────────
- Use ``parallel`` for independent lookups; every handler sees the same
  state snapshot.
- Pick ``error-on-conflict`` when two handlers must never write the same key.
- Use ``sequence`` to group small dependent computations under one step
  name, sharing one retry policy and timeout.

Related modules:
    builder.py         - fluent FlowBuilder using these operators
    flow.py            - the Flow these operators produce
    merge.py           - merge strategies used by ``parallel``

Example::

    from flume.orchestration.composition import compose_flows, parallel

    load_profile = parallel(
        "loadProfile",
        "shallow",
        lambda ctx: {"user": fetch_user(ctx.input["user_id"])},
        lambda ctx: {"orders": fetch_orders(ctx.input["user_id"])},
    )

    onboarding = compose_flows("onboarding", [signup_flow, welcome_flow])
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from flume.core.errors import FlowDefinitionError, MergeConflictError
from flume.core.logging import get_logger
from flume.merge import MergeStrategy, merge_results
from flume.orchestration.flow import Flow, find_duplicate_names
from flume.orchestration.flow_context import FlowContext

logger = get_logger(__name__)

Handler = Callable[[FlowContext], Any]


async def _call(handler: Handler, ctx: FlowContext) -> Any:
    result = handler(ctx)
    if inspect.isawaitable(result):
        return await result
    return result


# ---------------------------------------------------------------------------
# compose_flows - sequential composition of whole flows
# ---------------------------------------------------------------------------


def compose_flows(name: str, flows: Sequence[Flow]) -> Flow:
    """Create a flow running the steps of ``flows`` one flow after another.

    All flows are assumed to share a compatible state shape. Output mappers
    of the composed flows are not carried over.

    Parameters
    ----------
    name
        Name of the composed flow.
    flows
        Flows whose steps are concatenated, in order.

    Returns
    -------
    Flow
        A new flow owning all the steps.

    Raises
    ------
    FlowDefinitionError
        If ``flows`` is empty.
    """
    if not flows:
        raise FlowDefinitionError("compose_flows requires at least one flow")

    steps = tuple(step for flow in flows for step in flow.steps)

    duplicates = find_duplicate_names(steps)
    if duplicates:
        logger.warning(
            "compose.duplicate_step_names",
            flow=name,
            duplicates=duplicates,
        )

    return Flow(name=name, steps=steps)


# ---------------------------------------------------------------------------
# parallel - concurrent fan-out inside one step
# ---------------------------------------------------------------------------


def parallel(
    name: str,
    strategy: MergeStrategy | str,
    *handlers: Handler,
) -> Callable[[FlowContext], Any]:
    """Build a handler running ``handlers`` concurrently and merging their results.

    Every handler receives the same context. If any handler fails the
    combined handler fails with that error and all results are discarded;
    handlers still in flight are not cancelled. Results are merged
    positionally with ``strategy``.

    Parameters
    ----------
    name
        Label used in conflict errors and logs.
    strategy
        ``MergeStrategy`` or its string value.
    *handlers
        Step handlers returning mappings (sync or async).

    Returns
    -------
    Callable
        An async step handler.

    Raises
    ------
    FlowDefinitionError
        If no handler is given or the strategy is unknown.
    """
    if not handlers:
        raise FlowDefinitionError(f"parallel '{name}' requires at least one handler")
    try:
        merge_strategy = MergeStrategy(strategy)
    except ValueError:
        raise FlowDefinitionError(
            f"Unknown merge strategy {strategy!r} for parallel '{name}'"
        ) from None

    async def run_parallel(ctx: FlowContext) -> dict[str, Any]:
        results = await asyncio.gather(*(_call(handler, ctx) for handler in handlers))
        try:
            return merge_results(results, merge_strategy)
        except MergeConflictError as e:
            raise MergeConflictError(
                e.key,
                f"Key conflict detected in parallel merge '{name}': '{e.key}'",
            ).with_context(parallel=name) from None

    run_parallel.__name__ = f"parallel_{name}"
    return run_parallel


# ---------------------------------------------------------------------------
# sequence - dependent sub-handlers inside one step
# ---------------------------------------------------------------------------


def sequence(name: str, *handlers: Handler) -> Callable[[FlowContext], Any]:
    """Build a handler running ``handlers`` one after another.

    Each handler sees the flow state plus everything earlier handlers in
    the sequence returned. The combined handler returns only the keys the
    sequence added, merged together.

    Parameters
    ----------
    name
        Label used in logs.
    *handlers
        Step handlers returning mappings (sync or async).

    Returns
    -------
    Callable
        An async step handler.
    """
    if not handlers:
        raise FlowDefinitionError(f"sequence '{name}' requires at least one handler")

    async def run_sequence(ctx: FlowContext) -> dict[str, Any]:
        state = dict(ctx.state)
        additions: dict[str, Any] = {}
        for handler in handlers:
            result = await _call(handler, dataclasses.replace(ctx, state=dict(state)))
            if isinstance(result, Mapping):
                state.update(result)
                additions.update(result)
        logger.debug("sequence.complete", sequence=name, keys=list(additions))
        return additions

    run_sequence.__name__ = f"sequence_{name}"
    return run_sequence


__all__ = ["compose_flows", "parallel", "sequence"]
