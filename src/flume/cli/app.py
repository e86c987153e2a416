"""
Root Typer application for the flume CLI.

Runs or describes a flow defined in any importable module::

    flume run shop.flows:checkout --input '{"cart_id": "c-1"}' --deps shop.deps:make_deps
    flume inspect shop.flows:checkout --json

``TARGET`` is ``module:attr`` naming a ``Flow`` or a ``FlowBuilder``
(built on load). ``--deps`` names a zero-argument factory returning the
dependency bag, or the bag itself.
"""

from __future__ import annotations

import asyncio
import importlib
import json
from collections.abc import Mapping
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from flume.core.errors import FlowDefinitionError, FlumeError
from flume.core.logging import configure_logging
from flume.core.settings import get_settings
from flume.orchestration.builder import FlowBuilder
from flume.orchestration.flow import Flow
from flume.orchestration.flow_runner import ExecutionOptions

app = typer.Typer(
    name="flume",
    help="flume: run and inspect in-process asyncio flows.",
    no_args_is_help=True,
)

console = Console()


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("flume")
        except PackageNotFoundError:
            from flume import __version__ as v
        typer.echo(f"flume {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """flume CLI: run flows from the command line."""


# ── Loading helpers ──────────────────────────────────────────────────────


def _import_ref(ref: str, what: str) -> Any:
    module_name, sep, attr = ref.partition(":")
    if not sep or not module_name or not attr:
        raise FlowDefinitionError(f"{what} must look like 'module:attr', got {ref!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise FlowDefinitionError(f"Cannot import module '{module_name}': {e}", cause=e) from e
    try:
        return getattr(module, attr)
    except AttributeError:
        raise FlowDefinitionError(f"Module '{module_name}' has no attribute '{attr}'") from None


def load_flow(target: str) -> Flow:
    """Resolve ``module:attr`` to a ``Flow``, building a ``FlowBuilder``."""
    obj = _import_ref(target, "Flow target")
    if isinstance(obj, FlowBuilder):
        return obj.build()
    if isinstance(obj, Flow):
        return obj
    raise FlowDefinitionError(
        f"'{target}' is a {type(obj).__name__}, expected a Flow or FlowBuilder"
    )


def load_deps(ref: str) -> Any:
    """Resolve ``module:attr`` to a dependency bag, calling it if it is a factory."""
    obj = _import_ref(ref, "Dependencies reference")
    return obj() if callable(obj) else obj


def _parse_input(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"--input is not valid JSON: {e}") from e


def _jsonable(value: Any) -> Any:
    """Convert frozen views (mappingproxy, tuple) back to JSON types."""
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    return value


def _fail(error: FlumeError) -> NoReturn:
    typer.echo(f"Error: {error}", err=True)
    raise typer.Exit(code=2)


# ── Commands ─────────────────────────────────────────────────────────────


@app.command("run")
def run_flow(
    target: str = typer.Argument(..., help="Flow to run, as module:attr"),
    input_json: str = typer.Option("{}", "--input", "-i", help="Flow input as JSON"),
    deps_ref: str | None = typer.Option(None, "--deps", help="Dependencies factory, as module:attr"),
    correlation_id: str | None = typer.Option(None, "--correlation-id", help="Run correlation id"),
    timeout: float | None = typer.Option(None, "--timeout", help="Flow deadline in seconds"),
    step_timeout: float | None = typer.Option(None, "--step-timeout", help="Per-step deadline in seconds"),
    json_logs: bool | None = typer.Option(None, "--json-logs/--console-logs", help="Log format"),
    log_level: str | None = typer.Option(None, "--log-level", help="Log level"),
) -> None:
    """Run a flow and print its result as JSON. Exits 1 when the flow fails."""
    settings = get_settings()
    configure_logging(
        level=log_level or settings.log_level,
        json_format=json_logs if json_logs is not None else settings.json_logs,
    )

    payload = _parse_input(input_json)
    overrides: dict[str, Any] = {"correlation_id": correlation_id, "throw_on_error": False}
    if timeout is not None:
        overrides["timeout"] = timeout
    if step_timeout is not None:
        overrides["step_timeout"] = step_timeout

    try:
        flow = load_flow(target)
        deps = load_deps(deps_ref) if deps_ref else None
        options = ExecutionOptions.from_settings(settings, **overrides)
    except FlumeError as e:
        _fail(e)

    result = asyncio.run(flow.run(payload, deps, options))

    output = result.to_dict()
    if result.ok and not result.did_break and flow.output_mapper is not None:
        output["value"] = flow.output_mapper(payload, result.value)
    typer.echo(json.dumps(_jsonable(output), indent=2, default=str))

    if not result.ok:
        raise typer.Exit(code=1)


@app.command("inspect")
def inspect_flow(
    target: str = typer.Argument(..., help="Flow to describe, as module:attr"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List the steps of a flow."""
    try:
        flow = load_flow(target)
    except FlumeError as e:
        _fail(e)

    description = flow.to_dict()
    if json_out:
        typer.echo(json.dumps(description, indent=2, default=str))
        return

    table = Table(title=f"Flow: {flow.name}")
    table.add_column("#", justify="right")
    table.add_column("Step")
    table.add_column("Type")
    table.add_column("Conditional")
    table.add_column("Retries", justify="right")
    table.add_column("Channel")
    for index, step in enumerate(description["steps"], start=1):
        retry = step.get("retry")
        table.add_row(
            str(index),
            step["name"],
            step["type"],
            "yes" if step["conditional"] else "",
            str(retry["max_attempts"]) if retry else "",
            step.get("channel", ""),
        )
    console.print(table)


__all__ = ["app", "load_deps", "load_flow"]
