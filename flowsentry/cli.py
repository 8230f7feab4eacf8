"""Command line interface for running and monitoring flowsentry workflows."""

from __future__ import annotations

import asyncio
import contextlib
import json
import signal
from pathlib import Path
from typing import List, Optional

import typer
from pydantic import ValidationError

from .config import FlowSentryConfig, load_config
from .contracts import LoggingActionDispatcher, StaticContactDirectory
from .errors import NoWaitingStepError, RunFailedError, RunNotFoundError
from .execute import GraphExecutor
from .graph import WorkflowGraph
from .logging_config import configure_logging
from .monitoring import MonitoringScheduler
from .notify import DefaultRecipientResolver
from .persistence import get_repository
from .variables import parse_assignment

app = typer.Typer(help="CLI for flowsentry workflows")

# Command groups
graph_app = typer.Typer(help="Commands for inspecting workflow graphs")
run_app = typer.Typer(help="Commands for starting and inspecting runs")

app.add_typer(graph_app, name="graph")
app.add_typer(run_app, name="run")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", help="Path to YAML config"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override log level"),
) -> None:
    """flowsentry CLI entry point."""
    settings = load_config(str(config) if config else None)
    configure_logging(log_level or settings.log_level)
    ctx.obj = settings


def _settings(ctx: typer.Context) -> FlowSentryConfig:
    return ctx.obj if isinstance(ctx.obj, FlowSentryConfig) else load_config()


def _load_graph(path: Path) -> WorkflowGraph:
    if not path.exists():
        typer.secho(f"Graph file not found: {path}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        return WorkflowGraph.from_json(path.read_text())
    except ValidationError as exc:
        typer.secho(f"Invalid graph JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _executor() -> GraphExecutor:
    return GraphExecutor(get_repository(), LoggingActionDispatcher())


@graph_app.command("validate")
def graph_validate(path: Path) -> None:
    """
    Check a workflow graph for structural problems.

    Reports a missing or duplicated start node, missing end node, dangling
    edges, unreachable nodes and cycles.

    Example:
        flowsentry graph validate onboarding.json
    """
    graph = _load_graph(path)
    problems = graph.validate_structure()
    if problems:
        for problem in problems:
            typer.secho(f"- {problem}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Graph OK: {len(graph.nodes)} nodes, {len(graph.edges)} edges")


@run_app.command("start")
def run_start(
    path: Path,
    initiator: Optional[str] = typer.Option(None, help="Phone number of the initiator"),
    var: Optional[List[str]] = typer.Option(
        None, "--var", help="Process variable as name=value or name:type=value"
    ),
) -> None:
    """
    Start a run of the workflow graph stored at PATH.

    Example:
        flowsentry run start onboarding.json --initiator 85291234567 --var amount:int=5
    """
    graph = _load_graph(path)
    variables = {}
    types = {}
    for assignment in var or []:
        try:
            name, value, data_type = parse_assignment(assignment)
        except ValueError as exc:
            typer.secho(str(exc), fg=typer.colors.RED)
            raise typer.Exit(code=1)
        variables[name] = value
        types[name] = data_type
    run = asyncio.run(
        _executor().start(
            graph,
            initiated_by=initiator,
            variables=variables,
            variable_types=types,
            name=path.stem,
        )
    )
    typer.echo(f"{run.id}\t{run.status}")
    if run.error_message:
        typer.echo(f"Error: {run.error_message}")


@run_app.command("resume")
def run_resume(
    run_id: str,
    reply: Optional[str] = typer.Option(None, help="Reply received from the user"),
    node: Optional[str] = typer.Option(None, help="Waiting node to resume"),
) -> None:
    """Resume a waiting run with the user's reply."""
    try:
        run = asyncio.run(_executor().resume(run_id, reply=reply, node_id=node))
    except (RunNotFoundError, NoWaitingStepError, RunFailedError) as exc:
        typer.echo(str(exc))
        raise typer.Exit(code=1)
    typer.echo(f"{run.id}\t{run.status}")


@run_app.command("list")
def run_list(
    status: Optional[str] = typer.Option(None, help="Only runs with this status"),
) -> None:
    """List runs with their current status."""
    repo = get_repository()
    runs = asyncio.run(repo.list_runs(status=status))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.status}\t{run.started_at:%Y-%m-%d %H:%M:%S}")


@run_app.command("show")
def run_show(run_id: str) -> None:
    """Show a run with its step history."""
    repo = get_repository()

    async def _fetch():
        found = await repo.get_run(run_id)
        if found is None:
            return None, []
        return found, await repo.list_steps(run_id)

    run, steps = asyncio.run(_fetch())
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.id}: {run.status}")
    if run.error_message:
        typer.echo(f"Error: {run.error_message}")
    if run.input_data:
        typer.echo(f"Input: {json.dumps(run.input_data)}")
    for step in steps:
        ended = f" -> {step.ended_at:%H:%M:%S}" if step.ended_at else ""
        typer.echo(
            f"- [{step.step_index}] {step.node_id} ({step.node_type}): {step.status} "
            f"({step.started_at:%Y-%m-%d %H:%M:%S}{ended})"
        )


def _scheduler(settings: FlowSentryConfig) -> MonitoringScheduler:
    directory = StaticContactDirectory(
        users=settings.directory.users,
        contacts=settings.directory.contacts,
        groups=settings.directory.groups,
        hashtags=settings.directory.hashtags,
    )
    return MonitoringScheduler(
        get_repository(),
        LoggingActionDispatcher(),
        resolver=DefaultRecipientResolver(directory),
        config=settings.monitoring,
    )


async def _monitor_forever(scheduler: MonitoringScheduler) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)
    await scheduler.run_forever(stop_event)


@app.command("monitor")
def monitor(
    ctx: typer.Context,
    once: bool = typer.Option(False, "--once", help="Run a single tick and exit"),
) -> None:
    """
    Run the monitoring scheduler.

    Without ``--once`` the scheduler ticks every ``check_interval_seconds``
    until interrupted.
    """
    scheduler = _scheduler(_settings(ctx))
    if once:
        records = asyncio.run(scheduler.run_once())
        for record in records:
            typer.echo(
                f"{record.schedule_type}\t{record.status}\t"
                f"{record.success_count}/{record.total_items}"
            )
        return
    asyncio.run(_monitor_forever(scheduler))


if __name__ == "__main__":
    app()
