"""Concord CLI: validate and run plan files.

Usage::

    concord validate plan.yaml
    concord run plan.yaml --timeout 30
    concord --verbose run plan.yaml --json
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.table import Table

from concord.engine import ConcordEngine
from concord.loader import LoaderError, Plan, load_plan
from concord.log import configure_logging
from concord.types import ConcordError

app = typer.Typer(
    name="concord",
    help="Concord - collaborative multi-agent task engine.",
    no_args_is_help=True,
)

console = Console()


@app.callback()
def main(
    ctx: typer.Context,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log engine activity at INFO."),
    ] = False,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Explicit log level (DEBUG, INFO, WARNING, ERROR)."),
    ] = None,
) -> None:
    """Concord CLI - schedule tasks and chains across scripted agents."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    level = log_level or ("INFO" if verbose else None)
    if level is not None:
        configure_logging(level=level.upper(), force=True)


def _status_color(status: str) -> str:
    colors: dict[str, str] = {
        "pending": "yellow",
        "assigned": "blue",
        "executing": "blue",
        "running": "blue",
        "remapping": "magenta",
        "completed": "green",
        "failed": "red",
        "cancelled": "dim",
    }
    return colors.get(status, "white")


def _preview(value: Any, limit: int = 60) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    if len(text) > limit:
        text = text[: limit - 3] + "..."
    return text


def _load(path: Path) -> Plan:
    try:
        return load_plan(path)
    except LoaderError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc


# ---------------------------------------------------------------------------
# validate
# ---------------------------------------------------------------------------


@app.command()
def validate(
    file: Annotated[Path, typer.Argument(help="Plan YAML file.")],
) -> None:
    """Check a plan for cycles and unknown ids, and show the predicted path."""
    plan = _load(file)
    chains = plan.validate_structure()
    engine = plan.build_engine()

    console.print(
        f"[green]Plan OK:[/green] {len(plan.agents)} agent(s), "
        f"{len(plan.tasks)} task(s), {len(chains)} chain(s)"
    )
    for chain in chains:
        prediction = engine.recovery.predict_path(chain)
        table = Table(title=f"Chain {chain.name or chain.id} ({chain.strategy})")
        table.add_column("Task", style="cyan", no_wrap=True)
        table.add_column("Depends on")
        table.add_column("Candidates")
        table.add_column("Risk")
        for step in prediction.tasks:
            deps = chain.tasks[step.task_id].dependencies
            table.add_row(
                step.task_id,
                ", ".join(deps) or "-",
                ", ".join(step.candidates) or "-",
                f"[yellow]{step.risk}[/yellow]" if step.risk else "-",
            )
        console.print(table)
        console.print(f"  Prediction confidence: {prediction.confidence:.2f}")


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


def _summary(engine: ConcordEngine, task_ids: list[str], chain_ids: list[str], finished: bool) -> dict[str, Any]:
    tasks = [engine.get_task(tid) for tid in task_ids]
    chains = [engine.get_chain(cid) for cid in chain_ids]
    return {
        "finished": finished,
        "tasks": [t.to_dict() for t in tasks if t is not None],
        "chains": [
            {**c.to_dict(), "metrics": engine.chain_metrics(c.id).model_dump(mode="json")}
            for c in chains
            if c is not None
        ],
    }


@app.command()
def run(
    file: Annotated[Path, typer.Argument(help="Plan YAML file.")],
    timeout: Annotated[
        float,
        typer.Option("--timeout", "-t", help="Give up after this many seconds."),
    ] = 60.0,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print the final state as JSON."),
    ] = False,
) -> None:
    """Run every task and chain of a plan with its scripted agents."""
    plan = _load(file)

    async def _run() -> dict[str, Any]:
        engine = plan.build_engine()
        task_ids, chain_ids = plan.submit(engine)
        finished = await engine.run_until_idle(timeout=timeout)
        return _summary(engine, task_ids, chain_ids, finished)

    try:
        summary = asyncio.run(_run())
    except ConcordError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc

    if as_json:
        typer.echo(json.dumps(summary, indent=2))
    else:
        _print_summary(summary)
    if not summary["finished"]:
        if not as_json:
            console.print(f"[yellow]Timed out after {timeout:.1f}s[/yellow]")
        raise typer.Exit(code=1)


def _print_summary(summary: dict[str, Any]) -> None:
    chain_task_ids = {tid for chain in summary["chains"] for tid in chain["tasks"]}
    tasks = list(summary["tasks"])
    for chain in summary["chains"]:
        tasks.extend(chain["tasks"].values())

    table = Table(title="Tasks")
    table.add_column("Task", style="cyan", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    table.add_column("Agents")
    table.add_column("Retries", justify="right")
    table.add_column("Result")
    for task in tasks:
        color = _status_color(task["status"])
        result = task.get("result")
        outcome = _preview(result["content"]) if result else (task.get("failure_reason") or "-")
        table.add_row(
            task["id"] + (" *" if task["id"] in chain_task_ids else ""),
            f"[{color}]{task['status']}[/{color}]",
            ", ".join(task["assigned_agents"]) or "-",
            str(task["retry_count"]),
            outcome,
        )
    console.print(table)

    if summary["chains"]:
        chains = Table(title="Chains")
        chains.add_column("Chain", style="cyan", no_wrap=True)
        chains.add_column("Status", no_wrap=True)
        chains.add_column("Done", justify="right")
        chains.add_column("Remaps", justify="right")
        chains.add_column("Stability", justify="right")
        for chain in summary["chains"]:
            color = _status_color(chain["status"])
            metrics = chain["metrics"]
            chains.add_row(
                chain["name"] or chain["id"],
                f"[{color}]{chain['status']}[/{color}]",
                f"{len(chain['completed'])}/{len(chain['tasks'])}",
                str(chain["remapping_count"]),
                f"{metrics['path_stability']:.2f}",
            )
        console.print(chains)
