"""
CLI output helpers.
"""

from __future__ import annotations

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from shipwright.core.errors import ShipwrightError
from shipwright.deploy.models import PipelineRun, PipelineState

console = Console()
err_console = Console(stderr=True)

_STATE_STYLE = {
    PipelineState.SUCCEEDED: "green",
    PipelineState.FAILED: "red",
}

_STEP_STYLE = {
    "succeeded": "green",
    "failed": "red",
    "blocked": "yellow",
    "skipped": "dim",
}


def fail(error: ShipwrightError | Exception, code: int = 1) -> typer.Exit:
    """Print an error and return the Exit to raise."""
    message = error.message if isinstance(error, ShipwrightError) else str(error)
    err_console.print(f"[bold red]Error[/bold red] ({type(error).__name__}): {escape(message)}")
    return typer.Exit(code=code)


def print_run(run: PipelineRun) -> None:
    """Render one pipeline run: header, transition steps, failure."""
    style = _STATE_STYLE.get(run.state, "yellow")
    console.print(
        f"[bold]{run.run_id}[/bold]  [{style}]{run.state.value}[/{style}]  "
        f"{run.trigger.source_revision} → {run.target_host}"
    )
    if run.artifact:
        console.print(f"  image:     {run.artifact.reference} ({run.artifact.digest[:19]})")
    if run.published:
        note = " (already published)" if run.published.already_published else ""
        console.print(f"  published: {run.published.reference}{note} after {run.publish_attempts} attempt(s)")

    if run.steps:
        table = Table(title="Transition", show_lines=False)
        table.add_column("Step", style="cyan")
        table.add_column("Status")
        table.add_column("Detail")
        for outcome in run.steps:
            step_style = _STEP_STYLE.get(outcome.status, "white")
            table.add_row(outcome.step.value, f"[{step_style}]{outcome.status}[/{step_style}]", escape(outcome.detail))
        console.print(table)

    if run.state == PipelineState.FAILED:
        message = (run.error or {}).get("message", "")
        err_console.print(f"[bold red]Failed at {run.failed_step}[/bold red]: {escape(str(message))}")
        if run.old_container_state:
            err_console.print(f"  old container: {run.old_container_state}")
        for line in run.logs_tail[-10:]:
            err_console.print(f"  [dim]{escape(line)}[/dim]")


def print_runs(runs: list[PipelineRun]) -> None:
    if not runs:
        console.print("[dim]No runs.[/dim]")
        return
    table = Table(title="Pipeline runs")
    table.add_column("Run", style="cyan")
    table.add_column("State")
    table.add_column("Revision")
    table.add_column("Target")
    table.add_column("Failed step")
    table.add_column("Created")
    for run in runs:
        style = _STATE_STYLE.get(run.state, "yellow")
        table.add_row(
            run.run_id,
            f"[{style}]{run.state.value}[/{style}]",
            run.trigger.source_revision[:12],
            run.target_host,
            run.failed_step or "",
            run.created_at[:19],
        )
    console.print(table)
