"""
Deployment commands: run a pipeline, list and show archived runs.
"""

from __future__ import annotations

import json
from pathlib import Path

import typer

from shipwright.cli.utils import console, err_console, fail, print_run, print_runs

app = typer.Typer(no_args_is_help=True)

_OUTPUT_DIR = typer.Option(Path("deploy-runs"), "--output-dir", "-o", envvar="SHIPWRIGHT_OUTPUT_DIR")


@app.command("run")
def run(
    revision: str | None = typer.Option(None, "--revision", "-r", help="Source revision to deploy."),
    branch: str | None = typer.Option(None, "--branch", "-b", help="Branch the revision was pushed to."),
    event_file: Path | None = typer.Option(
        None, "--event-file", exists=True, dir_okay=False, help="Push event payload (e.g. $GITHUB_EVENT_PATH)."
    ),
    secrets_dir: Path | None = typer.Option(None, "--secrets-dir", help="Directory of mounted secret files."),
    json_output: bool = typer.Option(False, "--json", help="Output the run record as JSON."),
) -> None:
    """Build, publish and roll out one revision to the target host."""
    from shipwright.core.errors import ConfigError
    from shipwright.core.secrets import SecretsResolver
    from shipwright.deploy import DeployConfig, DeploymentSequencer, PushEvent

    try:
        config = DeployConfig.from_env()
        if event_file is not None:
            event = PushEvent.from_payload(json.loads(event_file.read_text(encoding="utf-8")))
        elif revision:
            event = PushEvent(source_revision=revision, branch=branch or config.branch)
        else:
            err_console.print("[red]Either --revision or --event-file is required.[/red]")
            raise typer.Exit(code=2)

        if not event.targets_branch(config.branch):
            console.print(f"[dim]Push to {event.branch!r} ignored; deploying only {config.branch!r}.[/dim]")
            return

        sequencer = DeploymentSequencer.from_config(config, SecretsResolver.default(secrets_dir))
    except (ConfigError, ValueError) as exc:
        raise fail(exc, code=2) from exc

    result = sequencer.run(event)

    if json_output:
        typer.echo(result.model_dump_json(indent=2))
    else:
        print_run(result)

    if not result.succeeded:
        raise typer.Exit(code=1)


@app.command("runs")
def runs(
    output_dir: Path = _OUTPUT_DIR,
    limit: int = typer.Option(20, "--limit", "-n", min=1),
    json_output: bool = typer.Option(False, "--json"),
) -> None:
    """List archived pipeline runs, newest first."""
    from shipwright.deploy import RunArchive

    items = RunArchive(output_dir).list_runs(limit=limit)
    if json_output:
        typer.echo(json.dumps([r.model_dump(mode="json") for r in items], indent=2))
        return
    print_runs(items)


@app.command("show")
def show(
    run_id: str = typer.Argument(..., help="Run id."),
    output_dir: Path = _OUTPUT_DIR,
    json_output: bool = typer.Option(False, "--json"),
) -> None:
    """Show one archived run."""
    from shipwright.core.errors import ConfigError
    from shipwright.deploy import RunArchive

    try:
        record = RunArchive(output_dir).load(run_id)
    except ConfigError as exc:
        raise fail(exc, code=2) from exc
    if record is None:
        err_console.print(f"[red]Run not found:[/red] {run_id}")
        raise typer.Exit(code=1)

    if json_output:
        typer.echo(record.model_dump_json(indent=2))
    else:
        print_run(record)
