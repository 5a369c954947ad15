"""
Root Typer application for the shipwright CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from shipwright.core.logging import configure_logging

app = Typer(
    name="shipwright",
    help="shipwright: build, publish and roll out a service image to its host.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from shipwright import __version__

        typer.echo(f"shipwright {__version__}")
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
    log_level: str | None = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING or ERROR."),
    json_logs: bool | None = typer.Option(None, "--json-logs/--console-logs", help="Log format."),
) -> None:
    """shipwright CLI: deployments, container startup, database and webhook receiver."""
    configure_logging(level=log_level.upper() if log_level else None, json_format=json_logs)


# ── Sub-command registration ─────────────────────────────────────────────

from shipwright.cli.db import app as db_app  # noqa: E402
from shipwright.cli.deploy import app as deploy_app  # noqa: E402
from shipwright.cli.serve import app as serve_app  # noqa: E402
from shipwright.cli.startup import startup  # noqa: E402

app.add_typer(deploy_app, name="deploy", help="Run and inspect deployments.")
app.add_typer(db_app, name="db", help="Migrations and seed data.")
app.add_typer(serve_app, name="serve", help="Start the webhook receiver.")
app.command("startup", context_settings={"allow_interspersed_args": False})(startup)
