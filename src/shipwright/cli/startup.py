"""
Container entrypoint command.

    shipwright startup --migrations-dir migrations --seeds-dir seeds -- node dist/main.js

Exit codes:
    2  invalid configuration
    3  migrations failed (includes an unreachable database)
    4  seed data failed
    5  the service process could not be started

The ready file is how a deployment tells that startup reached the exec.
"""

from __future__ import annotations

from pathlib import Path

import typer

from shipwright.startup.runner import READY_FILE


def startup(
    command: list[str] = typer.Argument(None, help="Service command, given after --."),
    migrations_dir: Path = typer.Option(Path("migrations"), "--migrations-dir", envvar="SHIPWRIGHT_MIGRATIONS_DIR"),
    seeds_dir: Path = typer.Option(Path("seeds"), "--seeds-dir", envvar="SHIPWRIGHT_SEEDS_DIR"),
    connect_attempts: int = typer.Option(
        1, "--connect-attempts", min=1, help="Attempts to reach the database before giving up."
    ),
    ready_file: str = typer.Option(
        READY_FILE,
        "--ready-file",
        envvar="SHIPWRIGHT_READY_FILE",
        help="Written once migrations and seeds succeeded; empty to disable.",
    ),
) -> None:
    """Apply migrations and seed data, then exec the service process."""
    from shipwright.startup import (
        DatabaseProvider,
        ExecLauncher,
        MigrationStep,
        SeedStep,
        StartupTransitionRunner,
    )

    provider = DatabaseProvider(attempts=connect_attempts)
    runner = StartupTransitionRunner(
        [MigrationStep(provider, migrations_dir), SeedStep(provider, seeds_dir)],
        ExecLauncher(),
        ready_file=ready_file or None,
    )
    raise typer.Exit(code=int(runner.run(command or [])))
