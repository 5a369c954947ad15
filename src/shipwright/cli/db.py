"""
Database commands: apply migrations and seeds outside the entrypoint.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from shipwright.cli.utils import console, fail

app = typer.Typer(no_args_is_help=True)

_MIGRATIONS_DIR = typer.Option(Path("migrations"), "--migrations-dir", envvar="SHIPWRIGHT_MIGRATIONS_DIR")
_SEEDS_DIR = typer.Option(Path("seeds"), "--seeds-dir", envvar="SHIPWRIGHT_SEEDS_DIR")


def _open():
    from shipwright.core.errors import ConfigError, MigrationError
    from shipwright.startup import DatabaseProvider, ExitCode

    provider = DatabaseProvider()
    try:
        return provider, provider.get()
    except ConfigError as exc:
        raise fail(exc, ExitCode.CONFIG_ERROR) from exc
    except MigrationError as exc:
        raise fail(exc, ExitCode.MIGRATION_FAILED) from exc


@app.command("migrate")
def migrate(migrations_dir: Path = _MIGRATIONS_DIR) -> None:
    """Apply pending migrations."""
    from shipwright.core.errors import MigrationError
    from shipwright.startup import ExitCode, MigrationRunner

    provider, db = _open()
    try:
        result = MigrationRunner(db, migrations_dir).apply_pending()
    except MigrationError as exc:
        raise fail(exc, ExitCode.MIGRATION_FAILED) from exc
    finally:
        provider.close()

    for name in result.applied:
        console.print(f"[green]applied[/green] {name}")
    for name in result.checksum_mismatches:
        console.print(f"[yellow]changed since applied[/yellow] {name}")
    console.print(f"{len(result.applied)} applied, {len(result.skipped)} already applied")


@app.command("seed")
def seed(seeds_dir: Path = _SEEDS_DIR) -> None:
    """Insert seed rows that are not present yet."""
    from shipwright.core.errors import SeedError
    from shipwright.startup import ExitCode, SeedRunner

    provider, db = _open()
    try:
        result = SeedRunner(db, seeds_dir).apply()
    except SeedError as exc:
        raise fail(exc, ExitCode.SEED_FAILED) from exc
    finally:
        provider.close()

    for name, count in result.inserted.items():
        console.print(f"{name}: {count} inserted")
    console.print(f"{result.total_inserted} rows inserted")


@app.command("status")
def status(migrations_dir: Path = _MIGRATIONS_DIR) -> None:
    """Show applied and pending migrations."""
    from shipwright.core.errors import MigrationError
    from shipwright.startup import ExitCode, MigrationRunner

    provider, db = _open()
    try:
        statuses = MigrationRunner(db, migrations_dir).status()
    except MigrationError as exc:
        raise fail(exc, ExitCode.MIGRATION_FAILED) from exc
    finally:
        provider.close()

    table = Table(title="Migrations")
    table.add_column("Version", justify="right")
    table.add_column("File", style="cyan")
    table.add_column("Applied")
    table.add_column("Checksum")
    for item in statuses:
        checksum = "" if item.checksum_matches is None else ("ok" if item.checksum_matches else "[yellow]changed[/yellow]")
        table.add_row(str(item.version), item.filename, item.applied_at or "[dim]pending[/dim]", checksum)
    console.print(table)
