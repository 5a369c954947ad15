"""SQL migration runner.

Reads ``NNNN_name.sql`` files from a migrations directory, tracks applied
migrations in the ``_migrations`` table, and applies pending ones in strictly
increasing version order. Safe to run against a fully migrated database: it
then applies nothing.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from shipwright.core.errors import MigrationError
from shipwright.core.logging import get_logger
from shipwright.startup.database import Database

logger = get_logger(__name__)

_FILENAME_RE = re.compile(r"^(\d+)_([\w.-]+)\.sql$")


@dataclass(frozen=True)
class Migration:
    """One migration file."""

    version: int
    name: str
    path: Path

    @property
    def filename(self) -> str:
        return self.path.name

    def read(self) -> str:
        return self.path.read_text(encoding="utf-8")

    def checksum(self) -> str:
        return hashlib.sha256(self.path.read_bytes()).hexdigest()


@dataclass
class MigrationRecord:
    """Record of a single applied migration."""

    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass
class MigrationResult:
    """Result of a migration run."""

    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    checksum_mismatches: list[str] = field(default_factory=list)


@dataclass
class MigrationStatus:
    version: int
    filename: str
    applied_at: str | None
    checksum_matches: bool | None


def discover_migrations(migrations_dir: Path) -> list[Migration]:
    """Migration files sorted by version.

    Raises:
        MigrationError: For a ``.sql`` file not named ``NNNN_name.sql`` or
            two files with the same version
    """
    if not migrations_dir.is_dir():
        return []
    migrations: dict[int, Migration] = {}
    for path in sorted(migrations_dir.glob("*.sql")):
        match = _FILENAME_RE.match(path.name)
        if not match:
            raise MigrationError(f"Migration file name must be NNNN_name.sql: {path.name}", migration=path.name)
        version = int(match.group(1))
        if version in migrations:
            raise MigrationError(
                f"Duplicate migration version {version}: {migrations[version].filename}, {path.name}",
                migration=path.name,
            )
        migrations[version] = Migration(version=version, name=match.group(2), path=path)
    return [migrations[v] for v in sorted(migrations)]


class MigrationRunner:
    """Applies SQL migrations from a directory.

    Parameters
    ----------
    db
        Open :class:`~shipwright.startup.database.Database`.
    migrations_dir
        Directory containing ``NNNN_name.sql`` files.

    Example::

        runner = MigrationRunner(connect(DatabaseSettings()), Path("migrations"))
        result = runner.apply_pending()
        print(f"Applied {len(result.applied)} migrations")
    """

    def __init__(self, db: Database, migrations_dir: Path | str) -> None:
        self._db = db
        self._migrations_dir = Path(migrations_dir)
        self._ensure_migrations_table()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def apply_pending(self) -> MigrationResult:
        """Apply all pending migrations in version order.

        Raises:
            MigrationError: On a version below the highest applied one, or
                the first migration whose SQL fails; later migrations are
                not attempted
        """
        result = MigrationResult()
        applied = {r.version: r for r in self.get_applied()}
        highest = max(applied, default=0)
        migrations = discover_migrations(self._migrations_dir)

        pending = []
        for migration in migrations:
            record = applied.get(migration.version)
            if record is None:
                pending.append(migration)
                continue
            result.skipped.append(migration.filename)
            if record.checksum != migration.checksum():
                result.checksum_mismatches.append(migration.filename)
                logger.warning("migration.checksum_mismatch", migration=migration.filename)

        for migration in pending:
            if migration.version < highest:
                raise MigrationError(
                    f"Pending migration {migration.filename} is older than applied version {highest}",
                    migration=migration.filename,
                )

        for migration in pending:
            self._apply(migration)
            result.applied.append(migration.filename)
            logger.info("migration.applied", migration=migration.filename)

        return result

    def get_applied(self) -> list[MigrationRecord]:
        """Return already-applied migrations in version order.

        Raises:
            MigrationError: The ``_migrations`` table cannot be read
        """
        try:
            rows = self._db.query("SELECT version, name, checksum, applied_at FROM _migrations ORDER BY version")
        except Exception as exc:
            self._db.rollback()
            raise MigrationError(f"Cannot read applied migrations from _migrations: {exc}", cause=exc) from exc
        return [MigrationRecord(version=r[0], name=r[1], checksum=r[2], applied_at=str(r[3])) for r in rows]

    def get_pending(self) -> list[str]:
        """Return filenames of migrations not yet applied."""
        applied = {r.version for r in self.get_applied()}
        return [m.filename for m in discover_migrations(self._migrations_dir) if m.version not in applied]

    def status(self) -> list[MigrationStatus]:
        applied = {r.version: r for r in self.get_applied()}
        statuses = []
        for migration in discover_migrations(self._migrations_dir):
            record = applied.get(migration.version)
            statuses.append(
                MigrationStatus(
                    version=migration.version,
                    filename=migration.filename,
                    applied_at=record.applied_at if record else None,
                    checksum_matches=(record.checksum == migration.checksum()) if record else None,
                )
            )
        return statuses

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _ensure_migrations_table(self) -> None:
        """Create the ``_migrations`` table if it doesn't exist."""
        try:
            self._db.execute(
                """
                CREATE TABLE IF NOT EXISTS _migrations (
                    version INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    checksum TEXT NOT NULL,
                    applied_at TEXT NOT NULL
                )
                """
            )
            self._db.commit()
        except Exception as exc:
            self._db.rollback()
            raise MigrationError(f"Could not create _migrations table: {exc}", cause=exc) from exc

    def _apply(self, migration: Migration) -> None:
        try:
            self._db.executescript(migration.read())
            self._db.execute(
                "INSERT INTO _migrations (version, name, checksum, applied_at) VALUES (?, ?, ?, ?)",
                (migration.version, migration.name, migration.checksum(), datetime.now(UTC).isoformat()),
            )
            self._db.commit()
        except Exception as exc:
            self._db.rollback()
            logger.error("migration.failed", migration=migration.filename, error=str(exc))
            raise MigrationError(
                f"Migration {migration.filename} failed: {exc}", migration=migration.filename, cause=exc
            ) from exc


__all__ = [
    "Migration",
    "MigrationRecord",
    "MigrationResult",
    "MigrationStatus",
    "MigrationRunner",
    "discover_migrations",
]
