"""Database access for the startup transition.

A thin DB-API 2 wrapper so that the migration and seed runners issue the
same SQL against sqlite3 (development, tests) and PostgreSQL (production,
via psycopg2). Queries are written with ``?`` placeholders and adapted to
``%s`` for psycopg2.

An unreachable database is a ``MigrationError``: it is discovered at the
first startup step and must stop the container before it serves traffic.
"""

from __future__ import annotations

import sqlite3
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from shipwright.core.errors import ConfigError, MigrationError
from shipwright.core.logging import get_logger
from shipwright.core.settings import DatabaseSettings
from shipwright.execution.retry import ExponentialBackoff, RetryContext

logger = get_logger(__name__)


class Database:
    """A connection plus the dialect details the runners need."""

    def __init__(self, conn: Any, dialect: str = "sqlite") -> None:
        self.conn = conn
        self.dialect = dialect

    @property
    def placeholder(self) -> str:
        return "?" if self.dialect == "sqlite" else "%s"

    def _adapt(self, sql: str) -> str:
        return sql if self.dialect == "sqlite" else sql.replace("?", "%s")

    def execute(self, sql: str, params: Sequence[Any] = ()) -> Any:
        cursor = self.conn.cursor()
        cursor.execute(self._adapt(sql), tuple(params))
        return cursor

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[tuple]:
        return list(self.execute(sql, params).fetchall())

    def executescript(self, sql: str) -> None:
        """Run a multi-statement script (a migration file)."""
        if self.dialect == "sqlite":
            self.conn.executescript(sql)
        else:
            cursor = self.conn.cursor()
            cursor.execute(sql)

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        self.conn.rollback()

    def close(self) -> None:
        self.conn.close()


def _connect_once(settings: DatabaseSettings) -> Database:
    if settings.is_sqlite:
        if settings.name != ":memory:" and not Path(settings.name).parent.is_dir():
            raise MigrationError(f"Database unreachable: directory of {settings.name} does not exist")
        try:
            return Database(sqlite3.connect(settings.name), "sqlite")
        except sqlite3.Error as exc:
            raise MigrationError(f"Database unreachable: {settings.describe()}: {exc}", cause=exc) from exc

    if not settings.is_postgres:
        raise ConfigError(f"Unsupported DATABASE_TYPE: {settings.type!r}")

    try:
        import psycopg2
    except ImportError as exc:
        raise ConfigError(
            "PostgreSQL support requires psycopg2. Install it with: pip install shipwright-deploy[postgres]",
            cause=exc,
        ) from exc

    try:
        return Database(psycopg2.connect(connect_timeout=10, **settings.postgres_dsn_kwargs()), "postgres")
    except psycopg2.Error as exc:
        raise MigrationError(f"Database unreachable: {settings.describe()}: {exc}", cause=exc) from exc


def connect(
    settings: DatabaseSettings,
    attempts: int = 1,
    sleep: Callable[[float], None] = time.sleep,
) -> Database:
    """Open a connection, retrying an unreachable server ``attempts`` times.

    Raises:
        MigrationError: Database unreachable after all attempts
        ConfigError: Unsupported database type or missing driver
    """
    retry = RetryContext(
        ExponentialBackoff(max_retries=attempts, base_delay=1.0, max_delay=10.0, retryable_errors=(MigrationError,)),
        on_retry=lambda attempt, error, delay: logger.warning(
            "database.connect.retry", attempt=attempt, delay_seconds=round(delay, 2), error=str(error)
        ),
        sleep=sleep,
    )
    db = retry.run(_connect_once, settings)
    logger.info("database.connected", database=settings.describe(), attempts=retry.attempts)
    return db


class DatabaseProvider:
    """Lazily opened connection shared by the startup steps.

    Settings are read on first use so that a malformed ``DATABASE_*``
    environment is reported as a configuration error by the step that
    needed the database.
    """

    def __init__(
        self,
        settings_factory: Callable[[], DatabaseSettings] = DatabaseSettings,
        attempts: int = 1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings_factory = settings_factory
        self._attempts = attempts
        self._sleep = sleep
        self._db: Database | None = None

    def get(self) -> Database:
        if self._db is None:
            try:
                settings = self._settings_factory()
            except ValidationError as exc:
                raise ConfigError(f"Invalid DATABASE_* configuration: {exc}", cause=exc) from exc
            self._db = connect(settings, self._attempts, self._sleep)
        return self._db

    def close(self) -> None:
        if self._db is not None:
            self._db.close()
            self._db = None


__all__ = ["Database", "DatabaseProvider", "connect"]
