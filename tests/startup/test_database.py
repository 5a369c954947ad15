"""Tests for database connection handling."""

import pytest

from shipwright.core.errors import ConfigError, MigrationError
from shipwright.core.settings import DatabaseSettings
from shipwright.startup.database import Database, DatabaseProvider, connect


class TestDatabase:
    def test_placeholder_adaptation(self):
        assert Database(None, "sqlite")._adapt("SELECT ? ") == "SELECT ? "
        assert Database(None, "postgres")._adapt("SELECT ?, ?") == "SELECT %s, %s"


class TestConnect:
    def test_sqlite_file(self, tmp_path):
        db = connect(DatabaseSettings(type="sqlite", name=str(tmp_path / "app.db")))
        assert db.dialect == "sqlite"
        assert db.query("SELECT 1") == [(1,)]
        db.close()

    def test_unreachable_is_migration_error_after_retries(self, tmp_path):
        sleeps = []
        settings = DatabaseSettings(type="sqlite", name=str(tmp_path / "missing" / "app.db"))
        with pytest.raises(MigrationError, match="unreachable"):
            connect(settings, attempts=3, sleep=sleeps.append)
        assert len(sleeps) == 2

    def test_unsupported_type(self):
        with pytest.raises(ConfigError, match="Unsupported"):
            connect(DatabaseSettings(type="oracle"), attempts=3)


class TestDatabaseProvider:
    def test_lazy_and_shared(self, tmp_path):
        calls = []

        def factory():
            calls.append(1)
            return DatabaseSettings(type="sqlite", name=str(tmp_path / "app.db"))

        provider = DatabaseProvider(settings_factory=factory)
        assert calls == []
        assert provider.get() is provider.get()
        provider.close()
        assert len(calls) == 1

    def test_invalid_environment_is_config_error(self, monkeypatch):
        monkeypatch.setenv("DATABASE_PORT", "not-a-port")
        with pytest.raises(ConfigError, match="DATABASE_"):
            DatabaseProvider().get()
