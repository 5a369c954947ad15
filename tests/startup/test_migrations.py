"""Tests for the SQL migration runner (sqlite)."""

import sqlite3

import pytest

from shipwright.core.errors import MigrationError
from shipwright.startup.database import Database
from shipwright.startup.migrations import MigrationRunner, discover_migrations


@pytest.fixture
def db():
    database = Database(sqlite3.connect(":memory:"), "sqlite")
    yield database
    database.close()


@pytest.fixture
def migrations_dir(tmp_path):
    path = tmp_path / "migrations"
    path.mkdir()
    (path / "0001_users.sql").write_text("CREATE TABLE users (id INTEGER PRIMARY KEY, email TEXT NOT NULL);")
    (path / "0002_roles.sql").write_text("CREATE TABLE roles (name TEXT PRIMARY KEY, description TEXT);")
    (path / "0003_user_role.sql").write_text("ALTER TABLE users ADD COLUMN role TEXT;")
    return path


class TestDiscovery:
    def test_sorted_by_version(self, migrations_dir):
        (migrations_dir / "0010_late.sql").write_text("SELECT 1;")
        assert [m.version for m in discover_migrations(migrations_dir)] == [1, 2, 3, 10]

    def test_bad_name(self, migrations_dir):
        (migrations_dir / "users.sql").write_text("SELECT 1;")
        with pytest.raises(MigrationError, match="NNNN_name.sql"):
            discover_migrations(migrations_dir)

    def test_duplicate_version(self, migrations_dir):
        (migrations_dir / "0002_other.sql").write_text("SELECT 1;")
        with pytest.raises(MigrationError, match="Duplicate"):
            discover_migrations(migrations_dir)

    def test_missing_directory(self, tmp_path):
        assert discover_migrations(tmp_path / "none") == []


class TestMigrationRunner:
    def test_applies_all_then_nothing(self, db, migrations_dir):
        first = MigrationRunner(db, migrations_dir).apply_pending()
        assert first.applied == ["0001_users.sql", "0002_roles.sql", "0003_user_role.sql"]

        second = MigrationRunner(db, migrations_dir).apply_pending()
        assert second.applied == []
        assert len(second.skipped) == 3
        assert db.query("SELECT role FROM users") == []

    def test_applies_only_new(self, db, migrations_dir):
        MigrationRunner(db, migrations_dir).apply_pending()
        (migrations_dir / "0004_index.sql").write_text("CREATE INDEX idx_users_email ON users (email);")
        result = MigrationRunner(db, migrations_dir).apply_pending()
        assert result.applied == ["0004_index.sql"]
        assert MigrationRunner(db, migrations_dir).get_pending() == []

    def test_failure_stops_and_rolls_back(self, db, migrations_dir):
        (migrations_dir / "0002_roles.sql").write_text("CREATE TABLE broken (;")
        with pytest.raises(MigrationError) as exc_info:
            MigrationRunner(db, migrations_dir).apply_pending()
        assert exc_info.value.migration == "0002_roles.sql"
        versions = [r.version for r in MigrationRunner(db, migrations_dir).get_applied()]
        assert versions == [1]

    def test_out_of_order_pending_rejected(self, db, migrations_dir):
        (migrations_dir / "0002_roles.sql").rename(migrations_dir / "0005_roles.sql")
        MigrationRunner(db, migrations_dir).apply_pending()
        (migrations_dir / "0002_late.sql").write_text("SELECT 1;")
        with pytest.raises(MigrationError, match="older than applied"):
            MigrationRunner(db, migrations_dir).apply_pending()

    def test_checksum_mismatch_reported(self, db, migrations_dir):
        MigrationRunner(db, migrations_dir).apply_pending()
        (migrations_dir / "0001_users.sql").write_text("-- edited\nCREATE TABLE users (id INTEGER);")
        result = MigrationRunner(db, migrations_dir).apply_pending()
        assert result.checksum_mismatches == ["0001_users.sql"]

    def test_status(self, db, migrations_dir):
        runner = MigrationRunner(db, migrations_dir)
        runner.apply_pending()
        (migrations_dir / "0004_new.sql").write_text("SELECT 1;")
        statuses = runner.status()
        assert [s.applied_at is not None for s in statuses] == [True, True, True, False]
        assert statuses[0].checksum_matches is True
        assert statuses[3].checksum_matches is None

    def test_unreadable_tracking_table(self, db, migrations_dir):
        db.execute("CREATE TABLE _migrations (version INTEGER PRIMARY KEY, name TEXT)")
        db.commit()
        with pytest.raises(MigrationError, match="Cannot read applied migrations") as exc_info:
            MigrationRunner(db, migrations_dir).apply_pending()
        assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)
        assert db.query("SELECT name FROM sqlite_master WHERE name = 'users'") == []
