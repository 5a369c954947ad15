"""Tests for the shipwright CLI (Typer CliRunner).

Deployment components are faked; startup and db commands run against a
temporary sqlite database.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import closing
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from shipwright import __version__
from shipwright.cli.app import app
from shipwright.core.logging import configure_logging
from shipwright.deploy.archive import RunArchive
from shipwright.deploy.models import ExecutionResult, PipelineRun, TransitionStep
from shipwright.deploy.sequencer import DeploymentSequencer
from shipwright.deploy.trigger import PushEvent
from tests.deploy.fakes import FakeBuilder, FakeExecutor, FakePublisher

runner = CliRunner()


@pytest.fixture(autouse=True)
def _quiet_logging():
    """Bind the log handler outside the runner so its streams stay private."""
    configure_logging(level="WARNING", json_format=True, force=True)


@pytest.fixture
def deploy_env(monkeypatch, deploy_config):
    monkeypatch.setenv("SHIPWRIGHT_IMAGE_NAME", deploy_config.image_name)
    monkeypatch.setenv("SHIPWRIGHT_HOST", deploy_config.host)
    monkeypatch.setenv("SHIPWRIGHT_CONTEXT_DIR", str(deploy_config.context_dir))
    monkeypatch.setenv("SHIPWRIGHT_OUTPUT_DIR", str(deploy_config.output_dir))
    return deploy_config


def _fake_sequencer(config, runtime, executor=None) -> DeploymentSequencer:
    return DeploymentSequencer(
        config,
        runtime,
        FakeBuilder(),
        FakePublisher(),
        executor or FakeExecutor(),
        archive=RunArchive(config.output_dir),
        sleep=lambda _: None,
    )


class TestRoot:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for name in ("deploy", "startup", "db", "serve"):
            assert name in result.output


class TestDeployRun:
    def test_missing_configuration(self):
        result = runner.invoke(app, ["deploy", "run", "--revision", "abc123"])
        assert result.exit_code == 2
        assert "SHIPWRIGHT_IMAGE_NAME" in result.output

    def test_requires_revision_or_event(self, deploy_env):
        assert runner.invoke(app, ["deploy", "run"]).exit_code == 2

    def test_other_branch_ignored(self, deploy_env):
        with patch.object(DeploymentSequencer, "from_config") as from_config:
            result = runner.invoke(app, ["deploy", "run", "--revision", "abc123", "--branch", "feature-x"])
        assert result.exit_code == 0
        assert "ignored" in result.output
        from_config.assert_not_called()

    def test_success(self, deploy_env, runtime):
        sequencer = _fake_sequencer(deploy_env, runtime)
        with patch.object(DeploymentSequencer, "from_config", return_value=sequencer):
            result = runner.invoke(app, ["deploy", "run", "--revision", "abc123", "--json"])
        assert result.exit_code == 0, result.output
        assert '"state": "SUCCEEDED"' in result.output
        assert RunArchive(deploy_env.output_dir).list_runs()[0].trigger.source_revision == "abc123"

    def test_event_file(self, deploy_env, runtime, tmp_path):
        event_file = tmp_path / "event.json"
        event_file.write_text(json.dumps({"ref": "refs/heads/main", "after": "def456"}))
        sequencer = _fake_sequencer(deploy_env, runtime)
        with patch.object(DeploymentSequencer, "from_config", return_value=sequencer):
            result = runner.invoke(app, ["deploy", "run", "--event-file", str(event_file), "--json"])
        assert result.exit_code == 0, result.output
        assert RunArchive(deploy_env.output_dir).list_runs()[0].trigger.source_revision == "def456"

    def test_failed_run_exits_1(self, deploy_env, runtime):
        failed = ExecutionResult(success=False, failed_step=TransitionStep.PULL_NEW, error="manifest unknown")
        sequencer = _fake_sequencer(deploy_env, runtime, executor=FakeExecutor(failed))
        with patch.object(DeploymentSequencer, "from_config", return_value=sequencer):
            result = runner.invoke(app, ["deploy", "run", "--revision", "abc123"])
        assert result.exit_code == 1
        assert "PULL_NEW" in result.output


class TestDeployRuns:
    def _archive(self, tmp_path) -> RunArchive:
        archive = RunArchive(tmp_path)
        run = PipelineRun(run_id="r1", trigger=PushEvent(source_revision="abc123"), target_host="10.0.0.5")
        run.fail("LOCK", {"message": "busy"})
        archive.save(run)
        return archive

    def test_list(self, tmp_path):
        self._archive(tmp_path)
        result = runner.invoke(app, ["deploy", "runs", "--output-dir", str(tmp_path), "--json"])
        assert result.exit_code == 0
        assert [r["run_id"] for r in json.loads(result.output)] == ["r1"]

    def test_show(self, tmp_path):
        self._archive(tmp_path)
        result = runner.invoke(app, ["deploy", "show", "r1", "--output-dir", str(tmp_path)])
        assert result.exit_code == 0
        assert "LOCK" in result.output

    def test_show_missing(self, tmp_path):
        result = runner.invoke(app, ["deploy", "show", "nope", "--output-dir", str(tmp_path)])
        assert result.exit_code == 1


@pytest.fixture
def sqlite_project(tmp_path, monkeypatch):
    (tmp_path / "migrations").mkdir()
    (tmp_path / "migrations" / "0001_roles.sql").write_text("CREATE TABLE roles (name TEXT PRIMARY KEY);")
    (tmp_path / "seeds").mkdir()
    (tmp_path / "seeds" / "001_roles.yaml").write_text("table: roles\nkey: name\nrows:\n  - {name: admin}\n")
    monkeypatch.setenv("DATABASE_TYPE", "sqlite")
    monkeypatch.setenv("DATABASE_NAME", str(tmp_path / "app.db"))
    monkeypatch.setenv("SHIPWRIGHT_MIGRATIONS_DIR", str(tmp_path / "migrations"))
    monkeypatch.setenv("SHIPWRIGHT_SEEDS_DIR", str(tmp_path / "seeds"))
    monkeypatch.setenv("SHIPWRIGHT_READY_FILE", str(tmp_path / "ready"))
    monkeypatch.setenv("COLUMNS", "200")
    return tmp_path


class TestStartup:
    @patch("shipwright.startup.runner.os.execvpe")
    def test_migrates_seeds_then_execs(self, mock_exec, sqlite_project):
        result = runner.invoke(app, ["startup", "--", "node", "dist/main.js"])
        assert result.exit_code == 0, result.output
        assert mock_exec.call_args.args[:2] == ("node", ["node", "dist/main.js"])
        assert (sqlite_project / "ready").exists()

    @patch("shipwright.startup.runner.os.execvpe")
    def test_unreachable_database_exits_3(self, mock_exec, sqlite_project, monkeypatch):
        monkeypatch.setenv("DATABASE_NAME", str(sqlite_project / "missing" / "app.db"))
        result = runner.invoke(app, ["startup", "--", "node"])
        assert result.exit_code == 3
        mock_exec.assert_not_called()

    @patch("shipwright.startup.runner.os.execvpe")
    def test_unreadable_migrations_table_exits_3(self, mock_exec, sqlite_project):
        with closing(sqlite3.connect(sqlite_project / "app.db")) as conn:
            conn.execute("CREATE TABLE _migrations (version INTEGER PRIMARY KEY, name TEXT)")
            conn.commit()
        result = runner.invoke(app, ["startup", "--", "node"])
        assert result.exit_code == 3
        assert not (sqlite_project / "ready").exists()
        mock_exec.assert_not_called()

    @patch("shipwright.startup.runner.os.execvpe")
    def test_broken_seed_exits_4(self, mock_exec, sqlite_project):
        (sqlite_project / "seeds" / "002_bad.yaml").write_text("table: missing_table\nkey: id\nrows:\n  - {id: 1}\n")
        result = runner.invoke(app, ["startup", "--", "node"])
        assert result.exit_code == 4
        mock_exec.assert_not_called()


class TestDb:
    def test_migrate_seed_status(self, sqlite_project):
        migrate = runner.invoke(app, ["db", "migrate"])
        assert migrate.exit_code == 0, migrate.output
        assert "1 applied" in migrate.output

        seed = runner.invoke(app, ["db", "seed"])
        assert seed.exit_code == 0
        assert "1 rows inserted" in seed.output

        again = runner.invoke(app, ["db", "seed"])
        assert "0 rows inserted" in again.output

        status = runner.invoke(app, ["db", "status"])
        assert status.exit_code == 0
        assert "0001_roles.sql" in status.output
        assert "pending" not in status.output

    def test_migrate_unreachable(self, sqlite_project, monkeypatch):
        monkeypatch.setenv("DATABASE_NAME", str(sqlite_project / "missing" / "app.db"))
        assert runner.invoke(app, ["db", "migrate"]).exit_code == 3
