"""
Startup Transition Runner: the container entrypoint.

Runs inside the freshly started container. Applies pending migrations,
then seed data, then replaces itself with the service process. A fatal
outcome at either of the first two steps terminates the container with a
non-zero exit code and the service process is never started, so it cannot
serve traffic against an unmigrated or unseeded database.

Manifesto:
    - **Fail-fast:** The first fatal step ends the startup
    - **Ordered:** Steps run in list order, never in parallel
    - **Observable:** Each outcome has its own exit code, which the Remote
      Executor reads back to name the failed step. The ready file is the
      only evidence that both steps succeeded; it is removed when the
      runner starts and written just before the exec

Architecture:
    ::

        StartupTransitionRunner(steps, launcher).run(command)
            │
            ├── MigrationStep ── fatal → exit 3   (2 for configuration)
            ├── SeedStep      ── fatal → exit 4
            ├── ready file written       (the Remote Executor waits for it)
            └── launcher.launch(command)   exec, does not return
                               └── fails → exit 5

Examples:
    >>> provider = DatabaseProvider()
    >>> runner = StartupTransitionRunner(
    ...     [MigrationStep(provider, "migrations"), SeedStep(provider, "seeds")],
    ...     ExecLauncher(),
    ...     ready_file=READY_FILE,
    ... )
    >>> runner.run(["node", "dist/main.js"])  # doctest: +SKIP

Tags:
    startup, entrypoint, migrations, seeds, exit-codes
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from enum import IntEnum
from pathlib import Path
from typing import NoReturn

from shipwright.core.errors import ConfigError, ProcessLaunchError, StartupError, categorize_error
from shipwright.core.logging import get_logger
from shipwright.startup.database import DatabaseProvider
from shipwright.startup.migrations import MigrationRunner
from shipwright.startup.seeds import SeedRunner

logger = get_logger(__name__)

# Written inside the container once migrations and seeds succeeded
READY_FILE = "/tmp/shipwright.ready"


class ExitCode(IntEnum):
    """Process exit codes of the startup runner."""

    OK = 0
    CONFIG_ERROR = 2
    MIGRATION_FAILED = 3
    SEED_FAILED = 4
    LAUNCH_FAILED = 5


class StartupStep(ABC):
    """One fatal-on-failure step before the service starts."""

    name: str = "step"
    exit_code: ExitCode = ExitCode.CONFIG_ERROR

    @abstractmethod
    def run(self) -> str:
        """Perform the step and return a one-line summary.

        Raises:
            StartupError: The step failed; startup must stop
            ConfigError: The step could not be configured
        """
        ...

    def close(self) -> None:
        """Release resources before the process is launched."""


class MigrationStep(StartupStep):
    name = "RUN_MIGRATIONS"
    exit_code = ExitCode.MIGRATION_FAILED

    def __init__(self, provider: DatabaseProvider, migrations_dir: Path | str) -> None:
        self.provider = provider
        self.migrations_dir = Path(migrations_dir)

    def run(self) -> str:
        result = MigrationRunner(self.provider.get(), self.migrations_dir).apply_pending()
        return f"{len(result.applied)} applied, {len(result.skipped)} already applied"

    def close(self) -> None:
        self.provider.close()


class SeedStep(StartupStep):
    name = "RUN_SEED"
    exit_code = ExitCode.SEED_FAILED

    def __init__(self, provider: DatabaseProvider, seeds_dir: Path | str) -> None:
        self.provider = provider
        self.seeds_dir = Path(seeds_dir)

    def run(self) -> str:
        result = SeedRunner(self.provider.get(), self.seeds_dir).apply()
        return f"{result.total_inserted} rows inserted"

    def close(self) -> None:
        self.provider.close()


class ProcessLauncher(ABC):
    """Starts the service process."""

    @abstractmethod
    def launch(self, command: Sequence[str]) -> None:
        """Start ``command`` in the foreground.

        Raises:
            ProcessLaunchError: The process could not be started
        """
        ...


class ExecLauncher(ProcessLauncher):
    """Replaces the current process with the service (``exec``)."""

    def __init__(self, env: Mapping[str, str] | None = None) -> None:
        self.env = env

    def launch(self, command: Sequence[str]) -> NoReturn:
        if not command:
            raise ProcessLaunchError("No service command given")
        env = dict(self.env) if self.env is not None else dict(os.environ)
        try:
            os.execvpe(command[0], list(command), env)
        except OSError as exc:
            raise ProcessLaunchError(f"Cannot exec {command[0]}: {exc}", cause=exc) from exc


class StartupTransitionRunner:
    """Runs the startup steps in order, then launches the service.

    ``ready_file``, when given, is removed before the first step and written
    after the last one succeeded, immediately before the launch.
    """

    def __init__(
        self,
        steps: Sequence[StartupStep],
        launcher: ProcessLauncher,
        *,
        ready_file: Path | str | None = None,
    ) -> None:
        self.steps = list(steps)
        self.launcher = launcher
        self.ready_file = Path(ready_file) if ready_file else None

    def run(self, command: Sequence[str]) -> int:
        """Run all steps, then launch ``command``.

        Returns the exit code; with :class:`ExecLauncher` it only returns
        when startup failed.
        """
        try:
            if self.ready_file is not None:
                try:
                    self.ready_file.unlink(missing_ok=True)
                except OSError as exc:
                    logger.error("startup.ready_file.failed", path=str(self.ready_file), error=str(exc))
                    return ExitCode.CONFIG_ERROR

            for step in self.steps:
                code = self._run_step(step)
                if code is not None:
                    return code
        finally:
            for step in self.steps:
                step.close()

        if self.ready_file is not None:
            try:
                self.ready_file.write_text(f"{os.getpid()}\n", encoding="utf-8")
            except OSError as exc:
                logger.error("startup.ready_file.failed", path=str(self.ready_file), error=str(exc))
                return ExitCode.LAUNCH_FAILED

        logger.info("startup.launch", command=list(command[:1]))
        try:
            self.launcher.launch(command)
        except ProcessLaunchError as exc:
            logger.error("startup.launch.failed", error=exc.message)
            return ExitCode.LAUNCH_FAILED
        return ExitCode.OK

    def _run_step(self, step: StartupStep) -> ExitCode | None:
        logger.info("startup.step.started", step=step.name)
        try:
            detail = step.run()
        except ConfigError as exc:
            logger.error("startup.step.failed", step=step.name, error=exc.message, category="config")
            return ExitCode.CONFIG_ERROR
        except StartupError as exc:
            logger.error(
                "startup.step.failed",
                step=step.name,
                error=exc.message,
                error_type=type(exc).__name__,
            )
            return step.exit_code
        except Exception as exc:
            # the exit code must still name the step, whatever the driver raised
            logger.exception(
                "startup.step.failed",
                step=step.name,
                error=str(exc),
                error_type=type(exc).__name__,
                category=categorize_error(exc).value,
            )
            return step.exit_code
        logger.info("startup.step.succeeded", step=step.name, detail=detail)
        return None


__all__ = [
    "READY_FILE",
    "ExitCode",
    "StartupStep",
    "MigrationStep",
    "SeedStep",
    "ProcessLauncher",
    "ExecLauncher",
    "StartupTransitionRunner",
]
