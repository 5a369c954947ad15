"""Startup Transition Runner: migrations, then seeds, then the service."""

from shipwright.startup.database import Database, DatabaseProvider, connect
from shipwright.startup.migrations import MigrationRunner
from shipwright.startup.runner import (
    READY_FILE,
    ExecLauncher,
    ExitCode,
    MigrationStep,
    ProcessLauncher,
    SeedStep,
    StartupStep,
    StartupTransitionRunner,
)
from shipwright.startup.seeds import SeedRunner

__all__ = [
    "READY_FILE",
    "Database",
    "DatabaseProvider",
    "ExecLauncher",
    "ExitCode",
    "MigrationRunner",
    "MigrationStep",
    "ProcessLauncher",
    "SeedRunner",
    "SeedStep",
    "StartupStep",
    "StartupTransitionRunner",
    "connect",
]
