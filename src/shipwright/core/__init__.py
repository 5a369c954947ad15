"""Core primitives shared by the orchestrator and the container entrypoint."""

from shipwright.core.errors import (
    BuildError,
    ConfigError,
    ErrorCategory,
    ExecutionError,
    MigrationError,
    PublishError,
    SeedError,
    ShipwrightError,
    StartupError,
)
from shipwright.core.logging import LogContext, configure_logging, get_logger

__all__ = [
    "BuildError",
    "ConfigError",
    "ErrorCategory",
    "ExecutionError",
    "LogContext",
    "MigrationError",
    "PublishError",
    "SeedError",
    "ShipwrightError",
    "StartupError",
    "configure_logging",
    "get_logger",
]
