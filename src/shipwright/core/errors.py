"""
Structured error types for shipwright.

Every component of the deployment pipeline raises a typed failure instead
of continuing in a degraded state. Each error carries the metadata the
Deployment Sequencer needs to decide between retrying and aborting, and the
context an operator needs to see which step of which run failed.

The error hierarchy carries:
- **Category:** What kind of failure (build, publish, remote, startup, ...)
- **Retryable:** Whether the Sequencer may retry the operation
- **Context:** Run id, step, target host, image and revision
- **Cause:** Chained underlying exception for root cause analysis

Manifesto:
    - **Typed Error Hierarchy:** One branch per pipeline stage
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Rich Context:** Errors carry metadata for logging and run records
    - **Error Chaining:** Preserve original exceptions while adding context

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                      ShipwrightError                          │
        │  (category, retryable, context, cause)                        │
        ├──────────────────────────────────────────────────────────────┤
        │                                                               │
        │  BuildError        PublishError          ExecutionError       │
        │  (fatal)           (retryable)           (fatal for the run)  │
        │                        │                       │              │
        │                RegistryAuthError          SessionError        │
        │                RegistryTransportError                         │
        │                                                               │
        │  StartupError      ConfigError           OrchestrationError   │
        │  (fatal at start)  (fatal)               (fatal)              │
        │       │                │                       │              │
        │  MigrationError    MissingConfigError    InvalidTransition    │
        │  SeedError         InvalidConfigError    TargetBusyError      │
        │  ProcessLaunchError                                           │
        └──────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ DON'T: Retry a BuildError - the source tree is at fault
    ✅ DO: Let PublishError subclasses carry retryable=True

    ❌ DON'T: Put credential values into ErrorContext.metadata
    ✅ DO: Reference credentials by name

Examples:
    >>> error = PublishError("registry unreachable")
    >>> error.retryable
    True
    >>> BuildError("npm ci failed").retryable
    False
    >>> error.with_context(run_id="a1b2c3", step="publish").context.step
    'publish'

Tags:
    error-handling, exception-hierarchy, retry-logic, deployment
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Standard error categories for classification and routing.

    Categories follow the pipeline stages so that the terminal record of a
    failed run can be grouped by where it broke:

    - **Artifact stages:** BUILD, PUBLISH
    - **Infrastructure (usually transient):** NETWORK, AUTH
    - **Host transition:** REMOTE, MIGRATION, SEED, PROCESS
    - **Control plane:** CONFIG, ORCHESTRATION, LOCK
    - **Internal errors:** INTERNAL, UNKNOWN
    """

    BUILD = "BUILD"
    PUBLISH = "PUBLISH"
    NETWORK = "NETWORK"
    AUTH = "AUTH"
    REMOTE = "REMOTE"
    MIGRATION = "MIGRATION"
    SEED = "SEED"
    PROCESS = "PROCESS"
    CONFIG = "CONFIG"
    ORCHESTRATION = "ORCHESTRATION"
    LOCK = "LOCK"
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only the fields relevant to the failure need to be set; ``to_dict()``
    drops the ones left as ``None`` so log lines stay short.

    Attributes:
        run_id: PipelineRun identifier
        step: Pipeline state or transition step that failed
        target: Target host address
        image: Image reference (``repository:tag``)
        revision: Source revision being deployed
        metadata: Additional key-value pairs (never credential values)
    """

    run_id: str | None = None
    step: str | None = None
    target: str | None = None
    image: str | None = None
    revision: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["run_id", "step", "target", "image", "revision"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class ShipwrightError(Exception):
    """
    Base exception for all shipwright errors.

    Subclasses set ``default_category`` and ``default_retryable`` so that a
    bare ``raise PublishError("...")`` already carries the right retry
    semantics; callers may still override either per instance.

    Examples:
        >>> error = ShipwrightError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.retryable
        False

        Chaining errors:

        >>> try:
        ...     raise ConnectionError("DNS lookup failed")
        ... except ConnectionError as e:
        ...     error = ShipwrightError("Network error", cause=e)
        >>> error.cause
        ConnectionError('DNS lookup failed')
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ShipwrightError:
        """
        Add context to this error (fluent API).

        Usage:
            raise ExecutionError("pull failed").with_context(
                step="PULL_NEW", target="10.0.0.5"
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialize for structured logging and run records."""
        result: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context = self.context.to_dict()
        if context:
            result["context"] = context
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


# =============================================================================
# ARTIFACT ERRORS
# =============================================================================


class BuildError(ShipwrightError):
    """
    Image build failed.

    Attributable to the source tree or build configuration (dependency
    installation, compile/bundle step, script normalization), never retried.
    """

    default_category = ErrorCategory.BUILD
    default_retryable = False


class PublishError(ShipwrightError):
    """
    Pushing the artifact to the registry failed.

    Retryable by default: a transient network failure after a successful
    push must not be fatal on the next attempt.
    """

    default_category = ErrorCategory.PUBLISH
    default_retryable = True


class RegistryAuthError(PublishError):
    """Registry rejected the credentials."""

    default_category = ErrorCategory.AUTH


class RegistryTransportError(PublishError):
    """Registry could not be reached or the push was interrupted."""

    default_category = ErrorCategory.NETWORK


# =============================================================================
# REMOTE ERRORS
# =============================================================================


class ExecutionError(ShipwrightError):
    """
    A remote command failed.

    Aborts the run and is surfaced to the operator; no automatic
    remediation is attempted.
    """

    default_category = ErrorCategory.REMOTE
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        stderr: str = "",
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.exit_code = exit_code
        self.stderr = stderr


class SessionError(ExecutionError):
    """The authenticated channel to the target host could not be opened."""


# =============================================================================
# STARTUP ERRORS
# =============================================================================


class StartupError(ShipwrightError):
    """
    Fatal failure while a fresh container starts.

    The container must not serve traffic; the runner turns these into a
    non-zero process exit.
    """

    default_category = ErrorCategory.PROCESS
    default_retryable = False


class MigrationError(StartupError):
    """Schema migrations could not be applied."""

    default_category = ErrorCategory.MIGRATION

    def __init__(self, message: str, *, migration: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.migration = migration


class SeedError(StartupError):
    """Seed data could not be applied."""

    default_category = ErrorCategory.SEED

    def __init__(self, message: str, *, seed_file: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.seed_file = seed_file


class ProcessLaunchError(StartupError):
    """The service process could not be started."""


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(ShipwrightError):
    """
    Configuration error.

    Never retryable - configuration must be fixed.
    """

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class MissingConfigError(ConfigError):
    """Required configuration is missing."""

    def __init__(self, key: str, message: str | None = None):
        self.key = key
        super().__init__(message or f"Missing required configuration: {key}")


class InvalidConfigError(ConfigError):
    """Configuration value is invalid."""

    def __init__(self, key: str, value: Any, message: str | None = None):
        self.key = key
        self.value = value
        super().__init__(message or f"Invalid configuration for {key}: {value!r}")


# =============================================================================
# ORCHESTRATION ERRORS
# =============================================================================


class OrchestrationError(ShipwrightError):
    """Pipeline state machine error."""

    default_category = ErrorCategory.ORCHESTRATION
    default_retryable = False


class InvalidTransitionError(OrchestrationError):
    """A PipelineRun was asked to move along an edge the state machine lacks."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Illegal pipeline transition: {current} -> {requested}")


class TargetBusyError(OrchestrationError):
    """Another run holds the deployment lock for the target host."""

    default_category = ErrorCategory.LOCK

    def __init__(self, target: str, holder: str | None = None):
        self.target = target
        self.holder = holder
        message = f"Target {target} is locked by another deployment"
        if holder:
            message += f" ({holder})"
        super().__init__(message)


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, ShipwrightError):
        return error.retryable
    retryable_types = (
        ConnectionError,
        BrokenPipeError,
        subprocess.TimeoutExpired,
    )
    return isinstance(error, retryable_types)


def categorize_error(error: Exception) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, ShipwrightError):
        return error.category
    if isinstance(error, (ConnectionError, subprocess.TimeoutExpired)):
        return ErrorCategory.NETWORK
    if isinstance(error, (KeyError, ValueError)):
        return ErrorCategory.CONFIG
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "ShipwrightError",
    # Artifact
    "BuildError",
    "PublishError",
    "RegistryAuthError",
    "RegistryTransportError",
    # Remote
    "ExecutionError",
    "SessionError",
    # Startup
    "StartupError",
    "MigrationError",
    "SeedError",
    "ProcessLaunchError",
    # Config
    "ConfigError",
    "MissingConfigError",
    "InvalidConfigError",
    # Orchestration
    "OrchestrationError",
    "InvalidTransitionError",
    "TargetBusyError",
    # Utilities
    "is_retryable",
    "categorize_error",
]
