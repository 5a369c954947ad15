"""
Structured logging for shipwright.

One configuration entry point for the orchestrator CLI, the webhook
receiver and the container entrypoint. All three write dotted event names
with key/value fields so a deployment can be followed across the build
machine and the target host by its ``run_id``.

Manifesto:
    A deployment that fails at 3am is debugged from its logs alone.

    - **Structures:** JSON output for log aggregation
    - **Correlates:** run_id and target propagation through contextvars
    - **Flexes:** Console output for development, JSON for CI and containers
    - **Never leaks:** Credentials are logged by reference, never by value

Configuration is read from environment variables when not passed:
- SHIPWRIGHT_LOG_LEVEL: DEBUG | INFO | WARNING | ERROR (default: INFO)
- SHIPWRIGHT_LOG_FORMAT: json | console (default: json unless stdout is a TTY)

Examples:
    >>> from shipwright.core.logging import configure_logging, get_logger
    >>> configure_logging(level="INFO", json_format=True)
    >>> logger = get_logger(__name__)
    >>> logger.info("publish.skipped", image="registry/app:api-latest")

    Scoped context for one pipeline run:

    >>> with LogContext(run_id="a1b2c3", target="10.0.0.5"):
    ...     logger.info("sequencer.state", state="BUILDING")

Tags:
    logging, structlog, observability, json-logging
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_SERVICE_NAME = "shipwright"
_configured = False


def _add_service_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add service-level metadata to all logs."""
    event_dict.setdefault("service", _SERVICE_NAME)
    return event_dict


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None,
    json_format: bool | None = None,
    service: str = "shipwright",
    force: bool = False,
) -> None:
    """Configure structured logging for the application.

    Should be called once at process startup (CLI entry, API startup,
    container entrypoint). Subsequent calls are no-ops unless ``force=True``.

    Args:
        level: Log level (overrides SHIPWRIGHT_LOG_LEVEL)
        json_format: True for JSON, False for console, None for env/auto
        service: Service name included in every event
        force: Reconfigure even if already configured
    """
    global _SERVICE_NAME, _configured

    if _configured and not force:
        return

    _SERVICE_NAME = service
    log_level = (level or os.environ.get("SHIPWRIGHT_LOG_LEVEL", "INFO")).upper()

    if json_format is None:
        env_format = os.environ.get("SHIPWRIGHT_LOG_FORMAT", "").lower()
        if env_format in ("json", "console"):
            json_format = env_format == "json"
        else:
            json_format = not sys.stdout.isatty()

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_service_metadata,
        structlog.processors.StackInfoRenderer(),
    ]

    if json_format:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # stdlib output carries the rendered structlog line unchanged
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level),
        force=True,
    )
    logging.getLogger("shipwright").setLevel(getattr(logging, log_level))

    _configured = True


def is_configured() -> bool:
    """Check if logging has been configured."""
    return _configured


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger.

    Args:
        name: Logger name (usually __name__)
    """
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context to include in all subsequent logs."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove specific keys from logging context."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all bound context."""
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Context manager for scoped logging context.

    Example:
        with LogContext(run_id="a1b2c3", target="10.0.0.5"):
            logger.info("remote.step.started", step="STOP_OLD")
        # Context cleared here
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs

    def __enter__(self) -> LogContext:
        bind_context(**self._context)
        return self

    def __exit__(self, *args: Any) -> None:
        unbind_context(*self._context.keys())


__all__ = [
    "configure_logging",
    "is_configured",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
]
