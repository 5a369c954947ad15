"""
Error handlers: map shipwright errors to JSON problem responses.
"""

from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

from shipwright.core.errors import ConfigError, ShipwrightError
from shipwright.core.logging import get_logger

logger = get_logger(__name__)


def problem_response(*, status: int, title: str, detail: str = "", instance: str = "") -> JSONResponse:
    """Build an RFC 7807 style JSON error response."""
    return JSONResponse(
        status_code=status,
        content={"type": "about:blank", "title": title, "status": status, "detail": detail, "instance": instance},
    )


async def shipwright_error_handler(request: Request, exc: ShipwrightError) -> JSONResponse:
    status = 400 if isinstance(exc, ConfigError) else 500
    logger.warning("api.error", path=request.url.path, error_type=type(exc).__name__, error=exc.message)
    return problem_response(
        status=status,
        title=type(exc).__name__,
        detail=exc.message,
        instance=str(request.url),
    )
