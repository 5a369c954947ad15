"""Liveness endpoint for the receiver's own container healthcheck."""

from __future__ import annotations

from fastapi import APIRouter

from shipwright import __version__
from shipwright.api.deps import Config

router = APIRouter(tags=["health"])


@router.get("/health")
def health(config: Config) -> dict[str, str]:
    return {"status": "ok", "service": "shipwright", "version": __version__, "target": config.host}
