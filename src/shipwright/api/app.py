"""
FastAPI application factory.

``create_app()`` wires middleware, routers and error handlers into a
single ``FastAPI`` instance. Deployment settings are read once, at
creation, from ``SHIPWRIGHT_*`` variables unless passed in.
"""

from __future__ import annotations

from fastapi import FastAPI

from shipwright import __version__
from shipwright.api.deps import SequencerFactory, default_sequencer_factory
from shipwright.api.middleware.errors import shipwright_error_handler
from shipwright.api.middleware.request_id import RequestIDMiddleware
from shipwright.core.errors import ShipwrightError
from shipwright.core.logging import configure_logging, is_configured
from shipwright.core.secrets import SecretsResolver
from shipwright.deploy.config import DeployConfig
from shipwright.execution.concurrency import TargetLockRegistry


def create_app(
    config: DeployConfig | None = None,
    resolver: SecretsResolver | None = None,
    *,
    sequencer_factory: SequencerFactory | None = None,
) -> FastAPI:
    """Build and return the receiver application.

    Parameters
    ----------
    config : DeployConfig | None
        Deployment settings; ``DeployConfig.from_env()`` when ``None``.
    resolver : SecretsResolver | None
        Source of runtime variables and credentials.
    sequencer_factory
        Builds the sequencer for each run (tests inject fakes here).
    """
    if not is_configured():
        configure_logging(service="shipwright-receiver")

    app = FastAPI(title="shipwright", version=__version__)

    app.state.config = config or DeployConfig.from_env()
    app.state.resolver = resolver or SecretsResolver.default()
    # One registry per process: concurrent pushes to the same host queue here
    app.state.locks = TargetLockRegistry()
    app.state.sequencer_factory = sequencer_factory or default_sequencer_factory

    app.add_middleware(RequestIDMiddleware)
    app.add_exception_handler(ShipwrightError, shipwright_error_handler)

    from shipwright.api.routers import health, hooks, runs

    app.include_router(health.router)
    app.include_router(hooks.router)
    app.include_router(runs.router)

    return app
