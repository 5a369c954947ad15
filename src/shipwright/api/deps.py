"""
FastAPI dependencies: per-app singletons stashed on ``app.state``.

Usage in routers::

    from shipwright.api.deps import Config

    @router.get("/things")
    def list_things(config: Config):
        ...
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, Request

from shipwright.core.secrets import SecretsResolver
from shipwright.deploy.archive import RunArchive
from shipwright.deploy.config import DeployConfig
from shipwright.deploy.sequencer import DeploymentSequencer
from shipwright.execution.concurrency import TargetLockRegistry

SequencerFactory = Callable[[DeployConfig, SecretsResolver, TargetLockRegistry], DeploymentSequencer]


def default_sequencer_factory(
    config: DeployConfig, resolver: SecretsResolver, locks: TargetLockRegistry
) -> DeploymentSequencer:
    return DeploymentSequencer.from_config(config, resolver, locks=locks)


def get_config(request: Request) -> DeployConfig:
    return request.app.state.config


def get_resolver(request: Request) -> SecretsResolver:
    return request.app.state.resolver


def get_archive(request: Request) -> RunArchive:
    return RunArchive(request.app.state.config.output_dir)


Config = Annotated[DeployConfig, Depends(get_config)]
Resolver = Annotated[SecretsResolver, Depends(get_resolver)]
Archive = Annotated[RunArchive, Depends(get_archive)]
