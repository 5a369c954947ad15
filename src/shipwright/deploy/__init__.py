"""
Deployment pipeline: source revision to a running container on one host.

Architecture::

    ┌──────────────────────────────────────────────────────────────┐
    │                   DeploymentSequencer                         │
    │        IDLE → BUILDING → PUBLISHING → DEPLOYING → done        │
    ├──────────────┬──────────────────┬────────────────────────────┤
    │ ImageBuilder │ RegistryPublisher│ RemoteExecutor             │
    │ (docker CLI) │ (docker + httpx) │ (SSH: stop/pull/start/probe)│
    ├──────────────┴──────────────────┴────────────────────────────┤
    │   DeployConfig │ RuntimeConfig │ PipelineRun │ RunArchive     │
    └──────────────────────────────────────────────────────────────┘

Tags:
    deploy, containers, docker, ssh, registry, state-machine

Example:
    >>> from shipwright.deploy import PushEvent
    >>> PushEvent.from_payload({"ref": "refs/heads/main", "after": "abc123"}).branch
    'main'
"""

from __future__ import annotations

from shipwright.deploy.archive import RunArchive
from shipwright.deploy.builder import ImageBuilder
from shipwright.deploy.config import RUNTIME_VARIABLES, DeployConfig, RuntimeConfig
from shipwright.deploy.models import (
    Artifact,
    BuildSpec,
    DeploymentTarget,
    ExecutionResult,
    PipelineRun,
    PipelineState,
    PublishedRef,
    StepOutcome,
    TransitionStep,
)
from shipwright.deploy.registry import RegistryClient, RegistryPublisher
from shipwright.deploy.remote import RemoteExecutor, SSHTransport
from shipwright.deploy.sequencer import DeploymentSequencer
from shipwright.deploy.trigger import PushEvent

__all__ = [
    "RUNTIME_VARIABLES",
    "Artifact",
    "BuildSpec",
    "DeployConfig",
    "DeploymentSequencer",
    "DeploymentTarget",
    "ExecutionResult",
    "ImageBuilder",
    "PipelineRun",
    "PipelineState",
    "PublishedRef",
    "PushEvent",
    "RegistryClient",
    "RegistryPublisher",
    "RemoteExecutor",
    "RunArchive",
    "RuntimeConfig",
    "SSHTransport",
    "StepOutcome",
    "TransitionStep",
]
