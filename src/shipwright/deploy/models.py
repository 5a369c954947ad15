"""Data model for shipwright pipeline runs.

Pydantic v2 models that capture each stage's output and the aggregate
PipelineRun. Stage outputs are immutable once produced; the PipelineRun
moves through the Sequencer's state machine and is archived as JSON once
terminal.

Key Concepts:
    BuildSpec: Frozen build inputs (revision, tag, build args). One per run.
    Artifact: The built image. A digest exists only if the build succeeded.
    PublishedRef: Where the artifact lives in the registry.
    DeploymentTarget: The host and the container currently serving on it.
    TransitionStep / StepOutcome: The six ordered remote/startup steps and
        what happened to each.
    ExecutionResult: Outcome of one Remote Executor ``apply()``.
    PipelineState / PipelineRun: The Sequencer's state machine and the
        record it produces.

Architecture Decisions:
    - Pydantic v2 BaseModel: ``model_dump_json(indent=2)`` for the run
      archive and ``model_validate_json()`` to read it back.
    - DeploymentTarget is a plain dataclass: it is the one mutable record,
      owned by the Remote Executor.
    - ``PipelineRun.transition()`` is the only way to change state; illegal
      edges raise ``InvalidTransitionError`` and terminal states never change.

Related Modules:
    - :mod:`shipwright.deploy.sequencer` — Produces PipelineRun
    - :mod:`shipwright.deploy.archive` — Persists it

Tags:
    models, pydantic, pipeline, state-machine, deployment
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from shipwright.core.errors import InvalidTransitionError, OrchestrationError
from shipwright.deploy.trigger import PushEvent


def _now() -> str:
    return datetime.now(UTC).isoformat()


# ---------------------------------------------------------------------------
# Artifact stages
# ---------------------------------------------------------------------------


class BuildSpec(BaseModel):
    """Immutable build inputs, created once per pipeline run."""

    model_config = ConfigDict(frozen=True)

    source_revision: str = Field(min_length=1)
    image_name: str
    image_tag: str = "api-latest"
    service_name: str = "api"
    build_args: dict[str, str] = Field(default_factory=dict)
    context_dir: Path = Path(".")
    dockerfile: Path | None = None
    normalize_scripts: tuple[str, ...] = ("startup.sh",)

    @property
    def image_reference(self) -> str:
        return f"{self.image_name}:{self.image_tag}"

    def __repr__(self) -> str:
        # build args hold connection parameters; show names only
        return (
            f"BuildSpec(source_revision={self.source_revision!r}, "
            f"image={self.image_reference!r}, build_args={sorted(self.build_args)})"
        )


class Artifact(BaseModel):
    """A built image, identified by tag and digest."""

    model_config = ConfigDict(frozen=True)

    image: str
    tag: str
    digest: str = Field(pattern=r"^sha256:[0-9a-f]{64}$")
    source_revision: str

    @property
    def reference(self) -> str:
        return f"{self.image}:{self.tag}"


class PublishedRef(BaseModel):
    """An artifact as addressable in the registry."""

    model_config = ConfigDict(frozen=True)

    repository: str
    tag: str
    digest: str
    already_published: bool = False

    @property
    def reference(self) -> str:
        return f"{self.repository}:{self.tag}"


# ---------------------------------------------------------------------------
# Remote transition
# ---------------------------------------------------------------------------


@dataclass
class DeploymentTarget:
    """The remote host and the container currently serving on it.

    Mutated only by the Remote Executor. ``current_container`` is replaced
    in a single assignment once the new container is started.
    """

    host: str
    port: int = 22
    user: str = "deploy"
    credential_ref: str = "secret:SSH_PRIVATE_KEY"
    current_container: str | None = None

    @property
    def address(self) -> str:
        return f"{self.user}@{self.host}"


class TransitionStep(str, Enum):
    """Ordered steps moving a host from the old artifact to the new one."""

    STOP_OLD = "STOP_OLD"
    PULL_NEW = "PULL_NEW"
    START_NEW = "START_NEW"
    RUN_MIGRATIONS = "RUN_MIGRATIONS"
    RUN_SEED = "RUN_SEED"
    START_PROCESS = "START_PROCESS"


TRANSITION_ORDER: tuple[TransitionStep, ...] = tuple(TransitionStep)

StepStatus = Literal["succeeded", "failed", "blocked", "skipped"]
OldContainerState = Literal["absent", "stopped", "still_running"]


class StepOutcome(BaseModel):
    """What happened to one transition step."""

    step: TransitionStep
    status: StepStatus
    detail: str = ""
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


class ExecutionResult(BaseModel):
    """Outcome of one ``RemoteExecutor.apply()``."""

    success: bool
    failed_step: TransitionStep | None = None
    old_container_state: OldContainerState = "absent"
    stopped_containers: list[str] = Field(default_factory=list)
    container_id: str | None = None
    steps: list[StepOutcome] = Field(default_factory=list)
    error: str | None = None
    logs_tail: list[str] = Field(default_factory=list)

    def outcome(self, step: TransitionStep) -> StepOutcome | None:
        for outcome in self.steps:
            if outcome.step == step:
                return outcome
        return None

    @property
    def process_started(self) -> bool:
        """START_PROCESS succeeded, after both startup steps succeeded."""
        outcomes = {o.step: o for o in self.steps}
        return all(
            step in outcomes and outcomes[step].succeeded
            for step in (TransitionStep.RUN_MIGRATIONS, TransitionStep.RUN_SEED, TransitionStep.START_PROCESS)
        )


# ---------------------------------------------------------------------------
# Pipeline state machine
# ---------------------------------------------------------------------------


class PipelineState(str, Enum):
    """Deployment Sequencer states."""

    IDLE = "IDLE"
    BUILDING = "BUILDING"
    PUBLISHING = "PUBLISHING"
    DEPLOYING = "DEPLOYING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.SUCCEEDED, PipelineState.FAILED)


ALLOWED_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    # IDLE -> FAILED covers a run that never acquires its target lock
    PipelineState.IDLE: frozenset({PipelineState.BUILDING, PipelineState.FAILED}),
    PipelineState.BUILDING: frozenset({PipelineState.PUBLISHING, PipelineState.FAILED}),
    PipelineState.PUBLISHING: frozenset({PipelineState.DEPLOYING, PipelineState.FAILED}),
    PipelineState.DEPLOYING: frozenset({PipelineState.SUCCEEDED, PipelineState.FAILED}),
    PipelineState.SUCCEEDED: frozenset(),
    PipelineState.FAILED: frozenset(),
}


class StateChange(BaseModel):
    from_state: PipelineState
    to_state: PipelineState
    at: str = Field(default_factory=_now)


class PipelineRun(BaseModel):
    """The aggregate record of one triggered deployment.

    Example::

        run = PipelineRun(trigger=PushEvent(source_revision="abc123"), target_host="10.0.0.5")
        run.transition(PipelineState.BUILDING)
        run.state
        # <PipelineState.BUILDING: 'BUILDING'>
    """

    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    trigger: PushEvent
    target_host: str
    state: PipelineState = PipelineState.IDLE
    build_spec: BuildSpec | None = None
    artifact: Artifact | None = None
    published: PublishedRef | None = None
    publish_attempts: int = 0
    steps: list[StepOutcome] = Field(default_factory=list)
    old_container_state: OldContainerState | None = None
    container_id: str | None = None
    failed_step: str | None = None
    error: dict[str, Any] | None = None
    logs_tail: list[str] = Field(default_factory=list)
    history: list[StateChange] = Field(default_factory=list)
    created_at: str = Field(default_factory=_now)
    completed_at: str | None = None
    duration_seconds: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def succeeded(self) -> bool:
        return self.state == PipelineState.SUCCEEDED

    def transition(self, new_state: PipelineState) -> None:
        """Move along one edge of the state machine.

        Raises:
            InvalidTransitionError: For an edge the state machine lacks,
                including any move out of a terminal state
            OrchestrationError: For SUCCEEDED without START_PROCESS having
                succeeded
        """
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state.value, new_state.value)
        if new_state == PipelineState.SUCCEEDED and not self._process_started():
            raise OrchestrationError(
                "Run cannot succeed before START_PROCESS was reached",
                retryable=False,
            ).with_context(run_id=self.run_id, step=TransitionStep.START_PROCESS.value)

        self.history.append(StateChange(from_state=self.state, to_state=new_state))
        self.state = new_state
        if new_state.is_terminal:
            self._mark_complete()

    def fail(self, step: str, error: dict[str, Any] | None = None) -> None:
        """Record the failed step and move to FAILED."""
        self.failed_step = step
        self.error = error
        self.transition(PipelineState.FAILED)

    def _process_started(self) -> bool:
        return ExecutionResult(success=True, steps=self.steps).process_started

    def _mark_complete(self) -> None:
        self.completed_at = _now()
        start = datetime.fromisoformat(self.created_at)
        end = datetime.fromisoformat(self.completed_at)
        self.duration_seconds = (end - start).total_seconds()

    def summary(self) -> str:
        if self.succeeded:
            return f"{self.run_id} SUCCEEDED {self.trigger.source_revision} -> {self.target_host}"
        if self.state == PipelineState.FAILED:
            return f"{self.run_id} FAILED at {self.failed_step}"
        return f"{self.run_id} {self.state.value}"


__all__ = [
    "BuildSpec",
    "Artifact",
    "PublishedRef",
    "DeploymentTarget",
    "TransitionStep",
    "TRANSITION_ORDER",
    "StepOutcome",
    "ExecutionResult",
    "PipelineState",
    "ALLOWED_TRANSITIONS",
    "StateChange",
    "PipelineRun",
]
