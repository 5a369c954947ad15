"""Deployment Sequencer: the state machine coordinating one pipeline run.

Drives a PipelineRun through ``IDLE → BUILDING → PUBLISHING → DEPLOYING →
SUCCEEDED | FAILED`` and is the only component that decides between retry
and abort.

Key Concepts:
    DeploymentSequencer.run(event) -> PipelineRun
        Always returns a terminal run; failures are recorded, not raised.
    Policy:
        - BuildError (and any build-stage failure): FAILED, no retry.
        - PublishError: retried with exponential backoff up to
          ``publish_attempts``, then FAILED.
        - ExecutionResult failure: FAILED with the step named. No rollback;
          the operator decides.
        - SUCCEEDED only when START_PROCESS was reached.
    Target lock: held for the whole run, keyed by host. Same-host runs are
        serialised; a run that cannot get the lock in time fails with
        ``TargetBusyError`` without touching the host.

Architecture Decisions:
    - Components are injected, so tests drive the state machine with fakes
      and ``from_config()`` wires the production collaborators.
    - A new trigger always creates a new PipelineRun; there is no
      resumption of a failed run.
    - The terminal record is archived whether the run succeeded or not.

Related Modules:
    - :mod:`shipwright.deploy.models` — PipelineRun and its transitions
    - :mod:`shipwright.execution.retry` — Publish retry policy
    - :mod:`shipwright.execution.concurrency` — Target locks

Tags:
    sequencer, state-machine, orchestration, retry, deployment
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import ExitStack, contextmanager
from typing import Any

from shipwright.core.errors import (
    PublishError,
    ShipwrightError,
    TargetBusyError,
)
from shipwright.core.logging import LogContext, get_logger
from shipwright.core.secrets import SecretsResolver
from shipwright.deploy.archive import RunArchive
from shipwright.deploy.builder import ImageBuilder
from shipwright.deploy.config import DeployConfig, RuntimeConfig
from shipwright.deploy.docker import DockerCLI
from shipwright.deploy.models import (
    BuildSpec,
    DeploymentTarget,
    PipelineRun,
    PipelineState,
)
from shipwright.deploy.registry import RegistryPublisher
from shipwright.deploy.remote import RemoteExecutor, SSHTransport
from shipwright.deploy.trigger import PushEvent
from shipwright.execution.concurrency import LedgerLock, TargetLockRegistry, target_lock_key
from shipwright.execution.retry import ExponentialBackoff, RetryContext

logger = get_logger(__name__)


class DeploymentSequencer:
    """Runs pipeline runs for one configured target host.

    Example::

        sequencer = DeploymentSequencer.from_config(DeployConfig.from_env(), SecretsResolver.default())
        run = sequencer.run(PushEvent(source_revision="abc123"))
        run.state
        # <PipelineState.SUCCEEDED: 'SUCCEEDED'>
    """

    def __init__(
        self,
        config: DeployConfig,
        runtime: RuntimeConfig,
        builder: ImageBuilder,
        publisher: RegistryPublisher,
        executor: RemoteExecutor,
        *,
        locks: TargetLockRegistry | None = None,
        ledger: LedgerLock | None = None,
        archive: RunArchive | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.runtime = runtime
        self.builder = builder
        self.publisher = publisher
        self.executor = executor
        self.locks = locks or TargetLockRegistry()
        self.ledger = ledger
        self.archive = archive
        self._sleep = sleep
        self.target = DeploymentTarget(
            host=config.host,
            port=config.ssh_port,
            user=config.ssh_user,
            credential_ref=config.ssh_key_ref,
        )

    @classmethod
    def from_config(
        cls,
        config: DeployConfig,
        resolver: SecretsResolver,
        *,
        locks: TargetLockRegistry | None = None,
    ) -> DeploymentSequencer:
        """Wire the production collaborators for ``config``."""
        runtime = RuntimeConfig.from_resolver(resolver)
        docker = DockerCLI(secrets=runtime.sensitive_values())
        transport = SSHTransport(resolver, command_timeout=config.command_timeout_seconds)
        return cls(
            config,
            runtime,
            builder=ImageBuilder(docker, timeout=config.build_timeout_seconds),
            publisher=RegistryPublisher(
                config.registry_host,
                resolver,
                username_ref=config.registry_username_ref,
                password_ref=config.registry_password_ref,
                docker=docker,
            ),
            executor=RemoteExecutor(
                transport,
                runtime,
                service_name=config.service_name,
                container_port=config.container_port,
                settle_seconds=config.settle_seconds,
                startup_timeout=config.startup_timeout_seconds,
                command_timeout=config.command_timeout_seconds,
            ),
            locks=locks,
            ledger=LedgerLock(config.lock_db) if config.lock_db else None,
            archive=RunArchive(config.output_dir),
        )

    def build_spec(self, event: PushEvent) -> BuildSpec:
        return BuildSpec(
            source_revision=event.source_revision,
            image_name=self.config.image_name,
            image_tag=self.config.image_tag,
            service_name=self.config.service_name,
            build_args=self.runtime.env(),
            context_dir=self.config.context_dir,
            dockerfile=self.config.dockerfile,
            normalize_scripts=tuple(self.config.normalize_scripts),
        )

    def run(self, event: PushEvent, run_id: str | None = None) -> PipelineRun:
        """Run one pipeline for ``event`` and return its terminal record."""
        run = PipelineRun(trigger=event, target_host=self.config.host, **({"run_id": run_id} if run_id else {}))
        with LogContext(run_id=run.run_id, target=self.config.host):
            logger.info("sequencer.run.started", revision=event.source_revision, branch=event.branch)
            try:
                with self._hold_target(run):
                    self._execute(run)
            except TargetBusyError as exc:
                logger.error("sequencer.target_busy", holder=exc.holder)
                run.fail("LOCK", exc.with_context(run_id=run.run_id, target=self.config.host).to_dict())
            except Exception as exc:
                if not run.is_terminal:
                    run.fail(run.state.value, {"error_type": type(exc).__name__, "message": str(exc)})
                self._archive(run)
                raise

            logger.info(
                "sequencer.run.completed",
                state=run.state.value,
                failed_step=run.failed_step,
                duration_seconds=run.duration_seconds,
            )
            self._archive(run)
        return run

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _execute(self, run: PipelineRun) -> None:
        self._enter(run, PipelineState.BUILDING)
        spec = self.build_spec(run.trigger)
        run.build_spec = spec
        try:
            run.artifact = self.builder.build(spec)
        except ShipwrightError as exc:
            self._fail(run, exc)
            return

        self._enter(run, PipelineState.PUBLISHING)
        retry = RetryContext(
            ExponentialBackoff(
                max_retries=self.config.publish_attempts,
                base_delay=self.config.publish_base_delay,
                retryable_errors=(PublishError,),
            ),
            on_retry=self._on_publish_retry,
            sleep=self._sleep,
        )
        try:
            run.published = retry.run(self.publisher.publish, run.artifact, self.config.image_tag)
        except ShipwrightError as exc:
            run.publish_attempts = retry.attempts
            self._fail(
                run,
                exc,
                attempts=retry.attempts,
                attempt_errors=[f"attempt {n}: {type(e).__name__}: {e}" for n, e, _ in retry.errors],
            )
            return
        run.publish_attempts = retry.attempts

        self._enter(run, PipelineState.DEPLOYING)
        result = self.executor.apply(self.target, run.published, self.config.host_port)
        run.steps = result.steps
        run.old_container_state = result.old_container_state
        run.container_id = result.container_id
        run.logs_tail = result.logs_tail

        if result.success and result.process_started:
            self._enter(run, PipelineState.SUCCEEDED)
            return

        failed_step = result.failed_step.value if result.failed_step else PipelineState.DEPLOYING.value
        error = {
            "error_type": "ExecutionError",
            "message": result.error or "transition did not reach START_PROCESS",
            "old_container_state": result.old_container_state,
            "stopped_containers": result.stopped_containers,
        }
        logger.error(
            "sequencer.deploy.failed",
            failed_step=failed_step,
            old_container_state=result.old_container_state,
            error=error["message"],
        )
        run.fail(failed_step, error)

    def _enter(self, run: PipelineRun, state: PipelineState) -> None:
        previous = run.state
        run.transition(state)
        logger.info("sequencer.state", from_state=previous.value, to_state=state.value)

    def _fail(self, run: PipelineRun, exc: ShipwrightError, **extra: Any) -> None:
        step = run.state.value
        exc.with_context(run_id=run.run_id, step=step, target=self.config.host, revision=run.trigger.source_revision)
        error = exc.to_dict()
        error.update(extra)
        logger.error("sequencer.stage.failed", step=step, error_type=type(exc).__name__, error=exc.message)
        run.fail(step, error)

    def _on_publish_retry(self, attempt: int, error: Exception, delay: float) -> None:
        logger.warning(
            "sequencer.publish.retry",
            attempt=attempt,
            max_attempts=self.config.publish_attempts,
            delay_seconds=round(delay, 2),
            error=str(error),
        )

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    @contextmanager
    def _hold_target(self, run: PipelineRun) -> Iterator[None]:
        holder = f"run-{run.run_id}"
        timeout = self.config.lock_timeout_seconds
        with ExitStack() as stack:
            stack.enter_context(self.locks.hold(self.config.host, timeout, holder))
            if self.ledger is not None:
                stack.enter_context(
                    self.ledger.hold(target_lock_key(self.config.host), holder, timeout)
                )
            logger.debug("sequencer.target_locked", holder=holder)
            yield

    def _archive(self, run: PipelineRun) -> None:
        if self.archive is not None:
            self.archive.save(run)


__all__ = ["DeploymentSequencer"]
