"""Remote Executor: transition one host from the old container to the new one.

Key Concepts:
    RemoteTransport: Opens an authenticated session to a DeploymentTarget.
        ``SSHTransport`` is the production implementation; tests substitute a
        scripted fake.
    RemoteExecutor.apply(target, ref, port) -> ExecutionResult
        Over one session, strictly in order:

        1. STOP_OLD   - stop and remove every container of the service.
           None running is not an error (first deployment).
        2. PULL_NEW   - ``docker pull`` the published reference.
        3. START_NEW  - ``docker run -d`` bound to ``port``. The runtime
           configuration travels over the session's stdin into a 0600
           ``--env-file`` that is deleted once the container exists, so no
           value appears on a command line.
        4. Probe      - wait for the startup runner's ready file (written
           only after migrations and seeds succeeded), then for
           ``settle_seconds`` more without an exit; a healthy health check
           also counts. Elapsed time alone never counts as started. If the
           container exits, the runner's exit code attributes the failure
           to RUN_MIGRATIONS, RUN_SEED or START_PROCESS.

Architecture Decisions:
    - Stop before pull minimises double port binding; pull before start
      means start cannot fail on a missing image. The price is a brief
      downtime window between STOP_OLD and START_PROCESS.
    - A failed sub-step aborts the rest; later steps are reported
      ``blocked`` and the result names the old container's state.
    - No rollback. The operator decides.
    - The container starts with ``--restart no``; ``unless-stopped`` is set
      only after START_PROCESS is confirmed, so a failed startup does not
      re-run migrations in a restart loop.
    - Every command line and every captured output is redacted before it
      is logged or returned.
    - The session is a scoped resource: the SSH control master is closed
      and key material deleted on every exit path.

Tags:
    remote, ssh, docker, transition, deployment
"""

from __future__ import annotations

import json
import os
import shlex
import shutil
import subprocess
import tempfile
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from shipwright.core.errors import ExecutionError, SessionError
from shipwright.core.logging import get_logger
from shipwright.core.secrets import SecretsResolver, redact
from shipwright.deploy.builder import LABEL_PREFIX
from shipwright.deploy.config import RuntimeConfig
from shipwright.deploy.models import (
    TRANSITION_ORDER,
    DeploymentTarget,
    ExecutionResult,
    OldContainerState,
    PublishedRef,
    StepOutcome,
    TransitionStep,
)
from shipwright.startup.runner import READY_FILE, ExitCode

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


@dataclass
class CommandResult:
    """Outcome of one remote command."""

    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RemoteSession(Protocol):
    def run(self, command: str, timeout: int | None = None, input: str | None = None) -> CommandResult:
        """Run a shell command on the host, feeding ``input`` to its stdin.

        Raises:
            ExecutionError: If the command could not be delivered or timed out
        """
        ...


class RemoteTransport(Protocol):
    def session(self, target: DeploymentTarget) -> AbstractContextManager[RemoteSession]:
        """Open an authenticated session, released when the block exits.

        Raises:
            SessionError: If the channel cannot be opened
        """
        ...


class SSHSession:
    """Commands multiplexed over an open OpenSSH control master."""

    def __init__(self, ssh_cmd: str, base_args: list[str], target: DeploymentTarget, default_timeout: int):
        self._ssh_cmd = ssh_cmd
        self._base_args = base_args
        self._target = target
        self._default_timeout = default_timeout

    def run(self, command: str, timeout: int | None = None, input: str | None = None) -> CommandResult:
        timeout = timeout or self._default_timeout
        stdin = {"input": input} if input is not None else {"stdin": subprocess.DEVNULL}
        try:
            proc = subprocess.run(
                [self._ssh_cmd, *self._base_args, self._target.address, command],
                capture_output=True,
                text=True,
                timeout=timeout,
                **stdin,
            )
        except subprocess.TimeoutExpired as exc:
            raise ExecutionError(
                f"Remote command timed out after {timeout}s", cause=exc
            ).with_context(target=self._target.host) from exc
        return CommandResult(command=command, exit_code=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)


class SSHTransport:
    """OpenSSH transport with one control-master connection per session.

    Key material comes from the secrets store by reference. A PEM value is
    written to a 0600 file inside a private temp directory and removed when
    the session closes; any other value is taken as a path to a key file.
    An empty reference uses the running ssh-agent.
    """

    def __init__(
        self,
        resolver: SecretsResolver,
        *,
        ssh_cmd: str = "ssh",
        connect_timeout: int = 15,
        command_timeout: int = 600,
    ) -> None:
        self.resolver = resolver
        self.ssh_cmd = ssh_cmd
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout

    def _materialize_key(self, credential_ref: str, workdir: Path) -> Path | None:
        if not credential_ref:
            return None
        material = self.resolver.resolve_secret_value(credential_ref)
        if not material:
            return None
        if material.get_secret().lstrip().startswith("-----BEGIN"):
            key_path = workdir / "id_deploy"
            fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(material.get_secret().strip() + "\n")
            return key_path
        return Path(material.get_secret()).expanduser()

    def _base_args(self, target: DeploymentTarget, control_path: Path, key_file: Path | None) -> list[str]:
        args = [
            "-p", str(target.port),
            "-o", "BatchMode=yes",
            "-o", "StrictHostKeyChecking=accept-new",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "-o", f"ControlPath={control_path}",
        ]
        if key_file is not None:
            args.extend(["-i", str(key_file), "-o", "IdentitiesOnly=yes"])
        return args

    @contextmanager
    def session(self, target: DeploymentTarget) -> Iterator[SSHSession]:
        workdir = Path(tempfile.mkdtemp(prefix="shipwright-ssh-"))
        try:
            key_file = self._materialize_key(target.credential_ref, workdir)
            base = self._base_args(target, workdir / "cm", key_file)
            # the backgrounded master inherits stdio; pipes would never reach EOF
            with open(workdir / "connect.err", "w+", encoding="utf-8") as err:
                try:
                    opened = subprocess.run(
                        [self.ssh_cmd, *base, "-o", "ControlMaster=yes", "-o", "ControlPersist=yes",
                         "-N", "-f", target.address],
                        stdin=subprocess.DEVNULL,
                        stdout=subprocess.DEVNULL,
                        stderr=err,
                        timeout=self.connect_timeout + 15,
                    )
                except (subprocess.TimeoutExpired, OSError) as exc:
                    raise SessionError(f"Could not connect to {target.address}: {exc}", cause=exc).with_context(
                        target=target.host
                    ) from exc
                err.seek(0)
                stderr = err.read().strip()
            if opened.returncode != 0:
                raise SessionError(
                    f"Could not connect to {target.address}: {stderr}",
                    exit_code=opened.returncode,
                    stderr=stderr,
                ).with_context(target=target.host)

            logger.info("remote.session.opened", target=target.host, user=target.user)
            try:
                yield SSHSession(self.ssh_cmd, base, target, self.command_timeout)
            finally:
                self._close(base, target)
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    def _close(self, base: list[str], target: DeploymentTarget) -> None:
        try:
            subprocess.run(
                [self.ssh_cmd, *base, "-O", "exit", target.address],
                capture_output=True,
                text=True,
                timeout=self.connect_timeout,
            )
        except (subprocess.TimeoutExpired, OSError) as exc:
            logger.warning("remote.session.close_failed", target=target.host, error=str(exc))
        else:
            logger.info("remote.session.closed", target=target.host)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class _Transition:
    """Mutable bookkeeping for one apply() call."""

    def __init__(self) -> None:
        self.steps: list[StepOutcome] = []
        self.old_state: OldContainerState = "absent"
        self.stopped: list[str] = []
        self.container_id: str | None = None
        self.logs_tail: list[str] = []

    def record(self, step: TransitionStep, status: str, detail: str = "", started: float | None = None) -> None:
        duration = round(time.monotonic() - started, 3) if started is not None else 0.0
        self.steps.append(StepOutcome(step=step, status=status, detail=detail, duration_seconds=duration))

    def block_remaining(self, reason: str) -> None:
        done = {o.step for o in self.steps}
        for step in TRANSITION_ORDER:
            if step not in done:
                self.record(step, "blocked", reason)

    def result(self, failed_step: TransitionStep | None = None, error: str | None = None) -> ExecutionResult:
        if failed_step is not None:
            self.block_remaining(f"blocked by {failed_step.value}")
        return ExecutionResult(
            success=failed_step is None,
            failed_step=failed_step,
            old_container_state=self.old_state,
            stopped_containers=self.stopped,
            container_id=self.container_id,
            steps=self.steps,
            error=error,
            logs_tail=self.logs_tail,
        )


class RemoteExecutor:
    """Runs the stop/pull/start/probe transition over one session.

    Parameters
    ----------
    transport
        Opens the authenticated session.
    runtime
        Runtime variables passed as container environment.
    service_name
        Container name and ``shipwright.service`` label value.
    container_port
        Port the service listens on inside the container; defaults to the
        ``APP_PORT`` runtime variable.
    ready_file
        Path, inside the container, of the startup runner's ready file.
    settle_seconds
        How long the container must keep running after the ready file
        appears before START_PROCESS counts as succeeded.
    """

    def __init__(
        self,
        transport: RemoteTransport,
        runtime: RuntimeConfig,
        *,
        service_name: str = "api",
        container_port: int | None = None,
        settle_seconds: int = 10,
        startup_timeout: int = 120,
        command_timeout: int = 600,
        tail_lines: int = 50,
        ready_file: str = READY_FILE,
        secrets: Iterable[str] = (),
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.runtime = runtime
        self.service_name = service_name
        self.container_port = container_port or int(runtime.get("APP_PORT", "8080"))
        self.settle_seconds = settle_seconds
        self.startup_timeout = startup_timeout
        self.command_timeout = command_timeout
        self.tail_lines = tail_lines
        self.ready_file = ready_file
        self._secrets = [*runtime.sensitive_values(), *secrets]
        self._sleep = sleep
        self._clock = clock

    def redact(self, text: str) -> str:
        return redact(text, self._secrets)

    def apply(self, target: DeploymentTarget, ref: PublishedRef, port: int) -> ExecutionResult:
        """Transition ``target`` to ``ref``, exposing it on ``port``.

        Never raises for remote failures; they are reported in the result.
        """
        transition = _Transition()
        try:
            with self.transport.session(target) as session:
                return self._apply(session, transition, target, ref, port)
        except SessionError as exc:
            logger.error("remote.session.failed", target=target.host, error=self.redact(exc.message))
            if not transition.steps:
                transition.old_state = "still_running" if target.current_container else "absent"
                transition.record(TransitionStep.STOP_OLD, "failed", self.redact(exc.message))
                return transition.result(TransitionStep.STOP_OLD, self.redact(exc.message))
            raise

    # -- steps -------------------------------------------------------------

    def _apply(
        self,
        session: RemoteSession,
        transition: _Transition,
        target: DeploymentTarget,
        ref: PublishedRef,
        port: int,
    ) -> ExecutionResult:
        for step, action in (
            (TransitionStep.STOP_OLD, lambda: self._stop_old(session, transition, target)),
            (TransitionStep.PULL_NEW, lambda: self._pull_new(session, ref)),
            (TransitionStep.START_NEW, lambda: self._start_new(session, transition, ref, port)),
        ):
            started = time.monotonic()
            logger.info("remote.step.started", step=step.value, target=target.host)
            try:
                detail = action()
            except ExecutionError as exc:
                message = self.redact(exc.message)
                transition.record(step, "failed", message, started)
                if transition.old_state == "stopped":
                    target.current_container = None
                logger.error(
                    "remote.step.failed",
                    step=step.value,
                    target=target.host,
                    old_container_state=transition.old_state,
                    error=message,
                )
                return transition.result(step, message)
            transition.record(step, "succeeded", detail, started)
            logger.info("remote.step.succeeded", step=step.value, detail=detail)

        target.current_container = transition.container_id
        return self._probe(session, transition, target)

    def _stop_old(self, session: RemoteSession, transition: _Transition, target: DeploymentTarget) -> str:
        # until the listing says otherwise, the known container is still serving
        transition.old_state = "still_running" if target.current_container else "absent"
        listing = self._exec(session, self._list_command())
        containers: dict[str, bool] = {}
        for line in listing.stdout.splitlines():
            parts = line.split()
            if len(parts) >= 2:
                containers[parts[0]] = parts[1] in ("running", "restarting", "paused")
        if target.current_container and target.current_container not in containers:
            logger.info("remote.current_container_gone", container=target.current_container)
        if not containers:
            transition.old_state = "absent"
            return "no container for service"

        ids = sorted(containers)
        running = [cid for cid in ids if containers[cid]]
        transition.old_state = "still_running" if running else "stopped"
        if running:
            self._exec(session, "docker stop --time 10 " + " ".join(running))
            transition.stopped = running
        transition.old_state = "stopped"
        self._exec(session, "docker rm --force " + " ".join(ids))
        return f"stopped {len(running)}, removed {len(ids)}"

    def _pull_new(self, session: RemoteSession, ref: PublishedRef) -> str:
        self._exec(session, f"docker pull {shlex.quote(ref.reference)}")
        return ref.reference

    def _start_new(self, session: RemoteSession, transition: _Transition, ref: PublishedRef, port: int) -> str:
        result = self._exec(session, self.run_command(ref, port), input=self.env_file())
        lines = result.stdout.strip().splitlines()
        if not lines:
            raise ExecutionError("docker run printed no container id")
        transition.container_id = lines[-1].strip()
        return transition.container_id

    # -- probe -------------------------------------------------------------

    def _probe(
        self,
        session: RemoteSession,
        transition: _Transition,
        target: DeploymentTarget,
    ) -> ExecutionResult:
        container = transition.container_id
        started = time.monotonic()
        deadline = self._clock() + self.startup_timeout
        ready_since: float | None = None
        delay = 1.0

        while True:
            try:
                state, restarts = self._inspect(session, container)
            except ExecutionError as exc:
                return self._startup_failed(
                    session, transition, None, self.redact(exc.message), started, ready=ready_since is not None
                )

            status = state.get("Status", "")
            exit_code = state.get("ExitCode")
            health = (state.get("Health") or {}).get("Status")

            if status in ("exited", "dead", "restarting") or restarts > 0:
                # a restarted container that is running again reports ExitCode 0
                code = exit_code if status != "running" or exit_code else None
                return self._startup_failed(
                    session,
                    transition,
                    code,
                    f"container {status} with exit code {exit_code}",
                    started,
                    ready=ready_since is not None,
                )

            if status == "running":
                if health == "unhealthy":
                    return self._startup_failed(
                        session,
                        transition,
                        None,
                        "container reported unhealthy",
                        started,
                        ready=ready_since is not None,
                    )
                if health == "healthy":
                    break
                if ready_since is None and self._is_ready(session, container):
                    ready_since = self._clock()
                    logger.info("remote.startup.ready", container=container)
                if ready_since is not None and health is None and self._clock() - ready_since >= self.settle_seconds:
                    break

            if self._clock() >= deadline:
                waiting = "the service to settle" if ready_since is not None else "the startup ready file"
                return self._startup_failed(
                    session,
                    transition,
                    None,
                    f"container not started within {self.startup_timeout}s "
                    f"(status={status}, health={health}, waiting for {waiting})",
                    started,
                    ready=ready_since is not None,
                )
            self._sleep(delay)
            delay = min(delay * 2, 5.0)

        for step in (TransitionStep.RUN_MIGRATIONS, TransitionStep.RUN_SEED):
            transition.record(step, "succeeded", "completed before process start", started)
        detail = f"serving on container {container}{self._enable_restarts(session, container)}"
        transition.record(TransitionStep.START_PROCESS, "succeeded", detail, started)
        logger.info("remote.transition.completed", target=target.host, container=container)
        return transition.result()

    def _is_ready(self, session: RemoteSession, container: str) -> bool:
        """Whether the startup runner wrote its ready file in ``container``."""
        command = f"docker exec {shlex.quote(container)} test -f {shlex.quote(self.ready_file)}"
        try:
            return session.run(command, timeout=30).ok
        except ExecutionError as exc:
            logger.warning("remote.startup.ready_check_failed", container=container, error=self.redact(exc.message))
            return False

    def _enable_restarts(self, session: RemoteSession, container: str) -> str:
        try:
            self._exec(session, f"docker update --restart unless-stopped {shlex.quote(container)}")
        except ExecutionError as exc:
            logger.warning("remote.restart_policy.failed", container=container, error=exc.message)
            return "; restart policy left at 'no'"
        return ""

    def _inspect(self, session: RemoteSession, container: str) -> tuple[dict[str, Any], int]:
        fmt = '{"state": {{json .State}}, "restarts": {{.RestartCount}}}'
        result = self._exec(session, f"docker inspect --format {shlex.quote(fmt)} {shlex.quote(container)}")
        try:
            data = json.loads(result.stdout.strip().splitlines()[-1])
        except (IndexError, json.JSONDecodeError) as exc:
            raise ExecutionError(f"Unreadable container state for {container}", cause=exc) from exc
        return data.get("state") or {}, int(data.get("restarts") or 0)

    def _startup_failed(
        self,
        session: RemoteSession,
        transition: _Transition,
        exit_code: int | None,
        detail: str,
        started: float,
        *,
        ready: bool = False,
    ) -> ExecutionResult:
        transition.logs_tail = self._logs_tail(session, transition.container_id)
        migrations, seed, process = TransitionStep.RUN_MIGRATIONS, TransitionStep.RUN_SEED, TransitionStep.START_PROCESS

        if ready or exit_code == ExitCode.LAUNCH_FAILED:
            # the runner got past both steps; any exit code now belongs to the service
            transition.record(migrations, "succeeded", "completed before process start", started)
            transition.record(seed, "succeeded", "completed before process start", started)
            transition.record(process, "failed", detail, started)
        elif exit_code in (ExitCode.CONFIG_ERROR, ExitCode.MIGRATION_FAILED):
            transition.record(migrations, "failed", detail, started)
            transition.record(seed, "blocked", f"blocked by {migrations.value}")
            transition.record(process, "blocked", f"blocked by {migrations.value}")
        elif exit_code == ExitCode.SEED_FAILED:
            transition.record(migrations, "succeeded", "", started)
            transition.record(seed, "failed", detail, started)
            transition.record(process, "blocked", f"blocked by {seed.value}")
        else:
            transition.record(migrations, "skipped", "outcome not observed", started)
            transition.record(seed, "skipped", "outcome not observed", started)
            transition.record(process, "failed", detail, started)

        logger.error(
            "remote.startup.failed",
            container=transition.container_id,
            exit_code=exit_code,
            ready=ready,
            detail=detail,
            logs_tail=transition.logs_tail[-5:],
        )
        return transition.result(TransitionStep.START_PROCESS, detail)

    def _logs_tail(self, session: RemoteSession, container: str | None) -> list[str]:
        if not container:
            return []
        try:
            result = session.run(
                f"docker logs --tail {self.tail_lines} {shlex.quote(container)} 2>&1",
                timeout=60,
            )
        except ExecutionError as exc:
            logger.warning("remote.logs.unavailable", container=container, error=self.redact(exc.message))
            return []
        return self.redact(result.stdout + result.stderr).splitlines()[-self.tail_lines:]

    # -- commands ----------------------------------------------------------

    def _list_command(self) -> str:
        scope = "--all "
        fmt = shlex.quote("{{.ID}} {{.State}}")
        label = shlex.quote(f"label={LABEL_PREFIX}.service={self.service_name}")
        name = shlex.quote(f"name=^/?{self.service_name}$")
        return (
            f"{{ docker ps {scope}--filter {label} --format {fmt}; "
            f"docker ps {scope}--filter {name} --format {fmt}; }} | sort -u"
        )

    def run_command(self, ref: PublishedRef, port: int) -> str:
        """Shell command that starts the new container.

        The runtime variables arrive on stdin (see :meth:`env_file`) and live
        in a private temp file only while ``docker run`` reads them.
        """
        parts = [
            "docker", "run", "--detach",
            "--name", self.service_name,
            "--restart", "no",
            "--publish", f"{port}:{self.container_port}",
            "--label", f"{LABEL_PREFIX}.service={self.service_name}",
            "--label", f"{LABEL_PREFIX}.digest={ref.digest}",
        ]
        docker_run = f'{shlex.join(parts)} --env-file "$envfile" {shlex.quote(ref.reference)}'
        return f'umask 077 && envfile=$(mktemp) && cat > "$envfile" && {docker_run}; rc=$?; rm -f "$envfile"; exit $rc'

    def env_file(self) -> str:
        """``NAME=value`` lines for ``docker run --env-file``.

        Raises:
            ExecutionError: A value contains a line break, which the format
                cannot carry
        """
        lines = []
        for name, value in self.runtime.items():
            if "\n" in value or "\r" in value:
                raise ExecutionError(f"Runtime variable {name} contains a line break")
            lines.append(f"{name}={value}")
        return "\n".join(lines) + "\n"

    def _exec(
        self,
        session: RemoteSession,
        command: str,
        timeout: int | None = None,
        input: str | None = None,
    ) -> CommandResult:
        printable = self.redact(command)
        logger.debug("remote.exec", command=printable)
        result = session.run(command, timeout or self.command_timeout, input=input)
        if not result.ok:
            stderr = self.redact(result.stderr.strip())
            raise ExecutionError(
                f"Remote command failed (exit {result.exit_code}): {printable}: {stderr}",
                exit_code=result.exit_code,
                stderr=stderr,
            )
        return result


__all__ = [
    "CommandResult",
    "RemoteSession",
    "RemoteTransport",
    "SSHSession",
    "SSHTransport",
    "RemoteExecutor",
]
