"""Local ``docker`` CLI wrapper shared by the Builder and the Publisher.

Runs the ``docker`` binary via subprocess; no docker SDK dependency, so any
runtime exposing a ``docker`` CLI (Docker Engine, Podman, Colima) works.
Failures become the caller's typed error; command lines are redacted before
they are logged.
"""

from __future__ import annotations

import shlex
import shutil
import subprocess
from collections.abc import Iterable

from shipwright.core.errors import ConfigError, ShipwrightError
from shipwright.core.logging import get_logger
from shipwright.core.secrets import redact

logger = get_logger(__name__)


class DockerCLI:
    """Thin subprocess front for the local docker CLI.

    Parameters
    ----------
    docker_cmd
        Path to the binary; looked up on PATH when omitted.
    secrets
        Values scrubbed from logged command lines and error messages.
    """

    def __init__(self, docker_cmd: str | None = None, secrets: Iterable[str] = ()) -> None:
        self._docker_cmd = docker_cmd
        self._secrets = list(secrets)

    @property
    def docker_cmd(self) -> str:
        if self._docker_cmd is None:
            docker = shutil.which("docker")
            if docker is None:
                raise ConfigError("Docker CLI not found on PATH. Install Docker or add it to PATH.")
            self._docker_cmd = docker
        return self._docker_cmd

    def add_secret(self, value: str | None) -> None:
        if value:
            self._secrets.append(value)

    def redact(self, text: str) -> str:
        return redact(text, self._secrets)

    def run(
        self,
        args: list[str],
        *,
        error: type[ShipwrightError],
        check: bool = True,
        timeout: int = 60,
        input: str | None = None,
        env: dict[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run a docker CLI command.

        Raises:
            error: On a non-zero exit (when ``check``) or a timeout
        """
        cmd = [self.docker_cmd, *args]
        printable = self.redact(shlex.join(args))
        logger.debug("docker.exec", cmd=printable)
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                input=input,
                env=env,
            )
        except subprocess.TimeoutExpired as exc:
            raise error(f"Docker command timed out after {timeout}s: {printable}", cause=exc) from exc
        except OSError as exc:
            raise error(f"Docker command could not be started: {printable}: {exc}", cause=exc) from exc

        if check and result.returncode != 0:
            raise error(
                f"Docker command failed (exit {result.returncode}): {printable}\n"
                f"{self.redact(result.stderr.strip())}"
            )
        return result


__all__ = ["DockerCLI"]
