"""Artifact Builder: source revision + build args -> immutable image.

Key Concepts:
    ImageBuilder.build(spec) -> Artifact
        1. Normalise line endings of the startup scripts (CRLF -> LF) and
           make them executable, so they run in a Unix runtime.
        2. ``docker build`` with build args sorted by name, revision and
           service labels, and the BuildSpec tag.
        3. ``docker image inspect`` for the image id, which becomes the
           artifact digest.

Architecture Decisions:
    - Determinism: identical spec and source tree produce an identical
      command line. Build args are passed as ``--build-arg NAME`` with the
      value supplied through the subprocess environment, so values never
      appear on a command line or in a log.
    - No retry: a build failure is attributable to the source tree or the
      build configuration, so it is fatal for the run.

Tags:
    build, docker, artifact, image
"""

from __future__ import annotations

import os
import stat
import time
from pathlib import Path

from shipwright.core.errors import BuildError
from shipwright.core.logging import get_logger
from shipwright.deploy.docker import DockerCLI
from shipwright.deploy.models import Artifact, BuildSpec

logger = get_logger(__name__)

LABEL_PREFIX = "shipwright"


def normalize_line_endings(path: Path) -> bool:
    """Rewrite ``path`` with LF line endings and set its executable bits.

    Returns True if the content changed.

    Raises:
        BuildError: If the script is missing or cannot be rewritten
    """
    if not path.is_file():
        raise BuildError(f"Script to normalise not found: {path}")
    try:
        content = path.read_bytes()
        fixed = content.replace(b"\r\n", b"\n")
        if fixed != content:
            path.write_bytes(fixed)
        mode = path.stat().st_mode
        path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    except OSError as exc:
        raise BuildError(f"Could not normalise {path}: {exc}", cause=exc) from exc
    return fixed != content


class ImageBuilder:
    """Builds the service image with the local docker CLI.

    Example::

        builder = ImageBuilder()
        artifact = builder.build(spec)
        artifact.digest
        # 'sha256:...'
    """

    def __init__(self, docker: DockerCLI | None = None, timeout: int = 1800) -> None:
        self.docker = docker or DockerCLI()
        self.timeout = timeout

    def build(self, spec: BuildSpec) -> Artifact:
        """Build ``spec`` into an image.

        Raises:
            BuildError: On a normalisation failure, a failed or timed-out
                build, or a missing image id afterwards
        """
        started = time.monotonic()
        context = Path(spec.context_dir)
        if not context.is_dir():
            raise BuildError(f"Build context not found: {context}").with_context(
                revision=spec.source_revision
            )

        for script in spec.normalize_scripts:
            if normalize_line_endings(context / script):
                logger.info("build.script_normalized", script=script)

        logger.info(
            "build.started",
            revision=spec.source_revision,
            image=spec.image_reference,
            build_args=sorted(spec.build_args),
        )
        env = {**os.environ, **spec.build_args}
        self.docker.run(
            self.build_command(spec),
            error=BuildError,
            timeout=self.timeout,
            env=env,
        )

        result = self.docker.run(
            ["image", "inspect", "--format", "{{.Id}}", spec.image_reference],
            error=BuildError,
        )
        digest = result.stdout.strip()
        if not digest.startswith("sha256:"):
            raise BuildError(f"Build produced no image id for {spec.image_reference}: {digest!r}")

        artifact = Artifact(
            image=spec.image_name,
            tag=spec.image_tag,
            digest=digest,
            source_revision=spec.source_revision,
        )
        logger.info(
            "build.completed",
            image=artifact.reference,
            digest=artifact.digest,
            duration_seconds=round(time.monotonic() - started, 2),
        )
        return artifact

    @staticmethod
    def build_command(spec: BuildSpec) -> list[str]:
        """The ``docker build`` arguments for ``spec``; stable for equal specs."""
        context = Path(spec.context_dir)
        dockerfile = Path(spec.dockerfile) if spec.dockerfile else context / "Dockerfile"
        args = [
            "build",
            "--file", str(dockerfile),
            "--label", f"{LABEL_PREFIX}.revision={spec.source_revision}",
            "--label", f"{LABEL_PREFIX}.service={spec.service_name}",
        ]
        for name in sorted(spec.build_args):
            args.extend(["--build-arg", name])
        args.extend(["--tag", spec.image_reference, str(context)])
        return args


__all__ = ["ImageBuilder", "normalize_line_endings", "LABEL_PREFIX"]
