"""Configuration models for shipwright deployments.

Every orchestrator option lives in one explicit object passed by reference
into the Builder, Publisher, Remote Executor and Sequencer. Nothing reads
process-wide mutable state after start-up.

Key Concepts:
    DeployConfig: Orchestrator options (image, registry, target host,
        timeouts, retry policy). Uses ``SHIPWRIGHT_*`` env vars via
        ``from_env()``.
    RuntimeConfig: The sixteen runtime variables, resolved from the secrets
        store and handed to the build and to the container environment
        unmodified. Values never appear in ``repr()``.

Architecture Decisions:
    - Pydantic v2 (not dataclass) for DeployConfig: validation of ports and
      paths at start-up, ``model_dump_json()`` for run records.
    - from_env() classmethod: Explicit env-var parsing.
    - Override precedence: kwargs > env vars > field defaults.
    - Credentials are *references* (``secret:env:REGISTRY_PASSWORD``), never
      values; they are resolved at the moment of use.

Related Modules:
    - :mod:`shipwright.deploy.sequencer` — Consumer of these configs
    - :mod:`shipwright.core.secrets` — Resolves the references

Tags:
    config, settings, pydantic, deployment, environment
"""

from __future__ import annotations

import os
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from shipwright.core.errors import MissingConfigError
from shipwright.core.secrets import SecretsResolver

RUNTIME_VARIABLES: tuple[str, ...] = (
    "NODE_ENV",
    "APP_NAME",
    "APP_PORT",
    "API_PREFIX",
    "FRONTEND_DOMAIN",
    "BACKEND_DOMAIN",
    "DATABASE_TYPE",
    "DATABASE_HOST",
    "DATABASE_PORT",
    "DATABASE_USERNAME",
    "DATABASE_PASSWORD",
    "DATABASE_NAME",
    "DATABASE_SYNCHRONIZE",
    "DATABASE_MAX_CONNECTIONS",
    "DATABASE_SSL_ENABLED",
    "DATABASE_REJECT_UNAUTHORIZED",
)

# Values scrubbed from every logged command line and remote output
SENSITIVE_VARIABLES: frozenset[str] = frozenset({"DATABASE_USERNAME", "DATABASE_PASSWORD"})


class DeployConfig(BaseModel):
    """Configuration for one deployment pipeline.

    Example::

        config = DeployConfig(
            image_name="registry.example.com/acme/app",
            registry="registry.example.com",
            host="10.0.0.5",
            ssh_user="deploy",
        )
    """

    # Artifact
    image_name: str = Field(description="Repository the image is built and pushed as")
    image_tag: str = Field(default="api-latest", description="The single mutable tag")
    service_name: str = Field(default="api", description="Container name and service label")
    branch: str = Field(default="main", description="Designated branch for push triggers")
    context_dir: Path = Field(default=Path("."), description="Docker build context")
    dockerfile: Path | None = Field(default=None, description="Dockerfile (default: context/Dockerfile)")
    normalize_scripts: list[str] = Field(
        default_factory=lambda: ["startup.sh"],
        description="Scripts (relative to context) whose CRLF line endings are fixed before build",
    )
    build_timeout_seconds: int = Field(default=1800)

    # Registry
    registry: str | None = Field(default=None, description="Registry host; derived from image_name when unset")
    registry_username_ref: str = Field(default="secret:REGISTRY_USERNAME")
    registry_password_ref: str = Field(default="secret:REGISTRY_PASSWORD")
    publish_attempts: int = Field(default=3, ge=1)
    publish_base_delay: float = Field(default=2.0, ge=0)

    # Target host
    host: str = Field(description="Target host address")
    ssh_port: int = Field(default=22, ge=1, le=65535)
    ssh_user: str = Field(default="deploy")
    ssh_key_ref: str = Field(default="secret:SSH_PRIVATE_KEY")
    host_port: int = Field(default=8080, ge=1, le=65535, description="Port published on the host")
    container_port: int | None = Field(
        default=None, description="Port inside the container (default: APP_PORT runtime variable)"
    )
    command_timeout_seconds: int = Field(default=600)
    startup_timeout_seconds: int = Field(default=120, description="Probe budget for the new container")
    settle_seconds: int = Field(default=10, description="Running this long without exiting counts as started")

    # Orchestration
    lock_timeout_seconds: int = Field(default=600, ge=0)
    lock_db: Path | None = Field(default=None, description="sqlite file for cross-process target locks")
    output_dir: Path = Field(default=Path("deploy-runs"), description="Run archive directory")
    webhook_secret_ref: str | None = Field(default=None)

    @property
    def registry_host(self) -> str:
        """Registry host, from ``registry`` or the first path element of the image."""
        if self.registry:
            return self.registry
        first = self.image_name.split("/", 1)[0]
        if "/" in self.image_name and ("." in first or ":" in first or first == "localhost"):
            return first
        return "registry-1.docker.io"

    @classmethod
    def from_env(cls, **overrides: Any) -> DeployConfig:
        """Create config from SHIPWRIGHT_* environment variables."""
        env_map = {
            "image_name": "SHIPWRIGHT_IMAGE_NAME",
            "image_tag": "SHIPWRIGHT_IMAGE_TAG",
            "service_name": "SHIPWRIGHT_SERVICE_NAME",
            "branch": "SHIPWRIGHT_BRANCH",
            "context_dir": "SHIPWRIGHT_CONTEXT_DIR",
            "dockerfile": "SHIPWRIGHT_DOCKERFILE",
            "normalize_scripts": "SHIPWRIGHT_NORMALIZE_SCRIPTS",
            "registry": "SHIPWRIGHT_REGISTRY",
            "registry_username_ref": "SHIPWRIGHT_REGISTRY_USERNAME_REF",
            "registry_password_ref": "SHIPWRIGHT_REGISTRY_PASSWORD_REF",
            "publish_attempts": "SHIPWRIGHT_PUBLISH_ATTEMPTS",
            "publish_base_delay": "SHIPWRIGHT_PUBLISH_BASE_DELAY",
            "host": "SHIPWRIGHT_HOST",
            "ssh_port": "SHIPWRIGHT_SSH_PORT",
            "ssh_user": "SHIPWRIGHT_SSH_USER",
            "ssh_key_ref": "SHIPWRIGHT_SSH_KEY_REF",
            "host_port": "SHIPWRIGHT_HOST_PORT",
            "container_port": "SHIPWRIGHT_CONTAINER_PORT",
            "startup_timeout_seconds": "SHIPWRIGHT_STARTUP_TIMEOUT_SECONDS",
            "settle_seconds": "SHIPWRIGHT_SETTLE_SECONDS",
            "lock_timeout_seconds": "SHIPWRIGHT_LOCK_TIMEOUT_SECONDS",
            "lock_db": "SHIPWRIGHT_LOCK_DB",
            "output_dir": "SHIPWRIGHT_OUTPUT_DIR",
            "webhook_secret_ref": "SHIPWRIGHT_WEBHOOK_SECRET_REF",
        }
        values: dict[str, Any] = {}
        for field_name, env_var in env_map.items():
            env_val = os.environ.get(env_var)
            if env_val is not None:
                if field_name == "normalize_scripts":
                    values[field_name] = [s.strip() for s in env_val.split(",") if s.strip()]
                else:
                    values[field_name] = env_val
        values.update(overrides)
        for required in ("image_name", "host"):
            if not values.get(required):
                raise MissingConfigError(required, f"Missing required configuration: SHIPWRIGHT_{required.upper()}")
        return cls(**values)


class RuntimeConfig(Mapping[str, str]):
    """Opaque runtime variables for the build and the container.

    Strings in, strings out: the orchestrator never parses or rewrites a
    value. Iteration order is the canonical variable order.

    Example:
        >>> runtime = RuntimeConfig({"APP_PORT": "8080", "DATABASE_PASSWORD": "pw"})
        >>> runtime["APP_PORT"]
        '8080'
        >>> "pw" in repr(runtime)
        False
    """

    def __init__(self, values: Mapping[str, str]):
        order = {name: i for i, name in enumerate(RUNTIME_VARIABLES)}
        self._values: dict[str, str] = {
            k: str(values[k]) for k in sorted(values, key=lambda n: (order.get(n, len(order)), n))
        }

    @classmethod
    def from_resolver(
        cls,
        resolver: SecretsResolver,
        names: tuple[str, ...] = RUNTIME_VARIABLES,
    ) -> RuntimeConfig:
        """Resolve every runtime variable from the secrets store.

        Raises:
            MissingConfigError: Naming every variable the store lacks
        """
        values: dict[str, str] = {}
        missing: list[str] = []
        for name in names:
            value = resolver.resolve(name, default=None)
            if value is None:
                missing.append(name)
            else:
                values[name] = value
        if missing:
            raise MissingConfigError(
                ",".join(missing),
                f"Runtime variables missing from secrets store: {', '.join(missing)}",
            )
        return cls(values)

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def env(self) -> dict[str, str]:
        """A copy of the mapping, for build args and the container env-file."""
        return dict(self._values)

    def sensitive_values(self) -> list[str]:
        return [v for k, v in self._values.items() if k in SENSITIVE_VARIABLES]

    def __repr__(self) -> str:
        return f"RuntimeConfig(names={list(self._values)})"


__all__ = [
    "RUNTIME_VARIABLES",
    "SENSITIVE_VARIABLES",
    "DeployConfig",
    "RuntimeConfig",
]
