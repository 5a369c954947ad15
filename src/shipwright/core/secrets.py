"""
Secrets resolution and redaction.

The secrets store is an external collaborator: registry credentials, the
SSH private key and the runtime variables come from it at run time and are
never embedded in the artifact. This module resolves them through a chain of
backends and keeps their values out of logs and run records.

Manifesto:
    - **Reference, don't store:** Configuration holds secret *references*
      (``secret:env:REGISTRY_PASSWORD``); values are resolved when needed
    - **Pluggable backends:** Environment, mounted files, in-memory (tests)
    - **Redact on output:** Anything that reaches a log line or an archived
      run record passes through ``redact()`` first

Reference formats:
    - ``KEY``                  — try every registered backend
    - ``secret:KEY``           — same, explicit
    - ``secret:env:VAR``       — environment variable ``VAR``
    - ``secret:file:/path``    — contents of a file

Example:
    >>> resolver = SecretsResolver([DictSecretBackend({"REGISTRY_PASSWORD": "s3cr3t"})])
    >>> resolver.resolve_reference("secret:REGISTRY_PASSWORD")
    's3cr3t'
    >>> redact("docker login -p s3cr3t", ["s3cr3t"])
    'docker login -p ***REDACTED***'

Tags:
    secrets, credentials, security, configuration, redaction
"""

from __future__ import annotations

import os
import re
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from shipwright.core.errors import ConfigError

REDACTED = "***REDACTED***"

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class MissingSecretError(ConfigError):
    """Raised when a secret cannot be resolved from any backend."""

    def __init__(self, key: str, tried_backends: list[str] | None = None):
        self.key = key
        self.tried_backends = tried_backends or []

        msg = f"Secret not found: {key}"
        if tried_backends:
            msg += f" (tried: {', '.join(tried_backends)})"
        super().__init__(msg)


class SecretResolutionError(ConfigError):
    """Raised when a secret reference format is invalid."""


# ---------------------------------------------------------------------------
# SecretValue wrapper
# ---------------------------------------------------------------------------


class SecretValue:
    """Wrapper for secret values that prevents accidental logging.

    Example:
        >>> secret = SecretValue("my_password")
        >>> str(secret)
        '[REDACTED]'
        >>> secret.get_secret()
        'my_password'
    """

    __slots__ = ("_value",)

    def __init__(self, value: str):
        self._value = value

    def get_secret(self) -> str:
        """Get the actual secret value."""
        return self._value

    def __str__(self) -> str:
        return "[REDACTED]"

    def __repr__(self) -> str:
        return "SecretValue('[REDACTED]')"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SecretValue):
            return self._value == other._value
        return False

    def __hash__(self) -> int:
        return hash(self._value)

    def __bool__(self) -> bool:
        return bool(self._value)


# ---------------------------------------------------------------------------
# Secret backends
# ---------------------------------------------------------------------------


class SecretBackend(ABC):
    """Abstract base for secret backends.

    Implement this to read from Vault, a cloud secrets manager, or a CI
    system's secret API.
    """

    name: str = "abstract"

    @abstractmethod
    def get(self, name: str) -> str | None:
        """Retrieve a secret by name, or ``None`` if this backend lacks it."""
        ...

    def contains(self, name: str) -> bool:
        return self.get(name) is not None


class EnvSecretBackend(SecretBackend):
    """Resolve secrets from environment variables.

    Tries ``{KEY}`` then ``SHIPWRIGHT_SECRET_{KEY}``.
    """

    name = "env"

    def get(self, name: str) -> str | None:
        for pattern in (name, f"SHIPWRIGHT_SECRET_{name.upper()}"):
            value = os.environ.get(pattern)
            if value is not None:
                return value
        return None


class FileSecretBackend(SecretBackend):
    """Resolve secrets from files.

    Designed for Docker secrets (``/run/secrets/``) and Kubernetes
    mounted secrets. Caches file contents after first read.
    """

    name = "file"

    def __init__(self, secrets_dir: str | Path = "/run/secrets"):
        self.secrets_dir = Path(secrets_dir)
        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> str | None:
        with self._lock:
            if name in self._cache:
                return self._cache[name]

        secret_path = self.secrets_dir / name
        if not secret_path.is_file():
            return None

        try:
            content = secret_path.read_text(encoding="utf-8").strip()
        except OSError:
            return None

        with self._lock:
            self._cache[name] = content
        return content


class DictSecretBackend(SecretBackend):
    """In-memory secret backend for tests and programmatic use."""

    name = "dict"

    def __init__(self, secrets: dict[str, str] | None = None):
        self._secrets = dict(secrets) if secrets else {}

    def get(self, name: str) -> str | None:
        return self._secrets.get(name)

    def set(self, key: str, value: str) -> None:
        self._secrets[key] = value


# ---------------------------------------------------------------------------
# Reference patterns
# ---------------------------------------------------------------------------

# Full reference: secret:backend:key  (e.g. secret:env:DB_PASSWORD)
_FULL_REFERENCE_RE = re.compile(r"^secret:(\w+):(.+)$")

_SENTINEL = object()


# ---------------------------------------------------------------------------
# SecretsResolver
# ---------------------------------------------------------------------------


class SecretsResolver:
    """Multi-backend secrets resolver.

    Resolves secrets by trying backends in order until one succeeds.
    """

    def __init__(self, backends: list[SecretBackend] | None = None):
        self._backends: list[SecretBackend] = list(backends) if backends is not None else []

    @classmethod
    def default(cls, secrets_dir: str | Path | None = None) -> SecretsResolver:
        """Environment first, then mounted secret files."""
        return cls([EnvSecretBackend(), FileSecretBackend(secrets_dir or "/run/secrets")])

    def resolve(self, key: str, default: Any = _SENTINEL) -> str | None:
        """Resolve a secret by key.

        Raises:
            MissingSecretError: If no backend has the secret and no default given
        """
        tried: list[str] = []
        for backend in self._backends:
            tried.append(backend.name)
            value = backend.get(key)
            if value is not None:
                return value
        if default is not _SENTINEL:
            return default
        raise MissingSecretError(key, tried)

    def resolve_secret_value(self, reference: str) -> SecretValue:
        """Resolve a reference and wrap it in SecretValue for safe handling."""
        return SecretValue(self.resolve_reference(reference) or "")

    def resolve_reference(self, reference: str, default: Any = _SENTINEL) -> str | None:
        """Resolve a secret reference string.

        Raises:
            SecretResolutionError: If reference format is invalid
            MissingSecretError: If secret not found and no default given
        """
        full_match = _FULL_REFERENCE_RE.match(reference)
        if full_match:
            return self._resolve_with_backend(full_match.group(1), full_match.group(2), default)

        if reference.startswith("secret:"):
            key = reference[len("secret:"):]
            if not key:
                raise SecretResolutionError(f"Invalid secret reference format: '{reference}'")
            return self.resolve(key, default)

        return self.resolve(reference, default)

    def _resolve_with_backend(self, backend_name: str, key: str, default: Any) -> str | None:
        """Resolve using a specific backend (or built-in handler)."""
        value: str | None = None
        if backend_name == "env":
            value = os.environ.get(key)
        elif backend_name == "file":
            path = Path(key)
            if path.is_file():
                value = path.read_text(encoding="utf-8").strip()
        else:
            for backend in self._backends:
                if backend.name == backend_name:
                    value = backend.get(key)
                    break
            else:
                raise SecretResolutionError(
                    f"Invalid secret reference format: unknown backend '{backend_name}'"
                )

        if value is not None:
            return value
        if default is not _SENTINEL:
            return default
        raise MissingSecretError(key, [backend_name])

    def add_backend(self, backend: SecretBackend, priority: int = -1) -> None:
        """Add a backend; ``priority`` is its position (-1 = end)."""
        if priority < 0:
            self._backends.append(backend)
        else:
            self._backends.insert(priority, backend)


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


def redact(text: str, secrets: Iterable[str]) -> str:
    """Replace every occurrence of each secret value in ``text``.

    Longer values are replaced first so that a secret containing another
    secret is not partially revealed. Values shorter than 4 characters are
    ignored; they would mangle unrelated output ("1", "true").
    """
    redacted = text or ""
    for value in sorted({s for s in secrets if s and len(s) >= 4}, key=len, reverse=True):
        redacted = redacted.replace(value, REDACTED)
    return redacted


__all__ = [
    "REDACTED",
    "MissingSecretError",
    "SecretResolutionError",
    "SecretValue",
    "SecretBackend",
    "EnvSecretBackend",
    "FileSecretBackend",
    "DictSecretBackend",
    "SecretsResolver",
    "redact",
]
