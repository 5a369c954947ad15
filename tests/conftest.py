"""
Shared pytest fixtures for shipwright tests.

This module provides:
- Environment isolation (no SHIPWRIGHT_* / DATABASE_* leakage between tests)
- A complete set of runtime variables
- Deterministic digests and a minimal build context

All Docker, SSH and registry interaction is faked; no external services are
needed.
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

import pytest

from shipwright.core.secrets import DictSecretBackend, SecretsResolver
from shipwright.deploy.config import RUNTIME_VARIABLES, DeployConfig, RuntimeConfig


def make_digest(seed: str) -> str:
    """A well-formed ``sha256:<64 hex>`` digest derived from ``seed``."""
    return "sha256:" + hashlib.sha256(seed.encode()).hexdigest()


RUNTIME_VALUES = {name: f"value-{name.lower()}" for name in RUNTIME_VARIABLES}
RUNTIME_VALUES.update(
    {
        "APP_PORT": "3000",
        "DATABASE_TYPE": "postgres",
        "DATABASE_HOST": "db.internal",
        "DATABASE_PORT": "5432",
        "DATABASE_USERNAME": "app_user",
        "DATABASE_PASSWORD": "s3cret-db-pass",
        "DATABASE_NAME": "app",
    }
)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Strip deployment and database variables from the process environment."""
    for key in list(os.environ):
        if key.startswith(("SHIPWRIGHT_", "DATABASE_")) or key in RUNTIME_VARIABLES:
            monkeypatch.delenv(key, raising=False)
    yield


@pytest.fixture
def runtime_values() -> dict[str, str]:
    return dict(RUNTIME_VALUES)


@pytest.fixture
def runtime(runtime_values) -> RuntimeConfig:
    return RuntimeConfig(runtime_values)


@pytest.fixture
def resolver(runtime_values) -> SecretsResolver:
    secrets = dict(runtime_values)
    secrets.update(
        {
            "REGISTRY_USERNAME": "ci-bot",
            "REGISTRY_PASSWORD": "registry-token-123",
            "SSH_PRIVATE_KEY": "",
        }
    )
    return SecretsResolver([DictSecretBackend(secrets)])


@pytest.fixture
def build_context(tmp_path) -> Path:
    context = tmp_path / "app"
    context.mkdir()
    (context / "Dockerfile").write_text("FROM node:20-alpine\nCOPY . .\n")
    (context / "startup.sh").write_bytes(b"#!/bin/sh\r\nexec node dist/main.js\r\n")
    return context


@pytest.fixture
def deploy_config(tmp_path, build_context) -> DeployConfig:
    return DeployConfig(
        image_name="registry.example.com/acme/app",
        host="10.0.0.5",
        context_dir=build_context,
        output_dir=tmp_path / "runs",
        publish_base_delay=0.0,
        lock_timeout_seconds=0,
    )
