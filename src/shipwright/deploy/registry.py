"""Registry Publisher: push the artifact under its stable tag.

Key Concepts:
    RegistryClient: Reads the manifest currently under a tag through the
        registry HTTP API v2 (httpx), with basic or bearer-token auth.
    RegistryPublisher.publish(artifact, tag) -> PublishedRef
        1. Log in once per run (``docker login --password-stdin``).
        2. If the tag already points at an image whose config digest equals
           the artifact digest, skip the push (idempotent no-op success).
        3. Otherwise ``docker tag`` + ``docker push``.

Architecture Decisions:
    - Idempotence by digest comparison: a retry after a push that succeeded
      but whose acknowledgement was lost costs one HEAD-sized GET, not a
      failed run.
    - Failures are classified, not retried here: ``RegistryAuthError`` and
      ``RegistryTransportError`` are both retryable and the Sequencer owns
      the retry loop. An auth failure resets the login so the next attempt
      logs in again.
    - Credentials are resolved from references at the moment of login and
      registered with the docker wrapper for redaction.

Tags:
    registry, publish, docker, oci, idempotence
"""

from __future__ import annotations

import re
from typing import Any

import httpx

from shipwright.core.errors import PublishError, RegistryAuthError, RegistryTransportError
from shipwright.core.logging import get_logger
from shipwright.core.secrets import SecretsResolver
from shipwright.deploy.docker import DockerCLI
from shipwright.deploy.models import Artifact, PublishedRef

logger = get_logger(__name__)

MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
MANIFEST_LIST_V2 = "application/vnd.docker.distribution.manifest.list.v2+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"

MANIFEST_ACCEPT = ", ".join([MANIFEST_V2, OCI_MANIFEST, MANIFEST_LIST_V2, OCI_INDEX])

_AUTH_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')
_AUTH_FAILURE_MARKERS = ("unauthorized", "denied", "authentication required", "incorrect username")


def repository_path(image_name: str, registry_host: str) -> str:
    """Repository path inside the registry for ``image_name``.

    >>> repository_path("registry.example.com/acme/app", "registry.example.com")
    'acme/app'
    >>> repository_path("app", "registry-1.docker.io")
    'library/app'
    """
    if image_name.startswith(registry_host + "/"):
        return image_name[len(registry_host) + 1:]
    if "/" not in image_name:
        return f"library/{image_name}"
    return image_name


def parse_challenge(header: str) -> tuple[str, dict[str, str]]:
    """Split a ``WWW-Authenticate`` header into scheme and parameters."""
    scheme, _, rest = header.partition(" ")
    return scheme.lower(), dict(_AUTH_PARAM_RE.findall(rest))


class RegistryClient:
    """Minimal registry HTTP API v2 reader.

    Example::

        client = RegistryClient("registry.example.com", "ci", "s3cr3t")
        client.remote_config_digest("acme/app", "api-latest")
        # 'sha256:...' or None
    """

    def __init__(
        self,
        registry: str,
        username: str | None = None,
        password: str | None = None,
        *,
        scheme: str = "https",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.registry = registry
        self._username = username
        self._password = password
        self._base_url = f"{scheme}://{registry}"
        self._timeout = timeout
        self._transport = transport

    def _basic_auth(self) -> httpx.BasicAuth | None:
        if self._username and self._password:
            return httpx.BasicAuth(self._username, self._password)
        return None

    def _fetch_token(self, client: httpx.Client, params: dict[str, str]) -> str:
        realm = params.get("realm")
        if not realm:
            raise RegistryAuthError(f"Registry {self.registry} sent a bearer challenge without realm")
        query = {k: v for k, v in params.items() if k in ("service", "scope")}
        response = client.get(realm, params=query, auth=self._basic_auth())
        if response.status_code in (401, 403):
            raise RegistryAuthError(f"Registry {self.registry} rejected the credentials")
        if response.status_code >= 400:
            raise RegistryTransportError(
                f"Token endpoint of {self.registry} answered {response.status_code}"
            )
        body = response.json()
        token = body.get("token") or body.get("access_token")
        if not token:
            raise RegistryAuthError(f"Registry {self.registry} issued no token")
        return token

    def get_manifest(self, repository: str, tag: str) -> dict[str, Any] | None:
        """The manifest under ``repository:tag``, or None if the tag is absent.

        Raises:
            RegistryAuthError: On 401/403 after authentication
            RegistryTransportError: On connection failures and other errors
        """
        path = f"/v2/{repository}/manifests/{tag}"
        headers = {"Accept": MANIFEST_ACCEPT}
        try:
            with httpx.Client(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                response = client.get(path, headers=headers, auth=self._basic_auth())
                challenge = response.headers.get("www-authenticate", "")
                if response.status_code == 401 and challenge.lower().startswith("bearer"):
                    _, params = parse_challenge(challenge)
                    token = self._fetch_token(client, params)
                    response = client.get(
                        path, headers={**headers, "Authorization": f"Bearer {token}"}
                    )
        except httpx.HTTPError as exc:
            raise RegistryTransportError(
                f"Registry {self.registry} unreachable: {exc}", cause=exc
            ) from exc

        if response.status_code == 404:
            return None
        if response.status_code in (401, 403):
            raise RegistryAuthError(f"Registry {self.registry} denied access to {repository}")
        if response.status_code >= 400:
            raise RegistryTransportError(
                f"Registry {self.registry} answered {response.status_code} for {repository}:{tag}"
            )
        return response.json()

    def remote_config_digest(self, repository: str, tag: str) -> str | None:
        """Config digest (the image id) of the image under the tag.

        Returns None when the tag is absent or points at a multi-platform
        index, which a single-platform build never equals.
        """
        manifest = self.get_manifest(repository, tag)
        if manifest is None:
            return None
        if manifest.get("mediaType") in (MANIFEST_LIST_V2, OCI_INDEX) or "manifests" in manifest:
            return None
        return (manifest.get("config") or {}).get("digest")


class RegistryPublisher:
    """Publishes artifacts with the local docker CLI.

    One publisher serves one pipeline run; it logs in at most once unless an
    auth failure resets the session.
    """

    def __init__(
        self,
        registry: str,
        resolver: SecretsResolver,
        *,
        username_ref: str = "secret:REGISTRY_USERNAME",
        password_ref: str = "secret:REGISTRY_PASSWORD",
        docker: DockerCLI | None = None,
        client: RegistryClient | None = None,
        timeout: int = 900,
    ) -> None:
        self.registry = registry
        self.resolver = resolver
        self.username_ref = username_ref
        self.password_ref = password_ref
        self.docker = docker or DockerCLI()
        self.timeout = timeout
        self._client = client
        self._logged_in = False

    @property
    def logged_in(self) -> bool:
        return self._logged_in

    def login(self) -> None:
        """Authenticate the docker CLI against the registry once.

        Raises:
            RegistryAuthError: Credentials rejected
            RegistryTransportError: Registry unreachable
        """
        if self._logged_in:
            return
        username = self.resolver.resolve_reference(self.username_ref)
        secret = self.resolver.resolve_secret_value(self.password_ref)
        if not secret:
            raise RegistryAuthError(f"Empty registry password from {self.password_ref}")
        password = secret.get_secret()
        self.docker.add_secret(password)

        result = self.docker.run(
            ["login", self.registry, "--username", username, "--password-stdin"],
            error=RegistryTransportError,
            check=False,
            input=password,
        )
        if result.returncode != 0:
            raise self._classify(result.stderr, f"docker login {self.registry}")

        if self._client is None:
            self._client = RegistryClient(self.registry, username, password)
        self._logged_in = True
        logger.info("publish.login", registry=self.registry, username_ref=self.username_ref)

    def publish(self, artifact: Artifact, tag: str) -> PublishedRef:
        """Make ``artifact`` available as ``artifact.image:tag``.

        Raises:
            PublishError: Auth or transport failure (retryable)
        """
        try:
            return self._publish(artifact, tag)
        except RegistryAuthError:
            self._logged_in = False
            raise

    def _publish(self, artifact: Artifact, tag: str) -> PublishedRef:
        self.login()
        target = f"{artifact.image}:{tag}"
        repository = repository_path(artifact.image, self.registry)

        remote_digest = self._client.remote_config_digest(repository, tag)
        if remote_digest == artifact.digest:
            logger.info("publish.skipped", image=target, digest=artifact.digest)
            return PublishedRef(
                repository=artifact.image,
                tag=tag,
                digest=artifact.digest,
                already_published=True,
            )

        if tag != artifact.tag:
            self.docker.run(["tag", artifact.reference, target], error=PublishError)

        result = self.docker.run(
            ["push", target],
            error=RegistryTransportError,
            check=False,
            timeout=self.timeout,
        )
        if result.returncode != 0:
            raise self._classify(result.stderr, f"docker push {target}")

        logger.info("publish.pushed", image=target, digest=artifact.digest, remote_digest=remote_digest)
        return PublishedRef(repository=artifact.image, tag=tag, digest=artifact.digest)

    def _classify(self, stderr: str, action: str) -> PublishError:
        message = f"{action} failed: {self.docker.redact(stderr.strip())}"
        lowered = stderr.lower()
        if any(marker in lowered for marker in _AUTH_FAILURE_MARKERS):
            return RegistryAuthError(message)
        return RegistryTransportError(message)


__all__ = [
    "MANIFEST_ACCEPT",
    "RegistryClient",
    "RegistryPublisher",
    "parse_challenge",
    "repository_path",
]
