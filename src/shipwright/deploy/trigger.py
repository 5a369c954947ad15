"""Push-event triggers.

A pipeline run starts from a push to the designated branch. The event
carries the source revision; everything else comes from configuration.

``PushEvent.from_payload`` understands GitHub-style push payloads
(``ref: refs/heads/main``, ``after: <sha>``). ``verify_signature`` checks the
``X-Hub-Signature-256`` header when a webhook secret is configured.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Any

from pydantic import BaseModel, Field

from shipwright.core.errors import InvalidConfigError

_NULL_REVISION = "0" * 40


class PushEvent(BaseModel):
    """A push on a branch, carrying the revision to deploy."""

    source_revision: str = Field(min_length=1)
    branch: str = "main"
    pusher: str | None = None
    repository: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> PushEvent:
        """Parse a GitHub-style push payload.

        Raises:
            InvalidConfigError: If the payload has no usable ref or revision,
                or the push deletes the branch
        """
        ref = payload.get("ref") or ""
        revision = payload.get("after") or (payload.get("head_commit") or {}).get("id")
        if not ref.startswith("refs/heads/"):
            raise InvalidConfigError("ref", ref, f"Push event does not reference a branch: {ref!r}")
        if not revision or revision == _NULL_REVISION:
            raise InvalidConfigError("after", revision, "Push event carries no revision to deploy")

        return cls(
            source_revision=revision,
            branch=ref[len("refs/heads/"):],
            pusher=(payload.get("pusher") or {}).get("name"),
            repository=(payload.get("repository") or {}).get("full_name"),
        )

    def targets_branch(self, branch: str) -> bool:
        return self.branch == branch


def sign_payload(body: bytes, secret: str) -> str:
    """``X-Hub-Signature-256`` header value for ``body``."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(body: bytes, secret: str, signature: str | None) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(body, secret), signature)


__all__ = ["PushEvent", "sign_payload", "verify_signature"]
