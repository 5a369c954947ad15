"""Push-event webhook.

``POST /hooks/push`` accepts a GitHub-style push payload. A push to the
designated branch starts a pipeline run in the background and answers
``202`` with the run id; the run's record appears under ``/runs`` once it
reaches a terminal state. Pushes to other branches are acknowledged and
ignored.

When ``webhook_secret_ref`` is configured, the ``X-Hub-Signature-256``
header must carry the HMAC-SHA256 of the raw body.
"""

from __future__ import annotations

import json
import uuid

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from shipwright.api.deps import Config, Resolver, SequencerFactory
from shipwright.core.errors import ConfigError
from shipwright.core.logging import get_logger
from shipwright.core.secrets import SecretsResolver
from shipwright.deploy.config import DeployConfig
from shipwright.deploy.trigger import PushEvent, verify_signature
from shipwright.execution.concurrency import TargetLockRegistry

logger = get_logger(__name__)

router = APIRouter(prefix="/hooks", tags=["hooks"])

SIGNATURE_HEADER = "X-Hub-Signature-256"
EVENT_HEADER = "X-GitHub-Event"


class HookResponse(BaseModel):
    status: str
    run_id: str | None = None
    branch: str | None = None
    source_revision: str | None = None


def run_pipeline(
    factory: SequencerFactory,
    config: DeployConfig,
    resolver: SecretsResolver,
    locks: TargetLockRegistry,
    event: PushEvent,
    run_id: str,
) -> None:
    """Background task: run one pipeline to its terminal state."""
    try:
        sequencer = factory(config, resolver, locks)
    except ConfigError as exc:
        logger.error("hooks.run.not_started", run_id=run_id, error_type=type(exc).__name__, error=exc.message)
        return
    run = sequencer.run(event, run_id=run_id)
    logger.info("hooks.run.finished", run_id=run_id, state=run.state.value, failed_step=run.failed_step)


@router.post("/push", response_model=HookResponse, status_code=202)
async def push(request: Request, background: BackgroundTasks, config: Config, resolver: Resolver):
    """Start a deployment for a push to the designated branch.

    Raises:
        HTTPException 401: Signature missing or wrong.
        HTTPException 400: Body is not a usable push event.
    """
    body = await request.body()

    if config.webhook_secret_ref:
        secret = resolver.resolve_reference(config.webhook_secret_ref)
        if not verify_signature(body, secret, request.headers.get(SIGNATURE_HEADER)):
            logger.warning("hooks.signature_rejected")
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

    if request.headers.get(EVENT_HEADER) == "ping":
        return JSONResponse(status_code=200, content=HookResponse(status="pong").model_dump())

    try:
        payload = json.loads(body or b"{}")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Body is not JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    try:
        event = PushEvent.from_payload(payload)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc

    if not event.targets_branch(config.branch):
        logger.info("hooks.push.ignored", branch=event.branch, designated=config.branch)
        return JSONResponse(
            status_code=200,
            content=HookResponse(status="ignored", branch=event.branch).model_dump(),
        )

    run_id = uuid.uuid4().hex[:12]
    background.add_task(
        run_pipeline, request.app.state.sequencer_factory, config, resolver, request.app.state.locks, event, run_id
    )
    logger.info("hooks.push.accepted", run_id=run_id, revision=event.source_revision, branch=event.branch)
    return HookResponse(
        status="accepted", run_id=run_id, branch=event.branch, source_revision=event.source_revision
    )
