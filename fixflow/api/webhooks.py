"""GitHub webhook intake.

Endpoints:
- GET  /webhooks/github - delivery check
- POST /webhooks/github - admit an ``issues``/``opened`` event as a run

Only signed ``issues`` events with action ``opened`` on a watched repository
whose owner holds a valid model-provider key become runs. Everything else is
acknowledged with 200 so GitHub does not redeliver.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from collections.abc import Sequence
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse
from sqlmodel import select

from fixflow.api.deps import EngineFactory, execute_run_task, get_engine_factory
from fixflow.config import get_settings
from fixflow.database.models import APIKey, Repo, User
from fixflow.database.runs import RunStore, work_item_from_run
from fixflow.database.session import SessionMaker, get_session_maker
from fixflow.errors import EventIgnored, IntakeNoOp, NoValidCredential, RepoNotWatched, SignatureInvalid
from fixflow.schemas import SUPPORTED_PROVIDERS, WebhookResponse, WorkItem


logger = logging.getLogger(__name__)
router = APIRouter()

SIGNATURE_PREFIX = "sha256="


def verify_signature(secret: str, body: bytes, signature: str | None) -> None:
    """Check ``X-Hub-Signature-256`` against the shared secret.

    Raises:
        SignatureInvalid: header or secret missing, or digest mismatch.
    """
    if not secret or not signature or not signature.startswith(SIGNATURE_PREFIX):
        raise SignatureInvalid("Invalid signature")
    expected = SIGNATURE_PREFIX + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise SignatureInvalid("Invalid signature")


def choose_api_key(keys: Sequence[APIKey], preferred_provider: str | None) -> APIKey | None:
    """Pick the key a run will use.

    The preferred provider wins when the user holds a valid key for it;
    otherwise the first valid key in ``SUPPORTED_PROVIDERS`` order.
    """
    usable = {k.provider: k for k in keys if k.is_valid and k.provider in SUPPORTED_PROVIDERS}
    if preferred_provider and preferred_provider in usable:
        return usable[preferred_provider]
    for provider in SUPPORTED_PROVIDERS:
        if provider in usable:
            return usable[provider]
    return None


def parse_issue_event(event: str | None, body: bytes) -> dict[str, Any]:
    """Decode an ``issues``/``opened`` payload.

    Raises:
        EventIgnored: wrong event kind, wrong action, or unusable payload.
    """
    if event != "issues":
        raise EventIgnored("Event ignored")
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise EventIgnored("Payload ignored") from exc
    if not isinstance(payload, dict):
        raise EventIgnored("Payload ignored")
    if payload.get("action") != "opened":
        raise EventIgnored("Action ignored")

    issue = payload.get("issue")
    repository = payload.get("repository")
    if not isinstance(issue, dict) or not isinstance(repository, dict):
        raise EventIgnored("Payload ignored")
    if not isinstance(issue.get("number"), int) or not isinstance(repository.get("id"), int):
        raise EventIgnored("Payload ignored")
    return payload


async def admit_issue_event(session_maker: SessionMaker, payload: dict[str, Any]) -> WorkItem:
    """Create a pending run for a parsed ``issues``/``opened`` payload.

    Raises:
        RepoNotWatched: repository unknown or not watched.
        NoValidCredential: owner holds no valid key for a supported provider.
    """
    issue = payload["issue"]
    repository = payload["repository"]

    async with session_maker() as session:
        result = await session.execute(select(Repo).where(Repo.github_id == repository["id"]))
        repo = result.scalar_one_or_none()
        if repo is None or not repo.is_watched:
            raise RepoNotWatched("Repository not watched")

        user = await session.get(User, repo.user_id)
        result = await session.execute(
            select(APIKey).where(APIKey.user_id == repo.user_id).where(APIKey.is_valid == True)  # noqa: E712
        )
        key = choose_api_key(result.scalars().all(), user.preferred_provider if user else None)
        if key is None:
            raise NoValidCredential("No valid API key configured")

    run = await RunStore(session_maker).create(
        user_id=repo.user_id,
        repo_id=repo.id,
        repo_full_name=repository.get("full_name") or repo.full_name,
        issue_number=issue["number"],
        issue_title=issue.get("title") or "",
        issue_body=issue.get("body") or "",
        api_key_id=key.id,
    )
    logger.info(
        f"[{run.id}] admitted {run.repo_full_name}#{run.issue_number} using {key.provider} key"
    )
    return work_item_from_run(run)


# =============================================================================
# Endpoints
# =============================================================================

@router.get("/webhooks/github")
async def webhook_ping() -> dict:
    """Delivery check."""
    return {"status": "ok"}


@router.post("/webhooks/github", response_model=WebhookResponse)
async def github_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    session_maker: SessionMaker = Depends(get_session_maker),
    engine_factory: EngineFactory = Depends(get_engine_factory),
):
    """Receive a GitHub webhook delivery and queue a run for opened issues."""
    body = await request.body()
    try:
        verify_signature(
            get_settings().github_webhook_secret,
            body,
            request.headers.get("x-hub-signature-256"),
        )
    except SignatureInvalid as exc:
        logger.warning("Rejected webhook delivery with invalid signature")
        return JSONResponse(status_code=401, content={"error": exc.message})

    try:
        payload = parse_issue_event(request.headers.get("x-github-event"), body)
        item = await admit_issue_event(session_maker, payload)
    except IntakeNoOp as exc:
        logger.info(f"Webhook acknowledged without a run: {exc.message}")
        return WebhookResponse(message=exc.message)

    background_tasks.add_task(execute_run_task, engine_factory(), item)
    return WebhookResponse(message="Issue queued for processing", run_id=item.run_id)
