"""Tests for the GitHub webhook intake."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from fixflow.agent.workflow import RunResult
from fixflow.api.deps import get_cipher, get_engine_factory, get_workflow_engine
from fixflow.api.main import app
from fixflow.api.webhooks import choose_api_key, verify_signature
from fixflow.config import get_settings
from fixflow.database.models import APIKey
from fixflow.database.runs import RunStore
from fixflow.errors import SignatureInvalid
from fixflow.schemas import RunStatus


SECRET = "test-webhook-secret"
REPO_GITHUB_ID = 555001


class RecordingEngine:
    def __init__(self):
        self.items = []

    async def run(self, item):
        self.items.append(item)
        return RunResult(run_id=item.run_id, status=RunStatus.PENDING)


@pytest.fixture
def engine():
    return RecordingEngine()


@pytest.fixture
def client(session_maker, engine):
    app.dependency_overrides[get_engine_factory] = lambda: (lambda: engine)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _body(action: str = "opened", repo_id: int = REPO_GITHUB_ID, number: int = 42) -> bytes:
    return json.dumps(
        {
            "action": action,
            "issue": {"number": number, "title": "Login button broken", "body": "Nothing happens"},
            "repository": {"id": repo_id, "full_name": "user/app"},
        }
    ).encode()


def _sign(body: bytes, secret: str = SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _post(client, body: bytes, *, event: str = "issues", signature: str | None = "auto"):
    headers = {"X-GitHub-Event": event, "Content-Type": "application/json"}
    if signature == "auto":
        signature = _sign(body)
    if signature is not None:
        headers["X-Hub-Signature-256"] = signature
    return client.post("/api/webhooks/github", content=body, headers=headers)


def _runs(session_maker):
    runs, _ = asyncio.run(RunStore(session_maker).list())
    return list(runs)


def test_opened_issue_creates_one_pending_run(client, session_maker, seed, engine):
    seeded = seed()

    response = _post(client, _body())

    assert response.status_code == 200
    data = response.json()
    assert data["message"] == "Issue queued for processing"

    runs = _runs(session_maker)
    assert len(runs) == 1
    run = runs[0]
    assert run.id == data["run_id"]
    assert run.status == "pending"
    assert run.issue_number == 42
    assert run.repo_full_name == "user/app"
    assert run.api_key_id == seeded.key_id

    assert [item.run_id for item in engine.items] == [run.id]
    assert engine.items[0].credential_ref == seeded.key_id


@pytest.mark.parametrize("signature", [None, "sha256=" + "0" * 64, "md5=abc"])
def test_bad_signature_is_unauthorized(client, session_maker, seed, engine, signature):
    seed()

    response = _post(client, _body(), signature=signature)

    assert response.status_code == 401
    assert response.json() == {"error": "Invalid signature"}
    assert _runs(session_maker) == []
    assert engine.items == []


def test_signature_with_wrong_secret_is_unauthorized(client, session_maker, seed):
    seed()
    body = _body()

    response = _post(client, body, signature=_sign(body, "other-secret"))

    assert response.status_code == 401
    assert _runs(session_maker) == []


@pytest.mark.parametrize(
    ("event", "body", "message"),
    [
        ("push", _body(), "Event ignored"),
        ("issues", _body(action="closed"), "Action ignored"),
        ("issues", b"{not json", "Payload ignored"),
        ("issues", json.dumps({"action": "opened"}).encode(), "Payload ignored"),
        ("issues", _body(repo_id=1), "Repository not watched"),
    ],
)
def test_ignored_events_are_acknowledged(client, session_maker, seed, engine, event, body, message):
    seed()

    response = _post(client, body, event=event)

    assert response.status_code == 200
    assert response.json()["message"] == message
    assert response.json()["run_id"] is None
    assert _runs(session_maker) == []
    assert engine.items == []


def test_unwatched_repository_is_ignored(client, session_maker, seed):
    seed(watched=False)

    response = _post(client, _body())

    assert response.json()["message"] == "Repository not watched"
    assert _runs(session_maker) == []


@pytest.mark.parametrize("overrides", [{"key_valid": False}, {"provider": "mistral"}])
def test_owner_without_valid_key_is_ignored(client, session_maker, seed, overrides):
    seed(**overrides)

    response = _post(client, _body())

    assert response.status_code == 200
    assert response.json()["message"] == "No valid API key configured"
    assert _runs(session_maker) == []


def test_preferred_provider_key_is_chosen(client, session_maker, seed):
    seeded = seed(fallback_key="hf_" + "b" * 34, preferred_provider="openai")

    _post(client, _body())

    assert _runs(session_maker)[0].api_key_id == seeded.key_id


def test_missing_secret_rejects_everything(client, session_maker, seed, monkeypatch):
    seed()
    monkeypatch.setenv("GITHUB_WEBHOOK_SECRET", "")
    get_settings.cache_clear()

    response = _post(client, _body())

    assert response.status_code == 401
    assert _runs(session_maker) == []


def test_no_op_deliveries_never_build_the_engine(session_maker, seed, monkeypatch):
    seed()
    monkeypatch.setenv("ENCRYPTION_KEY", "")
    get_settings.cache_clear()
    get_cipher.cache_clear()
    get_workflow_engine.cache_clear()

    with TestClient(app) as unpatched:
        rejected = _post(unpatched, _body(), signature="sha256=bad")
        ignored = _post(unpatched, _body(action="closed"))

    assert rejected.status_code == 401
    assert rejected.json() == {"error": "Invalid signature"}
    assert ignored.status_code == 200
    assert ignored.json()["message"] == "Action ignored"
    assert _runs(session_maker) == []
    assert get_workflow_engine.cache_info().currsize == 0


def test_delivery_check(client):
    response = client.get("/api/webhooks/github")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def _key(provider: str, valid: bool = True) -> APIKey:
    return APIKey(user_id="u", provider=provider, encrypted_key="00", iv="00", auth_tag="00", is_valid=valid)


def test_choose_api_key_order():
    keys = [_key("anthropic"), _key("openai"), _key("huggingface", valid=False)]

    assert choose_api_key(keys, None).provider == "openai"
    assert choose_api_key(keys, "anthropic").provider == "anthropic"
    assert choose_api_key(keys, "huggingface").provider == "openai"
    assert choose_api_key([_key("mistral")], "mistral") is None
    assert choose_api_key([], None) is None


def test_verify_signature():
    body = b'{"a": 1}'

    verify_signature(SECRET, body, _sign(body))
    with pytest.raises(SignatureInvalid):
        verify_signature("", body, _sign(body, ""))
    with pytest.raises(SignatureInvalid):
        verify_signature(SECRET, body + b" ", _sign(body))
