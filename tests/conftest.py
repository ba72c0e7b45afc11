"""Shared fixtures: temporary database, cipher, seeded users and a fake GitHub."""

from __future__ import annotations

import asyncio
import base64
import json
from dataclasses import dataclass, field
from types import SimpleNamespace

import httpx
import pytest

from fixflow.api.deps import get_cipher, get_workflow_engine
from fixflow.config import get_settings
from fixflow.database.models import Account, APIKey, Repo, User
from fixflow.database.session import close_db, get_session_maker, init_db
from fixflow.tools.encryption import KeyCipher
from fixflow.tools.github import GitHubClient


TEST_ENCRYPTION_KEY = "0123456789abcdef" * 4
WEBHOOK_SECRET = "test-webhook-secret"
GITHUB_BASE_URL = "https://api.github.test"

REPO_GITHUB_ID = 555001
OPENAI_KEY = "sk-" + "a" * 45
HUGGINGFACE_KEY = "hf_" + "b" * 34


def _clear_caches() -> None:
    get_settings.cache_clear()
    get_cipher.cache_clear()
    get_workflow_engine.cache_clear()


@pytest.fixture
def settings_env(tmp_path, monkeypatch):
    """Point settings at a temporary sqlite database and test secrets."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'fixflow.db'}")
    monkeypatch.setenv("ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    monkeypatch.setenv("GITHUB_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("GITHUB_API_BASE_URL", GITHUB_BASE_URL)
    monkeypatch.setenv("RESUME_ON_STARTUP", "false")
    monkeypatch.setenv("STEP_BACKOFF_SECONDS", "0")
    monkeypatch.setenv("STEP_BACKOFF_MAX_SECONDS", "0")
    _clear_caches()
    asyncio.run(close_db())
    yield get_settings()
    asyncio.run(close_db())
    _clear_caches()


@pytest.fixture
def session_maker(settings_env):
    asyncio.run(init_db())
    return get_session_maker()


@pytest.fixture
def cipher() -> KeyCipher:
    return KeyCipher.from_hex(TEST_ENCRYPTION_KEY)


def _tamper(hex_text: str) -> str:
    return hex_text[:-1] + ("1" if hex_text[-1] == "0" else "0")


@pytest.fixture
def seed(session_maker, cipher):
    """Insert a user with a GitHub account, a repo and provider keys."""

    def _seed(
        *,
        provider: str = "openai",
        api_key: str = OPENAI_KEY,
        key_valid: bool = True,
        fallback_key: str | None = None,
        preferred_provider: str | None = None,
        watched: bool = True,
        token: str | None = "gho_test_token",
        corrupt_tag: bool = False,
    ) -> SimpleNamespace:
        async def _insert() -> SimpleNamespace:
            async with session_maker() as session:
                user = User(github_username="user", preferred_provider=preferred_provider)
                session.add(user)
                await session.flush()

                if token is not None:
                    session.add(Account(user_id=user.id, provider="github", provider_account_id="42", access_token=token))
                repo = Repo(
                    github_id=REPO_GITHUB_ID,
                    user_id=user.id,
                    name="app",
                    full_name="user/app",
                    is_watched=watched,
                )
                session.add(repo)

                record = cipher.encrypt(api_key)
                key = APIKey(
                    user_id=user.id,
                    provider=provider,
                    encrypted_key=record.encrypted_key,
                    iv=record.iv,
                    auth_tag=_tamper(record.auth_tag) if corrupt_tag else record.auth_tag,
                    is_valid=key_valid,
                )
                session.add(key)

                fallback_id = None
                if fallback_key is not None:
                    fb = cipher.encrypt(fallback_key)
                    fallback = APIKey(
                        user_id=user.id,
                        provider="huggingface",
                        encrypted_key=fb.encrypted_key,
                        iv=fb.iv,
                        auth_tag=fb.auth_tag,
                    )
                    session.add(fallback)
                    fallback_id = fallback.id

                await session.commit()
                return SimpleNamespace(
                    user_id=user.id,
                    repo_id=repo.id,
                    key_id=key.id,
                    fallback_key_id=fallback_id,
                )

        return asyncio.run(_insert())

    return _seed


# =============================================================================
# Fake GitHub
# =============================================================================

@dataclass
class FakeGitHub:
    """In-memory GitHub REST API for one repository, served via MockTransport."""

    owner: str = "user"
    repo: str = "app"
    default_branch: str = "main"
    issues: dict[int, dict] = field(default_factory=dict)
    comments: dict[int, list[str]] = field(default_factory=dict)
    files: dict[str, dict[str, str]] = field(default_factory=dict)
    directories: set[str] = field(default_factory=set)
    branches: dict[str, str] = field(default_factory=dict)
    pulls: list[dict] = field(default_factory=list)
    puts: list[dict] = field(default_factory=list)
    requests: list[tuple[str, str]] = field(default_factory=list)
    faults: list[tuple[str, str, int]] = field(default_factory=list)
    tokens: list[str] = field(default_factory=list)
    binary_files: dict[str, bytes] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.branches.setdefault(self.default_branch, "base-sha")
        self.files.setdefault(self.default_branch, {})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self, token: str) -> GitHubClient:
        self.tokens.append(token)
        return GitHubClient(token, base_url=GITHUB_BASE_URL, transport=self.transport)

    def fail(self, method: str, path: str, status: int, times: int = 1) -> None:
        """Answer the next ``times`` matching requests with ``status``."""
        self.faults.extend([(method, path, status)] * times)

    def add_issue(self, number: int, title: str, body: str = "", comments: list[str] | None = None) -> None:
        self.issues[number] = {"number": number, "title": title, "body": body}
        self.comments[number] = list(comments or [])

    def add_file(self, path: str, content: str, branch: str | None = None) -> None:
        self.files.setdefault(branch or self.default_branch, {})[path] = content

    def add_binary_file(self, path: str, data: bytes) -> None:
        """Serve raw bytes for ``path`` on the default branch."""
        self.binary_files[path] = data

    def blob_sha(self, path: str, branch: str | None = None) -> str:
        return f"blob-{branch or self.default_branch}-{path}"

    def open_pulls(self) -> list[dict]:
        return [p for p in self.pulls if p["state"] == "open"]

    # -------------------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path
        self.requests.append((method, path))

        for fault in self.faults:
            if fault[0] == method and fault[1] == path:
                self.faults.remove(fault)
                return httpx.Response(fault[2], json={"message": "Injected failure"})

        prefix = f"/repos/{self.owner}/{self.repo}"
        if not path.startswith(prefix):
            return _not_found()
        rest = path[len(prefix):]

        if rest == "" and method == "GET":
            return httpx.Response(
                200,
                json={"full_name": f"{self.owner}/{self.repo}", "default_branch": self.default_branch},
            )
        if rest.startswith("/issues/"):
            return self._issues(method, rest[len("/issues/"):])
        if rest.startswith("/contents/"):
            return self._contents(request, rest[len("/contents/"):])
        if rest.startswith("/git/ref/") and method == "GET":
            branch = rest[len("/git/ref/heads/"):]
            if branch not in self.branches:
                return _not_found()
            return httpx.Response(200, json={"object": {"sha": self.branches[branch]}})
        if rest == "/git/refs" and method == "POST":
            body = json.loads(request.content)
            branch = body["ref"][len("refs/heads/"):]
            if branch in self.branches:
                return httpx.Response(422, json={"message": "Reference already exists"})
            self.branches[branch] = body["sha"]
            self.files[branch] = dict(self.files.get(self.default_branch, {}))
            return httpx.Response(201, json={"ref": body["ref"], "object": {"sha": body["sha"]}})
        if rest.startswith("/git/refs/heads/") and method == "DELETE":
            branch = rest[len("/git/refs/heads/"):]
            if branch not in self.branches:
                return httpx.Response(422, json={"message": "Reference does not exist"})
            del self.branches[branch]
            self.files.pop(branch, None)
            for pull in self.pulls:
                if pull["head"] == branch:
                    pull["state"] = "closed"
            return httpx.Response(204)
        if rest == "/pulls":
            return self._pulls(request)
        return _not_found()

    def _issues(self, method: str, rest: str) -> httpx.Response:
        number_text, _, tail = rest.partition("/")
        number = int(number_text)
        if number not in self.issues:
            return _not_found()
        if tail == "" and method == "GET":
            return httpx.Response(200, json=self.issues[number])
        if tail == "comments" and method == "GET":
            return httpx.Response(
                200,
                json=[{"id": i + 1, "body": body} for i, body in enumerate(self.comments[number])],
            )
        return _not_found()

    def _contents(self, request: httpx.Request, path: str) -> httpx.Response:
        if request.method == "GET":
            branch = request.url.params.get("ref") or self.default_branch
            files = self.files.get(branch, {})
            if path == "" or path in self.directories:
                base = f"{path}/" if path else ""
                names = sorted({p[len(base):].split("/")[0] for p in files if p.startswith(base)})
                if path == "" and not names:
                    return _not_found()
                entries = []
                for name in names:
                    full = f"{base}{name}"
                    kind = "file" if full in files else "dir"
                    entries.append({"name": name, "path": full, "type": kind})
                return httpx.Response(200, json=entries)
            if path in self.binary_files and branch == self.default_branch:
                data = self.binary_files[path]
            elif path in files:
                data = files[path].encode("utf-8")
            else:
                return _not_found()
            encoded = base64.b64encode(data).decode("ascii")
            return httpx.Response(
                200,
                json={"type": "file", "path": path, "sha": self.blob_sha(path, branch), "content": encoded},
            )

        if request.method == "PUT":
            body = json.loads(request.content)
            branch = body["branch"]
            if branch not in self.branches:
                return httpx.Response(404, json={"message": "Branch not found"})
            files = self.files.setdefault(branch, {})
            if path in files and body.get("sha") != self.blob_sha(path, self.default_branch):
                return httpx.Response(409, json={"message": f"{path} does not match"})
            files[path] = base64.b64decode(body["content"]).decode("utf-8")
            self.puts.append({"path": path, **body})
            commit_sha = f"commit-{len(self.puts)}"
            self.branches[branch] = commit_sha
            return httpx.Response(200, json={"commit": {"sha": commit_sha}, "content": {"path": path}})
        return _not_found()

    def _pulls(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            head = request.url.params.get("head", "")
            branch = head.partition(":")[2]
            matches = [p for p in self.open_pulls() if p["head"] == branch]
            return httpx.Response(200, json=[_pull_json(p) for p in matches][:1])

        body = json.loads(request.content)
        if any(p["head"] == body["head"] for p in self.open_pulls()):
            return httpx.Response(422, json={"message": "A pull request already exists"})
        number = len(self.pulls) + 1
        pull = {"number": number, "state": "open", **body}
        self.pulls.append(pull)
        return httpx.Response(201, json=_pull_json(pull))


def _pull_json(pull: dict) -> dict:
    return {
        "number": pull["number"],
        "html_url": f"https://github.test/user/app/pull/{pull['number']}",
        "state": pull["state"],
        "body": pull.get("body"),
    }


def _not_found() -> httpx.Response:
    return httpx.Response(404, json={"message": "Not Found"})


@pytest.fixture
def fake_github() -> FakeGitHub:
    github = FakeGitHub()
    github.add_issue(
        42,
        "Login button broken",
        "Clicking the login button does nothing.",
        comments=["Same here on Firefox", "Started after the last deploy"],
    )
    github.add_file("README.md", "# app\n")
    github.add_file("src/login.js", "export function login() {}\n")
    github.directories.add("src")
    return github
