"""Tests for the GitHub REST client."""

from __future__ import annotations

import asyncio
import base64
import json

import httpx
import pytest

from fixflow.tools.github import GitHubApiError, GitHubClient, NotAFileError, split_full_name


def _client(handler) -> GitHubClient:
    return GitHubClient("gho_token", base_url="https://api.github.test", transport=httpx.MockTransport(handler))


def _call(handler, method: str, *args, **kwargs):
    async def _go():
        async with _client(handler) as github:
            return await getattr(github, method)(*args, **kwargs)

    return asyncio.run(_go())


def test_sends_auth_and_version_headers():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(request.headers)
        return httpx.Response(200, json={"number": 7, "title": "Bug", "body": None})

    issue = _call(handler, "get_issue", "user", "app", 7)

    assert issue.title == "Bug"
    assert seen["authorization"] == "Bearer gho_token"
    assert seen["accept"] == "application/vnd.github+json"
    assert "x-github-api-version" in seen


def test_error_carries_status_and_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"message": "Resource not accessible by integration"})

    with pytest.raises(GitHubApiError) as excinfo:
        _call(handler, "get_issue", "user", "app", 7)

    assert excinfo.value.status_code == 403
    assert excinfo.value.message == "Resource not accessible by integration"


def test_list_issue_comments_requests_first_page():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json=[{"id": 1, "body": "hi"}])

    comments = _call(handler, "list_issue_comments", "user", "app", 7, per_page=10)

    assert [c.body for c in comments] == ["hi"]
    assert seen["params"] == {"per_page": "10", "page": "1"}


def test_get_file_decodes_content():
    encoded = base64.b64encode("print('hi')\n".encode()).decode()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"type": "file", "path": "main.py", "sha": "abc", "content": encoded})

    existing = _call(handler, "get_file", "user", "app", "main.py")

    assert existing.content == "print('hi')\n"
    assert existing.sha == "abc"


def test_get_file_missing_returns_none():
    result = _call(lambda r: httpx.Response(404, json={"message": "Not Found"}), "get_file", "user", "app", "nope.py")

    assert result is None


def test_get_file_on_directory_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"name": "a.py", "path": "src/a.py", "type": "file"}])

    with pytest.raises(NotAFileError):
        _call(handler, "get_file", "user", "app", "src")


def test_put_file_encodes_content_and_passes_sha():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"commit": {"sha": "c0ffee"}})

    sha = _call(
        handler, "put_file", "user", "app", "main.py",
        content="x = 1\n", message="fix: x", branch="fixflow/issue-1", sha="abc",
    )

    assert sha == "c0ffee"
    assert seen["method"] == "PUT"
    assert base64.b64decode(seen["body"]["content"]).decode() == "x = 1\n"
    assert seen["body"]["sha"] == "abc"
    assert seen["body"]["branch"] == "fixflow/issue-1"


def test_put_file_omits_sha_for_new_files():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"commit": {"sha": "c0ffee"}})

    _call(handler, "put_file", "user", "app", "new.py", content="", message="m", branch="b")

    assert "sha" not in seen["body"]


@pytest.mark.parametrize(
    ("status", "message"),
    [(404, "Not Found"), (422, "Reference does not exist")],
)
def test_delete_missing_ref_returns_false(status, message):
    result = _call(lambda r: httpx.Response(status, json={"message": message}), "delete_ref", "user", "app", "heads/x")

    assert result is False


def test_delete_ref_other_errors_raise():
    with pytest.raises(GitHubApiError):
        _call(lambda r: httpx.Response(500, json={"message": "oops"}), "delete_ref", "user", "app", "heads/x")


def test_find_open_pull_filters_by_owner_and_branch():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json=[])

    assert _call(handler, "find_open_pull", "user", "app", "fixflow/issue-1") is None
    assert seen["params"]["head"] == "user:fixflow/issue-1"
    assert seen["params"]["state"] == "open"


@pytest.mark.parametrize("name", ["", "user", "user/", "/app", "a/b/c"])
def test_split_full_name_rejects_invalid(name):
    with pytest.raises(ValueError):
        split_full_name(name)


def test_split_full_name():
    assert split_full_name("user/app") == ("user", "app")
