"""Async GitHub REST API client.

Covers the calls the workflow needs:
- issues: get, list comments (first page)
- contents: list directory, read file, create/update file
- git refs: get, create, delete
- repository: default branch
- pulls: find open by head, create
"""

from __future__ import annotations

import base64
import logging

import httpx
from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)

API_VERSION = "2022-11-28"


class GitHubApiError(RuntimeError):
    """Raised when GitHub API returns a non-success response."""

    def __init__(self, *, status_code: int, message: str) -> None:
        super().__init__(f"GitHub API error: status={status_code}, message={message}")
        self.status_code = status_code
        self.message = message


class NotAFileError(GitHubApiError):
    """Raised when a contents path exists but is not a regular file."""


# =============================================================================
# Response subsets
# =============================================================================

class Issue(BaseModel):
    number: int = Field(..., ge=1)
    title: str
    body: str | None = None


class IssueComment(BaseModel):
    id: int
    body: str | None = None


class ContentEntry(BaseModel):
    """One entry of a directory listing."""
    name: str
    path: str
    type: str  # file, dir, symlink, submodule


class FileContent(BaseModel):
    path: str
    sha: str
    content: str


class Repository(BaseModel):
    full_name: str
    default_branch: str


class PullRequest(BaseModel):
    number: int = Field(..., ge=1)
    html_url: str
    body: str | None = None


# =============================================================================
# Client
# =============================================================================

class GitHubClient:
    """Thin async wrapper around the GitHub REST API, bound to one token."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str = "https://api.github.com",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {token}",
                "X-GitHub-Api-Version": API_VERSION,
                "User-Agent": "fixflow",
            },
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Issues
    # -------------------------------------------------------------------------

    async def get_issue(self, owner: str, repo: str, issue_number: int) -> Issue:
        resp = await self._request("GET", f"/repos/{owner}/{repo}/issues/{issue_number}")
        return Issue.model_validate(resp.json())

    async def list_issue_comments(
        self, owner: str, repo: str, issue_number: int, *, per_page: int = 10
    ) -> list[IssueComment]:
        """First page of comments on an issue."""
        resp = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/issues/{issue_number}/comments",
            params={"per_page": per_page, "page": 1},
        )
        return [IssueComment.model_validate(item) for item in resp.json()]

    # -------------------------------------------------------------------------
    # Contents
    # -------------------------------------------------------------------------

    async def list_directory(self, owner: str, repo: str, path: str = "") -> list[ContentEntry]:
        resp = await self._request("GET", f"/repos/{owner}/{repo}/contents/{path}")
        payload = resp.json()
        if not isinstance(payload, list):
            raise GitHubApiError(status_code=resp.status_code, message=f"{path or '/'} is not a directory")
        return [ContentEntry.model_validate(item) for item in payload]

    async def get_file(
        self, owner: str, repo: str, path: str, *, ref: str | None = None
    ) -> FileContent | None:
        """Read a file. Returns None if the path does not exist.

        Raises:
            GitHubApiError: on other errors, or when the path is not a regular file.
        """
        params = {"ref": ref} if ref else None
        try:
            resp = await self._request("GET", f"/repos/{owner}/{repo}/contents/{path}", params=params)
        except GitHubApiError as exc:
            if exc.status_code == 404:
                return None
            raise

        payload = resp.json()
        if not isinstance(payload, dict) or payload.get("type") != "file":
            raise NotAFileError(status_code=resp.status_code, message=f"{path} is not a file")

        raw = payload.get("content") or ""
        content = base64.b64decode(raw).decode("utf-8") if raw else ""
        return FileContent(path=payload["path"], sha=payload["sha"], content=content)

    async def put_file(
        self,
        owner: str,
        repo: str,
        path: str,
        *,
        content: str,
        message: str,
        branch: str,
        sha: str | None = None,
    ) -> str:
        """Create or update a file on ``branch``. Returns the new commit sha."""
        body: dict[str, object] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": branch,
        }
        if sha:
            body["sha"] = sha
        resp = await self._request("PUT", f"/repos/{owner}/{repo}/contents/{path}", json=body)
        return resp.json()["commit"]["sha"]

    # -------------------------------------------------------------------------
    # Repository and refs
    # -------------------------------------------------------------------------

    async def get_repository(self, owner: str, repo: str) -> Repository:
        resp = await self._request("GET", f"/repos/{owner}/{repo}")
        return Repository.model_validate(resp.json())

    async def get_ref_sha(self, owner: str, repo: str, ref: str) -> str:
        """Commit sha a ref (e.g. ``heads/main``) points at."""
        resp = await self._request("GET", f"/repos/{owner}/{repo}/git/ref/{ref}")
        return resp.json()["object"]["sha"]

    async def create_ref(self, owner: str, repo: str, ref: str, sha: str) -> None:
        """Create ``ref`` (fully qualified, e.g. ``refs/heads/x``) at ``sha``."""
        await self._request("POST", f"/repos/{owner}/{repo}/git/refs", json={"ref": ref, "sha": sha})

    async def delete_ref(self, owner: str, repo: str, ref: str) -> bool:
        """Delete ``ref`` (e.g. ``heads/x``). Returns False if it did not exist."""
        try:
            await self._request("DELETE", f"/repos/{owner}/{repo}/git/refs/{ref}")
        except GitHubApiError as exc:
            if exc.status_code == 404:
                return False
            if exc.status_code == 422 and "does not exist" in exc.message.lower():
                return False
            raise
        return True

    # -------------------------------------------------------------------------
    # Pull requests
    # -------------------------------------------------------------------------

    async def find_open_pull(self, owner: str, repo: str, head_branch: str) -> PullRequest | None:
        """Open PR whose head is ``owner:head_branch``, if any."""
        resp = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/pulls",
            params={"state": "open", "head": f"{owner}:{head_branch}", "per_page": 1},
        )
        payload = resp.json()
        if not payload:
            return None
        return PullRequest.model_validate(payload[0])

    async def create_pull(
        self, owner: str, repo: str, *, title: str, head: str, base: str, body: str
    ) -> PullRequest:
        resp = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json={"title": title, "head": head, "base": base, "body": body, "draft": False},
        )
        return PullRequest.model_validate(resp.json())

    # -------------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: object) -> httpx.Response:
        resp = await self._client.request(method, path, **kwargs)
        if 200 <= resp.status_code < 300:
            return resp
        raise GitHubApiError(status_code=resp.status_code, message=_error_message(resp))


def _error_message(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return resp.text
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return resp.text


def split_full_name(repo_full_name: str) -> tuple[str, str]:
    """Split ``owner/repo``."""
    owner, sep, repo = repo_full_name.partition("/")
    if not sep or not owner or not repo or "/" in repo:
        raise ValueError(f"Invalid repository name: {repo_full_name!r}")
    return owner, repo
