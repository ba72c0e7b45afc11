"""Repository context gathering."""

from __future__ import annotations

import asyncio
import logging

import httpx

from fixflow.errors import ContextFetchFailure, IssueNotFound
from fixflow.schemas import RepoContext
from fixflow.tools.github import (
    ContentEntry,
    GitHubApiError,
    GitHubClient,
    Issue,
    IssueComment,
    split_full_name,
)


logger = logging.getLogger(__name__)

COMMENT_SEPARATOR = "\n---\n"


def summarize_file_tree(entries: list[ContentEntry]) -> str:
    """One line per root entry, directories and files marked apart."""
    return "\n".join(
        f"{'📁' if entry.type == 'dir' else '📄'} {entry.path}" for entry in entries
    )


class ContextGatherer:
    """Reads issue text, discussion and root file listing for one run."""

    def __init__(self, comment_page_size: int = 10) -> None:
        self.comment_page_size = comment_page_size

    async def gather(self, github: GitHubClient, repo_full_name: str, issue_number: int) -> RepoContext:
        """Fetch the three reads concurrently.

        Raises:
            IssueNotFound: the issue returned 404.
            ContextFetchFailure: any other read failed.
        """
        owner, repo = split_full_name(repo_full_name)
        where = f"{repo_full_name}#{issue_number}"

        async def read_issue() -> Issue:
            try:
                return await github.get_issue(owner, repo, issue_number)
            except GitHubApiError as exc:
                if exc.status_code == 404:
                    raise IssueNotFound(f"Issue {where} not found or access revoked") from exc
                raise

        async def read_comments() -> list[IssueComment]:
            try:
                return await github.list_issue_comments(
                    owner, repo, issue_number, per_page=self.comment_page_size
                )
            except GitHubApiError as exc:
                if exc.status_code == 404:
                    raise IssueNotFound(f"Issue {where} not found or access revoked") from exc
                raise

        async def read_tree() -> list[ContentEntry]:
            try:
                return await github.list_directory(owner, repo)
            except GitHubApiError as exc:
                # Empty repositories have no root listing
                if exc.status_code == 404:
                    return []
                raise

        try:
            issue, comments, tree = await asyncio.gather(
                read_issue(),
                read_comments(),
                read_tree(),
            )
        except (GitHubApiError, httpx.HTTPError) as exc:
            raise ContextFetchFailure(f"Failed to fetch context for {where}: {exc}") from exc

        discussion = COMMENT_SEPARATOR.join(c.body for c in comments if c.body)
        logger.info(f"Gathered context for {where}: {len(comments)} comments, {len(tree)} root entries")
        return RepoContext(
            owner=owner,
            repo=repo,
            issue_title=issue.title,
            issue_body=issue.body or "",
            discussion_text=discussion,
            file_tree_summary=summarize_file_tree(tree),
        )
