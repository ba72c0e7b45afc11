"""Source-control mutations that turn a validated patch into a pull request.

Sequence per run:
1. Resolve the default branch and its tip commit.
2. Reuse an open PR from the issue branch when its body carries this run's
   marker (an earlier attempt of the same run opened it).
3. Delete the issue branch if present, then recreate it at the tip.
4. Create or update the target file on the branch.
5. Open the PR against the default branch.

Deleting before creating makes a retried run converge on one branch. An open
PR left by a different run is not reused: deleting its head branch closes it
and this run opens its own. If two runs for the same issue race, the later
delete can drop the earlier run's branch.
"""

from __future__ import annotations

import logging

import httpx

from fixflow.agent.prompts import format_pr_body, format_pr_title, run_marker
from fixflow.errors import MalformedPatch, MutationFailure
from fixflow.schemas import ModelPatch, PullRequestRef, TargetFile
from fixflow.tools.github import GitHubApiError, GitHubClient, NotAFileError


logger = logging.getLogger(__name__)


def normalize_path(path: str) -> str:
    """Strip a single leading path separator."""
    return path[1:] if path.startswith("/") else path


def issue_branch_name(prefix: str, issue_number: int) -> str:
    return f"{prefix}/issue-{issue_number}"


async def fetch_target_file(github: GitHubClient, owner: str, repo: str, path: str) -> TargetFile:
    """Current content and blob sha of the patch target on the default branch.

    An absent file yields empty content and no sha (the patch creates it).

    Raises:
        MalformedPatch: the path names a directory or other non-file entry,
            or a file that is not UTF-8 text.
        MutationFailure: the read failed.
    """
    try:
        existing = await github.get_file(owner, repo, normalize_path(path))
    except NotAFileError as exc:
        raise MalformedPatch(f"Patch target {path} is not a regular file") from exc
    except UnicodeDecodeError as exc:
        raise MalformedPatch(f"Patch target {path} is not a UTF-8 text file") from exc
    except (GitHubApiError, httpx.HTTPError) as exc:
        raise MutationFailure(f"Failed to read {path}: {exc}") from exc
    if existing is None:
        return TargetFile(content="", sha=None)
    return TargetFile(content=existing.content, sha=existing.sha)


class SourceControlMutator:
    """Creates the issue branch, commits the patch and opens the PR."""

    def __init__(self, branch_prefix: str = "fixflow") -> None:
        self.branch_prefix = branch_prefix

    async def open_pull_request(
        self,
        github: GitHubClient,
        *,
        owner: str,
        repo: str,
        issue_number: int,
        issue_title: str,
        patch: ModelPatch,
        target: TargetFile,
        run_id: str | None = None,
    ) -> PullRequestRef:
        """Apply ``patch`` on a fresh issue branch and open a PR.

        An open PR from the issue branch is reused only when it was opened for
        ``run_id``; without a ``run_id`` any open PR from the branch is reused.

        Raises:
            MutationFailure: any GitHub call failed.
        """
        try:
            return await self._open_pull_request(
                github,
                owner=owner,
                repo=repo,
                issue_number=issue_number,
                issue_title=issue_title,
                patch=patch,
                target=target,
                run_id=run_id,
            )
        except (GitHubApiError, httpx.HTTPError) as exc:
            raise MutationFailure(f"Failed to open pull request for {owner}/{repo}#{issue_number}: {exc}") from exc

    async def _open_pull_request(
        self,
        github: GitHubClient,
        *,
        owner: str,
        repo: str,
        issue_number: int,
        issue_title: str,
        patch: ModelPatch,
        target: TargetFile,
        run_id: str | None = None,
    ) -> PullRequestRef:
        branch = issue_branch_name(self.branch_prefix, issue_number)
        path = normalize_path(patch.file_path or "")

        repository = await github.get_repository(owner, repo)
        base = repository.default_branch
        tip_sha = await github.get_ref_sha(owner, repo, f"heads/{base}")

        existing = await github.find_open_pull(owner, repo, branch)
        if existing is not None:
            if run_id is None or run_marker(run_id) in (existing.body or ""):
                logger.info(f"Reusing open PR #{existing.number} from {branch}")
                return PullRequestRef(pr_number=existing.number, pr_url=existing.html_url)
            logger.info(f"Open PR #{existing.number} from {branch} belongs to another run, replacing it")

        if await github.delete_ref(owner, repo, f"heads/{branch}"):
            logger.info(f"Deleted stale branch {branch}")
        await github.create_ref(owner, repo, f"refs/heads/{branch}", tip_sha)

        await github.put_file(
            owner,
            repo,
            path,
            content=patch.code_change or "",
            message=patch.commit_message,
            branch=branch,
            sha=target.sha,
        )

        pull = await github.create_pull(
            owner,
            repo,
            title=format_pr_title(patch),
            head=branch,
            base=base,
            body=format_pr_body(patch, issue_number=issue_number, issue_title=issue_title, run_id=run_id),
        )
        logger.info(f"Opened PR #{pull.number} {branch} -> {base}")
        return PullRequestRef(pr_number=pull.number, pr_url=pull.html_url)
