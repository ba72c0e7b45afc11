"""Step-journal workflow engine for issue-to-PR runs.

Run structure (strictly ordered, one-way):

    update-status-processing → get-credentials → fetch-context → query-ai
    → validate-response → fetch-file → create-pr → update-status-success

Each step:
- is skipped if the journal already holds its committed outcome; the stored
  output is restored instead,
- is retried up to MAX_ATTEMPTS times with exponential backoff on transient
  errors,
- fails the run at once on a fatal error, or once its budget is exhausted.

Re-invoking a run therefore resumes at the first uncommitted step.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from functools import partial

from pydantic import BaseModel
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from fixflow.agent.context import ContextGatherer
from fixflow.agent.credentials import CredentialResolver
from fixflow.agent.mutator import SourceControlMutator, fetch_target_file
from fixflow.agent.validator import validate_patch
from fixflow.config import Settings
from fixflow.database.journal import StepJournal
from fixflow.database.models import utcnow
from fixflow.database.runs import RunNotFound, RunStore, work_item_from_run
from fixflow.database.session import SessionMaker
from fixflow.errors import is_transient
from fixflow.llm.router import ModelQueryRouter, build_provider
from fixflow.schemas import (
    CredentialBundle,
    ModelPatch,
    PullRequestRef,
    RepoContext,
    RunStatus,
    StepName,
    StepStatus,
    TargetFile,
    WorkItem,
)
from fixflow.tools.encryption import KeyCipher
from fixflow.tools.github import GitHubClient


logger = logging.getLogger(__name__)

# Attempts per step, including the first
MAX_ATTEMPTS = 3

GitHubFactory = Callable[[str], GitHubClient]


# =============================================================================
# Step table
# =============================================================================

@dataclass(frozen=True)
class Step:
    """A named unit of work.

    Attributes:
        name: Journal key of the step
        handler: WorkflowEngine method that performs it
        output: Model of the step's output, None if it returns nothing
        field: RunState attribute the output is stored in
        sealed: Encrypt the output in the journal
        ephemeral: Erase the output from the journal once the run ends
    """
    name: StepName
    handler: str
    output: type[BaseModel] | None = None
    field: str | None = None
    sealed: bool = False
    ephemeral: bool = False


STEPS: tuple[Step, ...] = (
    Step(StepName.UPDATE_STATUS_PROCESSING, "_mark_processing"),
    Step(
        StepName.GET_CREDENTIALS,
        "_get_credentials",
        output=CredentialBundle,
        field="credentials",
        sealed=True,
        ephemeral=True,
    ),
    Step(StepName.FETCH_CONTEXT, "_fetch_context", output=RepoContext, field="context", ephemeral=True),
    Step(StepName.QUERY_AI, "_query_ai", output=ModelPatch, field="patch"),
    Step(StepName.VALIDATE_RESPONSE, "_validate_response"),
    Step(StepName.FETCH_FILE, "_fetch_file", output=TargetFile, field="target_file", ephemeral=True),
    Step(StepName.CREATE_PR, "_create_pr", output=PullRequestRef, field="pull_request"),
    Step(StepName.UPDATE_STATUS_SUCCESS, "_mark_success"),
)

EPHEMERAL_STEPS: tuple[str, ...] = tuple(s.name.value for s in STEPS if s.ephemeral)


@dataclass
class RunState:
    """In-memory state of one run, rebuilt from the journal on resume."""
    item: WorkItem
    credentials: CredentialBundle | None = None
    context: RepoContext | None = None
    patch: ModelPatch | None = None
    target_file: TargetFile | None = None
    pull_request: PullRequestRef | None = None
    github: GitHubClient | None = None


@dataclass(frozen=True)
class RunResult:
    """Outcome of one engine invocation."""
    run_id: str
    status: RunStatus
    pr_number: int | None = None
    pr_url: str | None = None
    failed_step: str | None = None
    error: str | None = None


class StepFailed(Exception):
    """A step ended the run."""

    def __init__(
        self,
        step: Step,
        order: int,
        cause: BaseException,
        attempts: int,
        started_at: datetime,
    ) -> None:
        super().__init__(f"{step.name.value}: {cause}")
        self.step = step
        self.order = order
        self.cause = cause
        self.attempts = attempts
        self.started_at = started_at


# =============================================================================
# Engine
# =============================================================================

class WorkflowEngine:
    """Drives the ordered step sequence for a work item."""

    def __init__(
        self,
        *,
        runs: RunStore,
        journal: StepJournal,
        resolver: CredentialResolver,
        gatherer: ContextGatherer,
        router: ModelQueryRouter,
        mutator: SourceControlMutator,
        github_factory: GitHubFactory,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0,
    ) -> None:
        self.runs = runs
        self.journal = journal
        self.resolver = resolver
        self.gatherer = gatherer
        self.router = router
        self.mutator = mutator
        self.github_factory = github_factory
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds

    async def run(self, item: WorkItem) -> RunResult:
        """Execute, or resume, the run for ``item``.

        Terminal runs are left untouched.

        Raises:
            RunNotFound: no run record exists for ``item.run_id``.
        """
        run_id = item.run_id
        record = await self.runs.get(run_id)
        if record is None:
            raise RunNotFound(f"Run {run_id} not found")

        status = RunStatus(record.status)
        if status.is_terminal:
            logger.info(f"[{run_id}] run already {status.value}; nothing to do")
            return RunResult(
                run_id=run_id,
                status=status,
                pr_number=record.pr_number,
                pr_url=record.pr_url,
                error=record.error_message,
            )

        logger.info(f"[{run_id}] starting run for {item.repo_full_name}#{item.issue_number}")
        state = RunState(item=item)
        try:
            for order, step in enumerate(STEPS, start=1):
                output = await self._execute(step, order, state)
                if step.field is not None:
                    setattr(state, step.field, output)
        except StepFailed as failure:
            return await self._fail(state, failure)
        finally:
            if state.github is not None:
                await state.github.close()

        await self.journal.discard_outputs(run_id, EPHEMERAL_STEPS)
        pull = state.pull_request
        logger.info(f"[{run_id}] run succeeded: PR #{pull.pr_number} {pull.pr_url}")
        return RunResult(
            run_id=run_id,
            status=RunStatus.SUCCESS,
            pr_number=pull.pr_number,
            pr_url=pull.pr_url,
        )

    async def resume(self, run_id: str) -> RunResult:
        """Re-invoke a persisted run by id."""
        record = await self.runs.get(run_id)
        if record is None:
            raise RunNotFound(f"Run {run_id} not found")
        return await self.run(work_item_from_run(record))

    # -------------------------------------------------------------------------
    # Step execution
    # -------------------------------------------------------------------------

    async def _execute(self, step: Step, order: int, state: RunState) -> BaseModel | None:
        run_id = state.item.run_id
        name = step.name.value

        committed = await self.journal.get(run_id, name)
        if committed is not None and committed.status == StepStatus.COMPLETED:
            logger.info(f"[{run_id}] {name}: reusing committed outcome")
            if step.output is None or committed.output_json is None:
                return None
            return step.output.model_validate_json(committed.output_json)

        handler = getattr(self, step.handler)
        started_at = utcnow()
        attempts = 0
        output: BaseModel | None = None
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.backoff_seconds, max=self.backoff_max_seconds),
                retry=retry_if_exception(is_transient),
                before_sleep=partial(_log_retry, run_id, name),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    output = await handler(state)
        except Exception as exc:
            raise StepFailed(step, order, exc, attempts, started_at) from exc

        await self.journal.commit(
            run_id,
            name,
            step_order=order,
            output_json=output.model_dump_json() if output is not None else None,
            sealed=step.sealed,
            attempts=attempts,
            started_at=started_at,
        )
        logger.info(f"[{run_id}] {name}: completed in {attempts} attempt(s)")
        return output

    async def _fail(self, state: RunState, failure: StepFailed) -> RunResult:
        run_id = state.item.run_id
        name = failure.step.name.value
        cause = failure.cause
        kind = "fatal" if not is_transient(cause) else "retries exhausted"
        logger.error(f"[{run_id}] {name} failed ({kind}, {failure.attempts} attempt(s)): {cause}")

        await self.journal.record_failure(
            run_id,
            name,
            step_order=failure.order,
            error_code=type(cause).__name__,
            error_message=str(cause),
            attempts=failure.attempts,
            started_at=failure.started_at,
        )
        error_message = f"{name}: {cause}"
        await self.runs.transition(run_id, RunStatus.FAILED, error_message=error_message)
        await self.journal.discard_outputs(run_id, EPHEMERAL_STEPS)
        return RunResult(
            run_id=run_id,
            status=RunStatus.FAILED,
            failed_step=name,
            error=error_message,
        )

    def _github(self, state: RunState) -> GitHubClient:
        if state.github is None:
            state.github = self.github_factory(state.credentials.source_control_token)
        return state.github

    # -------------------------------------------------------------------------
    # Step handlers
    # -------------------------------------------------------------------------

    async def _mark_processing(self, state: RunState) -> None:
        await self.runs.transition(state.item.run_id, RunStatus.PROCESSING)

    async def _get_credentials(self, state: RunState) -> CredentialBundle:
        return await self.resolver.resolve(state.item.user_id, state.item.credential_ref)

    async def _fetch_context(self, state: RunState) -> RepoContext:
        item = state.item
        return await self.gatherer.gather(self._github(state), item.repo_full_name, item.issue_number)

    async def _query_ai(self, state: RunState) -> ModelPatch:
        return await self.router.query(state.context, state.credentials)

    async def _validate_response(self, state: RunState) -> None:
        validate_patch(state.patch)

    async def _fetch_file(self, state: RunState) -> TargetFile:
        context = state.context
        return await fetch_target_file(self._github(state), context.owner, context.repo, state.patch.file_path)

    async def _create_pr(self, state: RunState) -> PullRequestRef:
        context = state.context
        return await self.mutator.open_pull_request(
            self._github(state),
            owner=context.owner,
            repo=context.repo,
            issue_number=state.item.issue_number,
            issue_title=context.issue_title,
            patch=state.patch,
            target=state.target_file,
            run_id=state.item.run_id,
        )

    async def _mark_success(self, state: RunState) -> None:
        pull = state.pull_request
        await self.runs.transition(
            state.item.run_id,
            RunStatus.SUCCESS,
            pr_number=pull.pr_number,
            pr_url=pull.pr_url,
        )


def _log_retry(run_id: str, step_name: str, retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        f"[{run_id}] {step_name}: attempt {retry_state.attempt_number} failed ({exc}); "
        f"retrying in {delay:.1f}s"
    )


# =============================================================================
# Wiring
# =============================================================================

def build_workflow_engine(settings: Settings, session_maker: SessionMaker, cipher: KeyCipher) -> WorkflowEngine:
    """Assemble an engine from settings, a session factory and the key cipher."""
    return WorkflowEngine(
        runs=RunStore(session_maker),
        journal=StepJournal(session_maker, cipher),
        resolver=CredentialResolver(session_maker, cipher, fallback_provider=settings.fallback_provider),
        gatherer=ContextGatherer(comment_page_size=settings.comment_page_size),
        router=ModelQueryRouter(
            provider_factory=partial(build_provider, settings=settings),
            fallback_provider=settings.fallback_provider,
        ),
        mutator=SourceControlMutator(branch_prefix=settings.branch_prefix),
        github_factory=partial(
            GitHubClient,
            base_url=settings.github_api_base_url,
            timeout=settings.github_timeout_seconds,
        ),
        backoff_seconds=settings.step_backoff_seconds,
        backoff_max_seconds=settings.step_backoff_max_seconds,
    )
