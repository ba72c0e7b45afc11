"""Run record persistence.

Status transitions are monotonic: pending -> processing -> success|failed
(pending -> failed is allowed for runs that die before starting). Terminal
records accept no further writes.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from sqlalchemy import func
from sqlmodel import select

from fixflow.database.models import Run, RunStep, utcnow
from fixflow.database.session import SessionMaker
from fixflow.errors import FixFlowError
from fixflow.schemas import RunStatus, WorkItem


logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.PROCESSING, RunStatus.FAILED}),
    RunStatus.PROCESSING: frozenset({RunStatus.SUCCESS, RunStatus.FAILED}),
    RunStatus.SUCCESS: frozenset(),
    RunStatus.FAILED: frozenset(),
}


class RunNotFound(FixFlowError):
    """No run record with the given id."""


class InvalidTransition(FixFlowError):
    """Requested status change would break monotonic ordering."""


class RunStore:
    """Reads and writes ``runs`` rows, one short transaction per call."""

    def __init__(self, session_maker: SessionMaker) -> None:
        self._session_maker = session_maker

    async def create(
        self,
        *,
        user_id: str,
        repo_id: str,
        repo_full_name: str,
        issue_number: int,
        issue_title: str,
        issue_body: str,
        api_key_id: str,
    ) -> Run:
        """Insert a new run in ``pending`` state."""
        now = utcnow()
        run = Run(
            user_id=user_id,
            repo_id=repo_id,
            repo_full_name=repo_full_name,
            issue_number=issue_number,
            issue_title=issue_title,
            issue_body=issue_body,
            api_key_id=api_key_id,
            status=RunStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        async with self._session_maker() as session:
            session.add(run)
            await session.commit()
            await session.refresh(run)
        return run

    async def get(self, run_id: str) -> Run | None:
        async with self._session_maker() as session:
            return await session.get(Run, run_id)

    async def transition(
        self,
        run_id: str,
        status: RunStatus,
        *,
        pr_number: int | None = None,
        pr_url: str | None = None,
        error_message: str | None = None,
    ) -> Run:
        """Move a run to ``status``.

        Re-applying the current non-terminal status is a no-op, so a step that
        crashed after writing but before committing can be replayed.

        Raises:
            RunNotFound: if the run does not exist.
            InvalidTransition: if the change is not allowed.
        """
        async with self._session_maker() as session:
            run = await session.get(Run, run_id)
            if run is None:
                raise RunNotFound(f"Run {run_id} not found")

            current = RunStatus(run.status)
            if current == status and not current.is_terminal:
                return run
            if status not in _ALLOWED_TRANSITIONS[current]:
                raise InvalidTransition(
                    f"Run {run_id}: cannot move from {current.value} to {status.value}"
                )

            run.status = status.value
            if pr_number is not None:
                run.pr_number = pr_number
            if pr_url is not None:
                run.pr_url = pr_url
            if error_message is not None:
                run.error_message = error_message
            run.updated_at = utcnow()

            session.add(run)
            await session.commit()
            await session.refresh(run)

        logger.info(f"[{run_id}] status {current.value} -> {status.value}")
        return run

    async def list(
        self,
        *,
        user_id: str | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> tuple[Sequence[Run], int]:
        """List runs newest first, with the total count."""
        query = select(Run)
        count_query = select(func.count()).select_from(Run)
        if user_id is not None:
            query = query.where(Run.user_id == user_id)
            count_query = count_query.where(Run.user_id == user_id)

        offset = (page - 1) * per_page
        async with self._session_maker() as session:
            result = await session.execute(
                query.order_by(Run.created_at.desc()).offset(offset).limit(per_page)
            )
            runs = result.scalars().all()
            total = (await session.execute(count_query)).scalar_one()
        return runs, total

    async def list_unfinished(self) -> Sequence[Run]:
        """Runs still pending or processing, oldest first."""
        async with self._session_maker() as session:
            result = await session.execute(
                select(Run)
                .where(Run.status.in_([RunStatus.PENDING.value, RunStatus.PROCESSING.value]))
                .order_by(Run.created_at)
            )
            return result.scalars().all()

    async def list_steps(self, run_id: str) -> Sequence[RunStep]:
        """Step journal entries of a run in workflow order."""
        async with self._session_maker() as session:
            result = await session.execute(
                select(RunStep).where(RunStep.run_id == run_id).order_by(RunStep.step_order)
            )
            return result.scalars().all()


def work_item_from_run(run: Run) -> WorkItem:
    """Rebuild the immutable work item from its persisted run record."""
    return WorkItem(
        run_id=run.id,
        user_id=run.user_id,
        repo_id=run.repo_id,
        issue_number=run.issue_number,
        issue_title=run.issue_title,
        issue_body=run.issue_body or "",
        repo_full_name=run.repo_full_name,
        credential_ref=run.api_key_id,
    )
