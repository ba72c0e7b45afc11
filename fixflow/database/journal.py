"""Step journal: durable ``(run_id, step_name) -> outcome`` records.

The workflow engine consults the journal before executing a step. A
``completed`` entry short-circuits the step and its stored output is reused.
Payloads holding secrets are sealed with the process cipher before they
reach the database.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from fixflow.database.models import RunStep, utcnow
from fixflow.database.session import SessionMaker
from fixflow.schemas import StepStatus
from fixflow.tools.encryption import KeyCipher


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepOutcome:
    """A committed step outcome with its payload opened."""
    step_name: str
    status: StepStatus
    output_json: str | None
    attempts: int


class StepJournal:
    """Journal of step outcomes backed by the ``run_steps`` table."""

    def __init__(self, session_maker: SessionMaker, cipher: KeyCipher) -> None:
        self._session_maker = session_maker
        self._cipher = cipher

    async def get(self, run_id: str, step_name: str) -> StepOutcome | None:
        """Return the recorded outcome for a step, if any."""
        async with self._session_maker() as session:
            row = await self._find(session, run_id, step_name)
            if row is None:
                return None
            output = self._open(row) if row.output_json is not None else None
            return StepOutcome(
                step_name=row.step_name,
                status=StepStatus(row.status),
                output_json=output,
                attempts=row.attempts,
            )

    async def commit(
        self,
        run_id: str,
        step_name: str,
        *,
        step_order: int,
        output_json: str | None,
        sealed: bool = False,
        attempts: int = 1,
        started_at: datetime | None = None,
    ) -> None:
        """Record a completed step.

        A step already committed keeps its first outcome; the second commit is
        dropped and logged.
        """
        stored = output_json
        if sealed and output_json is not None:
            stored = self._seal(output_json)
        await self._write(
            RunStep(
                run_id=run_id,
                step_name=step_name,
                step_order=step_order,
                status=StepStatus.COMPLETED.value,
                output_json=stored,
                sealed=sealed and output_json is not None,
                attempts=attempts,
                started_at=started_at,
                ended_at=utcnow(),
            )
        )

    async def record_failure(
        self,
        run_id: str,
        step_name: str,
        *,
        step_order: int,
        error_code: str,
        error_message: str,
        attempts: int,
        started_at: datetime | None = None,
    ) -> None:
        """Record the step that ended the run."""
        await self._write(
            RunStep(
                run_id=run_id,
                step_name=step_name,
                step_order=step_order,
                status=StepStatus.FAILED.value,
                attempts=attempts,
                error_code=error_code,
                error_message=error_message,
                started_at=started_at,
                ended_at=utcnow(),
            )
        )

    async def discard_outputs(self, run_id: str, step_names: Iterable[str]) -> None:
        """Erase stored payloads of the given steps, keeping the entries."""
        names = list(step_names)
        if not names:
            return
        async with self._session_maker() as session:
            result = await session.execute(
                select(RunStep).where(RunStep.run_id == run_id).where(RunStep.step_name.in_(names))
            )
            for row in result.scalars().all():
                row.output_json = None
                row.sealed = False
                session.add(row)
            await session.commit()

    # -------------------------------------------------------------------------

    async def _write(self, row: RunStep) -> None:
        async with self._session_maker() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.warning(
                    f"[{row.run_id}] step {row.step_name} already has an outcome; keeping the first"
                )

    @staticmethod
    async def _find(session, run_id: str, step_name: str) -> RunStep | None:
        result = await session.execute(
            select(RunStep).where(RunStep.run_id == run_id).where(RunStep.step_name == step_name)
        )
        return result.scalar_one_or_none()

    def _seal(self, payload: str) -> str:
        record = self._cipher.encrypt(payload)
        return json.dumps(
            {"encrypted_key": record.encrypted_key, "iv": record.iv, "auth_tag": record.auth_tag}
        )

    def _open(self, row: RunStep) -> str:
        if not row.sealed:
            return row.output_json
        envelope = json.loads(row.output_json)
        return self._cipher.decrypt(envelope["encrypted_key"], envelope["iv"], envelope["auth_tag"])
