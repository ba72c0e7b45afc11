"""Shared FastAPI dependencies and background dispatch."""

from __future__ import annotations

import logging
from collections.abc import Callable
from functools import lru_cache

from fixflow.agent.workflow import WorkflowEngine, build_workflow_engine
from fixflow.config import get_settings
from fixflow.database.session import get_session_maker
from fixflow.schemas import WorkItem
from fixflow.tools.encryption import KeyCipher


logger = logging.getLogger(__name__)


@lru_cache
def get_cipher() -> KeyCipher:
    """Process-wide cipher built from ``ENCRYPTION_KEY``."""
    return KeyCipher.from_hex(get_settings().encryption_key)


@lru_cache
def get_workflow_engine() -> WorkflowEngine:
    """Process-wide workflow engine."""
    return build_workflow_engine(get_settings(), get_session_maker(), get_cipher())


EngineFactory = Callable[[], WorkflowEngine]


def get_engine_factory() -> EngineFactory:
    """Engine getter for the webhook; the engine is built only once a run is admitted."""
    return get_workflow_engine


async def execute_run_task(engine: WorkflowEngine, item: WorkItem) -> None:
    """Background task to execute one run.

    Step failures are recorded by the engine itself; anything escaping here
    (e.g. the database going away mid-run) leaves the run resumable.
    """
    try:
        result = await engine.run(item)
    except Exception as e:
        logger.error(f"[{item.run_id}] run aborted, left resumable: {e}")
        return
    logger.info(f"[{item.run_id}] run finished with status {result.status.value}")
