"""FastAPI routes for the FixFlow dashboard.

Endpoints:
- GET /health         - Health check
- GET /runs           - List runs, newest first
- GET /runs/{id}      - Run status with its step journal
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from fixflow.config import get_settings
from fixflow.database.models import Run
from fixflow.database.runs import RunStore
from fixflow.database.session import SessionMaker, get_session_maker
from fixflow.schemas import (
    RunDetailResponse,
    RunListResponse,
    RunResponse,
    RunStatus,
    StepResponse,
    StepStatus,
)


logger = logging.getLogger(__name__)
router = APIRouter()


def get_run_store(session_maker: SessionMaker = Depends(get_session_maker)) -> RunStore:
    return RunStore(session_maker)


def _run_fields(run: Run) -> dict:
    return {
        "run_id": run.id,
        "status": RunStatus(run.status),
        "user_id": run.user_id,
        "repo_id": run.repo_id,
        "repo_full_name": run.repo_full_name,
        "issue_number": run.issue_number,
        "issue_title": run.issue_title,
        "pr_number": run.pr_number,
        "pr_url": run.pr_url,
        "error_message": run.error_message,
        "created_at": run.created_at,
        "updated_at": run.updated_at,
    }


# =============================================================================
# Health Check
# =============================================================================

@router.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    settings = get_settings()
    return {
        "status": "ok",
        "version": settings.app_version,
        "environment": settings.environment,
    }


# =============================================================================
# Runs Endpoints
# =============================================================================

@router.get("/runs", response_model=RunListResponse)
async def list_runs(
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    user_id: str | None = Query(default=None),
    store: RunStore = Depends(get_run_store),
) -> RunListResponse:
    """List runs, optionally for one user."""
    runs, total = await store.list(user_id=user_id, page=page, per_page=per_page)
    return RunListResponse(
        runs=[RunResponse(**_run_fields(run)) for run in runs],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.get("/runs/{run_id}", response_model=RunDetailResponse)
async def get_run(
    run_id: str,
    store: RunStore = Depends(get_run_store),
) -> RunDetailResponse:
    """Get run status and step journal by ID."""
    run = await store.get(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")

    steps = await store.list_steps(run_id)
    return RunDetailResponse(
        **_run_fields(run),
        steps=[
            StepResponse(
                step_name=step.step_name,
                step_order=step.step_order,
                status=StepStatus(step.status),
                attempts=step.attempts,
                error_code=step.error_code,
                error_message=step.error_message,
                started_at=step.started_at,
                ended_at=step.ended_at,
            )
            for step in steps
        ],
    )
