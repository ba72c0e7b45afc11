"""Pydantic schemas for the pipeline's I/O contracts.

These schemas define the contracts between:
- the webhook intake and the workflow engine
- workflow steps (each step output is checkpointed as JSON)
- model providers and the patch validator
- API endpoints and dashboard clients
"""

from __future__ import annotations

import math
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Enums
# =============================================================================

class RunStatus(str, Enum):
    """Lifecycle of a run record."""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.FAILED)


class StepName(str, Enum):
    """Names of workflow steps, in execution order."""
    UPDATE_STATUS_PROCESSING = "update-status-processing"
    GET_CREDENTIALS = "get-credentials"
    FETCH_CONTEXT = "fetch-context"
    QUERY_AI = "query-ai"
    VALIDATE_RESPONSE = "validate-response"
    FETCH_FILE = "fetch-file"
    CREATE_PR = "create-pr"
    UPDATE_STATUS_SUCCESS = "update-status-success"


class StepStatus(str, Enum):
    """Outcome recorded in the step journal."""
    COMPLETED = "completed"
    FAILED = "failed"


class Provider(str, Enum):
    """Model providers a user can hold a key for."""
    HUGGINGFACE = "huggingface"
    OPENAI = "openai"
    GOOGLE = "google"
    ANTHROPIC = "anthropic"


# Order used when the user has no preferred provider.
SUPPORTED_PROVIDERS: tuple[str, ...] = tuple(p.value for p in Provider)


# =============================================================================
# Work item
# =============================================================================

class WorkItem(BaseModel):
    """One admitted unit of work. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    run_id: str
    user_id: str
    repo_id: str
    issue_number: int = Field(..., ge=1)
    issue_title: str
    issue_body: str = ""
    repo_full_name: str = Field(..., description="owner/repo")
    credential_ref: str = Field(..., description="ID of the chosen API key record")


# =============================================================================
# Step outputs
# =============================================================================

class CredentialBundle(BaseModel):
    """Decrypted secrets for one run. Secrets never appear in repr."""
    source_control_token: str = Field(..., repr=False)
    primary_api_key: str = Field(..., repr=False)
    primary_provider: str
    fallback_api_key: str | None = Field(default=None, repr=False)


class RepoContext(BaseModel):
    """Repository and issue context fed to the model."""
    owner: str
    repo: str
    issue_title: str
    issue_body: str = ""
    discussion_text: str = ""
    file_tree_summary: str = ""


class ModelPatch(BaseModel):
    """Structured fix proposal returned by a model provider."""
    file_path: str | None = None
    code_change: str | None = None
    commit_message: str = "fix: automated fix"
    analysis: str = ""
    confidence_score: int = Field(default=0, ge=0, le=100)

    @field_validator("confidence_score", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> int:
        if value is None or isinstance(value, bool):
            return 0
        try:
            score = math.floor(float(value))
        except (TypeError, ValueError, OverflowError):
            return 0
        return max(0, min(100, score))

    @field_validator("commit_message", mode="before")
    @classmethod
    def _default_commit_message(cls, value: Any) -> str:
        if not value or not isinstance(value, str) or not value.strip():
            return "fix: automated fix"
        return value.strip()

    @field_validator("analysis", mode="before")
    @classmethod
    def _coerce_analysis(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value)


class TargetFile(BaseModel):
    """Current state of the file a patch targets."""
    content: str = ""
    sha: str | None = Field(default=None, description="Blob sha; None if the file is new")


class PullRequestRef(BaseModel):
    """Identifiers of the opened pull request."""
    pr_number: int = Field(..., ge=1)
    pr_url: str


# =============================================================================
# API Response Schemas
# =============================================================================

class StepResponse(BaseModel):
    """One journal entry."""
    step_name: str
    step_order: int
    status: StepStatus
    attempts: int
    error_code: str | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None


class RunResponse(BaseModel):
    """API response for run status."""
    run_id: str
    status: RunStatus
    user_id: str
    repo_id: str
    repo_full_name: str
    issue_number: int
    issue_title: str
    pr_number: int | None = None
    pr_url: str | None = None
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime


class RunDetailResponse(RunResponse):
    """Run status plus its step journal."""
    steps: list[StepResponse] = Field(default_factory=list)


class RunListResponse(BaseModel):
    """API response for listing runs."""
    runs: list[RunResponse]
    total: int
    page: int = 1
    per_page: int = 20


class WebhookResponse(BaseModel):
    """Acknowledgement sent back to GitHub."""
    message: str
    run_id: str | None = None
