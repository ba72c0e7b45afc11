"""SQLModel database tables.

Tables:
- User: account owner and provider preference
- Account: OAuth account holding the GitHub access token
- APIKey: encrypted model-provider keys
- Repo: repositories known to the service and their watch flag
- Run: one issue-to-PR run (the run record)
- RunStep: step journal, one committed outcome per (run, step)
"""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def timestamp_column(nullable: bool = False) -> Column:
    return Column(DateTime(timezone=True), nullable=nullable)


def new_id() -> str:
    return str(uuid4())


# =============================================================================
# Users and credentials
# =============================================================================

class User(SQLModel, table=True):
    """Service user."""

    __tablename__ = "users"

    id: str = Field(default_factory=new_id, primary_key=True)
    github_username: str | None = Field(default=None, index=True)
    email: str | None = Field(default=None)
    preferred_provider: str | None = Field(default=None, description="Provider tag")
    created_at: datetime = Field(default_factory=utcnow, sa_column=timestamp_column())


class Account(SQLModel, table=True):
    """OAuth account linked to a user. Only ``github`` is read by the engine."""

    __tablename__ = "accounts"
    __table_args__ = (
        Index("ix_accounts_user_provider", "user_id", "provider"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    provider: str = Field(default="github")
    provider_account_id: str | None = Field(default=None)
    access_token: str | None = Field(default=None, sa_column=Column(Text))


class APIKey(SQLModel, table=True):
    """AES-256-GCM encrypted provider key (hex fields)."""

    __tablename__ = "api_keys"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_api_keys_user_provider"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    provider: str = Field(index=True)
    encrypted_key: str = Field(sa_column=Column(Text, nullable=False))
    iv: str
    auth_tag: str
    is_valid: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow, sa_column=timestamp_column())


class Repo(SQLModel, table=True):
    """Repository synced from GitHub."""

    __tablename__ = "repos"

    id: str = Field(default_factory=new_id, primary_key=True)
    github_id: int = Field(unique=True, index=True, description="GitHub repository ID")
    user_id: str = Field(foreign_key="users.id", index=True)
    name: str
    full_name: str = Field(description="owner/repo")
    is_watched: bool = Field(default=False)
    webhook_id: str | None = Field(default=None)


# =============================================================================
# Run Model
# =============================================================================

class Run(SQLModel, table=True):
    """Lifecycle record of one issue-to-PR run."""

    __tablename__ = "runs"
    __table_args__ = (
        Index("ix_runs_user_created", "user_id", "created_at"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    repo_id: str = Field(foreign_key="repos.id", index=True)

    # Work item
    repo_full_name: str
    issue_number: int
    issue_title: str
    issue_body: str = Field(default="", sa_column=Column(Text, nullable=False, default=""))
    api_key_id: str = Field(description="Chosen API key record")

    # Status (RunStatus values)
    status: str = Field(default="pending", index=True)
    pr_number: int | None = Field(default=None)
    pr_url: str | None = Field(default=None)
    error_message: str | None = Field(default=None, sa_column=Column(Text))

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow, sa_column=timestamp_column())
    updated_at: datetime = Field(default_factory=utcnow, sa_column=timestamp_column())


# =============================================================================
# RunStep Model
# =============================================================================

class RunStep(SQLModel, table=True):
    """Step journal entry: the committed outcome of one step of one run."""

    __tablename__ = "run_steps"
    __table_args__ = (
        UniqueConstraint("run_id", "step_name", name="uq_run_steps_run_step"),
    )

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(foreign_key="runs.id", index=True)

    step_name: str = Field(index=True)  # StepName values
    step_order: int = Field(default=0, description="Position in the workflow")
    status: str = Field(default="completed")  # StepStatus values

    # Output payload; sealed payloads are encrypted with the process key
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    sealed: bool = Field(default=False)

    attempts: int = Field(default=1)
    error_code: str | None = Field(default=None)
    error_message: str | None = Field(default=None, sa_column=Column(Text))

    started_at: datetime | None = Field(default=None, sa_column=timestamp_column(nullable=True))
    ended_at: datetime | None = Field(default=None, sa_column=timestamp_column(nullable=True))
