from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from hm_database.models.columns import fk_column, github_id_column, timestamp_column


class CheckRun(SQLModel, table=True):
    """One row per run; the newest row per (repository, sha, name) is authoritative"""

    __tablename__ = "check_runs"
    __table_args__ = (
        sa.Index("ix_check_runs_commit", "repository_id", "head_sha", "created_at"),
        {"schema": "mirror"},
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column())
    repository_id: int = Field(sa_column=fk_column("mirror.repositories.id", index=False))
    head_sha: str
    name: str
    status: str
    conclusion: Optional[str] = Field(default=None)
    html_url: Optional[str] = Field(default=None)
    details_url: Optional[str] = Field(default=None)
    app_slug: Optional[str] = Field(default=None)
    app_name: Optional[str] = Field(default=None)
    started_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())
    completed_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())
    created_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column(server_now=True))


class CommitStatus(SQLModel, table=True):
    __tablename__ = "commit_statuses"
    __table_args__ = (
        sa.Index("ix_commit_statuses_commit", "repository_id", "sha", "created_at"),
        {"schema": "mirror"},
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column())
    repository_id: int = Field(sa_column=fk_column("mirror.repositories.id", index=False))
    sha: str
    context: str
    state: str
    description: Optional[str] = Field(default=None)
    target_url: Optional[str] = Field(default=None)
    avatar_url: Optional[str] = Field(default=None)
    created_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column(server_now=True))


class WorkflowRun(SQLModel, table=True):
    __tablename__ = "workflow_runs"
    __table_args__ = {"schema": "mirror"}

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column())
    repository_id: int = Field(sa_column=fk_column("mirror.repositories.id"))
    issue_id: Optional[int] = Field(
        default=None,
        sa_column=fk_column("mirror.issues.id", nullable=True, ondelete="SET NULL"),
    )
    workflow_id: Optional[int] = Field(default=None, sa_column=sa.Column(sa.BigInteger))
    name: Optional[str] = Field(default=None)
    display_title: Optional[str] = Field(default=None)
    event: Optional[str] = Field(default=None)
    status: Optional[str] = Field(default=None)
    conclusion: Optional[str] = Field(default=None)
    head_branch: Optional[str] = Field(default=None)
    head_sha: Optional[str] = Field(default=None)
    run_number: Optional[int] = Field(default=None)
    run_attempt: Optional[int] = Field(default=None)
    html_url: Optional[str] = Field(default=None)
    actor_id: Optional[int] = Field(
        default=None,
        sa_column=fk_column("public.users.id", nullable=True, ondelete="SET NULL", index=False),
    )
    started_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())
    completed_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())
