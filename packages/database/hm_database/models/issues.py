from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from hm_database.models.columns import fk_column, github_id_column, timestamp_column

SYNC_STATUSES = ("unsynced", "syncing", "synced")


class Issue(SQLModel, table=True):
    """
    Issues and pull requests share this table, split by is_pull_request.
    PR-only columns stay NULL for plain issues.
    """

    __tablename__ = "issues"
    __table_args__ = (
        sa.UniqueConstraint("repository_id", "number", name="uq_issues_repository_number"),
        sa.CheckConstraint(
            "sync_status IN ('unsynced', 'syncing', 'synced')",
            name="ck_issues_sync_status",
        ),
        sa.Index("ix_issues_synced_at", "sync_status", "synced_at"),
        sa.Index("ix_issues_head_sha", "repository_id", "head_sha"),
        {"schema": "mirror"},
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column(unique=False))
    repository_id: int = Field(sa_column=fk_column("mirror.repositories.id", index=False))
    number: int
    is_pull_request: bool = Field(default=False)

    title: str
    body: Optional[str] = Field(default=None, sa_column=sa.Column(sa.Text))
    state: str = Field(default="open", index=True)
    state_reason: Optional[str] = Field(default=None)
    locked: bool = Field(default=False)
    html_url: Optional[str] = Field(default=None)
    comment_count: int = Field(default=0)

    author_id: Optional[int] = Field(
        default=None,
        sa_column=fk_column("public.users.id", nullable=True, ondelete="SET NULL"),
    )
    closed_by_id: Optional[int] = Field(
        default=None,
        sa_column=fk_column("public.users.id", nullable=True, ondelete="SET NULL", index=False),
    )
    milestone_id: Optional[int] = Field(
        default=None,
        sa_column=fk_column("mirror.milestones.id", nullable=True, ondelete="SET NULL"),
    )

    # Pull request only
    draft: Optional[bool] = Field(default=None)
    merged: Optional[bool] = Field(default=None)
    merged_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())
    merged_by_id: Optional[int] = Field(
        default=None,
        sa_column=fk_column("public.users.id", nullable=True, ondelete="SET NULL", index=False),
    )
    head_ref: Optional[str] = Field(default=None)
    head_sha: Optional[str] = Field(default=None)
    base_ref: Optional[str] = Field(default=None)
    base_sha: Optional[str] = Field(default=None)
    additions: Optional[int] = Field(default=None)
    deletions: Optional[int] = Field(default=None)
    changed_files: Optional[int] = Field(default=None)

    closed_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())
    remote_created_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())
    # Last-write-wins marker for scalar updates
    remote_updated_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())

    sync_status: str = Field(
        default="unsynced",
        sa_column=sa.Column(sa.String, server_default="unsynced", nullable=False),
    )
    synced_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())
    sync_started_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())


class IssueAssignee(SQLModel, table=True):
    __tablename__ = "issue_assignees"
    __table_args__ = {"schema": "mirror"}

    issue_id: int = Field(sa_column=fk_column("mirror.issues.id", primary_key=True))
    user_id: int = Field(sa_column=fk_column("public.users.id", primary_key=True))


class IssueLabel(SQLModel, table=True):
    __tablename__ = "issue_labels"
    __table_args__ = {"schema": "mirror"}

    issue_id: int = Field(sa_column=fk_column("mirror.issues.id", primary_key=True))
    label_id: int = Field(sa_column=fk_column("mirror.labels.id", primary_key=True))


class IssueRequestedReviewer(SQLModel, table=True):
    __tablename__ = "issue_requested_reviewers"
    __table_args__ = {"schema": "mirror"}

    issue_id: int = Field(sa_column=fk_column("mirror.issues.id", primary_key=True))
    user_id: int = Field(sa_column=fk_column("public.users.id", primary_key=True))


class IssueComment(SQLModel, table=True):
    __tablename__ = "issue_comments"
    __table_args__ = {"schema": "mirror"}

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column())
    issue_id: int = Field(sa_column=fk_column("mirror.issues.id"))
    author_id: Optional[int] = Field(
        default=None,
        sa_column=fk_column("public.users.id", nullable=True, ondelete="SET NULL"),
    )
    body: str = Field(default="", sa_column=sa.Column(sa.Text, nullable=False, server_default=""))
    html_url: Optional[str] = Field(default=None)
    remote_created_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())
    remote_updated_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())


class IssueReview(SQLModel, table=True):
    __tablename__ = "issue_reviews"
    __table_args__ = (
        sa.CheckConstraint(
            "state IN ('APPROVED', 'CHANGES_REQUESTED', 'COMMENTED', 'DISMISSED', 'PENDING')",
            name="ck_issue_reviews_state",
        ),
        {"schema": "mirror"},
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column())
    issue_id: int = Field(sa_column=fk_column("mirror.issues.id"))
    author_id: Optional[int] = Field(
        default=None,
        sa_column=fk_column("public.users.id", nullable=True, ondelete="SET NULL"),
    )
    body: Optional[str] = Field(default=None, sa_column=sa.Column(sa.Text))
    state: str
    commit_id: Optional[str] = Field(default=None)
    html_url: Optional[str] = Field(default=None)
    submitted_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())


class IssueReviewComment(SQLModel, table=True):
    __tablename__ = "issue_review_comments"
    __table_args__ = (
        sa.Index("ix_issue_review_comments_review_github_id", "review_github_id"),
        {"schema": "mirror"},
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column())
    issue_id: int = Field(sa_column=fk_column("mirror.issues.id"))
    # Resolved at write time, back-filled when the parent review arrives later
    review_id: Optional[int] = Field(
        default=None,
        sa_column=fk_column("mirror.issue_reviews.id", nullable=True, ondelete="SET NULL"),
    )
    review_github_id: Optional[int] = Field(default=None, sa_column=sa.Column(sa.BigInteger))
    author_id: Optional[int] = Field(
        default=None,
        sa_column=fk_column("public.users.id", nullable=True, ondelete="SET NULL"),
    )
    body: str = Field(default="", sa_column=sa.Column(sa.Text, nullable=False, server_default=""))
    path: Optional[str] = Field(default=None)
    line: Optional[int] = Field(default=None)
    diff_hunk: Optional[str] = Field(default=None, sa_column=sa.Column(sa.Text))
    html_url: Optional[str] = Field(default=None)
    remote_created_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())
    remote_updated_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())


class LinkedPR(SQLModel, table=True):
    """PR closes issue; rebuilt per PR from closing references"""

    __tablename__ = "linked_prs"
    __table_args__ = {"schema": "mirror"}

    issue_id: int = Field(sa_column=fk_column("mirror.issues.id", primary_key=True))
    pr_id: int = Field(sa_column=fk_column("mirror.issues.id", primary_key=True))
