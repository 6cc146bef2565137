from datetime import UTC, datetime
from typing import Optional

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from hm_database.models.columns import fk_column, timestamp_column


class RepositorySubscription(SQLModel, table=True):
    __tablename__ = "repository_subscriptions"
    __table_args__ = (
        sa.UniqueConstraint("user_id", "repository_id", name="uq_repository_subscriptions_user_repo"),
        {"schema": "public"},
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(sa_column=fk_column("public.users.id"))
    repository_id: int = Field(sa_column=fk_column("mirror.repositories.id"))

    issues: bool = Field(default=True)
    pull_requests: bool = Field(default=True)
    releases: bool = Field(default=True)
    ci: bool = Field(default=True)
    mentions: bool = Field(default=True)
    # Only effective together with an IssueSubscription for the issue
    activity: bool = Field(default=True)

    created_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column(server_now=True))


class IssueSubscription(SQLModel, table=True):
    __tablename__ = "issue_subscriptions"
    __table_args__ = {"schema": "public"}

    user_id: int = Field(sa_column=fk_column("public.users.id", primary_key=True))
    issue_id: int = Field(sa_column=fk_column("mirror.issues.id", primary_key=True))
    created_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column(server_now=True))


class Notification(SQLModel, table=True):
    """
    (user_id, issue_id) is soft-unique: a new event for an already notified pair
    refreshes the row instead of adding one.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        sa.Index(
            "uq_notifications_user_issue",
            "user_id",
            "issue_id",
            unique=True,
            postgresql_where=sa.text("issue_id IS NOT NULL"),
        ),
        sa.Index("ix_notifications_user_read", "user_id", "read"),
        {"schema": "public"},
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(sa_column=fk_column("public.users.id", index=False))
    repository_id: Optional[int] = Field(
        default=None,
        sa_column=fk_column("mirror.repositories.id", nullable=True),
    )
    issue_id: Optional[int] = Field(
        default=None,
        sa_column=fk_column("mirror.issues.id", nullable=True, index=False),
    )
    release_id: Optional[int] = Field(
        default=None,
        sa_column=fk_column("mirror.releases.id", nullable=True, index=False),
    )
    workflow_run_id: Optional[int] = Field(
        default=None,
        sa_column=fk_column("mirror.workflow_runs.id", nullable=True, index=False),
    )
    actor_id: Optional[int] = Field(
        default=None,
        sa_column=fk_column("public.users.id", nullable=True, ondelete="SET NULL", index=False),
    )
    type: str
    action: str
    body: Optional[str] = Field(default=None)
    read: bool = Field(default=False)
    read_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=sa.Column(
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )


class WebhookDelivery(SQLModel, table=True):
    __tablename__ = "webhook_deliveries"
    __table_args__ = {"schema": "public"}

    id: Optional[int] = Field(default=None, primary_key=True)
    delivery_id: str = Field(unique=True, index=True)
    topic: str
    action: Optional[str] = Field(default=None)
    status: str = Field(default="processing")
    received_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column(server_now=True))
    processed_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())
