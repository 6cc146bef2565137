"""initial mirror schema

Revision ID: 0001_initial_mirror_schema
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
import sqlmodel

# revision identifiers, used by Alembic.
revision: str = "0001_initial_mirror_schema"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

AutoString = sqlmodel.sql.sqltypes.AutoString


def _timestamp(name: str, *, server_now: bool = False, nullable: bool = True) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.func.now() if server_now else None,
        nullable=nullable,
    )


def _fk(name: str, target: str, *, nullable: bool = False, ondelete: str = "CASCADE") -> sa.Column:
    return sa.Column(name, sa.Integer(), sa.ForeignKey(target, ondelete=ondelete), nullable=nullable)


def upgrade() -> None:
    """Create the public and mirror schemas with every table and index."""
    op.execute("CREATE SCHEMA IF NOT EXISTS mirror")

    # Identity
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("github_id", sa.BigInteger(), nullable=False),
        sa.Column("login", AutoString(), nullable=False),
        sa.Column("name", AutoString(), nullable=True),
        sa.Column("email", AutoString(), nullable=True),
        sa.Column("avatar_url", AutoString(), nullable=True),
        sa.Column("registered", sa.Boolean(), server_default=sa.false(), nullable=False),
        _timestamp("created_at", server_now=True, nullable=False),
        _timestamp("updated_at", server_now=True, nullable=False),
        schema="public",
    )
    op.create_index("ix_public_users_github_id", "users", ["github_id"], unique=True, schema="public")
    op.create_index("ix_public_users_login", "users", ["login"], schema="public")

    # Installations and repositories
    op.create_table(
        "installations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("github_id", sa.BigInteger(), nullable=False),
        sa.Column("account_login", AutoString(), nullable=False),
        sa.Column("account_type", AutoString(), nullable=False),
        sa.Column("suspended", sa.Boolean(), nullable=False),
        _timestamp("created_at", server_now=True),
        schema="mirror",
    )
    op.create_index(
        "ix_mirror_installations_github_id", "installations", ["github_id"], unique=True, schema="mirror"
    )

    op.create_table(
        "repositories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("github_id", sa.BigInteger(), nullable=False),
        _fk("installation_id", "mirror.installations.id", nullable=True, ondelete="SET NULL"),
        sa.Column("name", AutoString(), nullable=False),
        sa.Column("owner", AutoString(), nullable=False),
        sa.Column("full_name", AutoString(), nullable=False),
        sa.Column("description", AutoString(), nullable=True),
        sa.Column("html_url", AutoString(), nullable=True),
        sa.Column("private", sa.Boolean(), nullable=False),
        sa.Column("archived", sa.Boolean(), nullable=False),
        sa.Column("sync_enabled", sa.Boolean(), nullable=False),
        _timestamp("last_synced_at"),
        _timestamp("created_at", server_now=True),
        schema="mirror",
    )
    op.create_index(
        "ix_mirror_repositories_github_id", "repositories", ["github_id"], unique=True, schema="mirror"
    )
    op.create_index(
        "ix_mirror_repositories_installation_id", "repositories", ["installation_id"], schema="mirror"
    )
    op.create_index("ix_mirror_repositories_owner", "repositories", ["owner"], schema="mirror")
    op.create_index(
        "ix_mirror_repositories_full_name", "repositories", ["full_name"], unique=True, schema="mirror"
    )
    # Case-insensitive lookup by owner/name
    op.execute(
        "CREATE INDEX ix_mirror_repositories_full_name_lower "
        "ON mirror.repositories (LOWER(full_name))"
    )

    op.create_table(
        "repository_collaborators",
        sa.Column(
            "repository_id",
            sa.Integer(),
            sa.ForeignKey("mirror.repositories.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("public.users.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("permission", AutoString(), nullable=False),
        schema="mirror",
    )

    op.create_table(
        "labels",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("github_id", sa.BigInteger(), nullable=False),
        _fk("repository_id", "mirror.repositories.id"),
        sa.Column("name", AutoString(), nullable=False),
        sa.Column("color", AutoString(), nullable=True),
        sa.Column("description", AutoString(), nullable=True),
        schema="mirror",
    )
    op.create_index("ix_mirror_labels_github_id", "labels", ["github_id"], unique=True, schema="mirror")
    op.create_index("ix_mirror_labels_repository_id", "labels", ["repository_id"], schema="mirror")

    op.create_table(
        "milestones",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("github_id", sa.BigInteger(), nullable=False),
        _fk("repository_id", "mirror.repositories.id"),
        sa.Column("number", sa.Integer(), nullable=False),
        sa.Column("title", AutoString(), nullable=False),
        sa.Column("description", AutoString(), nullable=True),
        sa.Column("state", AutoString(), nullable=False),
        _timestamp("due_on"),
        schema="mirror",
    )
    op.create_index(
        "ix_mirror_milestones_github_id", "milestones", ["github_id"], unique=True, schema="mirror"
    )
    op.create_index("ix_mirror_milestones_repository_id", "milestones", ["repository_id"], schema="mirror")

    op.create_table(
        "releases",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("github_id", sa.BigInteger(), nullable=False),
        _fk("repository_id", "mirror.repositories.id"),
        _fk("author_id", "public.users.id", nullable=True, ondelete="SET NULL"),
        sa.Column("tag_name", AutoString(), nullable=False),
        sa.Column("name", AutoString(), nullable=True),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("draft", sa.Boolean(), nullable=False),
        sa.Column("prerelease", sa.Boolean(), nullable=False),
        sa.Column("html_url", AutoString(), nullable=True),
        _timestamp("published_at"),
        schema="mirror",
    )
    op.create_index("ix_mirror_releases_github_id", "releases", ["github_id"], unique=True, schema="mirror")
    op.create_index("ix_mirror_releases_repository_id", "releases", ["repository_id"], schema="mirror")
    op.create_index("ix_mirror_releases_author_id", "releases", ["author_id"], schema="mirror")

    # Issues and pull requests
    op.create_table(
        "issues",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("github_id", sa.BigInteger(), nullable=False),
        _fk("repository_id", "mirror.repositories.id"),
        sa.Column("number", sa.Integer(), nullable=False),
        sa.Column("is_pull_request", sa.Boolean(), nullable=False),
        sa.Column("title", AutoString(), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("state", AutoString(), nullable=False),
        sa.Column("state_reason", AutoString(), nullable=True),
        sa.Column("locked", sa.Boolean(), nullable=False),
        sa.Column("html_url", AutoString(), nullable=True),
        sa.Column("comment_count", sa.Integer(), nullable=False),
        _fk("author_id", "public.users.id", nullable=True, ondelete="SET NULL"),
        _fk("closed_by_id", "public.users.id", nullable=True, ondelete="SET NULL"),
        _fk("milestone_id", "mirror.milestones.id", nullable=True, ondelete="SET NULL"),
        sa.Column("draft", sa.Boolean(), nullable=True),
        sa.Column("merged", sa.Boolean(), nullable=True),
        _timestamp("merged_at"),
        _fk("merged_by_id", "public.users.id", nullable=True, ondelete="SET NULL"),
        sa.Column("head_ref", AutoString(), nullable=True),
        sa.Column("head_sha", AutoString(), nullable=True),
        sa.Column("base_ref", AutoString(), nullable=True),
        sa.Column("base_sha", AutoString(), nullable=True),
        sa.Column("additions", sa.Integer(), nullable=True),
        sa.Column("deletions", sa.Integer(), nullable=True),
        sa.Column("changed_files", sa.Integer(), nullable=True),
        _timestamp("closed_at"),
        _timestamp("remote_created_at"),
        _timestamp("remote_updated_at"),
        sa.Column("sync_status", sa.String(), server_default="unsynced", nullable=False),
        _timestamp("synced_at"),
        _timestamp("sync_started_at"),
        sa.UniqueConstraint("repository_id", "number", name="uq_issues_repository_number"),
        sa.CheckConstraint(
            "sync_status IN ('unsynced', 'syncing', 'synced')",
            name="ck_issues_sync_status",
        ),
        schema="mirror",
    )
    op.create_index("ix_mirror_issues_github_id", "issues", ["github_id"], schema="mirror")
    op.create_index("ix_mirror_issues_state", "issues", ["state"], schema="mirror")
    op.create_index("ix_mirror_issues_author_id", "issues", ["author_id"], schema="mirror")
    op.create_index("ix_mirror_issues_milestone_id", "issues", ["milestone_id"], schema="mirror")
    op.create_index("ix_issues_synced_at", "issues", ["sync_status", "synced_at"], schema="mirror")
    op.create_index("ix_issues_head_sha", "issues", ["repository_id", "head_sha"], schema="mirror")

    for table, column, target in (
        ("issue_assignees", "user_id", "public.users.id"),
        ("issue_labels", "label_id", "mirror.labels.id"),
        ("issue_requested_reviewers", "user_id", "public.users.id"),
    ):
        op.create_table(
            table,
            sa.Column(
                "issue_id",
                sa.Integer(),
                sa.ForeignKey("mirror.issues.id", ondelete="CASCADE"),
                primary_key=True,
            ),
            sa.Column(column, sa.Integer(), sa.ForeignKey(target, ondelete="CASCADE"), primary_key=True),
            schema="mirror",
        )

    op.create_table(
        "issue_comments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("github_id", sa.BigInteger(), nullable=False),
        _fk("issue_id", "mirror.issues.id"),
        _fk("author_id", "public.users.id", nullable=True, ondelete="SET NULL"),
        sa.Column("body", sa.Text(), server_default="", nullable=False),
        sa.Column("html_url", AutoString(), nullable=True),
        _timestamp("remote_created_at"),
        _timestamp("remote_updated_at"),
        schema="mirror",
    )
    op.create_index(
        "ix_mirror_issue_comments_github_id", "issue_comments", ["github_id"], unique=True, schema="mirror"
    )
    op.create_index("ix_mirror_issue_comments_issue_id", "issue_comments", ["issue_id"], schema="mirror")
    op.create_index("ix_mirror_issue_comments_author_id", "issue_comments", ["author_id"], schema="mirror")

    op.create_table(
        "issue_reviews",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("github_id", sa.BigInteger(), nullable=False),
        _fk("issue_id", "mirror.issues.id"),
        _fk("author_id", "public.users.id", nullable=True, ondelete="SET NULL"),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("state", AutoString(), nullable=False),
        sa.Column("commit_id", AutoString(), nullable=True),
        sa.Column("html_url", AutoString(), nullable=True),
        _timestamp("submitted_at"),
        sa.CheckConstraint(
            "state IN ('APPROVED', 'CHANGES_REQUESTED', 'COMMENTED', 'DISMISSED', 'PENDING')",
            name="ck_issue_reviews_state",
        ),
        schema="mirror",
    )
    op.create_index(
        "ix_mirror_issue_reviews_github_id", "issue_reviews", ["github_id"], unique=True, schema="mirror"
    )
    op.create_index("ix_mirror_issue_reviews_issue_id", "issue_reviews", ["issue_id"], schema="mirror")
    op.create_index("ix_mirror_issue_reviews_author_id", "issue_reviews", ["author_id"], schema="mirror")

    op.create_table(
        "issue_review_comments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("github_id", sa.BigInteger(), nullable=False),
        _fk("issue_id", "mirror.issues.id"),
        _fk("review_id", "mirror.issue_reviews.id", nullable=True, ondelete="SET NULL"),
        sa.Column("review_github_id", sa.BigInteger(), nullable=True),
        _fk("author_id", "public.users.id", nullable=True, ondelete="SET NULL"),
        sa.Column("body", sa.Text(), server_default="", nullable=False),
        sa.Column("path", AutoString(), nullable=True),
        sa.Column("line", sa.Integer(), nullable=True),
        sa.Column("diff_hunk", sa.Text(), nullable=True),
        sa.Column("html_url", AutoString(), nullable=True),
        _timestamp("remote_created_at"),
        _timestamp("remote_updated_at"),
        schema="mirror",
    )
    op.create_index(
        "ix_mirror_issue_review_comments_github_id",
        "issue_review_comments",
        ["github_id"],
        unique=True,
        schema="mirror",
    )
    op.create_index(
        "ix_mirror_issue_review_comments_issue_id", "issue_review_comments", ["issue_id"], schema="mirror"
    )
    op.create_index(
        "ix_mirror_issue_review_comments_review_id", "issue_review_comments", ["review_id"], schema="mirror"
    )
    op.create_index(
        "ix_mirror_issue_review_comments_author_id", "issue_review_comments", ["author_id"], schema="mirror"
    )
    op.create_index(
        "ix_issue_review_comments_review_github_id",
        "issue_review_comments",
        ["review_github_id"],
        schema="mirror",
    )

    op.create_table(
        "linked_prs",
        sa.Column(
            "issue_id",
            sa.Integer(),
            sa.ForeignKey("mirror.issues.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "pr_id",
            sa.Integer(),
            sa.ForeignKey("mirror.issues.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        schema="mirror",
    )
    op.create_index("ix_mirror_linked_prs_pr_id", "linked_prs", ["pr_id"], schema="mirror")

    # CI
    op.create_table(
        "check_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("github_id", sa.BigInteger(), nullable=False),
        _fk("repository_id", "mirror.repositories.id"),
        sa.Column("head_sha", AutoString(), nullable=False),
        sa.Column("name", AutoString(), nullable=False),
        sa.Column("status", AutoString(), nullable=False),
        sa.Column("conclusion", AutoString(), nullable=True),
        sa.Column("html_url", AutoString(), nullable=True),
        sa.Column("details_url", AutoString(), nullable=True),
        sa.Column("app_slug", AutoString(), nullable=True),
        sa.Column("app_name", AutoString(), nullable=True),
        _timestamp("started_at"),
        _timestamp("completed_at"),
        _timestamp("created_at", server_now=True),
        schema="mirror",
    )
    op.create_index(
        "ix_mirror_check_runs_github_id", "check_runs", ["github_id"], unique=True, schema="mirror"
    )
    op.create_index(
        "ix_check_runs_commit", "check_runs", ["repository_id", "head_sha", "created_at"], schema="mirror"
    )

    op.create_table(
        "commit_statuses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("github_id", sa.BigInteger(), nullable=False),
        _fk("repository_id", "mirror.repositories.id"),
        sa.Column("sha", AutoString(), nullable=False),
        sa.Column("context", AutoString(), nullable=False),
        sa.Column("state", AutoString(), nullable=False),
        sa.Column("description", AutoString(), nullable=True),
        sa.Column("target_url", AutoString(), nullable=True),
        sa.Column("avatar_url", AutoString(), nullable=True),
        _timestamp("created_at", server_now=True),
        schema="mirror",
    )
    op.create_index(
        "ix_mirror_commit_statuses_github_id", "commit_statuses", ["github_id"], unique=True, schema="mirror"
    )
    op.create_index(
        "ix_commit_statuses_commit", "commit_statuses", ["repository_id", "sha", "created_at"], schema="mirror"
    )

    op.create_table(
        "workflow_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("github_id", sa.BigInteger(), nullable=False),
        _fk("repository_id", "mirror.repositories.id"),
        _fk("issue_id", "mirror.issues.id", nullable=True, ondelete="SET NULL"),
        sa.Column("workflow_id", sa.BigInteger(), nullable=True),
        sa.Column("name", AutoString(), nullable=True),
        sa.Column("display_title", AutoString(), nullable=True),
        sa.Column("event", AutoString(), nullable=True),
        sa.Column("status", AutoString(), nullable=True),
        sa.Column("conclusion", AutoString(), nullable=True),
        sa.Column("head_branch", AutoString(), nullable=True),
        sa.Column("head_sha", AutoString(), nullable=True),
        sa.Column("run_number", sa.Integer(), nullable=True),
        sa.Column("run_attempt", sa.Integer(), nullable=True),
        sa.Column("html_url", AutoString(), nullable=True),
        _fk("actor_id", "public.users.id", nullable=True, ondelete="SET NULL"),
        _timestamp("started_at"),
        _timestamp("completed_at"),
        schema="mirror",
    )
    op.create_index(
        "ix_mirror_workflow_runs_github_id", "workflow_runs", ["github_id"], unique=True, schema="mirror"
    )
    op.create_index(
        "ix_mirror_workflow_runs_repository_id", "workflow_runs", ["repository_id"], schema="mirror"
    )
    op.create_index("ix_mirror_workflow_runs_issue_id", "workflow_runs", ["issue_id"], schema="mirror")

    # Subscriptions and notifications
    op.create_table(
        "repository_subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        _fk("user_id", "public.users.id"),
        _fk("repository_id", "mirror.repositories.id"),
        sa.Column("issues", sa.Boolean(), nullable=False),
        sa.Column("pull_requests", sa.Boolean(), nullable=False),
        sa.Column("releases", sa.Boolean(), nullable=False),
        sa.Column("ci", sa.Boolean(), nullable=False),
        sa.Column("mentions", sa.Boolean(), nullable=False),
        sa.Column("activity", sa.Boolean(), nullable=False),
        _timestamp("created_at", server_now=True),
        sa.UniqueConstraint("user_id", "repository_id", name="uq_repository_subscriptions_user_repo"),
        schema="public",
    )
    op.create_index(
        "ix_public_repository_subscriptions_user_id", "repository_subscriptions", ["user_id"], schema="public"
    )
    op.create_index(
        "ix_public_repository_subscriptions_repository_id",
        "repository_subscriptions",
        ["repository_id"],
        schema="public",
    )

    op.create_table(
        "issue_subscriptions",
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("public.users.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "issue_id",
            sa.Integer(),
            sa.ForeignKey("mirror.issues.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        _timestamp("created_at", server_now=True),
        schema="public",
    )
    op.create_index(
        "ix_public_issue_subscriptions_issue_id", "issue_subscriptions", ["issue_id"], schema="public"
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        _fk("user_id", "public.users.id"),
        _fk("repository_id", "mirror.repositories.id", nullable=True),
        _fk("issue_id", "mirror.issues.id", nullable=True),
        _fk("release_id", "mirror.releases.id", nullable=True),
        _fk("workflow_run_id", "mirror.workflow_runs.id", nullable=True),
        _fk("actor_id", "public.users.id", nullable=True, ondelete="SET NULL"),
        sa.Column("type", AutoString(), nullable=False),
        sa.Column("action", AutoString(), nullable=False),
        sa.Column("body", AutoString(), nullable=True),
        sa.Column("read", sa.Boolean(), nullable=False),
        _timestamp("read_at"),
        _timestamp("created_at", server_now=True, nullable=False),
        schema="public",
    )
    op.create_index(
        "ix_public_notifications_repository_id", "notifications", ["repository_id"], schema="public"
    )
    # One live notification per (user, issue); new events refresh the row
    op.create_index(
        "uq_notifications_user_issue",
        "notifications",
        ["user_id", "issue_id"],
        unique=True,
        schema="public",
        postgresql_where=sa.text("issue_id IS NOT NULL"),
    )
    op.create_index("ix_notifications_user_read", "notifications", ["user_id", "read"], schema="public")

    op.create_table(
        "webhook_deliveries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("delivery_id", AutoString(), nullable=False),
        sa.Column("topic", AutoString(), nullable=False),
        sa.Column("action", AutoString(), nullable=True),
        sa.Column("status", AutoString(), nullable=False),
        _timestamp("received_at", server_now=True),
        _timestamp("processed_at"),
        schema="public",
    )
    op.create_index(
        "ix_public_webhook_deliveries_delivery_id",
        "webhook_deliveries",
        ["delivery_id"],
        unique=True,
        schema="public",
    )


def downgrade() -> None:
    """Drop every table in reverse dependency order."""
    for table in ("webhook_deliveries", "notifications", "issue_subscriptions", "repository_subscriptions"):
        op.drop_table(table, schema="public")

    for table in (
        "workflow_runs",
        "commit_statuses",
        "check_runs",
        "linked_prs",
        "issue_review_comments",
        "issue_reviews",
        "issue_comments",
        "issue_requested_reviewers",
        "issue_labels",
        "issue_assignees",
        "issues",
        "releases",
        "milestones",
        "labels",
        "repository_collaborators",
        "repositories",
        "installations",
    ):
        op.drop_table(table, schema="mirror")

    op.drop_table("users", schema="public")
    op.execute("DROP SCHEMA IF EXISTS mirror")
