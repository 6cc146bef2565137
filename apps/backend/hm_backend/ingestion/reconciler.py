"""
Entity reconciler: converges one mirrored issue or pull request, and its
many-valued relations, onto the latest remote snapshot.

Scalars are written with a single upsert keyed on (repository_id, number) and
guarded by remote_updated_at, so a late older event changes nothing. Each
relation is diffed independently against the desired set; a second pass with
the same input performs no writes.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel.ext.asyncio.session import AsyncSession

from .payloads import GitHubLabel, GitHubMilestone, GitHubUser
from .snapshots import IssueSnapshot, PullRequestSnapshot
from .users import ensure_user, ensure_users, subscribe_to_issue

logger = logging.getLogger(__name__)

SYNC_UNSYNCED = "unsynced"
SYNC_SYNCING = "syncing"
SYNC_SYNCED = "synced"


@dataclass(frozen=True)
class RelationSpec:
    name: str
    table: str
    member_column: str
    subscribes_members: bool = False


ASSIGNEES = RelationSpec("assignees", "mirror.issue_assignees", "user_id", subscribes_members=True)
LABELS = RelationSpec("labels", "mirror.issue_labels", "label_id")
REQUESTED_REVIEWERS = RelationSpec(
    "requested_reviewers", "mirror.issue_requested_reviewers", "user_id", subscribes_members=True
)


@dataclass(frozen=True)
class RelationDelta:
    to_add: frozenset[int]
    to_remove: frozenset[int]

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove


def compute_delta(current: Iterable[int], desired: Iterable[int]) -> RelationDelta:
    current_set = frozenset(current)
    desired_set = frozenset(desired)
    return RelationDelta(
        to_add=desired_set - current_set,
        to_remove=current_set - desired_set,
    )


@dataclass
class IssueRef:
    id: int
    repository_id: int
    number: int
    is_pull_request: bool
    sync_status: str
    synced_at: datetime | None = None
    head_sha: str | None = None
    author_id: int | None = None
    comment_count: int = 0

    @property
    def is_synced(self) -> bool:
        return self.sync_status == SYNC_SYNCED


@dataclass
class IssueWriteResult:
    issue_id: int
    created: bool
    # False when a newer remote_updated_at was already stored
    applied: bool


@dataclass
class IssueParticipants:
    issue_id: int
    author_id: int | None
    assignee_ids: list[int]
    requested_reviewer_ids: list[int]


UPSERT_ISSUE_SQL = text("""
    INSERT INTO mirror.issues
        (github_id, repository_id, number, is_pull_request, title, body, state,
         state_reason, locked, html_url, comment_count, author_id, closed_by_id,
         milestone_id, draft, merged, merged_at, merged_by_id, head_ref, head_sha,
         base_ref, base_sha, additions, deletions, changed_files, closed_at,
         remote_created_at, remote_updated_at, sync_status, synced_at)
    VALUES
        (:github_id, :repository_id, :number, :is_pull_request, :title, :body, :state,
         :state_reason, :locked, :html_url, :comment_count, :author_id, :closed_by_id,
         :milestone_id, :draft, :merged, :merged_at, :merged_by_id, :head_ref, :head_sha,
         :base_ref, :base_sha, :additions, :deletions, :changed_files, :closed_at,
         :remote_created_at, :remote_updated_at, :sync_status, :synced_at)
    ON CONFLICT (repository_id, number) DO UPDATE SET
        github_id = EXCLUDED.github_id,
        is_pull_request = mirror.issues.is_pull_request OR EXCLUDED.is_pull_request,
        title = EXCLUDED.title,
        body = EXCLUDED.body,
        state = EXCLUDED.state,
        state_reason = EXCLUDED.state_reason,
        locked = EXCLUDED.locked,
        html_url = EXCLUDED.html_url,
        comment_count = CASE WHEN :has_comment_count
            THEN EXCLUDED.comment_count ELSE mirror.issues.comment_count END,
        author_id = COALESCE(EXCLUDED.author_id, mirror.issues.author_id),
        closed_by_id = CASE WHEN EXCLUDED.state = 'open'
            THEN NULL ELSE COALESCE(EXCLUDED.closed_by_id, mirror.issues.closed_by_id) END,
        milestone_id = EXCLUDED.milestone_id,
        draft = COALESCE(EXCLUDED.draft, mirror.issues.draft),
        merged = COALESCE(EXCLUDED.merged, mirror.issues.merged),
        merged_at = COALESCE(EXCLUDED.merged_at, mirror.issues.merged_at),
        merged_by_id = COALESCE(EXCLUDED.merged_by_id, mirror.issues.merged_by_id),
        head_ref = COALESCE(EXCLUDED.head_ref, mirror.issues.head_ref),
        head_sha = COALESCE(EXCLUDED.head_sha, mirror.issues.head_sha),
        base_ref = COALESCE(EXCLUDED.base_ref, mirror.issues.base_ref),
        base_sha = COALESCE(EXCLUDED.base_sha, mirror.issues.base_sha),
        additions = COALESCE(EXCLUDED.additions, mirror.issues.additions),
        deletions = COALESCE(EXCLUDED.deletions, mirror.issues.deletions),
        changed_files = COALESCE(EXCLUDED.changed_files, mirror.issues.changed_files),
        closed_at = EXCLUDED.closed_at,
        remote_created_at = COALESCE(mirror.issues.remote_created_at, EXCLUDED.remote_created_at),
        remote_updated_at = COALESCE(EXCLUDED.remote_updated_at, mirror.issues.remote_updated_at)
    WHERE mirror.issues.remote_updated_at IS NULL
        OR EXCLUDED.remote_updated_at IS NULL
        OR mirror.issues.remote_updated_at <= EXCLUDED.remote_updated_at
    RETURNING id, (xmax = 0) AS created
""")

SELECT_ISSUE_REF_SQL = text("""
    SELECT id, repository_id, number, is_pull_request, sync_status, synced_at,
           head_sha, author_id, comment_count
    FROM mirror.issues
    WHERE repository_id = :repository_id AND number = :number
""")

UPSERT_LABEL_SQL = text("""
    INSERT INTO mirror.labels (github_id, repository_id, name, color, description)
    VALUES (:github_id, :repository_id, :name, :color, :description)
    ON CONFLICT (github_id) DO UPDATE SET
        name = EXCLUDED.name,
        color = COALESCE(EXCLUDED.color, mirror.labels.color),
        description = COALESCE(EXCLUDED.description, mirror.labels.description)
    RETURNING id
""")

UPSERT_MILESTONE_SQL = text("""
    INSERT INTO mirror.milestones
        (github_id, repository_id, number, title, description, state, due_on)
    VALUES
        (:github_id, :repository_id, :number, :title, :description, :state, :due_on)
    ON CONFLICT (github_id) DO UPDATE SET
        number = EXCLUDED.number,
        title = EXCLUDED.title,
        description = EXCLUDED.description,
        state = EXCLUDED.state,
        due_on = EXCLUDED.due_on
    RETURNING id
""")


class EntityReconciler:
    """Writes are committed per statement so one failed row never aborts the rest"""

    def __init__(self, session: AsyncSession):
        self._session = session

    # Lookups

    async def get_issue_ref(self, repository_id: int, number: int) -> IssueRef | None:
        result = await self._session.execute(
            SELECT_ISSUE_REF_SQL, {"repository_id": repository_id, "number": number}
        )
        row = result.first()
        if row is None:
            return None
        return IssueRef(
            id=row.id,
            repository_id=row.repository_id,
            number=row.number,
            is_pull_request=row.is_pull_request,
            sync_status=row.sync_status,
            synced_at=row.synced_at,
            head_sha=row.head_sha,
            author_id=row.author_id,
            comment_count=row.comment_count or 0,
        )

    async def load_participants(self, issue_id: int) -> IssueParticipants:
        """Author, assignees and requested reviewers as currently mirrored"""
        result = await self._session.execute(
            text("SELECT author_id FROM mirror.issues WHERE id = :issue_id"),
            {"issue_id": issue_id},
        )
        author_id = result.scalar_one_or_none()
        assignee_ids = await self._current_members(ASSIGNEES, issue_id)
        reviewer_ids = await self._current_members(REQUESTED_REVIEWERS, issue_id)
        return IssueParticipants(
            issue_id=issue_id,
            author_id=author_id,
            assignee_ids=sorted(assignee_ids),
            requested_reviewer_ids=sorted(reviewer_ids),
        )

    # Labels and milestones

    async def ensure_label(self, repository_id: int, label: GitHubLabel) -> int | None:
        try:
            result = await self._session.execute(
                UPSERT_LABEL_SQL,
                {
                    "github_id": label.id,
                    "repository_id": repository_id,
                    "name": label.name,
                    "color": label.color,
                    "description": label.description,
                },
            )
            label_id = result.scalar_one()
            await self._session.commit()
            return label_id
        except SQLAlchemyError as e:
            await self._session.rollback()
            logger.warning(f"Failed to upsert label {label.name} ({label.id}): {e}")
            return None

    async def delete_label(self, github_id: int) -> None:
        await self._session.execute(
            text("DELETE FROM mirror.labels WHERE github_id = :github_id"),
            {"github_id": github_id},
        )
        await self._session.commit()

    async def upsert_milestone(self, repository_id: int, milestone: GitHubMilestone) -> int | None:
        try:
            result = await self._session.execute(
                UPSERT_MILESTONE_SQL,
                {
                    "github_id": milestone.id,
                    "repository_id": repository_id,
                    "number": milestone.number,
                    "title": milestone.title,
                    "description": milestone.description,
                    "state": milestone.state,
                    "due_on": milestone.due_on,
                },
            )
            milestone_id = result.scalar_one()
            await self._session.commit()
            return milestone_id
        except SQLAlchemyError as e:
            await self._session.rollback()
            logger.warning(f"Failed to upsert milestone {milestone.title} ({milestone.id}): {e}")
            return None

    async def delete_milestone(self, github_id: int) -> None:
        await self._session.execute(
            text("DELETE FROM mirror.milestones WHERE github_id = :github_id"),
            {"github_id": github_id},
        )
        await self._session.commit()

    # Issues

    async def reconcile(
        self,
        snapshot: IssueSnapshot,
        repository_id: int,
        action: str | None = None,
        sender: GitHubUser | None = None,
    ) -> IssueWriteResult:
        """Scalar upsert followed by every relation the snapshot carries"""
        write = await self.upsert_issue(snapshot, repository_id, action=action, sender=sender)
        if not write.applied:
            logger.debug(
                f"Skipped stale snapshot for #{snapshot.number} in repository {repository_id}",
                extra={"repository_id": repository_id, "number": snapshot.number},
            )
            return write

        await self.sync_assignees(write.issue_id, snapshot.assignees)
        await self.sync_labels(write.issue_id, repository_id, snapshot.labels)
        if isinstance(snapshot, PullRequestSnapshot):
            await self.sync_requested_reviewers(write.issue_id, snapshot.requested_reviewers)

        return write

    async def upsert_issue(
        self,
        snapshot: IssueSnapshot,
        repository_id: int,
        action: str | None = None,
        sender: GitHubUser | None = None,
    ) -> IssueWriteResult:
        author_id = await ensure_user(self._session, snapshot.author)

        # Webhook payloads omit closed_by; the sender performed the close
        closed_by = snapshot.closed_by or (sender if action == "closed" else None)
        closed_by_id = await ensure_user(self._session, closed_by)

        milestone_id = None
        if snapshot.milestone is not None:
            milestone_id = await self.upsert_milestone(repository_id, snapshot.milestone)

        params = {
            "github_id": snapshot.github_id,
            "repository_id": repository_id,
            "number": snapshot.number,
            "is_pull_request": snapshot.is_pull_request,
            "title": snapshot.title,
            "body": snapshot.body,
            "state": snapshot.state,
            "state_reason": snapshot.state_reason,
            "locked": snapshot.locked,
            "html_url": snapshot.html_url,
            "comment_count": snapshot.comment_count or 0,
            "has_comment_count": snapshot.comment_count is not None,
            "author_id": author_id,
            "closed_by_id": closed_by_id,
            "milestone_id": milestone_id,
            "closed_at": snapshot.closed_at,
            "remote_created_at": snapshot.created_at,
            "remote_updated_at": snapshot.updated_at,
            **self._pull_request_params(snapshot),
            **self._initial_sync_params(snapshot),
        }
        if isinstance(snapshot, PullRequestSnapshot):
            params["merged_by_id"] = await ensure_user(self._session, snapshot.merged_by)

        result = await self._session.execute(UPSERT_ISSUE_SQL, params)
        row = result.first()
        await self._session.commit()

        if row is None:
            ref = await self.get_issue_ref(repository_id, snapshot.number)
            if ref is None:
                raise RuntimeError(
                    f"Issue #{snapshot.number} in repository {repository_id} vanished during upsert"
                )
            return IssueWriteResult(issue_id=ref.id, created=False, applied=False)

        write = IssueWriteResult(issue_id=row.id, created=bool(row.created), applied=True)
        if write.created:
            await subscribe_to_issue(self._session, write.issue_id, author_id)
        return write

    @staticmethod
    def _pull_request_params(snapshot: IssueSnapshot) -> dict:
        if not isinstance(snapshot, PullRequestSnapshot):
            return {
                "draft": None,
                "merged": None,
                "merged_at": None,
                "merged_by_id": None,
                "head_ref": None,
                "head_sha": None,
                "base_ref": None,
                "base_sha": None,
                "additions": None,
                "deletions": None,
                "changed_files": None,
            }
        return {
            "draft": snapshot.draft,
            "merged": snapshot.merged,
            "merged_at": snapshot.merged_at,
            "merged_by_id": None,
            "head_ref": snapshot.head_ref,
            "head_sha": snapshot.head_sha,
            "base_ref": snapshot.base_ref,
            "base_sha": snapshot.base_sha,
            "additions": snapshot.additions,
            "deletions": snapshot.deletions,
            "changed_files": snapshot.changed_files,
        }

    @staticmethod
    def _initial_sync_params(snapshot: IssueSnapshot) -> dict:
        """
        Only used when the row is inserted. An open item with no comments has no
        history to fetch; anything else starts unsynced.
        """
        if snapshot.is_open and not snapshot.comment_count:
            return {"sync_status": SYNC_SYNCED, "synced_at": datetime.now(UTC)}
        return {"sync_status": SYNC_UNSYNCED, "synced_at": None}

    async def delete_issue(self, repository_id: int, number: int) -> bool:
        result = await self._session.execute(
            text("""
                DELETE FROM mirror.issues
                WHERE repository_id = :repository_id AND number = :number
            """),
            {"repository_id": repository_id, "number": number},
        )
        await self._session.commit()
        return (result.rowcount or 0) > 0

    # Relations

    async def sync_assignees(self, issue_id: int, assignees: list[GitHubUser]) -> RelationDelta:
        resolved = await ensure_users(self._session, assignees)
        return await self.reconcile_relation(ASSIGNEES, issue_id, resolved.values())

    async def sync_requested_reviewers(
        self, issue_id: int, reviewers: list[GitHubUser]
    ) -> RelationDelta:
        resolved = await ensure_users(self._session, reviewers)
        return await self.reconcile_relation(REQUESTED_REVIEWERS, issue_id, resolved.values())

    async def sync_labels(
        self, issue_id: int, repository_id: int, labels: list[GitHubLabel]
    ) -> RelationDelta:
        label_ids = []
        for label in labels:
            label_id = await self.ensure_label(repository_id, label)
            if label_id is not None:
                label_ids.append(label_id)
        return await self.reconcile_relation(LABELS, issue_id, label_ids)

    async def reconcile_relation(
        self,
        spec: RelationSpec,
        issue_id: int,
        desired_ids: Iterable[int],
    ) -> RelationDelta:
        """Deletes stale members, then inserts missing ones; no writes when already equal"""
        current = await self._current_members(spec, issue_id)
        delta = compute_delta(current, desired_ids)
        if delta.is_empty:
            return delta

        if delta.to_remove:
            await self._session.execute(
                text(f"""
                    DELETE FROM {spec.table}
                    WHERE issue_id = :issue_id AND {spec.member_column} = ANY(:member_ids)
                """),
                {"issue_id": issue_id, "member_ids": sorted(delta.to_remove)},
            )
            await self._session.commit()

        for member_id in sorted(delta.to_add):
            try:
                await self._session.execute(
                    text(f"""
                        INSERT INTO {spec.table} (issue_id, {spec.member_column})
                        VALUES (:issue_id, :member_id)
                        ON CONFLICT DO NOTHING
                    """),
                    {"issue_id": issue_id, "member_id": member_id},
                )
                await self._session.commit()
            except IntegrityError as e:
                await self._session.rollback()
                logger.warning(
                    f"Skipped {spec.name} row {member_id} for issue {issue_id}: {e}",
                    extra={"issue_id": issue_id, "relation": spec.name, "member_id": member_id},
                )
                continue

            if spec.subscribes_members:
                await subscribe_to_issue(self._session, issue_id, member_id)

        logger.debug(
            f"Reconciled {spec.name} for issue {issue_id}: "
            f"+{len(delta.to_add)} -{len(delta.to_remove)}"
        )
        return delta

    async def _current_members(self, spec: RelationSpec, issue_id: int) -> set[int]:
        result = await self._session.execute(
            text(f"SELECT {spec.member_column} FROM {spec.table} WHERE issue_id = :issue_id"),
            {"issue_id": issue_id},
        )
        return set(result.scalars().all())
