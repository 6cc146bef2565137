"""
History syncer: full paginated fetch of one issue or pull request.

Per-issue state machine on mirror.issues.sync_status:

    unsynced --claim--> syncing --mark_synced--> synced
                           |
                           +--release--> previous status (fetch failed)

The syncing state is an advisory lease rather than a lock. A claim older than
sync_lease_seconds can be taken over, so a crashed sync never blocks forever.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from enum import Enum

from sqlalchemy import text
from sqlmodel.ext.asyncio.session import AsyncSession

from hm_backend.core.config import Settings, get_settings
from hm_database.session import session_scope

from .ci_persistence import CIPersistence
from .github_client import GitHubAPIError, GitHubClient
from .linked_refs import LinkedReferenceResolver
from .reconciler import SYNC_UNSYNCED, EntityReconciler, IssueRef
from .repository_persistence import RepositoryRef
from .snapshots import snapshot_from_payload
from .timeline import TimelinePersistence

logger = logging.getLogger(__name__)

# Strong references keep fire-and-forget refreshes from being garbage collected
_background_tasks: set[asyncio.Task] = set()


class SyncOutcome(str, Enum):
    SYNCED = "synced"
    SKIPPED = "skipped"  # Another worker holds a live claim
    FAILED = "failed"


CLAIM_SQL = text("""
    UPDATE mirror.issues
    SET sync_status = 'syncing', sync_started_at = now()
    WHERE id = :issue_id
      AND (
        sync_status <> 'syncing'
        OR sync_started_at IS NULL
        OR sync_started_at < now() - make_interval(secs => :lease_seconds)
      )
    RETURNING id
""")

MARK_SYNCED_SQL = text("""
    UPDATE mirror.issues
    SET sync_status = 'synced', synced_at = now(), sync_started_at = NULL
    WHERE id = :issue_id
""")

# synced_at is left alone so a failed refresh keeps the last good timestamp
RELEASE_SQL = text("""
    UPDATE mirror.issues
    SET sync_status = :previous_status, sync_started_at = NULL
    WHERE id = :issue_id AND sync_status = 'syncing'
""")


class HistorySyncer:
    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self._session = session
        self._settings = settings or get_settings()
        self._reconciler = EntityReconciler(session)
        self._timeline = TimelinePersistence(session)
        self._ci = CIPersistence(session)
        self._linked_refs = LinkedReferenceResolver(session)

    # State transitions

    async def claim(self, issue_id: int) -> bool:
        result = await self._session.execute(
            CLAIM_SQL,
            {"issue_id": issue_id, "lease_seconds": float(self._settings.sync_lease_seconds)},
        )
        claimed = result.scalar_one_or_none() is not None
        await self._session.commit()
        return claimed

    async def mark_synced(self, issue_id: int) -> None:
        await self._session.execute(MARK_SYNCED_SQL, {"issue_id": issue_id})
        await self._session.commit()

    async def release(self, issue_id: int, previous_status: str) -> None:
        await self._session.execute(
            RELEASE_SQL, {"issue_id": issue_id, "previous_status": previous_status}
        )
        await self._session.commit()

    def is_stale(self, ref: IssueRef, now: datetime | None = None) -> bool:
        """Synced issues older than stale_after_seconds; never-synced issues are not stale, they are unsynced"""
        if not ref.is_synced or ref.synced_at is None:
            return False
        now = now or datetime.now(UTC)
        return now - ref.synced_at > timedelta(seconds=self._settings.stale_after_seconds)

    # Full sync

    async def sync_issue(
        self,
        client: GitHubClient,
        repository: RepositoryRef,
        number: int,
    ) -> SyncOutcome:
        """
        Refreshes scalars and relations, then comments, reviews, review comments,
        CI results for the head commit and linked issues. GitHubAPIError is logged
        and reported as FAILED; any other error is re-raised. Either way a claimed
        issue gets its previous sync status back.
        """
        existing = await self._reconciler.get_issue_ref(repository.id, number)
        previous_status = existing.sync_status if existing else SYNC_UNSYNCED
        if previous_status == "syncing":
            previous_status = SYNC_UNSYNCED

        issue_id = existing.id if existing else None
        claimed = False
        try:
            item = await client.get_issue(repository.owner, repository.name, number)
            if item.is_pull_request:
                item = await client.get_pull_request(repository.owner, repository.name, number)

            write = await self._reconciler.reconcile(snapshot_from_payload(item), repository.id)
            issue_id = write.issue_id

            if not await self.claim(issue_id):
                logger.info(
                    f"Skipped sync of #{number} in {repository.full_name}: claim held elsewhere",
                    extra={"repository_id": repository.id, "issue_id": issue_id},
                )
                return SyncOutcome.SKIPPED
            claimed = True

            await self._sync_comments(client, repository, issue_id, number)
            if item.is_pull_request:
                await self._sync_reviews(client, repository, issue_id, number)
                head_sha = item.head.sha if item.head else None
                if head_sha:
                    await self.refresh_ci(client, repository, head_sha)
                await self._refresh_linked_issues(client, repository, issue_id, number)

            await self.mark_synced(issue_id)
        except GitHubAPIError as e:
            logger.warning(
                f"History sync failed for #{number} in {repository.full_name}: {e}",
                extra={"repository_id": repository.id, "number": number, "status_code": e.status_code},
            )
            if claimed and issue_id is not None:
                await self.release(issue_id, previous_status)
            return SyncOutcome.FAILED
        except Exception:
            logger.exception(
                f"History sync of #{number} in {repository.full_name} aborted",
                extra={"repository_id": repository.id, "number": number},
            )
            if claimed and issue_id is not None:
                # The failed statement may have poisoned the transaction
                await self._session.rollback()
                await self.release(issue_id, previous_status)
            raise

        logger.info(
            f"Synced history of #{number} in {repository.full_name}",
            extra={"repository_id": repository.id, "issue_id": issue_id},
        )
        return SyncOutcome.SYNCED

    async def _sync_comments(
        self, client: GitHubClient, repository: RepositoryRef, issue_id: int, number: int
    ) -> None:
        comments = await client.list_comments(repository.owner, repository.name, number)
        for comment in comments:
            await self._timeline.upsert_comment(issue_id, comment)

    async def _sync_reviews(
        self, client: GitHubClient, repository: RepositoryRef, issue_id: int, number: int
    ) -> None:
        # Reviews first so review comments resolve their parent directly
        reviews = await client.list_reviews(repository.owner, repository.name, number)
        for review in reviews:
            await self._timeline.upsert_review(issue_id, review)

        review_comments = await client.list_review_comments(repository.owner, repository.name, number)
        for comment in review_comments:
            await self._timeline.upsert_review_comment(issue_id, comment)

    async def refresh_ci(self, client: GitHubClient, repository: RepositoryRef, sha: str) -> bool:
        """Stored rows stay authoritative when either API fails"""
        try:
            check_runs = await client.list_checks_for_commit(repository.owner, repository.name, sha)
            statuses = await client.list_commit_statuses_for_commit(
                repository.owner, repository.name, sha
            )
        except GitHubAPIError as e:
            logger.warning(
                f"CI refresh failed for {repository.full_name}@{sha[:7]}: {e}",
                extra={"repository_id": repository.id, "sha": sha},
            )
            return False

        for check_run in check_runs:
            await self._ci.upsert_check_run(repository.id, check_run)
        for status in statuses:
            await self._ci.upsert_commit_status(repository.id, sha, status)
        return True

    async def _refresh_linked_issues(
        self, client: GitHubClient, repository: RepositoryRef, pr_id: int, number: int
    ) -> None:
        try:
            await self._linked_refs.refresh_for_pr(client, repository, pr_id, number)
        except GitHubAPIError as e:
            logger.warning(
                f"Linked issue refresh failed for PR #{number} in {repository.full_name}: {e}",
                extra={"repository_id": repository.id, "pr_id": pr_id},
            )


async def _refresh_in_background(
    repository: RepositoryRef,
    number: int,
    token: str,
    settings: Settings,
) -> None:
    try:
        async with session_scope() as session:
            async with GitHubClient(token, base_url=settings.github_api_url) as client:
                outcome = await HistorySyncer(session, settings).sync_issue(client, repository, number)
        logger.debug(f"Background refresh of #{number} in {repository.full_name}: {outcome.value}")
    except Exception as e:
        logger.exception(
            f"Background refresh of #{number} in {repository.full_name} crashed: {e}",
            extra={"repository_id": repository.id, "number": number},
        )


def schedule_stale_refresh(
    repository: RepositoryRef,
    number: int,
    token: str,
    settings: Settings | None = None,
) -> asyncio.Task:
    """Fire-and-forget; the caller's read never waits on the refresh"""
    task = asyncio.create_task(
        _refresh_in_background(repository, number, token, settings or get_settings())
    )
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task
