"""
Issue read surface.

Reads are served from the mirror. An issue that was never synced is synced
inline when a credential is available; a synced issue past the staleness
threshold is refreshed in the background without delaying the read.
"""
import logging
from datetime import datetime

from pydantic import BaseModel
from sqlalchemy import text
from sqlmodel.ext.asyncio.session import AsyncSession

from hm_backend.core.config import Settings, get_settings
from hm_backend.ingestion.github_client import GitHubAPIError, GitHubClient
from hm_backend.ingestion.history_sync import HistorySyncer, SyncOutcome, schedule_stale_refresh
from hm_backend.ingestion.linked_refs import LinkedReferenceResolver
from hm_backend.ingestion.reconciler import EntityReconciler, IssueRef
from hm_backend.ingestion.repository_persistence import RepositoryRef
from hm_backend.services.ci_status_service import CIStatusService, StatusEntry, format_commit_key, is_passing

logger = logging.getLogger(__name__)


class LinkedItem(BaseModel):
    id: int
    number: int
    title: str
    state: str


class IssueDetail(BaseModel):
    id: int
    repository_id: int
    repository: str
    number: int
    is_pull_request: bool
    title: str
    body: str | None
    state: str
    state_reason: str | None
    locked: bool
    html_url: str | None
    comment_count: int
    author: str | None
    labels: list[str]
    assignees: list[str]
    requested_reviewers: list[str]
    draft: bool | None = None
    merged: bool | None = None
    head_sha: str | None = None
    ci_statuses: dict[str, list[StatusEntry]] = {}
    ci_passing: bool | None = None
    linked_prs: list[LinkedItem] = []
    linked_issues: list[LinkedItem] = []
    has_maintainer_comment: bool = False
    sync_status: str
    synced_at: datetime | None
    closed_at: datetime | None
    remote_updated_at: datetime | None


ISSUE_DETAIL_SQL = text("""
    SELECT i.id, i.repository_id, i.number, i.is_pull_request, i.title, i.body, i.state,
           i.state_reason, i.locked, i.html_url, i.comment_count, i.draft, i.merged,
           i.head_sha, i.sync_status, i.synced_at, i.closed_at, i.remote_updated_at,
           u.login AS author_login
    FROM mirror.issues i
    LEFT JOIN public.users u ON u.id = i.author_id
    WHERE i.id = :issue_id
""")

LABEL_NAMES_SQL = text("""
    SELECT l.name FROM mirror.issue_labels il
    JOIN mirror.labels l ON l.id = il.label_id
    WHERE il.issue_id = :issue_id
    ORDER BY l.name
""")

USER_LOGINS_SQL = """
    SELECT u.login FROM {table} r
    JOIN public.users u ON u.id = r.user_id
    WHERE r.issue_id = :issue_id
    ORDER BY u.login
"""

# Any comment by a repository collaborator
MAINTAINER_COMMENT_SQL = text("""
    SELECT EXISTS (
        SELECT 1 FROM mirror.issue_comments c
        JOIN mirror.repository_collaborators rc
          ON rc.user_id = c.author_id AND rc.repository_id = :repository_id
        WHERE c.issue_id = :issue_id
    )
""")

LINKED_ITEMS_SQL = text("""
    SELECT id, number, title, state FROM mirror.issues
    WHERE id = ANY(:ids)
    ORDER BY number
""")


async def get_issue_detail(
    db: AsyncSession,
    repository: RepositoryRef,
    number: int,
    token: str | None = None,
    settings: Settings | None = None,
) -> IssueDetail | None:
    """None when the issue is neither mirrored nor fetchable"""
    settings = settings or get_settings()
    reconciler = EntityReconciler(db)
    syncer = HistorySyncer(db, settings)

    ref = await reconciler.get_issue_ref(repository.id, number)
    if ref is None or not ref.is_synced:
        if token:
            # Falls back to whatever is cached when the sync fails
            await _sync_inline(db, syncer, repository, number, token, settings)
            ref = await reconciler.get_issue_ref(repository.id, number)
    elif token and syncer.is_stale(ref):
        schedule_stale_refresh(repository, number, token, settings)

    if ref is None:
        return None
    return await load_issue_detail(db, repository, ref)


async def force_sync(
    db: AsyncSession,
    repository: RepositoryRef,
    number: int,
    token: str,
    settings: Settings | None = None,
) -> SyncOutcome:
    settings = settings or get_settings()
    return await _sync_inline(db, HistorySyncer(db, settings), repository, number, token, settings)


async def _sync_inline(
    db: AsyncSession,
    syncer: HistorySyncer,
    repository: RepositoryRef,
    number: int,
    token: str,
    settings: Settings,
) -> SyncOutcome:
    """Never raises; a failed sync leaves the cached snapshot to be served"""
    try:
        async with GitHubClient(token, base_url=settings.github_api_url) as client:
            return await syncer.sync_issue(client, repository, number)
    except GitHubAPIError as e:
        logger.warning(f"Inline sync of #{number} in {repository.full_name} failed: {e}")
        return SyncOutcome.FAILED
    except Exception:
        logger.exception(
            f"Inline sync of #{number} in {repository.full_name} crashed",
            extra={"repository_id": repository.id, "number": number},
        )
        # The cached read that follows needs a usable transaction
        await db.rollback()
        return SyncOutcome.FAILED


async def load_issue_detail(db: AsyncSession, repository: RepositoryRef, ref: IssueRef) -> IssueDetail | None:
    row = (await db.execute(ISSUE_DETAIL_SQL, {"issue_id": ref.id})).first()
    if row is None:
        return None

    params = {"issue_id": ref.id}
    labels = (await db.execute(LABEL_NAMES_SQL, params)).scalars().all()
    assignees = (
        await db.execute(text(USER_LOGINS_SQL.format(table="mirror.issue_assignees")), params)
    ).scalars().all()
    reviewers = (
        await db.execute(text(USER_LOGINS_SQL.format(table="mirror.issue_requested_reviewers")), params)
    ).scalars().all()

    detail = IssueDetail(
        id=row.id,
        repository_id=row.repository_id,
        repository=repository.full_name,
        number=row.number,
        is_pull_request=row.is_pull_request,
        title=row.title,
        body=row.body,
        state=row.state,
        state_reason=row.state_reason,
        locked=row.locked,
        html_url=row.html_url,
        comment_count=row.comment_count or 0,
        author=row.author_login,
        labels=list(labels),
        assignees=list(assignees),
        requested_reviewers=list(reviewers),
        draft=row.draft,
        merged=row.merged,
        head_sha=row.head_sha,
        sync_status=row.sync_status,
        synced_at=row.synced_at,
        closed_at=row.closed_at,
        remote_updated_at=row.remote_updated_at,
    )

    resolver = LinkedReferenceResolver(db)
    if row.is_pull_request:
        if row.head_sha:
            aggregated = await CIStatusService(db).aggregate([(row.repository_id, row.head_sha)])
            detail.ci_statuses = {format_commit_key(key): entries for key, entries in aggregated.items()}
            entries = aggregated.get((row.repository_id, row.head_sha), [])
            detail.ci_passing = is_passing(entries)
        linked = await resolver.linked_issues_for_prs([row.id])
        detail.linked_issues = await _linked_items(db, linked.get(row.id, []))
    else:
        linked = await resolver.linked_prs_for_issues([row.id])
        detail.linked_prs = await _linked_items(db, linked.get(row.id, []))
        result = await db.execute(
            MAINTAINER_COMMENT_SQL, {"issue_id": row.id, "repository_id": row.repository_id}
        )
        detail.has_maintainer_comment = bool(result.scalar())

    return detail


async def _linked_items(db: AsyncSession, ids: list[int]) -> list[LinkedItem]:
    if not ids:
        return []
    result = await db.execute(LINKED_ITEMS_SQL, {"ids": ids})
    return [LinkedItem(id=r.id, number=r.number, title=r.title, state=r.state) for r in result.all()]
