"""
Re-sync mirrored issues whose last sync is older than STALE_AFTER_SECONDS.

Reads refresh stale issues lazily; this job keeps issues nobody is reading
from drifting indefinitely. Oldest first, capped at STALE_SWEEP_BATCH_SIZE.
"""

import asyncio
import logging

from sqlalchemy import text

from hm_backend.core.config import Settings, get_settings
from hm_backend.ingestion.github_client import GitHubClient
from hm_backend.ingestion.history_sync import HistorySyncer, SyncOutcome
from hm_backend.ingestion.repository_persistence import RepositoryRef
from hm_database.session import async_session_factory

logger = logging.getLogger(__name__)

STALE_ISSUES_SQL = text("""
    SELECT i.number, r.id AS repository_id, r.github_id, r.owner, r.name
    FROM mirror.issues i
    JOIN mirror.repositories r ON r.id = i.repository_id
    WHERE i.sync_status = 'synced'
      AND r.sync_enabled = true
      AND i.synced_at < now() - make_interval(secs => :stale_after_seconds)
    ORDER BY i.synced_at
    LIMIT :limit
""")


async def run_stale_sweep_job(
    shutdown_event: asyncio.Event | None = None,
    settings: Settings | None = None,
) -> dict:
    """Returns stats dict keyed by sync outcome plus the candidate count."""
    settings = settings or get_settings()

    if not settings.github_token:
        raise ValueError("GITHUB_TOKEN is required for the stale_sweep job")

    async with async_session_factory() as session:
        result = await session.execute(
            STALE_ISSUES_SQL,
            {
                "stale_after_seconds": float(settings.stale_after_seconds),
                "limit": settings.stale_sweep_batch_size,
            },
        )
        candidates = result.all()

    stats = {"candidates": len(candidates), **{outcome.value: 0 for outcome in SyncOutcome}}
    if not candidates:
        logger.info("Stale sweep: nothing to refresh")
        return stats

    async with GitHubClient(settings.github_token, base_url=settings.github_api_url) as client:
        async with async_session_factory() as session:
            syncer = HistorySyncer(session, settings)
            for row in candidates:
                if shutdown_event is not None and shutdown_event.is_set():
                    logger.info("Shutdown requested, ending stale sweep early")
                    break

                repository = RepositoryRef(
                    id=row.repository_id,
                    github_id=row.github_id,
                    owner=row.owner,
                    name=row.name,
                )
                try:
                    outcome = await syncer.sync_issue(client, repository, row.number)
                except Exception as e:
                    # The syncer already restored the item's status
                    logger.exception(
                        f"Stale refresh of #{row.number} in {repository.full_name} crashed: {e}",
                        extra={"repository_id": repository.id, "number": row.number},
                    )
                    outcome = SyncOutcome.FAILED
                stats[outcome.value] += 1

                rate_limit = client.get_rate_limit_info()
                if rate_limit is not None and rate_limit.remaining == 0:
                    logger.warning(
                        "Stale sweep stopped: GitHub rate limit exhausted",
                        extra={"reset_at": rate_limit.reset_at},
                    )
                    break

    logger.info(
        f"Stale sweep complete: {stats[SyncOutcome.SYNCED.value]} synced, "
        f"{stats[SyncOutcome.SKIPPED.value]} skipped, {stats[SyncOutcome.FAILED.value]} failed",
        extra=stats,
    )
    return stats
