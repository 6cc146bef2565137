"""
Onboard or refresh every repository listed in REPO_SYNC_TARGETS.

Each target gets its own session so one failing repository does not roll back
the others.
"""

import asyncio
import logging

from hm_backend.core.config import Settings, get_settings
from hm_backend.ingestion.github_client import GitHubAPIError, GitHubClient
from hm_backend.ingestion.repository_sync import RepositorySyncer
from hm_database.session import async_session_factory

logger = logging.getLogger(__name__)


def parse_targets(raw: str) -> list[tuple[str, str]]:
    """'octo/a, octo/b' -> [('octo', 'a'), ('octo', 'b')]; malformed entries are skipped"""
    targets = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        owner, sep, name = entry.partition("/")
        if not sep or not owner or not name or "/" in name:
            logger.warning(f"Skipping malformed repo sync target: {entry!r}")
            continue
        targets.append((owner, name))
    return targets


async def run_repo_sync_job(
    shutdown_event: asyncio.Event | None = None,
    settings: Settings | None = None,
) -> dict:
    """Returns stats dict with synced, failed and skipped counts."""
    settings = settings or get_settings()
    targets = parse_targets(settings.repo_sync_targets)

    if not targets:
        logger.info("No repositories configured for sync")
        return {"synced": 0, "failed": 0, "skipped": 0}

    if not settings.github_token:
        raise ValueError("GITHUB_TOKEN is required for the repo_sync job")

    synced = 0
    failed = 0
    skipped = 0

    async with GitHubClient(settings.github_token, base_url=settings.github_api_url) as client:
        for index, (owner, name) in enumerate(targets):
            if shutdown_event is not None and shutdown_event.is_set():
                skipped = len(targets) - index
                logger.info(f"Shutdown requested, skipping {skipped} remaining repositories")
                break

            try:
                async with async_session_factory() as session:
                    await RepositorySyncer(session).onboard(client, owner, name)
                synced += 1
            except GitHubAPIError as e:
                failed += 1
                logger.warning(
                    f"Repo sync failed for {owner}/{name}: {e}",
                    extra={"repository": f"{owner}/{name}", "status_code": e.status_code},
                )

    logger.info(
        f"Repo sync complete: {synced} synced, {failed} failed",
        extra={"synced": synced, "failed": failed, "skipped": skipped},
    )
    return {"synced": synced, "failed": failed, "skipped": skipped}
