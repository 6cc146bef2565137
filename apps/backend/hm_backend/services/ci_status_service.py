"""
CI status aggregation across check runs and legacy commit statuses.

Both streams are read newest-first and the first row seen per
(repository, sha, name) wins, so re-runs supersede older attempts without
older rows being deleted.
"""
import logging
from collections import defaultdict
from datetime import datetime

from pydantic import BaseModel
from sqlalchemy import text
from sqlmodel.ext.asyncio.session import AsyncSession

logger = logging.getLogger(__name__)

CommitKey = tuple[int, str]

PASSING_CONCLUSIONS = {"success", "skipped"}
FAILING_CONCLUSIONS = {"failure", "timed_out", "cancelled", "action_required", "startup_failure"}
PENDING_STATUSES = {"in_progress", "queued", "pending", "waiting", "requested"}

# Commit status state -> (status, conclusion) in check-run vocabulary
COMMIT_STATUS_MAP: dict[str, tuple[str, str | None]] = {
    "pending": ("in_progress", None),
    "success": ("completed", "success"),
    "failure": ("completed", "failure"),
    "error": ("completed", "failure"),
}


class StatusEntry(BaseModel):
    id: int
    source: str  # check_run | commit_status
    name: str
    status: str | None
    conclusion: str | None
    html_url: str | None = None
    created_at: datetime | None = None


def normalize_commit_status(state: str) -> tuple[str, str | None]:
    return COMMIT_STATUS_MAP.get(state, ("completed", state))


def _rank(entry: StatusEntry) -> tuple[int, str]:
    if entry.conclusion in FAILING_CONCLUSIONS:
        group = 0
    elif entry.status in PENDING_STATUSES:
        group = 1
    else:
        group = 2
    return group, entry.name.lower()


def rank_entries(entries: list[StatusEntry]) -> list[StatusEntry]:
    """Failing first, then in progress or queued, then everything else; by name within a group"""
    return sorted(entries, key=_rank)


def is_passing(entries: list[StatusEntry]) -> bool:
    return all(entry.conclusion in PASSING_CONCLUSIONS for entry in entries)


def format_commit_key(key: CommitKey) -> str:
    repository_id, sha = key
    return f"{repository_id}:{sha}"


def latest_per_name(rows, to_entry) -> dict[CommitKey, list[StatusEntry]]:
    """rows must be ordered newest-first"""
    seen: set[tuple[int, str, str]] = set()
    grouped: dict[CommitKey, list[StatusEntry]] = defaultdict(list)
    for row in rows:
        entry = to_entry(row)
        discriminator = (row.repository_id, row.sha, entry.name)
        if discriminator in seen:
            continue
        seen.add(discriminator)
        grouped[(row.repository_id, row.sha)].append(entry)
    return grouped


def _check_run_entry(row) -> StatusEntry:
    return StatusEntry(
        id=row.id,
        source="check_run",
        name=row.name,
        status=row.status,
        conclusion=row.conclusion,
        html_url=row.html_url or row.details_url,
        created_at=row.created_at,
    )


def _commit_status_entry(row) -> StatusEntry:
    status, conclusion = normalize_commit_status(row.state)
    return StatusEntry(
        id=row.id,
        source="commit_status",
        name=row.context,
        status=status,
        conclusion=conclusion,
        html_url=row.target_url,
        created_at=row.created_at,
    )


# unnest pairs the two arrays positionally so only the requested commits match
CHECK_RUNS_SQL = text("""
    SELECT c.id, c.repository_id, c.head_sha AS sha, c.name, c.status, c.conclusion,
           c.html_url, c.details_url, c.created_at
    FROM mirror.check_runs c
    JOIN unnest(CAST(:repository_ids AS integer[]), CAST(:shas AS text[])) AS req(repository_id, sha)
      ON c.repository_id = req.repository_id AND c.head_sha = req.sha
    ORDER BY c.created_at DESC, c.id DESC
""")

COMMIT_STATUSES_SQL = text("""
    SELECT s.id, s.repository_id, s.sha, s.context, s.state, s.target_url, s.created_at
    FROM mirror.commit_statuses s
    JOIN unnest(CAST(:repository_ids AS integer[]), CAST(:shas AS text[])) AS req(repository_id, sha)
      ON s.repository_id = req.repository_id AND s.sha = req.sha
    ORDER BY s.created_at DESC, s.id DESC
""")


class CIStatusService:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def aggregate(self, pairs: list[CommitKey]) -> dict[CommitKey, list[StatusEntry]]:
        """Every requested commit appears in the result, with an empty list when nothing is stored"""
        requested = list(dict.fromkeys((repository_id, sha) for repository_id, sha in pairs if sha))
        if not requested:
            return {}

        params = {
            "repository_ids": [repository_id for repository_id, _ in requested],
            "shas": [sha for _, sha in requested],
        }
        check_rows = (await self._session.execute(CHECK_RUNS_SQL, params)).all()
        status_rows = (await self._session.execute(COMMIT_STATUSES_SQL, params)).all()

        checks = latest_per_name(check_rows, _check_run_entry)
        statuses = latest_per_name(status_rows, _commit_status_entry)

        aggregated: dict[CommitKey, list[StatusEntry]] = {}
        for key in requested:
            aggregated[key] = rank_entries(checks.get(key, []) + statuses.get(key, []))

        logger.debug(
            f"Aggregated CI for {len(requested)} commits: "
            f"{len(check_rows)} check runs, {len(status_rows)} commit statuses"
        )
        return aggregated
