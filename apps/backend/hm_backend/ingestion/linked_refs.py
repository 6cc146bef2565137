"""Pull request to issue links from GitHub's closing references"""

from __future__ import annotations

import logging
from collections import defaultdict

from sqlalchemy import text
from sqlmodel.ext.asyncio.session import AsyncSession

from .github_client import GitHubClient
from .reconciler import compute_delta
from .repository_persistence import RepositoryRef

logger = logging.getLogger(__name__)


class LinkedReferenceResolver:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def refresh_for_pr(
        self,
        client: GitHubClient,
        repository: RepositoryRef,
        pr_id: int,
        pr_number: int,
    ) -> set[int]:
        """
        Replaces the PR's links with the issues it currently closes.
        Numbers that are unknown locally or point at other pull requests are dropped.
        Raises GitHubAPIError; stored links stay untouched on failure.
        """
        numbers = await client.get_closing_references(repository.owner, repository.name, pr_number)
        desired = await self._resolve_issue_ids(repository.id, numbers)

        result = await self._session.execute(
            text("SELECT issue_id FROM mirror.linked_prs WHERE pr_id = :pr_id"),
            {"pr_id": pr_id},
        )
        delta = compute_delta(result.scalars().all(), desired)
        if delta.is_empty:
            return desired

        if delta.to_remove:
            await self._session.execute(
                text("""
                    DELETE FROM mirror.linked_prs
                    WHERE pr_id = :pr_id AND issue_id = ANY(:issue_ids)
                """),
                {"pr_id": pr_id, "issue_ids": sorted(delta.to_remove)},
            )
        for issue_id in sorted(delta.to_add):
            await self._session.execute(
                text("""
                    INSERT INTO mirror.linked_prs (issue_id, pr_id)
                    VALUES (:issue_id, :pr_id)
                    ON CONFLICT DO NOTHING
                """),
                {"issue_id": issue_id, "pr_id": pr_id},
            )
        await self._session.commit()

        logger.info(
            f"Linked PR #{pr_number} in {repository.full_name} to {len(desired)} issues",
            extra={"repository_id": repository.id, "pr_id": pr_id},
        )
        return desired

    async def _resolve_issue_ids(self, repository_id: int, numbers: list[int]) -> set[int]:
        if not numbers:
            return set()
        result = await self._session.execute(
            text("""
                SELECT id FROM mirror.issues
                WHERE repository_id = :repository_id
                  AND number = ANY(:numbers)
                  AND is_pull_request = false
            """),
            {"repository_id": repository_id, "numbers": numbers},
        )
        return set(result.scalars().all())

    async def linked_prs_for_issues(self, issue_ids: list[int]) -> dict[int, list[int]]:
        return await self._group("issue_id", "pr_id", issue_ids)

    async def linked_issues_for_prs(self, pr_ids: list[int]) -> dict[int, list[int]]:
        return await self._group("pr_id", "issue_id", pr_ids)

    async def _group(self, key_column: str, value_column: str, keys: list[int]) -> dict[int, list[int]]:
        grouped: dict[int, list[int]] = defaultdict(list)
        if not keys:
            return {}
        result = await self._session.execute(
            text(f"""
                SELECT {key_column} AS key, {value_column} AS value
                FROM mirror.linked_prs
                WHERE {key_column} = ANY(:keys)
                ORDER BY {value_column}
            """),
            {"keys": keys},
        )
        for row in result.all():
            grouped[row.key].append(row.value)
        return dict(grouped)
