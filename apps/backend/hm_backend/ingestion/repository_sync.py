"""Repository onboarding: metadata, labels, milestones and collaborators"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlmodel.ext.asyncio.session import AsyncSession

from hm_backend.core.audit import AuditEvent, log_audit_event

from .github_client import GitHubClient
from .reconciler import EntityReconciler
from .repository_persistence import RepositoryPersistence, RepositoryRef

logger = logging.getLogger(__name__)


@dataclass
class OnboardingResult:
    repository: RepositoryRef
    labels: int = 0
    milestones: int = 0
    collaborators: int = 0


class RepositorySyncer:
    def __init__(self, session: AsyncSession):
        self._session = session
        self._repositories = RepositoryPersistence(session)
        self._reconciler = EntityReconciler(session)

    async def onboard(self, client: GitHubClient, owner: str, name: str) -> OnboardingResult:
        """
        Enables webhook processing for the repository and mirrors its metadata.
        Raises GitHubAPIError; a repository whose metadata could not be fetched
        is left untouched.
        """
        remote = await client.get_repository(owner, name)
        existing = await self._repositories.get_by_github_id(remote.id)
        was_enabled = existing is not None and existing.sync_enabled

        repository = await self._repositories.upsert_repository(remote, sync_enabled=True)
        result = OnboardingResult(repository=repository)

        for label in await client.list_labels(owner, name):
            if await self._reconciler.ensure_label(repository.id, label) is not None:
                result.labels += 1

        for milestone in await client.list_milestones(owner, name):
            if await self._reconciler.upsert_milestone(repository.id, milestone) is not None:
                result.milestones += 1

        # Read-only collaborators are not maintainers and get no subscription
        for collaborator in await client.list_collaborators(owner, name):
            permission = collaborator.permission
            if permission is None:
                continue
            if await self._repositories.add_collaborator(repository.id, collaborator, permission):
                result.collaborators += 1

        await self._repositories.mark_synced(repository.id)

        if not was_enabled:
            log_audit_event(
                AuditEvent.REPOSITORY_ONBOARDED,
                repository=repository.full_name,
                metadata={"repository_id": repository.id},
            )
        logger.info(
            f"Synced repository {repository.full_name}: {result.labels} labels, "
            f"{result.milestones} milestones, {result.collaborators} collaborators",
            extra={"repository_id": repository.id},
        )
        return result
