"""Installations, repositories, collaborators and releases"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import text
from sqlmodel.ext.asyncio.session import AsyncSession

from .payloads import (
    GitHubInstallation,
    GitHubInstallationRepository,
    GitHubRelease,
    GitHubRepository,
    GitHubUser,
)
from .users import ensure_user, subscribe_to_repository

logger = logging.getLogger(__name__)


@dataclass
class RepositoryRef:
    id: int
    github_id: int
    owner: str
    name: str
    sync_enabled: bool = True

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


_REPOSITORY_COLUMNS = "id, github_id, owner, name, sync_enabled"

UPSERT_INSTALLATION_SQL = text("""
    INSERT INTO mirror.installations (github_id, account_login, account_type, suspended, created_at)
    VALUES (:github_id, :account_login, :account_type, false, now())
    ON CONFLICT (github_id) DO UPDATE SET
        account_login = EXCLUDED.account_login,
        account_type = EXCLUDED.account_type
    RETURNING id
""")

# Onboarding sets sync_enabled; installation discovery only registers the row
UPSERT_REPOSITORY_SQL = text("""
    INSERT INTO mirror.repositories
        (github_id, installation_id, name, owner, full_name, description, html_url,
         private, archived, sync_enabled, created_at)
    VALUES
        (:github_id, :installation_id, :name, :owner, :full_name, :description, :html_url,
         :private, :archived, :sync_enabled, now())
    ON CONFLICT (github_id) DO UPDATE SET
        installation_id = COALESCE(EXCLUDED.installation_id, mirror.repositories.installation_id),
        name = EXCLUDED.name,
        owner = EXCLUDED.owner,
        full_name = EXCLUDED.full_name,
        description = COALESCE(EXCLUDED.description, mirror.repositories.description),
        html_url = COALESCE(EXCLUDED.html_url, mirror.repositories.html_url),
        private = EXCLUDED.private,
        archived = EXCLUDED.archived,
        sync_enabled = mirror.repositories.sync_enabled OR EXCLUDED.sync_enabled
    RETURNING id
""")

UPSERT_COLLABORATOR_SQL = text("""
    INSERT INTO mirror.repository_collaborators (repository_id, user_id, permission)
    VALUES (:repository_id, :user_id, :permission)
    ON CONFLICT (repository_id, user_id) DO UPDATE SET permission = EXCLUDED.permission
""")

UPSERT_RELEASE_SQL = text("""
    INSERT INTO mirror.releases
        (github_id, repository_id, author_id, tag_name, name, body, draft, prerelease,
         html_url, published_at)
    VALUES
        (:github_id, :repository_id, :author_id, :tag_name, :name, :body, :draft, :prerelease,
         :html_url, :published_at)
    ON CONFLICT (github_id) DO UPDATE SET
        tag_name = EXCLUDED.tag_name,
        name = EXCLUDED.name,
        body = EXCLUDED.body,
        draft = EXCLUDED.draft,
        prerelease = EXCLUDED.prerelease,
        html_url = EXCLUDED.html_url,
        published_at = EXCLUDED.published_at
    RETURNING id
""")


def _to_ref(row) -> RepositoryRef:
    return RepositoryRef(
        id=row.id,
        github_id=row.github_id,
        owner=row.owner,
        name=row.name,
        sync_enabled=row.sync_enabled,
    )


class RepositoryPersistence:
    def __init__(self, session: AsyncSession):
        self._session = session

    # Lookups

    async def get_by_github_id(self, github_id: int) -> RepositoryRef | None:
        result = await self._session.execute(
            text(f"SELECT {_REPOSITORY_COLUMNS} FROM mirror.repositories WHERE github_id = :github_id"),
            {"github_id": github_id},
        )
        row = result.first()
        return _to_ref(row) if row else None

    async def get_by_full_name(self, owner: str, name: str) -> RepositoryRef | None:
        result = await self._session.execute(
            text(f"""
                SELECT {_REPOSITORY_COLUMNS} FROM mirror.repositories
                WHERE LOWER(full_name) = LOWER(:full_name)
            """),
            {"full_name": f"{owner}/{name}"},
        )
        row = result.first()
        return _to_ref(row) if row else None

    async def get_onboarded(self, github_id: int) -> RepositoryRef | None:
        """Repository whose events should be processed; None means drop the event"""
        repository = await self.get_by_github_id(github_id)
        if repository is None or not repository.sync_enabled:
            return None
        return repository

    # Installations

    async def upsert_installation(self, installation: GitHubInstallation) -> int:
        account = installation.account
        result = await self._session.execute(
            UPSERT_INSTALLATION_SQL,
            {
                "github_id": installation.id,
                "account_login": account.login if account else str(installation.id),
                "account_type": account.type if account else "User",
            },
        )
        installation_id = result.scalar_one()
        await self._session.commit()
        return installation_id

    async def set_installation_suspended(self, github_id: int, suspended: bool) -> None:
        await self._session.execute(
            text("UPDATE mirror.installations SET suspended = :suspended WHERE github_id = :github_id"),
            {"github_id": github_id, "suspended": suspended},
        )
        await self._session.commit()

    async def delete_installation(self, github_id: int) -> int:
        """Removes the installation and every repository registered under it"""
        result = await self._session.execute(
            text("""
                DELETE FROM mirror.repositories
                WHERE installation_id IN (
                    SELECT id FROM mirror.installations WHERE github_id = :github_id
                )
            """),
            {"github_id": github_id},
        )
        deleted = result.rowcount or 0
        await self._session.execute(
            text("DELETE FROM mirror.installations WHERE github_id = :github_id"),
            {"github_id": github_id},
        )
        await self._session.commit()
        return deleted

    # Repositories

    async def upsert_repository(
        self,
        repository: GitHubRepository,
        installation_id: int | None = None,
        sync_enabled: bool = True,
    ) -> RepositoryRef:
        result = await self._session.execute(
            UPSERT_REPOSITORY_SQL,
            {
                "github_id": repository.id,
                "installation_id": installation_id,
                "name": repository.name,
                "owner": repository.owner.login,
                "full_name": repository.full_name,
                "description": repository.description,
                "html_url": repository.html_url,
                "private": repository.private,
                "archived": repository.archived,
                "sync_enabled": sync_enabled,
            },
        )
        repository_id = result.scalar_one()
        await self._session.commit()
        return RepositoryRef(
            id=repository_id,
            github_id=repository.id,
            owner=repository.owner.login,
            name=repository.name,
            sync_enabled=sync_enabled,
        )

    async def register_installation_repositories(
        self,
        installation_id: int,
        repositories: list[GitHubInstallationRepository],
    ) -> int:
        """Records repositories granted to an installation without onboarding them"""
        registered = 0
        for repository in repositories:
            owner, _, name = repository.full_name.partition("/")
            await self._session.execute(
                UPSERT_REPOSITORY_SQL,
                {
                    "github_id": repository.id,
                    "installation_id": installation_id,
                    "name": name or repository.name,
                    "owner": owner,
                    "full_name": repository.full_name,
                    "description": None,
                    "html_url": None,
                    "private": repository.private,
                    "archived": False,
                    "sync_enabled": False,
                },
            )
            registered += 1
        await self._session.commit()
        return registered

    async def update_repository(self, repository_id: int, repository: GitHubRepository) -> None:
        await self._session.execute(
            text("""
                UPDATE mirror.repositories SET
                    name = :name,
                    owner = :owner,
                    full_name = :full_name,
                    description = :description,
                    html_url = :html_url,
                    private = :private,
                    archived = :archived
                WHERE id = :repository_id
            """),
            {
                "repository_id": repository_id,
                "name": repository.name,
                "owner": repository.owner.login,
                "full_name": repository.full_name,
                "description": repository.description,
                "html_url": repository.html_url,
                "private": repository.private,
                "archived": repository.archived,
            },
        )
        await self._session.commit()

    async def delete_repositories(self, github_ids: list[int]) -> int:
        """Cascades to every mirrored child row"""
        if not github_ids:
            return 0
        result = await self._session.execute(
            text("DELETE FROM mirror.repositories WHERE github_id = ANY(:github_ids)"),
            {"github_ids": github_ids},
        )
        await self._session.commit()
        return result.rowcount or 0

    async def mark_synced(self, repository_id: int) -> None:
        await self._session.execute(
            text("UPDATE mirror.repositories SET last_synced_at = now() WHERE id = :repository_id"),
            {"repository_id": repository_id},
        )
        await self._session.commit()

    # Collaborators

    async def add_collaborator(
        self,
        repository_id: int,
        user: GitHubUser,
        permission: str = "write",
    ) -> int | None:
        """Collaborators are subscribed to the repository with the activity firehose off"""
        user_id = await ensure_user(self._session, user)
        if user_id is None:
            logger.warning(f"Skipped collaborator {user.login}: user could not be ensured")
            return None

        await self._session.execute(
            UPSERT_COLLABORATOR_SQL,
            {"repository_id": repository_id, "user_id": user_id, "permission": permission},
        )
        await self._session.commit()
        await subscribe_to_repository(self._session, repository_id, user_id, activity=False)
        return user_id

    async def remove_collaborator(self, repository_id: int, user_github_id: int) -> None:
        await self._session.execute(
            text("""
                DELETE FROM mirror.repository_collaborators
                WHERE repository_id = :repository_id
                  AND user_id = (SELECT id FROM public.users WHERE github_id = :github_id)
            """),
            {"repository_id": repository_id, "github_id": user_github_id},
        )
        await self._session.commit()

    # Releases

    async def upsert_release(self, repository_id: int, release: GitHubRelease) -> int:
        author_id = await ensure_user(self._session, release.author)
        result = await self._session.execute(
            UPSERT_RELEASE_SQL,
            {
                "github_id": release.id,
                "repository_id": repository_id,
                "author_id": author_id,
                "tag_name": release.tag_name,
                "name": release.name,
                "body": release.body,
                "draft": release.draft,
                "prerelease": release.prerelease,
                "html_url": release.html_url,
                "published_at": release.published_at,
            },
        )
        release_id = result.scalar_one()
        await self._session.commit()
        return release_id
