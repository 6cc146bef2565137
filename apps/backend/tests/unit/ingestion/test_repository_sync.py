"""Unit tests for repository onboarding"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from hm_backend.ingestion.github_client import GitHubNotFoundError
from hm_backend.ingestion.payloads import GitHubCollaborator, GitHubLabel, GitHubMilestone, GitHubRepository
from hm_backend.ingestion.repository_persistence import RepositoryRef
from hm_backend.ingestion.repository_sync import RepositorySyncer

REMOTE = GitHubRepository.model_validate(
    {"id": 1000, "name": "hello", "full_name": "octo/hello", "owner": {"id": 1, "login": "octo"}}
)
REPOSITORY = RepositoryRef(id=10, github_id=1000, owner="octo", name="hello")


def _collaborator(user_id: int, login: str, **permissions) -> GitHubCollaborator:
    return GitHubCollaborator.model_validate({"id": user_id, "login": login, "permissions": permissions})


@pytest.fixture
def client():
    client = MagicMock()
    client.get_repository = AsyncMock(return_value=REMOTE)
    client.list_labels = AsyncMock(
        return_value=[GitHubLabel(id=1, name="bug"), GitHubLabel(id=2, name="docs")]
    )
    client.list_milestones = AsyncMock(return_value=[GitHubMilestone(id=3, number=1, title="v1")])
    client.list_collaborators = AsyncMock(
        return_value=[
            _collaborator(20, "maintainer", push=True),
            _collaborator(21, "reader", pull=True),
        ]
    )
    return client


@pytest.fixture
def syncer(mock_session):
    syncer = RepositorySyncer(mock_session)
    syncer._repositories = MagicMock()
    syncer._repositories.get_by_github_id = AsyncMock(return_value=None)
    syncer._repositories.upsert_repository = AsyncMock(return_value=REPOSITORY)
    syncer._repositories.add_collaborator = AsyncMock(return_value=True)
    syncer._repositories.mark_synced = AsyncMock()
    syncer._reconciler = MagicMock()
    syncer._reconciler.ensure_label = AsyncMock(return_value=1)
    syncer._reconciler.upsert_milestone = AsyncMock(return_value=1)
    return syncer


class TestOnboard:
    async def test_counts_mirrored_metadata(self, syncer, client):
        with patch("hm_backend.ingestion.repository_sync.log_audit_event"):
            result = await syncer.onboard(client, "octo", "hello")

        assert result.repository == REPOSITORY
        assert result.labels == 2
        assert result.milestones == 1
        syncer._repositories.upsert_repository.assert_awaited_once_with(REMOTE, sync_enabled=True)
        syncer._repositories.mark_synced.assert_awaited_once_with(10)

    async def test_read_only_collaborators_are_skipped(self, syncer, client):
        with patch("hm_backend.ingestion.repository_sync.log_audit_event"):
            result = await syncer.onboard(client, "octo", "hello")

        assert result.collaborators == 1
        args = syncer._repositories.add_collaborator.await_args.args
        assert args[1].login == "maintainer"

    async def test_first_onboarding_is_audited(self, syncer, client):
        with patch("hm_backend.ingestion.repository_sync.log_audit_event") as audit:
            await syncer.onboard(client, "octo", "hello")

        audit.assert_called_once()
        assert audit.call_args.kwargs["repository"] == "octo/hello"

    async def test_resync_is_not_audited(self, syncer, client):
        syncer._repositories.get_by_github_id.return_value = REPOSITORY

        with patch("hm_backend.ingestion.repository_sync.log_audit_event") as audit:
            await syncer.onboard(client, "octo", "hello")

        audit.assert_not_called()

    async def test_missing_repository_writes_nothing(self, syncer, client):
        client.get_repository.side_effect = GitHubNotFoundError("repos/octo/missing")

        with pytest.raises(GitHubNotFoundError):
            await syncer.onboard(client, "octo", "missing")

        syncer._repositories.upsert_repository.assert_not_awaited()
