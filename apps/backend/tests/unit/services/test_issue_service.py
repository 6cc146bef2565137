"""Unit tests for issue_service."""
from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from hm_backend.core.config import Settings
from hm_backend.ingestion.github_client import GitHubAuthError
from hm_backend.ingestion.history_sync import SyncOutcome
from hm_backend.ingestion.reconciler import IssueRef
from hm_backend.ingestion.repository_persistence import RepositoryRef
from hm_backend.services.issue_service import IssueDetail, force_sync, get_issue_detail, load_issue_detail

MODULE = "hm_backend.services.issue_service"

REPOSITORY = RepositoryRef(id=10, github_id=1000, owner="octo", name="hello")
SETTINGS = Settings(stale_after_seconds=300)


def _ref(sync_status: str = "synced", synced_at: datetime | None = None) -> IssueRef:
    return IssueRef(
        id=40, repository_id=10, number=7, is_pull_request=False,
        sync_status=sync_status, synced_at=synced_at,
    )


def _detail_row(**overrides):
    row = {
        "id": 40,
        "repository_id": 10,
        "number": 7,
        "is_pull_request": False,
        "title": "Crash on start",
        "body": "Steps",
        "state": "open",
        "state_reason": None,
        "locked": False,
        "html_url": "https://github.com/octo/hello/issues/7",
        "comment_count": 2,
        "draft": None,
        "merged": None,
        "head_sha": None,
        "sync_status": "synced",
        "synced_at": datetime(2026, 3, 1, tzinfo=UTC),
        "closed_at": None,
        "remote_updated_at": None,
        "author_login": "alice",
    }
    row.update(overrides)
    return SimpleNamespace(**row)


@pytest.fixture
def reconciler():
    with patch(f"{MODULE}.EntityReconciler") as reconciler_cls:
        reconciler = reconciler_cls.return_value
        reconciler.get_issue_ref = AsyncMock(return_value=_ref())
        yield reconciler


@pytest.fixture
def syncer():
    with patch(f"{MODULE}.HistorySyncer") as syncer_cls:
        syncer = syncer_cls.return_value
        syncer.is_stale = MagicMock(return_value=False)
        syncer.sync_issue = AsyncMock(return_value=SyncOutcome.SYNCED)
        yield syncer


@pytest.fixture
def load_detail():
    with patch(f"{MODULE}.load_issue_detail", new_callable=AsyncMock) as mock:
        mock.return_value = MagicMock(spec=IssueDetail)
        yield mock


@pytest.fixture
def github_client():
    with patch(f"{MODULE}.GitHubClient") as client_cls:
        client_cls.return_value.__aenter__ = AsyncMock(return_value=MagicMock())
        client_cls.return_value.__aexit__ = AsyncMock(return_value=False)
        yield client_cls


class TestGetIssueDetail:
    """Tests for the read-through sync policy."""

    async def test_synced_fresh_issue_is_served_from_mirror(self, mock_session, reconciler, syncer, load_detail):
        with patch(f"{MODULE}.schedule_stale_refresh") as schedule:
            detail = await get_issue_detail(mock_session, REPOSITORY, 7, token="ghp_x", settings=SETTINGS)

        assert detail is load_detail.return_value
        syncer.sync_issue.assert_not_awaited()
        schedule.assert_not_called()

    async def test_unsynced_issue_is_synced_inline(
        self, mock_session, reconciler, syncer, load_detail, github_client
    ):
        reconciler.get_issue_ref.side_effect = [_ref("unsynced"), _ref("synced")]

        await get_issue_detail(mock_session, REPOSITORY, 7, token="ghp_x", settings=SETTINGS)

        syncer.sync_issue.assert_awaited_once()
        github_client.assert_called_once_with("ghp_x", base_url=SETTINGS.github_api_url)
        assert load_detail.await_args.args[2].sync_status == "synced"

    async def test_unknown_issue_is_fetched_when_token_present(
        self, mock_session, reconciler, syncer, load_detail, github_client
    ):
        reconciler.get_issue_ref.side_effect = [None, _ref("synced")]

        detail = await get_issue_detail(mock_session, REPOSITORY, 7, token="ghp_x", settings=SETTINGS)

        assert detail is load_detail.return_value

    async def test_unknown_issue_without_token_is_none(self, mock_session, reconciler, syncer, load_detail):
        reconciler.get_issue_ref.return_value = None

        detail = await get_issue_detail(mock_session, REPOSITORY, 7, settings=SETTINGS)

        assert detail is None
        syncer.sync_issue.assert_not_awaited()
        load_detail.assert_not_awaited()

    async def test_stale_issue_is_refreshed_in_background(self, mock_session, reconciler, syncer, load_detail):
        syncer.is_stale.return_value = True

        with patch(f"{MODULE}.schedule_stale_refresh") as schedule:
            await get_issue_detail(mock_session, REPOSITORY, 7, token="ghp_x", settings=SETTINGS)

        schedule.assert_called_once_with(REPOSITORY, 7, "ghp_x", SETTINGS)
        syncer.sync_issue.assert_not_awaited()

    async def test_stale_issue_without_token_is_served_as_is(self, mock_session, reconciler, syncer, load_detail):
        syncer.is_stale.return_value = True

        with patch(f"{MODULE}.schedule_stale_refresh") as schedule:
            await get_issue_detail(mock_session, REPOSITORY, 7, settings=SETTINGS)

        schedule.assert_not_called()
        load_detail.assert_awaited_once()

    async def test_failed_inline_sync_serves_cached_copy(
        self, mock_session, reconciler, syncer, load_detail, github_client
    ):
        reconciler.get_issue_ref.return_value = _ref("unsynced")
        github_client.return_value.__aenter__.side_effect = GitHubAuthError()

        detail = await get_issue_detail(mock_session, REPOSITORY, 7, token="bad", settings=SETTINGS)

        assert detail is load_detail.return_value

    async def test_unexpected_sync_error_without_cache_is_none(
        self, mock_session, reconciler, syncer, load_detail, github_client
    ):
        reconciler.get_issue_ref.return_value = None
        syncer.sync_issue.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")

        detail = await get_issue_detail(mock_session, REPOSITORY, 7, token="ghp_x", settings=SETTINGS)

        assert detail is None
        mock_session.rollback.assert_awaited_once()
        load_detail.assert_not_awaited()

    async def test_database_error_during_sync_serves_cached_copy(
        self, mock_session, reconciler, syncer, load_detail, github_client
    ):
        reconciler.get_issue_ref.return_value = _ref("unsynced")
        syncer.sync_issue.side_effect = OperationalError("INSERT", {}, Exception("down"))

        detail = await get_issue_detail(mock_session, REPOSITORY, 7, token="ghp_x", settings=SETTINGS)

        assert detail is load_detail.return_value
        mock_session.rollback.assert_awaited_once()


class TestForceSync:
    async def test_returns_sync_outcome(self, mock_session, syncer, github_client):
        syncer.sync_issue.return_value = SyncOutcome.SKIPPED

        outcome = await force_sync(mock_session, REPOSITORY, 7, "ghp_x", settings=SETTINGS)

        assert outcome == SyncOutcome.SKIPPED

    async def test_api_error_is_reported_as_failed(self, mock_session, syncer, github_client):
        github_client.return_value.__aenter__.side_effect = GitHubAuthError()

        outcome = await force_sync(mock_session, REPOSITORY, 7, "bad", settings=SETTINGS)

        assert outcome == SyncOutcome.FAILED

    async def test_unexpected_error_is_reported_as_failed(self, mock_session, syncer, github_client):
        syncer.sync_issue.side_effect = RuntimeError("boom")

        outcome = await force_sync(mock_session, REPOSITORY, 7, "ghp_x", settings=SETTINGS)

        assert outcome == SyncOutcome.FAILED


class TestLoadIssueDetail:
    async def test_issue_detail_includes_maintainer_flag(self, mock_session, make_result):
        mock_session.execute.side_effect = [
            make_result(first=_detail_row()),
            make_result(scalars=["bug"]),
            make_result(scalars=["bob"]),
            make_result(scalars=[]),
            make_result(scalar=True),
        ]

        with patch(f"{MODULE}.LinkedReferenceResolver") as resolver_cls:
            resolver_cls.return_value.linked_prs_for_issues = AsyncMock(return_value={})
            detail = await load_issue_detail(mock_session, REPOSITORY, _ref())

        assert detail.repository == "octo/hello"
        assert detail.author == "alice"
        assert detail.labels == ["bug"]
        assert detail.assignees == ["bob"]
        assert detail.has_maintainer_comment is True
        assert detail.linked_prs == []
        assert detail.ci_passing is None

    async def test_pull_request_detail_includes_ci(self, mock_session, make_result):
        mock_session.execute.side_effect = [
            make_result(first=_detail_row(is_pull_request=True, head_sha="abc123", draft=False, merged=False)),
            make_result(scalars=[]),
            make_result(scalars=[]),
            make_result(scalars=["carol"]),
        ]

        with patch(f"{MODULE}.LinkedReferenceResolver") as resolver_cls, patch(
            f"{MODULE}.CIStatusService"
        ) as ci_cls:
            resolver_cls.return_value.linked_issues_for_prs = AsyncMock(return_value={})
            ci_cls.return_value.aggregate = AsyncMock(return_value={(10, "abc123"): []})
            detail = await load_issue_detail(mock_session, REPOSITORY, _ref())

        assert detail.requested_reviewers == ["carol"]
        assert detail.ci_statuses == {"10:abc123": []}
        assert detail.ci_passing is True

    async def test_missing_row_is_none(self, mock_session, make_result):
        mock_session.execute.return_value = make_result(first=None)

        assert await load_issue_detail(mock_session, REPOSITORY, _ref()) is None
