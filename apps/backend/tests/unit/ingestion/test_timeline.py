"""Unit tests for comment, review and review comment persistence"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from hm_backend.ingestion.payloads import GitHubComment, GitHubReview, GitHubReviewComment, GitHubUser
from hm_backend.ingestion.timeline import TimelinePersistence

AUTHOR = GitHubUser(id=2, login="alice")


@pytest.fixture(autouse=True)
def users():
    with (
        patch("hm_backend.ingestion.timeline.ensure_user", new_callable=AsyncMock) as ensure,
        patch("hm_backend.ingestion.timeline.subscribe_to_issue", new_callable=AsyncMock) as subscribe,
    ):
        ensure.return_value = 11
        yield ensure, subscribe


def _sql_calls(session) -> list[str]:
    return [str(call.args[0]) for call in session.execute.call_args_list]


class TestUpsertComment:
    async def test_new_comment_bumps_counter_when_counting(self, mock_session, make_result, users):
        mock_session.execute.return_value = make_result(first=MagicMock(id=70, created=True))
        timeline = TimelinePersistence(mock_session)

        write = await timeline.upsert_comment(40, GitHubComment(id=900, body="hi", user=AUTHOR), count_new=True)

        assert write.created is True
        assert write.author_id == 11
        assert any("comment_count = comment_count + 1" in s for s in _sql_calls(mock_session))
        users[1].assert_awaited_once_with(mock_session, 40, 11)

    async def test_history_fetch_leaves_counter_alone(self, mock_session, make_result):
        mock_session.execute.return_value = make_result(first=MagicMock(id=70, created=True))
        timeline = TimelinePersistence(mock_session)

        await timeline.upsert_comment(40, GitHubComment(id=900, body="hi", user=AUTHOR))

        assert not any("comment_count + 1" in s for s in _sql_calls(mock_session))

    async def test_edit_does_not_bump_counter(self, mock_session, make_result, users):
        mock_session.execute.return_value = make_result(first=MagicMock(id=70, created=False))
        timeline = TimelinePersistence(mock_session)

        write = await timeline.upsert_comment(40, GitHubComment(id=900, body="edited"), count_new=True)

        assert write.created is False
        assert mock_session.execute.await_count == 1
        users[1].assert_not_awaited()


class TestDeleteComment:
    async def test_decrements_parent_counter(self, mock_session, make_result):
        mock_session.execute.side_effect = [make_result(scalar=40), MagicMock()]
        timeline = TimelinePersistence(mock_session)

        issue_id = await timeline.delete_comment(900)

        assert issue_id == 40
        assert "GREATEST(comment_count - 1, 0)" in _sql_calls(mock_session)[1]

    async def test_unknown_comment_is_noop(self, mock_session, make_result):
        mock_session.execute.return_value = make_result(scalar=None)
        timeline = TimelinePersistence(mock_session)

        assert await timeline.delete_comment(900) is None
        assert mock_session.execute.await_count == 1


class TestUpsertReview:
    async def test_backfills_review_comments(self, mock_session, make_result):
        mock_session.execute.return_value = make_result(first=MagicMock(id=80, created=True))
        timeline = TimelinePersistence(mock_session)

        await timeline.upsert_review(40, GitHubReview(id=300, state="approved", user=AUTHOR))

        backfill = mock_session.execute.call_args_list[1]
        assert "SET review_id = :review_id" in str(backfill.args[0])
        assert backfill.args[1] == {"review_id": 80, "review_github_id": 300}

    async def test_pending_review_does_not_subscribe(self, mock_session, make_result, users):
        mock_session.execute.return_value = make_result(first=MagicMock(id=80, created=True))
        timeline = TimelinePersistence(mock_session)

        await timeline.upsert_review(40, GitHubReview(id=300, state="PENDING", user=AUTHOR))

        users[1].assert_not_awaited()

    async def test_dismissed_review_is_an_upsert(self, mock_session, make_result):
        mock_session.execute.return_value = make_result(first=MagicMock(id=80, created=False))
        timeline = TimelinePersistence(mock_session)

        await timeline.upsert_review(40, GitHubReview(id=300, state="dismissed"))

        assert mock_session.execute.call_args_list[0].args[1]["state"] == "DISMISSED"


class TestUpsertReviewComment:
    async def test_carries_parent_review_github_id(self, mock_session, make_result):
        mock_session.execute.return_value = make_result(first=MagicMock(id=90, created=True))
        timeline = TimelinePersistence(mock_session)

        comment = GitHubReviewComment(id=901, body="nit", pull_request_review_id=300, path="a.py", line=3)
        await timeline.upsert_review_comment(40, comment)

        params = mock_session.execute.call_args.args[1]
        assert params["review_github_id"] == 300
        assert params["path"] == "a.py"
