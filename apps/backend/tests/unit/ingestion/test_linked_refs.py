"""Unit tests for closing-reference links"""

from unittest.mock import AsyncMock, MagicMock

from hm_backend.ingestion.linked_refs import LinkedReferenceResolver
from hm_backend.ingestion.repository_persistence import RepositoryRef

REPOSITORY = RepositoryRef(id=10, github_id=1000, owner="octo", name="hello")


def _client(numbers: list[int]) -> MagicMock:
    client = MagicMock()
    client.get_closing_references = AsyncMock(return_value=numbers)
    return client


class TestRefreshForPR:
    async def test_replaces_changed_links(self, mock_session, make_result):
        mock_session.execute.side_effect = [
            make_result(scalars=[41, 42]),  # local issue ids for #3, #4
            make_result(scalars=[40, 41]),  # current links
            MagicMock(),
            MagicMock(),
        ]
        resolver = LinkedReferenceResolver(mock_session)

        desired = await resolver.refresh_for_pr(_client([3, 4]), REPOSITORY, pr_id=99, pr_number=12)

        assert desired == {41, 42}
        calls = mock_session.execute.call_args_list
        assert calls[2].args[1] == {"pr_id": 99, "issue_ids": [40]}
        assert calls[3].args[1] == {"issue_id": 42, "pr_id": 99}
        mock_session.commit.assert_awaited_once()

    async def test_unchanged_links_write_nothing(self, mock_session, make_result):
        mock_session.execute.side_effect = [make_result(scalars=[41]), make_result(scalars=[41])]
        resolver = LinkedReferenceResolver(mock_session)

        await resolver.refresh_for_pr(_client([3]), REPOSITORY, pr_id=99, pr_number=12)

        assert mock_session.execute.await_count == 2
        mock_session.commit.assert_not_awaited()

    async def test_no_references_clears_links(self, mock_session, make_result):
        mock_session.execute.side_effect = [make_result(scalars=[40]), MagicMock()]
        resolver = LinkedReferenceResolver(mock_session)

        desired = await resolver.refresh_for_pr(_client([]), REPOSITORY, pr_id=99, pr_number=12)

        assert desired == set()
        assert "DELETE FROM mirror.linked_prs" in str(mock_session.execute.call_args_list[1].args[0])


class TestLinkedLookups:
    async def test_groups_prs_by_issue(self, mock_session, make_result):
        mock_session.execute.return_value = make_result(rows=[
            MagicMock(key=40, value=99),
            MagicMock(key=40, value=100),
            MagicMock(key=41, value=99),
        ])
        resolver = LinkedReferenceResolver(mock_session)

        grouped = await resolver.linked_prs_for_issues([40, 41])

        assert grouped == {40: [99, 100], 41: [99]}

    async def test_empty_input_skips_query(self, mock_session):
        resolver = LinkedReferenceResolver(mock_session)

        assert await resolver.linked_issues_for_prs([]) == {}
        mock_session.execute.assert_not_awaited()
