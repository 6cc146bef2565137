"""Upserts for comments, reviews and review comments keyed by GitHub id"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import text
from sqlmodel.ext.asyncio.session import AsyncSession

from .payloads import GitHubComment, GitHubReview, GitHubReviewComment
from .users import ensure_user, subscribe_to_issue

logger = logging.getLogger(__name__)


@dataclass
class TimelineWrite:
    id: int
    created: bool
    author_id: int | None


UPSERT_COMMENT_SQL = text("""
    INSERT INTO mirror.issue_comments
        (github_id, issue_id, author_id, body, html_url, remote_created_at, remote_updated_at)
    VALUES
        (:github_id, :issue_id, :author_id, :body, :html_url, :remote_created_at, :remote_updated_at)
    ON CONFLICT (github_id) DO UPDATE SET
        body = EXCLUDED.body,
        author_id = COALESCE(EXCLUDED.author_id, mirror.issue_comments.author_id),
        html_url = EXCLUDED.html_url,
        remote_updated_at = EXCLUDED.remote_updated_at
    RETURNING id, (xmax = 0) AS created
""")

UPSERT_REVIEW_SQL = text("""
    INSERT INTO mirror.issue_reviews
        (github_id, issue_id, author_id, body, state, commit_id, html_url, submitted_at)
    VALUES
        (:github_id, :issue_id, :author_id, :body, :state, :commit_id, :html_url, :submitted_at)
    ON CONFLICT (github_id) DO UPDATE SET
        body = EXCLUDED.body,
        state = EXCLUDED.state,
        commit_id = COALESCE(EXCLUDED.commit_id, mirror.issue_reviews.commit_id),
        html_url = EXCLUDED.html_url,
        submitted_at = COALESCE(EXCLUDED.submitted_at, mirror.issue_reviews.submitted_at)
    RETURNING id, (xmax = 0) AS created
""")

# Review comments can be paginated before their review; the review id is
# resolved now if possible and back-filled by upsert_review otherwise.
UPSERT_REVIEW_COMMENT_SQL = text("""
    INSERT INTO mirror.issue_review_comments
        (github_id, issue_id, review_id, review_github_id, author_id, body, path, line,
         diff_hunk, html_url, remote_created_at, remote_updated_at)
    VALUES
        (:github_id, :issue_id,
         (SELECT id FROM mirror.issue_reviews WHERE github_id = :review_github_id),
         :review_github_id, :author_id, :body, :path, :line,
         :diff_hunk, :html_url, :remote_created_at, :remote_updated_at)
    ON CONFLICT (github_id) DO UPDATE SET
        review_id = COALESCE(EXCLUDED.review_id, mirror.issue_review_comments.review_id),
        review_github_id = COALESCE(EXCLUDED.review_github_id, mirror.issue_review_comments.review_github_id),
        body = EXCLUDED.body,
        path = EXCLUDED.path,
        line = EXCLUDED.line,
        diff_hunk = EXCLUDED.diff_hunk,
        html_url = EXCLUDED.html_url,
        remote_updated_at = EXCLUDED.remote_updated_at
    RETURNING id, (xmax = 0) AS created
""")

BACKFILL_REVIEW_ID_SQL = text("""
    UPDATE mirror.issue_review_comments
    SET review_id = :review_id
    WHERE review_github_id = :review_github_id AND review_id IS NULL
""")


class TimelinePersistence:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def upsert_comment(
        self,
        issue_id: int,
        comment: GitHubComment,
        count_new: bool = False,
    ) -> TimelineWrite:
        """
        count_new bumps the issue's comment counter when the row is new; history
        fetches leave it off because the issue refresh reports the total.
        """
        author_id = await ensure_user(self._session, comment.user)
        result = await self._session.execute(
            UPSERT_COMMENT_SQL,
            {
                "github_id": comment.id,
                "issue_id": issue_id,
                "author_id": author_id,
                "body": comment.body,
                "html_url": comment.html_url,
                "remote_created_at": comment.created_at,
                "remote_updated_at": comment.updated_at,
            },
        )
        row = result.one()
        await self._session.commit()

        write = TimelineWrite(id=row.id, created=bool(row.created), author_id=author_id)
        if write.created:
            if count_new:
                await self._session.execute(
                    text("UPDATE mirror.issues SET comment_count = comment_count + 1 WHERE id = :issue_id"),
                    {"issue_id": issue_id},
                )
                await self._session.commit()
            await subscribe_to_issue(self._session, issue_id, author_id)
        return write

    async def delete_comment(self, github_id: int) -> int | None:
        """Returns the parent issue id when a row was removed"""
        result = await self._session.execute(
            text("DELETE FROM mirror.issue_comments WHERE github_id = :github_id RETURNING issue_id"),
            {"github_id": github_id},
        )
        issue_id = result.scalar_one_or_none()
        if issue_id is not None:
            await self._session.execute(
                text("""
                    UPDATE mirror.issues
                    SET comment_count = GREATEST(comment_count - 1, 0)
                    WHERE id = :issue_id
                """),
                {"issue_id": issue_id},
            )
        await self._session.commit()
        return issue_id

    async def upsert_review(self, issue_id: int, review: GitHubReview) -> TimelineWrite:
        author_id = await ensure_user(self._session, review.user)
        result = await self._session.execute(
            UPSERT_REVIEW_SQL,
            {
                "github_id": review.id,
                "issue_id": issue_id,
                "author_id": author_id,
                "body": review.body,
                "state": review.state,
                "commit_id": review.commit_id,
                "html_url": review.html_url,
                "submitted_at": review.submitted_at,
            },
        )
        row = result.one()
        await self._session.execute(
            BACKFILL_REVIEW_ID_SQL, {"review_id": row.id, "review_github_id": review.id}
        )
        await self._session.commit()

        if review.state != "PENDING":
            await subscribe_to_issue(self._session, issue_id, author_id)
        return TimelineWrite(id=row.id, created=bool(row.created), author_id=author_id)

    async def upsert_review_comment(
        self, issue_id: int, comment: GitHubReviewComment
    ) -> TimelineWrite:
        author_id = await ensure_user(self._session, comment.user)
        result = await self._session.execute(
            UPSERT_REVIEW_COMMENT_SQL,
            {
                "github_id": comment.id,
                "issue_id": issue_id,
                "review_github_id": comment.pull_request_review_id,
                "author_id": author_id,
                "body": comment.body,
                "path": comment.path,
                "line": comment.line,
                "diff_hunk": comment.diff_hunk,
                "html_url": comment.html_url,
                "remote_created_at": comment.created_at,
                "remote_updated_at": comment.updated_at,
            },
        )
        row = result.one()
        await self._session.commit()

        if row.created:
            await subscribe_to_issue(self._session, issue_id, author_id)
        return TimelineWrite(id=row.id, created=bool(row.created), author_id=author_id)

    async def delete_review_comment(self, github_id: int) -> None:
        await self._session.execute(
            text("DELETE FROM mirror.issue_review_comments WHERE github_id = :github_id"),
            {"github_id": github_id},
        )
        await self._session.commit()
