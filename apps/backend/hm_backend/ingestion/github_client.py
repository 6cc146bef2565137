"""GitHub REST and GraphQL client used by history sync and repository onboarding"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel

from .payloads import (
    GitHubCheckRun,
    GitHubCollaborator,
    GitHubComment,
    GitHubCommitStatus,
    GitHubIssue,
    GitHubLabel,
    GitHubMilestone,
    GitHubPullRequest,
    GitHubRepository,
    GitHubReview,
    GitHubReviewComment,
)

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"

ModelT = TypeVar("ModelT", bound=BaseModel)


class GitHubAPIError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class GitHubRateLimitError(GitHubAPIError):
    def __init__(self, reset_at: int | None = None):
        super().__init__("GitHub API rate limit exceeded", status_code=403)
        self.reset_at = reset_at


class GitHubAuthError(GitHubAPIError):
    def __init__(self):
        super().__init__("GitHub authentication failed", status_code=401)


class GitHubNotFoundError(GitHubAPIError):
    def __init__(self, path: str):
        super().__init__(f"GitHub resource not found: {path}", status_code=404)
        self.path = path


class GitHubPaginationError(GitHubAPIError):
    """A listing still had a next page after MAX_PAGES; the result would be incomplete"""

    def __init__(self, path: str, pages: int):
        super().__init__(f"Pagination of {path} truncated after {pages} pages")
        self.path = path


@dataclass
class RateLimitInfo:
    remaining: int
    limit: int
    reset_at: int
    used: int


CLOSING_REFERENCES_QUERY = """
    query($owner: String!, $name: String!, $number: Int!) {
        repository(owner: $owner, name: $name) {
            pullRequest(number: $number) {
                closingIssuesReferences(first: 50) {
                    nodes {
                        number
                        repository { nameWithOwner }
                    }
                }
            }
        }
    }
"""


class GitHubClient:
    """
    One instance per bearer credential; use as an async context manager.
    Calls are not retried: a failure surfaces as GitHubAPIError and the caller
    decides whether cached data stays authoritative.
    """

    TIMEOUT_SECONDS: float = 30.0
    PER_PAGE: int = 100
    MAX_PAGES: int = 50

    def __init__(self, token: str, base_url: str = GITHUB_API_URL):
        if not token:
            raise ValueError("GitHub token is required")

        self._token = token
        self._base_url = base_url.rstrip("/")
        self._header_rate_limit: RateLimitInfo | None = None
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> GitHubClient:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(self.TIMEOUT_SECONDS),
            headers={
                "Authorization": f"Bearer {self._token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        if not self._client:
            raise RuntimeError("Client not initialized; use async context manager")

        try:
            response = await self._client.request(method, url, params=params, json=json)
        except httpx.TimeoutException as e:
            raise GitHubAPIError(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise GitHubAPIError(f"Request failed: {e}") from e

        self._update_header_rate_limit(response)

        if response.status_code == 401:
            raise GitHubAuthError()

        if response.status_code in (403, 429):
            if self._header_rate_limit and self._header_rate_limit.remaining == 0:
                raise GitHubRateLimitError(reset_at=self._header_rate_limit.reset_at)
            raise GitHubAPIError("Forbidden", status_code=response.status_code)

        if response.status_code == 404:
            raise GitHubNotFoundError(url)

        if response.status_code >= 400:
            raise GitHubAPIError(
                f"GitHub returned {response.status_code} for {url}",
                status_code=response.status_code,
            )

        return response

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        response = await self._request("GET", path, params=params)
        return self._decode(response, path)

    @staticmethod
    def _decode(response: httpx.Response, url: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise GitHubAPIError(
                f"Invalid JSON from {url}: {e}", status_code=response.status_code
            ) from e

    async def _paginate(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        item_key: str | None = None,
    ) -> list[dict[str, Any]]:
        """
        Follows Link rel=next; item_key unwraps envelopes like {"check_runs": [...]}.
        Raises GitHubPaginationError rather than returning a truncated listing.
        """
        items: list[dict[str, Any]] = []
        url: str = path
        query: dict[str, Any] | None = {**(params or {}), "per_page": self.PER_PAGE}

        for _ in range(self.MAX_PAGES):
            response = await self._request("GET", url, params=query)
            data = self._decode(response, url)
            page = data.get(item_key, []) if item_key else data
            items.extend(page)

            next_url = response.links.get("next", {}).get("url")
            if next_url is None:
                return items
            url = next_url
            # The next link already carries the query string
            query = None

        logger.warning(
            f"Stopped paginating {path} after {self.MAX_PAGES} pages",
            extra={"path": path, "items": len(items)},
        )
        raise GitHubPaginationError(path, self.MAX_PAGES)

    async def _paginate_models(
        self,
        model: type[ModelT],
        path: str,
        params: dict[str, Any] | None = None,
        item_key: str | None = None,
    ) -> list[ModelT]:
        raw = await self._paginate(path, params=params, item_key=item_key)
        return [model.model_validate(item) for item in raw]

    async def graphql(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        response = await self._request("POST", "/graphql", json=payload)
        body = self._decode(response, "/graphql")

        if "errors" in body:
            error_messages = [e.get("message", "Unknown") for e in body["errors"]]
            raise GitHubAPIError(f"GraphQL errors: {'; '.join(error_messages)}")

        return body.get("data") or {}

    def _update_header_rate_limit(self, response: httpx.Response) -> None:
        try:
            remaining = response.headers.get("x-ratelimit-remaining")
            limit = response.headers.get("x-ratelimit-limit")
            reset_at = response.headers.get("x-ratelimit-reset")
            used = response.headers.get("x-ratelimit-used")

            if all([remaining, limit, reset_at, used]):
                self._header_rate_limit = RateLimitInfo(
                    remaining=int(remaining),
                    limit=int(limit),
                    reset_at=int(reset_at),
                    used=int(used),
                )
                if self._header_rate_limit.remaining < 100:
                    logger.warning(
                        f"GitHub rate limit low: {remaining}/{limit} remaining",
                        extra={"remaining": int(remaining), "limit": int(limit)},
                    )
        except (ValueError, TypeError):
            pass

    def get_rate_limit_info(self) -> RateLimitInfo | None:
        return self._header_rate_limit

    # Repository metadata

    async def get_repository(self, owner: str, name: str) -> GitHubRepository:
        data = await self._get_json(f"/repos/{owner}/{name}")
        return GitHubRepository.model_validate(data)

    async def list_labels(self, owner: str, name: str) -> list[GitHubLabel]:
        return await self._paginate_models(GitHubLabel, f"/repos/{owner}/{name}/labels")

    async def list_milestones(self, owner: str, name: str) -> list[GitHubMilestone]:
        return await self._paginate_models(
            GitHubMilestone,
            f"/repos/{owner}/{name}/milestones",
            params={"state": "all"},
        )

    async def list_collaborators(self, owner: str, name: str) -> list[GitHubCollaborator]:
        return await self._paginate_models(
            GitHubCollaborator,
            f"/repos/{owner}/{name}/collaborators",
            params={"affiliation": "all"},
        )

    # Issues and pull requests

    async def get_issue(self, owner: str, name: str, number: int) -> GitHubIssue:
        data = await self._get_json(f"/repos/{owner}/{name}/issues/{number}")
        return GitHubIssue.model_validate(data)

    async def get_pull_request(self, owner: str, name: str, number: int) -> GitHubPullRequest:
        data = await self._get_json(f"/repos/{owner}/{name}/pulls/{number}")
        return GitHubPullRequest.model_validate(data)

    async def list_comments(self, owner: str, name: str, number: int) -> list[GitHubComment]:
        return await self._paginate_models(
            GitHubComment, f"/repos/{owner}/{name}/issues/{number}/comments"
        )

    async def list_reviews(self, owner: str, name: str, number: int) -> list[GitHubReview]:
        return await self._paginate_models(
            GitHubReview, f"/repos/{owner}/{name}/pulls/{number}/reviews"
        )

    async def list_review_comments(
        self, owner: str, name: str, number: int
    ) -> list[GitHubReviewComment]:
        return await self._paginate_models(
            GitHubReviewComment, f"/repos/{owner}/{name}/pulls/{number}/comments"
        )

    # CI

    async def list_checks_for_commit(self, owner: str, name: str, sha: str) -> list[GitHubCheckRun]:
        return await self._paginate_models(
            GitHubCheckRun,
            f"/repos/{owner}/{name}/commits/{sha}/check-runs",
            item_key="check_runs",
        )

    async def list_commit_statuses_for_commit(
        self, owner: str, name: str, sha: str
    ) -> list[GitHubCommitStatus]:
        return await self._paginate_models(
            GitHubCommitStatus, f"/repos/{owner}/{name}/commits/{sha}/statuses"
        )

    # Linked references

    async def get_closing_references(self, owner: str, name: str, number: int) -> list[int]:
        """Issue numbers in the same repository that the pull request closes"""
        data = await self.graphql(
            CLOSING_REFERENCES_QUERY,
            {"owner": owner, "name": name, "number": number},
        )
        pull_request = (data.get("repository") or {}).get("pullRequest") or {}
        nodes = (pull_request.get("closingIssuesReferences") or {}).get("nodes") or []

        full_name = f"{owner}/{name}".lower()
        numbers: list[int] = []
        for node in nodes:
            if not node:
                continue
            node_repo = ((node.get("repository") or {}).get("nameWithOwner") or "").lower()
            if node_repo and node_repo != full_name:
                continue
            number = node.get("number")
            if isinstance(number, int) and number not in numbers:
                numbers.append(number)
        return numbers
