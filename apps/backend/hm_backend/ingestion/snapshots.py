"""Desired state of one issue or pull request, built from a GitHub payload"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar

from .payloads import GitHubIssue, GitHubLabel, GitHubMilestone, GitHubPullRequest, GitHubUser


@dataclass
class IssueSnapshot:
    github_id: int
    number: int
    title: str
    body: str | None
    state: str
    state_reason: str | None = None
    locked: bool = False
    html_url: str | None = None
    # None when the payload does not report it (keeps the stored counter)
    comment_count: int | None = None
    author: GitHubUser | None = None
    closed_by: GitHubUser | None = None
    milestone: GitHubMilestone | None = None
    assignees: list[GitHubUser] = field(default_factory=list)
    labels: list[GitHubLabel] = field(default_factory=list)
    closed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    is_pull_request: ClassVar[bool] = False

    @classmethod
    def from_issue(cls, issue: GitHubIssue) -> IssueSnapshot:
        return cls(**_common_fields(issue))

    @property
    def is_open(self) -> bool:
        return self.state == "open"


@dataclass
class PullRequestSnapshot(IssueSnapshot):
    draft: bool | None = None
    merged: bool = False
    merged_at: datetime | None = None
    merged_by: GitHubUser | None = None
    head_ref: str | None = None
    head_sha: str | None = None
    base_ref: str | None = None
    base_sha: str | None = None
    additions: int | None = None
    deletions: int | None = None
    changed_files: int | None = None
    requested_reviewers: list[GitHubUser] = field(default_factory=list)

    is_pull_request: ClassVar[bool] = True

    @classmethod
    def from_pull_request(cls, pr: GitHubPullRequest) -> PullRequestSnapshot:
        return cls(
            **_common_fields(pr),
            draft=pr.draft,
            merged=pr.is_merged,
            merged_at=pr.merged_at,
            merged_by=pr.merged_by,
            head_ref=pr.head.ref if pr.head else None,
            head_sha=pr.head.sha if pr.head else None,
            base_ref=pr.base.ref if pr.base else None,
            base_sha=pr.base.sha if pr.base else None,
            additions=pr.additions,
            deletions=pr.deletions,
            changed_files=pr.changed_files,
            requested_reviewers=list(pr.requested_reviewers),
        )


def _common_fields(item: GitHubIssue) -> dict:
    return {
        "github_id": item.id,
        "number": item.number,
        "title": item.title,
        "body": item.body,
        "state": item.state,
        "state_reason": item.state_reason,
        "locked": item.locked,
        "html_url": item.html_url,
        "comment_count": item.comments,
        "author": item.user,
        "closed_by": item.closed_by,
        "milestone": item.milestone,
        "assignees": list(item.assignees),
        "labels": list(item.labels),
        "closed_at": item.closed_at,
        "created_at": item.created_at,
        "updated_at": item.updated_at,
    }


def snapshot_from_payload(item: GitHubIssue) -> IssueSnapshot:
    if isinstance(item, GitHubPullRequest):
        return PullRequestSnapshot.from_pull_request(item)
    return IssueSnapshot.from_issue(item)
