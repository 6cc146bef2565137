"""
Strict schemas for GitHub payloads.

Webhook envelopes are validated per topic at the trust boundary; the same item
models parse REST responses from GitHubClient. Unknown keys are ignored, missing
required keys fail validation.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GitHubModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class GitHubUser(GitHubModel):
    id: int
    login: str
    avatar_url: str | None = None
    name: str | None = None
    email: str | None = None
    type: str | None = None


class GitHubCollaborator(GitHubUser):
    permissions: dict[str, bool] = Field(default_factory=dict)
    role_name: str | None = None

    @property
    def permission(self) -> str | None:
        """Highest write-level permission, None for read-only collaborators"""
        for level in ("admin", "maintain", "push"):
            if self.permissions.get(level):
                return "write" if level == "push" else level
        return None


class GitHubLabel(GitHubModel):
    id: int
    name: str
    color: str | None = None
    description: str | None = None


class GitHubMilestone(GitHubModel):
    id: int
    number: int
    title: str
    description: str | None = None
    state: str = "open"
    due_on: datetime | None = None


class GitHubRepository(GitHubModel):
    id: int
    name: str
    full_name: str
    owner: GitHubUser
    private: bool = False
    archived: bool = False
    description: str | None = None
    html_url: str | None = None


class GitHubInstallationAccount(GitHubModel):
    id: int
    login: str
    type: str = "User"


class GitHubInstallation(GitHubModel):
    id: int
    account: GitHubInstallationAccount | None = None


class GitHubInstallationRepository(GitHubModel):
    id: int
    name: str
    full_name: str
    private: bool = False


class GitHubIssue(GitHubModel):
    id: int
    number: int
    title: str
    body: str | None = None
    state: str = "open"
    state_reason: str | None = None
    locked: bool = False
    html_url: str | None = None
    user: GitHubUser | None = None
    assignees: list[GitHubUser] = Field(default_factory=list)
    labels: list[GitHubLabel] = Field(default_factory=list)
    milestone: GitHubMilestone | None = None
    comments: int | None = None
    closed_by: GitHubUser | None = None
    closed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    # Present on the issue view of a pull request
    pull_request: dict[str, Any] | None = None

    @property
    def is_pull_request(self) -> bool:
        return self.pull_request is not None


class GitHubBranchRef(GitHubModel):
    ref: str
    sha: str


class GitHubPullRequest(GitHubIssue):
    draft: bool | None = None
    merged: bool | None = None
    merged_at: datetime | None = None
    merged_by: GitHubUser | None = None
    head: GitHubBranchRef | None = None
    base: GitHubBranchRef | None = None
    additions: int | None = None
    deletions: int | None = None
    changed_files: int | None = None
    requested_reviewers: list[GitHubUser] = Field(default_factory=list)

    @property
    def is_pull_request(self) -> bool:
        return True

    @property
    def is_merged(self) -> bool:
        return self.merged is True or self.merged_at is not None


class GitHubComment(GitHubModel):
    id: int
    body: str = ""
    user: GitHubUser | None = None
    html_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("body", mode="before")
    @classmethod
    def _none_body_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


REVIEW_STATES = {"APPROVED", "CHANGES_REQUESTED", "COMMENTED", "DISMISSED", "PENDING"}


class GitHubReview(GitHubModel):
    id: int
    body: str | None = None
    state: str
    user: GitHubUser | None = None
    commit_id: str | None = None
    html_url: str | None = None
    submitted_at: datetime | None = None

    @field_validator("state")
    @classmethod
    def _normalize_state(cls, value: str) -> str:
        """Webhooks send lowercase states, REST sends uppercase"""
        state = value.upper()
        if state not in REVIEW_STATES:
            raise ValueError(f"Unknown review state: {value}")
        return state


class GitHubReviewComment(GitHubComment):
    pull_request_review_id: int | None = None
    path: str | None = None
    line: int | None = None
    diff_hunk: str | None = None


class GitHubApp(GitHubModel):
    slug: str | None = None
    name: str | None = None


class GitHubCheckRun(GitHubModel):
    id: int
    name: str
    head_sha: str
    status: str
    conclusion: str | None = None
    html_url: str | None = None
    details_url: str | None = None
    app: GitHubApp | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class GitHubCommitStatus(GitHubModel):
    id: int
    context: str
    state: str
    description: str | None = None
    target_url: str | None = None
    avatar_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class GitHubRelease(GitHubModel):
    id: int
    tag_name: str
    name: str | None = None
    body: str | None = None
    draft: bool = False
    prerelease: bool = False
    html_url: str | None = None
    published_at: datetime | None = None
    author: GitHubUser | None = None


class GitHubPullRequestRef(GitHubModel):
    number: int


class GitHubWorkflowRun(GitHubModel):
    id: int
    name: str | None = None
    display_title: str | None = None
    workflow_id: int | None = None
    event: str | None = None
    status: str | None = None
    conclusion: str | None = None
    head_branch: str | None = None
    head_sha: str | None = None
    run_number: int | None = None
    run_attempt: int | None = None
    html_url: str | None = None
    actor: GitHubUser | None = None
    pull_requests: list[GitHubPullRequestRef] = Field(default_factory=list)
    run_started_at: datetime | None = None
    updated_at: datetime | None = None


# Webhook envelopes


class WebhookEvent(GitHubModel):
    action: str | None = None
    sender: GitHubUser | None = None
    installation: GitHubInstallation | None = None
    repository: GitHubRepository | None = None


class RepositoryScopedEvent(WebhookEvent):
    repository: GitHubRepository


class IssuesEvent(RepositoryScopedEvent):
    action: str
    issue: GitHubIssue
    assignee: GitHubUser | None = None
    label: GitHubLabel | None = None


class IssueCommentEvent(RepositoryScopedEvent):
    action: str
    issue: GitHubIssue
    comment: GitHubComment


class LabelEvent(RepositoryScopedEvent):
    action: str
    label: GitHubLabel


class MilestoneEvent(RepositoryScopedEvent):
    action: str
    milestone: GitHubMilestone


class PullRequestEvent(RepositoryScopedEvent):
    action: str
    pull_request: GitHubPullRequest
    assignee: GitHubUser | None = None
    requested_reviewer: GitHubUser | None = None


class PullRequestReviewEvent(RepositoryScopedEvent):
    action: str
    review: GitHubReview
    pull_request: GitHubPullRequest


class PullRequestReviewCommentEvent(RepositoryScopedEvent):
    action: str
    comment: GitHubReviewComment
    pull_request: GitHubPullRequest


class RepositoryEvent(RepositoryScopedEvent):
    action: str


class MemberEvent(RepositoryScopedEvent):
    action: str
    member: GitHubUser
    changes: dict[str, Any] = Field(default_factory=dict)

    @property
    def permission(self) -> str:
        """Permission the member ends up with; GitHub only reports it on add/edit"""
        permission = self.changes.get("permission", {})
        if isinstance(permission, dict) and permission.get("to"):
            return str(permission["to"])
        return "write"


class ReleaseEvent(RepositoryScopedEvent):
    action: str
    release: GitHubRelease


class WorkflowRunEvent(RepositoryScopedEvent):
    action: str
    workflow_run: GitHubWorkflowRun


class CheckRunEvent(RepositoryScopedEvent):
    action: str
    check_run: GitHubCheckRun


class StatusEvent(RepositoryScopedEvent):
    id: int
    sha: str
    context: str
    state: str
    description: str | None = None
    target_url: str | None = None
    avatar_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_commit_status(self) -> GitHubCommitStatus:
        return GitHubCommitStatus(
            id=self.id,
            context=self.context,
            state=self.state,
            description=self.description,
            target_url=self.target_url,
            avatar_url=self.avatar_url,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class InstallationEvent(WebhookEvent):
    action: str
    installation: GitHubInstallation
    repositories: list[GitHubInstallationRepository] = Field(default_factory=list)


class InstallationRepositoriesEvent(WebhookEvent):
    action: str
    installation: GitHubInstallation
    repositories_added: list[GitHubInstallationRepository] = Field(default_factory=list)
    repositories_removed: list[GitHubInstallationRepository] = Field(default_factory=list)


TOPIC_SCHEMAS: dict[str, type[WebhookEvent]] = {
    "installation": InstallationEvent,
    "installation_repositories": InstallationRepositoriesEvent,
    "issues": IssuesEvent,
    "issue_comment": IssueCommentEvent,
    "label": LabelEvent,
    "milestone": MilestoneEvent,
    "pull_request": PullRequestEvent,
    "pull_request_review": PullRequestReviewEvent,
    "pull_request_review_comment": PullRequestReviewCommentEvent,
    "repository": RepositoryEvent,
    "member": MemberEvent,
    "release": ReleaseEvent,
    "workflow_run": WorkflowRunEvent,
    "check_run": CheckRunEvent,
    "status": StatusEvent,
}
