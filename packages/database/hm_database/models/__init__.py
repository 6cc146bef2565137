"""Database models for hubmirror."""

from hm_database.models.identity import User
from hm_database.models.mirror import Installation, Label, Milestone, Release, Repository, RepositoryCollaborator
from hm_database.models.issues import (
    Issue,
    IssueAssignee,
    IssueComment,
    IssueLabel,
    IssueRequestedReviewer,
    IssueReview,
    IssueReviewComment,
    LinkedPR,
)
from hm_database.models.ci import CheckRun, CommitStatus, WorkflowRun
from hm_database.models.notifications import IssueSubscription, Notification, RepositorySubscription, WebhookDelivery

__all__ = [
    # Identity
    "User",
    # Mirror
    "Installation",
    "Repository",
    "RepositoryCollaborator",
    "Label",
    "Milestone",
    "Release",
    # Issues
    "Issue",
    "IssueAssignee",
    "IssueLabel",
    "IssueRequestedReviewer",
    "IssueComment",
    "IssueReview",
    "IssueReviewComment",
    "LinkedPR",
    # CI
    "CheckRun",
    "CommitStatus",
    "WorkflowRun",
    # Notifications
    "RepositorySubscription",
    "IssueSubscription",
    "Notification",
    "WebhookDelivery",
]
