from sqlmodel import SQLModel

from hm_database.models.identity import User
from hm_database.models.mirror import Installation, Label, Milestone, Release, Repository, RepositoryCollaborator
from hm_database.models.issues import Issue, IssueComment, IssueReview, IssueReviewComment, LinkedPR
from hm_database.models.ci import CheckRun, CommitStatus, WorkflowRun
from hm_database.models.notifications import IssueSubscription, Notification, RepositorySubscription, WebhookDelivery

Base = SQLModel

__all__ = [
    "Base",
    "SQLModel",
    "User",
    "Installation",
    "Repository",
    "RepositoryCollaborator",
    "Label",
    "Milestone",
    "Release",
    "Issue",
    "IssueComment",
    "IssueReview",
    "IssueReviewComment",
    "LinkedPR",
    "CheckRun",
    "CommitStatus",
    "WorkflowRun",
    "RepositorySubscription",
    "IssueSubscription",
    "Notification",
    "WebhookDelivery",
]
