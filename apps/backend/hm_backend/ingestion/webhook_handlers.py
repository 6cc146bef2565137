"""
Per-topic webhook handlers.

Each handler reconciles the mirrored state first and only then triggers
notifications. Items whose history was never fetched are brought up to date
with a full sync instead of a single-item upsert whenever a credential is
configured.
"""

from __future__ import annotations

import logging

from sqlmodel.ext.asyncio.session import AsyncSession

from hm_backend.core.audit import AuditEvent, log_audit_event
from hm_backend.core.config import Settings, get_settings
from hm_backend.services.notification_service import NotificationEvent, NotificationType

from .deliveries import DeliveryLog
from .github_client import GitHubAPIError
from .history_sync import SyncOutcome
from .payloads import (
    CheckRunEvent,
    InstallationEvent,
    InstallationRepositoriesEvent,
    IssueCommentEvent,
    IssuesEvent,
    LabelEvent,
    MemberEvent,
    MilestoneEvent,
    PullRequestEvent,
    PullRequestReviewCommentEvent,
    PullRequestReviewEvent,
    ReleaseEvent,
    RepositoryEvent,
    StatusEvent,
    WorkflowRunEvent,
)
from .reconciler import IssueRef
from .snapshots import IssueSnapshot, PullRequestSnapshot
from .users import ensure_user, subscribe_to_issue
from .webhook_router import DispatchOutcome, WebhookContext, router

logger = logging.getLogger(__name__)

ISSUE_ACTIONS = (
    "opened", "edited", "reopened", "closed", "assigned", "unassigned",
    "labeled", "unlabeled", "milestoned", "demilestoned", "locked", "unlocked",
)

PULL_REQUEST_ACTIONS = (
    "opened", "edited", "reopened", "closed", "assigned", "unassigned",
    "review_requested", "review_request_removed", "ready_for_review",
    "converted_to_draft", "synchronize", "labeled", "unlabeled",
    "milestoned", "demilestoned", "locked", "unlocked",
)

LINKED_REFERENCE_ACTIONS = {"opened", "edited", "reopened"}


# History


async def _sync_history_instead(context: WebhookContext, number: int) -> bool:
    """
    Runs a full history fetch for an item that is not yet synced.
    True means the fetch covered the event and the single-item write is skipped;
    False leaves the caller to apply its delta (synced item, no credential, or
    failed fetch, in which case the item stays unsynced).

    When another worker holds a live claim the outcome is SKIPPED and the delta
    is still applied. That fetch may have started before this event, and the
    upserts are idempotent and last-write-wins, so writing the delta on top of a
    concurrent history fetch cannot regress the row.
    """
    ref = await context.reconciler.get_issue_ref(context.repository.id, number)
    if ref is not None and ref.is_synced:
        return False
    if not context.has_credential:
        return False

    async with context.github_client() as client:
        outcome = await context.history.sync_issue(client, context.repository, number)
    return outcome == SyncOutcome.SYNCED


async def _actor_id(context: WebhookContext, event) -> int | None:
    return await ensure_user(context.session, event.sender)


async def _require_issue(context: WebhookContext, number: int) -> IssueRef | None:
    ref = await context.reconciler.get_issue_ref(context.repository.id, number)
    if ref is None:
        logger.info(
            f"#{number} in {context.repository.full_name} is not mirrored; event skipped",
            extra={"repository_id": context.repository.id, "number": number, "topic": context.topic},
        )
    return ref


# Installation lifecycle


@router.route(
    "installation", "created", "new_permissions_accepted", "suspend", "unsuspend", "deleted",
    requires_repository=False,
)
async def handle_installation(context: WebhookContext, event: InstallationEvent) -> None:
    repositories = context.repositories
    installation = event.installation

    if event.action == "deleted":
        removed = await repositories.delete_installation(installation.id)
        log_audit_event(
            AuditEvent.INSTALLATION_DELETED,
            delivery_id=context.delivery_id,
            metadata={"installation_id": installation.id, "repositories_removed": removed},
        )
        return

    if event.action in ("suspend", "unsuspend"):
        await repositories.set_installation_suspended(installation.id, event.action == "suspend")
        return

    installation_id = await repositories.upsert_installation(installation)
    registered = await repositories.register_installation_repositories(
        installation_id, event.repositories
    )
    if event.action == "created":
        log_audit_event(
            AuditEvent.INSTALLATION_CREATED,
            delivery_id=context.delivery_id,
            metadata={"installation_id": installation.id, "repositories": registered},
        )


@router.route("installation_repositories", "added", "removed", requires_repository=False)
async def handle_installation_repositories(
    context: WebhookContext, event: InstallationRepositoriesEvent
) -> None:
    repositories = context.repositories
    if event.action == "added":
        installation_id = await repositories.upsert_installation(event.installation)
        await repositories.register_installation_repositories(installation_id, event.repositories_added)
        return

    removed_ids = [repository.id for repository in event.repositories_removed]
    removed = await repositories.delete_repositories(removed_ids)
    log_audit_event(
        AuditEvent.REPOSITORIES_REMOVED,
        delivery_id=context.delivery_id,
        metadata={"installation_id": event.installation.id, "repositories_removed": removed},
    )


@router.route("repository", requires_repository=False)
async def handle_repository(context: WebhookContext, event: RepositoryEvent) -> None:
    repositories = context.repositories
    if event.action == "deleted":
        await repositories.delete_repositories([event.repository.id])
        return

    existing = await repositories.get_by_github_id(event.repository.id)
    if existing is None:
        logger.info(f"Repository {event.repository.full_name} is not registered; {event.action} ignored")
        return
    if event.action in ("edited", "renamed", "archived", "unarchived", "privatized", "publicized"):
        await repositories.update_repository(existing.id, event.repository)


@router.route("member", "added", "edited", "removed")
async def handle_member(context: WebhookContext, event: MemberEvent) -> None:
    if event.action == "removed":
        await context.repositories.remove_collaborator(context.repository.id, event.member.id)
        return
    await context.repositories.add_collaborator(context.repository.id, event.member, event.permission)


# Labels and milestones


@router.route("label", "created", "edited", "deleted")
async def handle_label(context: WebhookContext, event: LabelEvent) -> None:
    if event.action == "deleted":
        await context.reconciler.delete_label(event.label.id)
    else:
        await context.reconciler.ensure_label(context.repository.id, event.label)


@router.route("milestone", "created", "edited", "opened", "closed", "deleted")
async def handle_milestone(context: WebhookContext, event: MilestoneEvent) -> None:
    if event.action == "deleted":
        await context.reconciler.delete_milestone(event.milestone.id)
    else:
        await context.reconciler.upsert_milestone(context.repository.id, event.milestone)


# Issues


@router.route("issues", "deleted", "transferred")
async def handle_issue_removed(context: WebhookContext, event: IssuesEvent) -> None:
    await context.reconciler.delete_issue(context.repository.id, event.issue.number)


@router.route("issues", *ISSUE_ACTIONS)
async def handle_issue(context: WebhookContext, event: IssuesEvent) -> None:
    repository = context.repository
    issue = event.issue
    if issue.is_pull_request:
        # GitHub also reports PR changes on the issues topic; the pull_request topic owns them
        return

    write = await context.reconciler.reconcile(
        IssueSnapshot.from_issue(issue), repository.id, action=event.action, sender=event.sender
    )
    await _sync_history_instead(context, issue.number)

    actor_id = await _actor_id(context, event)
    base = {
        "type": NotificationType.ISSUE,
        "action": event.action,
        "repository_id": repository.id,
        "actor_id": actor_id,
        "issue_id": write.issue_id,
    }

    if event.action == "opened":
        await context.notifications.notify(
            NotificationEvent(rule="issue_opened", mention_text=issue.body or "", **base)
        )
    elif event.action in ("closed", "reopened"):
        participants = await context.reconciler.load_participants(write.issue_id)
        await context.notifications.notify(
            NotificationEvent(
                rule=f"issue_{event.action}",
                author_id=participants.author_id,
                assignee_ids=participants.assignee_ids,
                **base,
            )
        )
    elif event.action == "assigned" and event.assignee is not None:
        assignee_id = await ensure_user(context.session, event.assignee)
        await subscribe_to_issue(context.session, write.issue_id, assignee_id)
        await context.notifications.notify(
            NotificationEvent(rule="issue_assigned", target_id=assignee_id, **base)
        )


@router.route("issue_comment", "created", "edited", "deleted")
async def handle_issue_comment(context: WebhookContext, event: IssueCommentEvent) -> None:
    repository = context.repository
    issue = event.issue
    comment = event.comment

    if event.action == "deleted":
        await context.timeline.delete_comment(comment.id)
        return

    if not issue.is_pull_request:
        # Keeps title, labels and assignees current from the embedded issue
        await context.reconciler.reconcile(IssueSnapshot.from_issue(issue), repository.id)

    fetched = await _sync_history_instead(context, issue.number)
    ref = await _require_issue(context, issue.number)
    if ref is None:
        return
    if not fetched:
        await context.timeline.upsert_comment(ref.id, comment, count_new=True)

    if event.action != "created":
        return

    participants = await context.reconciler.load_participants(ref.id)
    is_pull_request = ref.is_pull_request or issue.is_pull_request
    await context.notifications.notify(
        NotificationEvent(
            rule="pr_comment" if is_pull_request else "issue_comment",
            type=NotificationType.PULL_REQUEST if is_pull_request else NotificationType.ISSUE,
            action="comment",
            repository_id=repository.id,
            actor_id=await _actor_id(context, event),
            issue_id=ref.id,
            body=comment.body,
            author_id=participants.author_id,
            assignee_ids=participants.assignee_ids,
        )
    )


# Pull requests


@router.route("pull_request", *PULL_REQUEST_ACTIONS)
async def handle_pull_request(context: WebhookContext, event: PullRequestEvent) -> None:
    repository = context.repository
    pr = event.pull_request

    write = await context.reconciler.reconcile(
        PullRequestSnapshot.from_pull_request(pr), repository.id, action=event.action, sender=event.sender
    )

    # A full sync also refreshes CI and linked issues
    if not await _sync_history_instead(context, pr.number) and context.has_credential:
        await _refresh_pull_request_links(context, event, write.issue_id)

    actor_id = await _actor_id(context, event)
    base = {
        "type": NotificationType.PULL_REQUEST,
        "repository_id": repository.id,
        "actor_id": actor_id,
        "issue_id": write.issue_id,
    }

    if event.action == "opened":
        await context.notifications.notify(
            NotificationEvent(rule="pr_opened", action="opened", mention_text=pr.body or "", **base)
        )
    elif event.action in ("reopened", "closed"):
        if event.action == "reopened":
            rule, action = "pr_reopened", "reopened"
        elif pr.is_merged:
            rule, action = "pr_merged", "merged"
        else:
            rule, action = "pr_closed", "closed"
        participants = await context.reconciler.load_participants(write.issue_id)
        await context.notifications.notify(
            NotificationEvent(
                rule=rule,
                action=action,
                author_id=participants.author_id,
                assignee_ids=participants.assignee_ids,
                **base,
            )
        )
    elif event.action == "assigned" and event.assignee is not None:
        assignee_id = await ensure_user(context.session, event.assignee)
        await subscribe_to_issue(context.session, write.issue_id, assignee_id)
        await context.notifications.notify(
            NotificationEvent(rule="pr_assigned", action="assigned", target_id=assignee_id, **base)
        )
    elif event.action == "review_requested" and event.requested_reviewer is not None:
        reviewer_id = await ensure_user(context.session, event.requested_reviewer)
        await subscribe_to_issue(context.session, write.issue_id, reviewer_id)
        await context.notifications.notify(
            NotificationEvent(
                rule="pr_review_requested", action="review_requested", target_id=reviewer_id, **base
            )
        )
    elif event.action == "ready_for_review":
        participants = await context.reconciler.load_participants(write.issue_id)
        await context.notifications.notify(
            NotificationEvent(
                rule="pr_ready_for_review",
                action="ready_for_review",
                requested_reviewer_ids=participants.requested_reviewer_ids,
                **base,
            )
        )


async def _refresh_pull_request_links(
    context: WebhookContext, event: PullRequestEvent, pr_id: int
) -> None:
    """Linked issues on open/edit/reopen, CI on new commits; failures only warn"""
    pr = event.pull_request
    try:
        async with context.github_client() as client:
            if event.action in LINKED_REFERENCE_ACTIONS:
                await context.linked_refs.refresh_for_pr(client, context.repository, pr_id, pr.number)
            if event.action == "synchronize" and pr.head is not None:
                await context.history.refresh_ci(client, context.repository, pr.head.sha)
    except GitHubAPIError as e:
        logger.warning(
            f"Failed to refresh links for PR #{pr.number} in {context.repository.full_name}: {e}",
            extra={"repository_id": context.repository.id, "pr_id": pr_id},
        )


async def _ensure_pull_request(context: WebhookContext, event) -> IssueRef:
    """Review events embed the PR; mirror it when it has not been seen yet"""
    ref = await context.reconciler.get_issue_ref(context.repository.id, event.pull_request.number)
    if ref is not None:
        return ref
    await context.reconciler.reconcile(
        PullRequestSnapshot.from_pull_request(event.pull_request), context.repository.id
    )
    return await context.reconciler.get_issue_ref(context.repository.id, event.pull_request.number)


@router.route("pull_request_review", "submitted", "edited", "dismissed")
async def handle_pull_request_review(context: WebhookContext, event: PullRequestReviewEvent) -> None:
    review = event.review
    pr = event.pull_request

    ref = await _ensure_pull_request(context, event)
    if not await _sync_history_instead(context, pr.number):
        await context.timeline.upsert_review(ref.id, review)

    if event.action == "edited":
        return

    actor_id = await _actor_id(context, event)
    base = {
        "type": NotificationType.PULL_REQUEST,
        "repository_id": context.repository.id,
        "actor_id": actor_id,
        "issue_id": ref.id,
    }
    if event.action == "submitted":
        participants = await context.reconciler.load_participants(ref.id)
        await context.notifications.notify(
            NotificationEvent(
                rule="pr_review_submitted",
                action="review_submitted",
                body=review.body,
                author_id=participants.author_id,
                **base,
            )
        )
    else:
        reviewer_id = await ensure_user(context.session, review.user)
        await context.notifications.notify(
            NotificationEvent(
                rule="pr_review_dismissed", action="review_dismissed", target_id=reviewer_id, **base
            )
        )


@router.route("pull_request_review_comment", "created", "edited", "deleted")
async def handle_pull_request_review_comment(
    context: WebhookContext, event: PullRequestReviewCommentEvent
) -> None:
    comment = event.comment

    if event.action == "deleted":
        await context.timeline.delete_review_comment(comment.id)
        return

    ref = await _ensure_pull_request(context, event)
    if not await _sync_history_instead(context, event.pull_request.number):
        await context.timeline.upsert_review_comment(ref.id, comment)

    if event.action != "created":
        return

    participants = await context.reconciler.load_participants(ref.id)
    await context.notifications.notify(
        NotificationEvent(
            rule="pr_comment",
            type=NotificationType.PULL_REQUEST,
            action="comment",
            repository_id=context.repository.id,
            actor_id=await _actor_id(context, event),
            issue_id=ref.id,
            body=comment.body,
            author_id=participants.author_id,
            assignee_ids=participants.assignee_ids,
        )
    )


# Releases and CI


@router.route("release", "published")
async def handle_release(context: WebhookContext, event: ReleaseEvent) -> None:
    release = event.release
    release_id = await context.repositories.upsert_release(context.repository.id, release)
    await context.notifications.notify(
        NotificationEvent(
            rule="release_published",
            type=NotificationType.RELEASE,
            action="published",
            repository_id=context.repository.id,
            actor_id=await _actor_id(context, event),
            release_id=release_id,
            body=release.name or release.tag_name,
        )
    )


@router.route("workflow_run", "completed")
async def handle_workflow_run(context: WebhookContext, event: WorkflowRunEvent) -> None:
    run = event.workflow_run
    run_id = await context.ci.upsert_workflow_run(context.repository.id, run)
    if run.conclusion != "failure":
        return

    await context.notifications.notify(
        NotificationEvent(
            rule="workflow_failed",
            type=NotificationType.WORKFLOW_RUN,
            action="failed",
            repository_id=context.repository.id,
            actor_id=await _actor_id(context, event),
            workflow_run_id=run_id,
            body=run.name or run.display_title,
        )
    )


@router.route("check_run")
async def handle_check_run(context: WebhookContext, event: CheckRunEvent) -> None:
    await context.ci.upsert_check_run(context.repository.id, event.check_run)


@router.route("status")
async def handle_status(context: WebhookContext, event: StatusEvent) -> None:
    await context.ci.upsert_commit_status(context.repository.id, event.sha, event.to_commit_status())


# Entry point


async def process_delivery(
    session: AsyncSession,
    topic: str,
    delivery_id: str | None,
    payload: dict,
    settings: Settings | None = None,
) -> DispatchOutcome:
    """Records the delivery, skips it when already processed, then dispatches"""
    settings = settings or get_settings()
    deliveries = DeliveryLog(session)
    action = payload.get("action") if isinstance(payload, dict) else None

    if delivery_id:
        if not await deliveries.begin(delivery_id, topic, action):
            logger.info(f"Skipping already processed delivery {delivery_id}", extra={"topic": topic})
            log_audit_event(AuditEvent.WEBHOOK_DUPLICATE_DELIVERY, delivery_id=delivery_id, topic=topic)
            return DispatchOutcome.DUPLICATE

    outcome = await router.dispatch(session, topic, payload, delivery_id=delivery_id, settings=settings)

    if delivery_id:
        if outcome == DispatchOutcome.FAILED:
            await deliveries.mark_failed(delivery_id)
        else:
            await deliveries.mark_processed(delivery_id)
    return outcome
