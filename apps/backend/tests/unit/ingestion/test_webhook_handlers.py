"""Unit tests for per-topic webhook handlers and delivery processing"""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from hm_backend.core.config import Settings
from hm_backend.ingestion.history_sync import SyncOutcome
from hm_backend.ingestion.payloads import (
    InstallationEvent,
    IssueCommentEvent,
    IssuesEvent,
    MemberEvent,
    PullRequestEvent,
    PullRequestReviewEvent,
    WorkflowRunEvent,
)
from hm_backend.ingestion.reconciler import IssueParticipants, IssueRef, IssueWriteResult
from hm_backend.ingestion.repository_persistence import RepositoryRef
from hm_backend.ingestion.webhook_handlers import (
    handle_installation,
    handle_issue,
    handle_issue_comment,
    handle_member,
    handle_pull_request,
    handle_pull_request_review,
    handle_workflow_run,
    process_delivery,
)
from hm_backend.ingestion.webhook_router import DispatchOutcome, WebhookContext
from hm_backend.services.notification_service import NotificationType

REPOSITORY_REF = RepositoryRef(id=10, github_id=1000, owner="octo", name="hello")

REPOSITORY = {
    "id": 1000,
    "name": "hello",
    "full_name": "octo/hello",
    "owner": {"id": 1, "login": "octo"},
}

ALICE = {"id": 2, "login": "alice"}
BOB = {"id": 3, "login": "bob"}


def _issue(**overrides) -> dict:
    issue = {
        "id": 501,
        "number": 7,
        "title": "Crash on start",
        "body": "cc @bob",
        "state": "open",
        "user": ALICE,
        "comments": 0,
    }
    issue.update(overrides)
    return issue


def _pull_request(**overrides) -> dict:
    pr = _issue(id=601, number=8, title="Fix crash", body="Fixes #7")
    pr["head"] = {"ref": "fix", "sha": "abc123"}
    pr.update(overrides)
    return pr


def _ref(synced: bool = True, is_pull_request: bool = False) -> IssueRef:
    return IssueRef(
        id=40,
        repository_id=10,
        number=7,
        is_pull_request=is_pull_request,
        sync_status="synced" if synced else "unsynced",
    )


@pytest.fixture
def make_context(mock_session):
    def _make(token: str = "", ref: IssueRef | None = None) -> WebhookContext:
        context = WebhookContext(
            session=mock_session,
            settings=Settings(github_token=token),
            topic="test",
            action=None,
            delivery_id="d-1",
            repository=REPOSITORY_REF,
        )
        context.reconciler = AsyncMock()
        context.reconciler.reconcile.return_value = IssueWriteResult(issue_id=40, created=True, applied=True)
        context.reconciler.get_issue_ref.return_value = ref or _ref()
        context.reconciler.load_participants.return_value = IssueParticipants(
            issue_id=40, author_id=20, assignee_ids=[21], requested_reviewer_ids=[22]
        )
        context.timeline = AsyncMock()
        context.ci = AsyncMock()
        context.repositories = AsyncMock()
        context.history = AsyncMock()
        context.history.sync_issue.return_value = SyncOutcome.SYNCED
        context.linked_refs = AsyncMock()
        context.notifications = AsyncMock()

        @asynccontextmanager
        async def client():
            yield MagicMock()

        context.github_client = client
        return context

    return _make


@pytest.fixture(autouse=True)
def users():
    with patch(
        "hm_backend.ingestion.webhook_handlers.ensure_user", new_callable=AsyncMock
    ) as ensure_user, patch(
        "hm_backend.ingestion.webhook_handlers.subscribe_to_issue", new_callable=AsyncMock
    ) as subscribe:
        ensure_user.return_value = 99
        yield ensure_user, subscribe


def _notified(context):
    context.notifications.notify.assert_awaited_once()
    return context.notifications.notify.await_args.args[0]


class TestIssueHandler:
    async def test_opened_notifies_issue_subscribers(self, make_context):
        context = make_context()
        event = IssuesEvent.model_validate(
            {"action": "opened", "issue": _issue(), "repository": REPOSITORY, "sender": ALICE}
        )

        await handle_issue(context, event)

        context.reconciler.reconcile.assert_awaited_once()
        notification = _notified(context)
        assert notification.rule == "issue_opened"
        assert notification.type == NotificationType.ISSUE
        assert notification.issue_id == 40
        assert notification.actor_id == 99
        assert notification.mention_text == "cc @bob"
        assert notification.body is None

    async def test_pull_request_view_is_skipped(self, make_context):
        context = make_context()
        event = IssuesEvent.model_validate(
            {
                "action": "opened",
                "issue": _issue(pull_request={"url": "x"}),
                "repository": REPOSITORY,
            }
        )

        await handle_issue(context, event)

        context.reconciler.reconcile.assert_not_awaited()
        context.notifications.notify.assert_not_awaited()

    async def test_closed_notifies_participants(self, make_context):
        context = make_context()
        event = IssuesEvent.model_validate(
            {"action": "closed", "issue": _issue(state="closed"), "repository": REPOSITORY, "sender": ALICE}
        )

        await handle_issue(context, event)

        notification = _notified(context)
        assert notification.rule == "issue_closed"
        assert notification.author_id == 20
        assert notification.assignee_ids == [21]

    async def test_assigned_subscribes_assignee(self, make_context, users):
        ensure_user, subscribe = users
        context = make_context()
        event = IssuesEvent.model_validate(
            {
                "action": "assigned",
                "issue": _issue(assignees=[BOB]),
                "assignee": BOB,
                "repository": REPOSITORY,
                "sender": ALICE,
            }
        )

        await handle_issue(context, event)

        subscribe.assert_awaited_once_with(context.session, 40, 99)
        notification = _notified(context)
        assert notification.rule == "issue_assigned"
        assert notification.target_id == 99

    async def test_unsynced_issue_is_fetched_with_credential(self, make_context):
        context = make_context(token="ghp_test", ref=_ref(synced=False))
        event = IssuesEvent.model_validate(
            {"action": "edited", "issue": _issue(), "repository": REPOSITORY}
        )

        await handle_issue(context, event)

        context.history.sync_issue.assert_awaited_once()
        assert context.history.sync_issue.await_args.args[1:] == (REPOSITORY_REF, 7)

    async def test_unsynced_issue_without_credential_is_not_fetched(self, make_context):
        context = make_context(ref=_ref(synced=False))
        event = IssuesEvent.model_validate(
            {"action": "edited", "issue": _issue(), "repository": REPOSITORY}
        )

        await handle_issue(context, event)

        context.history.sync_issue.assert_not_awaited()


class TestIssueCommentHandler:
    def _event(self, action: str = "created") -> IssueCommentEvent:
        return IssueCommentEvent.model_validate(
            {
                "action": action,
                "issue": _issue(),
                "comment": {"id": 900, "body": "Same here @bob", "user": BOB},
                "repository": REPOSITORY,
                "sender": BOB,
            }
        )

    async def test_created_on_synced_issue_upserts_and_notifies(self, make_context):
        context = make_context()

        await handle_issue_comment(context, self._event())

        context.timeline.upsert_comment.assert_awaited_once()
        assert context.timeline.upsert_comment.await_args.kwargs == {"count_new": True}
        notification = _notified(context)
        assert notification.rule == "issue_comment"
        assert notification.action == "comment"
        assert notification.body == "Same here @bob"
        assert notification.author_id == 20

    async def test_history_fetch_replaces_single_upsert(self, make_context):
        context = make_context(token="ghp_test", ref=_ref(synced=False))

        await handle_issue_comment(context, self._event())

        context.history.sync_issue.assert_awaited_once()
        context.timeline.upsert_comment.assert_not_awaited()
        context.notifications.notify.assert_awaited_once()

    async def test_held_claim_still_applies_comment(self, make_context):
        context = make_context(token="ghp_test", ref=_ref(synced=False))
        context.history.sync_issue.return_value = SyncOutcome.SKIPPED

        await handle_issue_comment(context, self._event())

        context.timeline.upsert_comment.assert_awaited_once()

    async def test_edited_does_not_notify(self, make_context):
        context = make_context()

        await handle_issue_comment(context, self._event("edited"))

        context.timeline.upsert_comment.assert_awaited_once()
        context.notifications.notify.assert_not_awaited()

    async def test_deleted_removes_comment(self, make_context):
        context = make_context()

        await handle_issue_comment(context, self._event("deleted"))

        context.timeline.delete_comment.assert_awaited_once_with(900)
        context.reconciler.reconcile.assert_not_awaited()

    async def test_comment_on_pull_request_uses_pr_rule(self, make_context):
        context = make_context(ref=_ref(is_pull_request=True))

        await handle_issue_comment(context, self._event())

        notification = _notified(context)
        assert notification.rule == "pr_comment"
        assert notification.type == NotificationType.PULL_REQUEST


class TestPullRequestHandler:
    def _event(self, action: str, **pr_overrides) -> PullRequestEvent:
        return PullRequestEvent.model_validate(
            {
                "action": action,
                "pull_request": _pull_request(**pr_overrides),
                "repository": REPOSITORY,
                "sender": ALICE,
            }
        )

    async def test_merged_close_uses_merged_rule(self, make_context):
        context = make_context()

        await handle_pull_request(context, self._event("closed", state="closed", merged=True))

        notification = _notified(context)
        assert notification.rule == "pr_merged"
        assert notification.action == "merged"

    async def test_unmerged_close_uses_closed_rule(self, make_context):
        context = make_context()

        await handle_pull_request(context, self._event("closed", state="closed", merged=False))

        assert _notified(context).rule == "pr_closed"

    async def test_synchronize_refreshes_ci_for_head(self, make_context):
        context = make_context(token="ghp_test", ref=_ref(is_pull_request=True))

        await handle_pull_request(context, self._event("synchronize"))

        context.history.refresh_ci.assert_awaited_once()
        assert context.history.refresh_ci.await_args.args[1:] == (REPOSITORY_REF, "abc123")
        context.linked_refs.refresh_for_pr.assert_not_awaited()

    async def test_edited_refreshes_linked_issues(self, make_context):
        context = make_context(token="ghp_test", ref=_ref(is_pull_request=True))

        await handle_pull_request(context, self._event("edited"))

        context.linked_refs.refresh_for_pr.assert_awaited_once()
        assert context.linked_refs.refresh_for_pr.await_args.args[1:] == (REPOSITORY_REF, 40, 8)

    async def test_ready_for_review_targets_requested_reviewers(self, make_context):
        context = make_context()

        await handle_pull_request(context, self._event("ready_for_review"))

        notification = _notified(context)
        assert notification.rule == "pr_ready_for_review"
        assert notification.requested_reviewer_ids == [22]


class TestReviewHandler:
    def _event(self, action: str) -> PullRequestReviewEvent:
        return PullRequestReviewEvent.model_validate(
            {
                "action": action,
                "review": {"id": 700, "state": "dismissed", "body": "nope", "user": BOB},
                "pull_request": _pull_request(),
                "repository": REPOSITORY,
                "sender": ALICE,
            }
        )

    async def test_dismissed_notifies_reviewer(self, make_context):
        context = make_context(ref=_ref(is_pull_request=True))

        await handle_pull_request_review(context, self._event("dismissed"))

        context.timeline.upsert_review.assert_awaited_once()
        notification = _notified(context)
        assert notification.rule == "pr_review_dismissed"
        assert notification.target_id == 99

    async def test_unknown_pull_request_is_mirrored_first(self, make_context):
        context = make_context()
        pr_ref = _ref(is_pull_request=True)
        context.reconciler.get_issue_ref.side_effect = [None, pr_ref, pr_ref]

        await handle_pull_request_review(context, self._event("edited"))

        context.reconciler.reconcile.assert_awaited_once()
        context.timeline.upsert_review.assert_awaited_once()
        context.notifications.notify.assert_not_awaited()


class TestWorkflowRunHandler:
    def _event(self, conclusion: str) -> WorkflowRunEvent:
        return WorkflowRunEvent.model_validate(
            {
                "action": "completed",
                "workflow_run": {"id": 300, "name": "CI", "status": "completed", "conclusion": conclusion},
                "repository": REPOSITORY,
                "sender": ALICE,
            }
        )

    async def test_failure_notifies(self, make_context):
        context = make_context()
        context.ci.upsert_workflow_run.return_value = 31

        await handle_workflow_run(context, self._event("failure"))

        notification = _notified(context)
        assert notification.rule == "workflow_failed"
        assert notification.workflow_run_id == 31
        assert notification.body == "CI"

    @pytest.mark.parametrize("conclusion", ["success", "cancelled", "timed_out"])
    async def test_other_conclusions_are_stored_silently(self, make_context, conclusion):
        context = make_context()

        await handle_workflow_run(context, self._event(conclusion))

        context.ci.upsert_workflow_run.assert_awaited_once()
        context.notifications.notify.assert_not_awaited()


class TestRepositoryLifecycleHandlers:
    async def test_installation_created_registers_repositories(self, make_context):
        context = make_context()
        context.repository = None
        context.repositories.upsert_installation.return_value = 5
        context.repositories.register_installation_repositories.return_value = 1
        event = InstallationEvent.model_validate(
            {
                "action": "created",
                "installation": {"id": 77},
                "repositories": [{"id": 1000, "name": "hello", "full_name": "octo/hello"}],
            }
        )

        with patch("hm_backend.ingestion.webhook_handlers.log_audit_event") as audit:
            await handle_installation(context, event)

        registered = context.repositories.register_installation_repositories.await_args.args
        assert registered[0] == 5
        assert [r.full_name for r in registered[1]] == ["octo/hello"]
        audit.assert_called_once()

    async def test_installation_deleted_removes_repositories(self, make_context):
        context = make_context()
        context.repositories.delete_installation.return_value = 2
        event = InstallationEvent.model_validate({"action": "deleted", "installation": {"id": 77}})

        with patch("hm_backend.ingestion.webhook_handlers.log_audit_event"):
            await handle_installation(context, event)

        context.repositories.delete_installation.assert_awaited_once_with(77)
        context.repositories.upsert_installation.assert_not_awaited()

    async def test_member_added_with_permission(self, make_context):
        context = make_context()
        event = MemberEvent.model_validate(
            {
                "action": "added",
                "member": BOB,
                "changes": {"permission": {"to": "admin"}},
                "repository": REPOSITORY,
            }
        )

        await handle_member(context, event)

        args = context.repositories.add_collaborator.await_args.args
        assert args[0] == 10
        assert args[2] == "admin"

    async def test_member_removed(self, make_context):
        context = make_context()
        event = MemberEvent.model_validate({"action": "removed", "member": BOB, "repository": REPOSITORY})

        await handle_member(context, event)

        context.repositories.remove_collaborator.assert_awaited_once_with(10, 3)


class TestProcessDelivery:
    @pytest.fixture
    def deliveries(self):
        with patch("hm_backend.ingestion.webhook_handlers.DeliveryLog") as log_cls:
            log = log_cls.return_value
            log.begin = AsyncMock(return_value=True)
            log.mark_processed = AsyncMock()
            log.mark_failed = AsyncMock()
            yield log

    @pytest.fixture
    def dispatch(self):
        with patch(
            "hm_backend.ingestion.webhook_handlers.router.dispatch", new_callable=AsyncMock
        ) as mock:
            mock.return_value = DispatchOutcome.HANDLED
            yield mock

    async def test_processed_delivery_is_skipped(self, mock_session, deliveries, dispatch):
        deliveries.begin.return_value = False

        with patch("hm_backend.ingestion.webhook_handlers.log_audit_event") as audit:
            outcome = await process_delivery(mock_session, "issues", "d-1", {"action": "opened"}, Settings())

        assert outcome == DispatchOutcome.DUPLICATE
        dispatch.assert_not_awaited()
        audit.assert_called_once()

    async def test_handled_delivery_is_marked_processed(self, mock_session, deliveries, dispatch):
        outcome = await process_delivery(mock_session, "issues", "d-1", {"action": "opened"}, Settings())

        assert outcome == DispatchOutcome.HANDLED
        deliveries.begin.assert_awaited_once_with("d-1", "issues", "opened")
        deliveries.mark_processed.assert_awaited_once_with("d-1")
        deliveries.mark_failed.assert_not_awaited()

    async def test_failed_delivery_stays_retryable(self, mock_session, deliveries, dispatch):
        dispatch.return_value = DispatchOutcome.FAILED

        outcome = await process_delivery(mock_session, "issues", "d-1", {"action": "opened"}, Settings())

        assert outcome == DispatchOutcome.FAILED
        deliveries.mark_failed.assert_awaited_once_with("d-1")
        deliveries.mark_processed.assert_not_awaited()

    async def test_missing_delivery_id_skips_bookkeeping(self, mock_session, deliveries, dispatch):
        outcome = await process_delivery(mock_session, "issues", None, {"action": "opened"}, Settings())

        assert outcome == DispatchOutcome.HANDLED
        deliveries.begin.assert_not_awaited()
        deliveries.mark_processed.assert_not_awaited()
