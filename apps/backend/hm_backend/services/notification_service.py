"""
Notification fan-out.

A semantic event (issue opened, PR merged, workflow failed, ...) is mapped to a
FanOutRule. The rule names which recipient groups apply; groups are merged in a
fixed order and the first group to claim a user decides the action they see.
Only registered users are written, one soft-unique row per (user, issue).
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel.ext.asyncio.session import AsyncSession

from hm_backend.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

MENTION_PATTERN = re.compile(r"(?<![A-Za-z0-9_])@([a-zA-Z0-9](?:[a-zA-Z0-9-]{0,37}[a-zA-Z0-9])?)")

ACTION_MENTIONED = "mentioned"


class NotificationType(str, Enum):
    ISSUE = "issue"
    PULL_REQUEST = "pull_request"
    RELEASE = "release"
    WORKFLOW_RUN = "workflow_run"


@dataclass(frozen=True)
class FanOutRule:
    # Repository subscription flag whose holders are notified
    subscription_flag: str | None = None
    author: bool = False
    assignees: bool = False
    requested_reviewers: bool = False
    # The user the event is about (assignee, requested reviewer, dismissed reviewer)
    target: bool = False
    mentions: bool = False
    # Activity subscribers who also follow the issue
    activity: bool = False
    suppress_self: bool = True


_PARTICIPANTS = FanOutRule(author=True, assignees=True, activity=True)
_CONVERSATION = FanOutRule(author=True, assignees=True, mentions=True, activity=True)

FAN_OUT_RULES: dict[str, FanOutRule] = {
    "issue_opened": FanOutRule(subscription_flag="issues", mentions=True),
    "issue_closed": _PARTICIPANTS,
    "issue_reopened": _PARTICIPANTS,
    "issue_assigned": FanOutRule(target=True),
    "issue_comment": _CONVERSATION,
    "pr_opened": FanOutRule(subscription_flag="pull_requests", mentions=True),
    "pr_reopened": _PARTICIPANTS,
    "pr_merged": _PARTICIPANTS,
    "pr_closed": _PARTICIPANTS,
    "pr_assigned": FanOutRule(target=True),
    "pr_review_requested": FanOutRule(target=True),
    "pr_ready_for_review": FanOutRule(requested_reviewers=True),
    "pr_review_submitted": FanOutRule(author=True, mentions=True, activity=True),
    "pr_review_dismissed": FanOutRule(target=True),
    "pr_comment": _CONVERSATION,
    "release_published": FanOutRule(subscription_flag="releases"),
    # You want to know when your own build broke
    "workflow_failed": FanOutRule(subscription_flag="ci", suppress_self=False),
}


@dataclass
class NotificationEvent:
    rule: str
    type: NotificationType
    action: str
    repository_id: int
    actor_id: int | None = None
    issue_id: int | None = None
    release_id: int | None = None
    workflow_run_id: int | None = None
    body: str | None = None
    # Scanned for @mentions; defaults to body
    mention_text: str | None = None
    author_id: int | None = None
    assignee_ids: list[int] = field(default_factory=list)
    requested_reviewer_ids: list[int] = field(default_factory=list)
    target_id: int | None = None


@dataclass
class Subscription:
    user_id: int
    issues: bool
    pull_requests: bool
    releases: bool
    ci: bool
    mentions: bool
    activity: bool


class RecipientSet:
    """Insertion-ordered user -> action map; the first claim wins"""

    def __init__(self, actor_id: int | None, suppress_self: bool):
        self._actor_id = actor_id
        self._suppress_self = suppress_self
        self._recipients: dict[int, str] = {}

    def add(self, user_id: int | None, action: str) -> bool:
        if user_id is None or user_id in self._recipients:
            return False
        if self._suppress_self and user_id == self._actor_id:
            return False
        self._recipients[user_id] = action
        return True

    def items(self) -> list[tuple[int, str]]:
        return list(self._recipients.items())

    def __contains__(self, user_id: int) -> bool:
        return user_id in self._recipients

    def __len__(self) -> int:
        return len(self._recipients)


def find_mentioned_logins(body: str | None) -> list[str]:
    """Lowercased, de-duplicated, in order of first appearance"""
    if not body:
        return []
    seen: dict[str, None] = {}
    for match in MENTION_PATTERN.finditer(body):
        seen.setdefault(match.group(1).lower(), None)
    return list(seen)


def truncate_body(body: str | None, limit: int = 200) -> str | None:
    if not body:
        return None
    if len(body) <= limit:
        return body
    return body[: limit - 3] + "..."


# Shadow users never see notifications; the SELECT yields no row for them.
# A repeated event for the same (user, issue) refreshes the single row as unread.
UPSERT_NOTIFICATION_SQL = text("""
    INSERT INTO public.notifications
        (user_id, repository_id, issue_id, release_id, workflow_run_id, actor_id,
         type, action, body, read, read_at, created_at)
    SELECT u.id, CAST(:repository_id AS INTEGER), CAST(:issue_id AS INTEGER),
           CAST(:release_id AS INTEGER), CAST(:workflow_run_id AS INTEGER),
           CAST(:actor_id AS INTEGER), CAST(:type AS VARCHAR), CAST(:action AS VARCHAR),
           CAST(:body AS VARCHAR), false, NULL, now()
    FROM public.users u
    WHERE u.id = :user_id AND u.registered = true
    ON CONFLICT (user_id, issue_id) WHERE issue_id IS NOT NULL DO UPDATE SET
        type = EXCLUDED.type,
        action = EXCLUDED.action,
        body = EXCLUDED.body,
        actor_id = EXCLUDED.actor_id,
        read = false,
        read_at = NULL,
        created_at = now()
    RETURNING id
""")


class NotificationService:
    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self._session = session
        self._settings = settings or get_settings()

    async def notify(self, event: NotificationEvent) -> int:
        """Returns the number of notification rows written"""
        rule = FAN_OUT_RULES.get(event.rule)
        if rule is None:
            logger.warning(f"No fan-out rule named {event.rule}")
            return 0

        recipients = await self.resolve_recipients(event, rule)
        if not recipients:
            return 0

        body = truncate_body(event.body, self._settings.notification_body_limit)
        written = 0
        for user_id, action in recipients.items():
            if await self._write(event, user_id, action, body):
                written += 1

        logger.info(
            f"Fan-out {event.rule}: {written}/{len(recipients)} notifications written",
            extra={
                "rule": event.rule,
                "repository_id": event.repository_id,
                "issue_id": event.issue_id,
                "recipients": len(recipients),
            },
        )
        return written

    async def resolve_recipients(self, event: NotificationEvent, rule: FanOutRule) -> RecipientSet:
        suppress_self = rule.suppress_self and not self._settings.is_development
        recipients = RecipientSet(event.actor_id, suppress_self)

        needs_subscriptions = rule.subscription_flag or rule.mentions or rule.activity
        subscriptions = await self._load_subscriptions(event.repository_id) if needs_subscriptions else []

        if rule.subscription_flag:
            for subscription in subscriptions:
                if getattr(subscription, rule.subscription_flag):
                    recipients.add(subscription.user_id, event.action)

        if rule.target:
            recipients.add(event.target_id, event.action)
        if rule.author:
            recipients.add(event.author_id, event.action)
        if rule.assignees:
            for user_id in event.assignee_ids:
                recipients.add(user_id, event.action)
        if rule.requested_reviewers:
            for user_id in event.requested_reviewer_ids:
                recipients.add(user_id, event.action)

        if rule.mentions:
            mention_enabled = {s.user_id for s in subscriptions if s.mentions}
            text_to_scan = event.mention_text if event.mention_text is not None else event.body
            for user_id in await self._resolve_mentions(text_to_scan):
                if user_id in mention_enabled:
                    recipients.add(user_id, ACTION_MENTIONED)

        if rule.activity and event.issue_id is not None:
            activity_ids = [s.user_id for s in subscriptions if s.activity]
            for user_id in await self._issue_followers(event.issue_id, activity_ids):
                recipients.add(user_id, event.action)

        return recipients

    async def _load_subscriptions(self, repository_id: int) -> list[Subscription]:
        result = await self._session.execute(
            text("""
                SELECT user_id, issues, pull_requests, releases, ci, mentions, activity
                FROM public.repository_subscriptions
                WHERE repository_id = :repository_id
                ORDER BY user_id
            """),
            {"repository_id": repository_id},
        )
        return [
            Subscription(
                user_id=row.user_id,
                issues=row.issues,
                pull_requests=row.pull_requests,
                releases=row.releases,
                ci=row.ci,
                mentions=row.mentions,
                activity=row.activity,
            )
            for row in result.all()
        ]

    async def _resolve_mentions(self, body: str | None) -> list[int]:
        """Unknown logins are dropped; mentions never create users"""
        logins = find_mentioned_logins(body)
        if not logins:
            return []
        result = await self._session.execute(
            text("SELECT id FROM public.users WHERE LOWER(login) = ANY(:logins) ORDER BY id"),
            {"logins": logins},
        )
        return list(result.scalars().all())

    async def _issue_followers(self, issue_id: int, user_ids: list[int]) -> list[int]:
        if not user_ids:
            return []
        result = await self._session.execute(
            text("""
                SELECT user_id FROM public.issue_subscriptions
                WHERE issue_id = :issue_id AND user_id = ANY(:user_ids)
                ORDER BY user_id
            """),
            {"issue_id": issue_id, "user_ids": user_ids},
        )
        return list(result.scalars().all())

    async def _write(self, event: NotificationEvent, user_id: int, action: str, body: str | None) -> bool:
        try:
            result = await self._session.execute(
                UPSERT_NOTIFICATION_SQL,
                {
                    "user_id": user_id,
                    "repository_id": event.repository_id,
                    "issue_id": event.issue_id,
                    "release_id": event.release_id,
                    "workflow_run_id": event.workflow_run_id,
                    "actor_id": event.actor_id,
                    "type": event.type.value,
                    "action": action,
                    "body": body,
                },
            )
            written = result.scalar_one_or_none() is not None
            await self._session.commit()
            return written
        except SQLAlchemyError as e:
            await self._session.rollback()
            logger.warning(
                f"Failed to write notification for user {user_id}: {e}",
                extra={"user_id": user_id, "rule": event.rule, "issue_id": event.issue_id},
            )
            return False
