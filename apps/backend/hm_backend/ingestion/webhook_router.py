"""
Webhook event router.

Handlers register per (topic, action) with the route decorator; "*" matches any
action, including topics that carry none (status). dispatch validates the
payload against the topic schema, checks that the repository is onboarded and
runs the handler. It never raises: every failure is logged and reported as a
DispatchOutcome so the endpoint can always acknowledge the delivery.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from functools import cached_property

from pydantic import ValidationError
from sqlmodel.ext.asyncio.session import AsyncSession

from hm_backend.core.audit import AuditEvent, log_audit_event
from hm_backend.core.config import Settings, get_settings
from hm_backend.services.notification_service import NotificationService

from .ci_persistence import CIPersistence
from .github_client import GitHubClient
from .history_sync import HistorySyncer
from .linked_refs import LinkedReferenceResolver
from .payloads import TOPIC_SCHEMAS, WebhookEvent
from .reconciler import EntityReconciler
from .repository_persistence import RepositoryPersistence, RepositoryRef
from .timeline import TimelinePersistence

logger = logging.getLogger(__name__)

WILDCARD = "*"


class DispatchOutcome(str, Enum):
    HANDLED = "handled"
    IGNORED = "ignored"
    INVALID = "invalid"
    NOT_ONBOARDED = "not_onboarded"
    DUPLICATE = "duplicate"
    FAILED = "failed"


@dataclass
class WebhookContext:
    session: AsyncSession
    settings: Settings
    topic: str
    action: str | None
    delivery_id: str | None = None
    repository: RepositoryRef | None = None

    @cached_property
    def reconciler(self) -> EntityReconciler:
        return EntityReconciler(self.session)

    @cached_property
    def timeline(self) -> TimelinePersistence:
        return TimelinePersistence(self.session)

    @cached_property
    def ci(self) -> CIPersistence:
        return CIPersistence(self.session)

    @cached_property
    def repositories(self) -> RepositoryPersistence:
        return RepositoryPersistence(self.session)

    @cached_property
    def history(self) -> HistorySyncer:
        return HistorySyncer(self.session, self.settings)

    @cached_property
    def linked_refs(self) -> LinkedReferenceResolver:
        return LinkedReferenceResolver(self.session)

    @cached_property
    def notifications(self) -> NotificationService:
        return NotificationService(self.session, self.settings)

    @property
    def has_credential(self) -> bool:
        return bool(self.settings.github_token)

    def github_client(self) -> GitHubClient:
        """Webhooks carry no bearer token; history fetches use the configured one"""
        return GitHubClient(self.settings.github_token, base_url=self.settings.github_api_url)


Handler = Callable[[WebhookContext, WebhookEvent], Awaitable[None]]


@dataclass(frozen=True)
class Route:
    topic: str
    action: str
    handler: Handler
    requires_repository: bool = True


class WebhookRouter:
    def __init__(self):
        self._routes: dict[tuple[str, str], Route] = {}

    def route(self, topic: str, *actions: str, requires_repository: bool = True):
        def decorator(handler: Handler) -> Handler:
            for action in actions or (WILDCARD,):
                key = (topic, action)
                if key in self._routes:
                    raise ValueError(f"Duplicate webhook route {topic}.{action}")
                self._routes[key] = Route(topic, action, handler, requires_repository)
            return handler

        return decorator

    def resolve(self, topic: str, action: str | None) -> Route | None:
        if action is not None:
            route = self._routes.get((topic, action))
            if route is not None:
                return route
        return self._routes.get((topic, WILDCARD))

    @property
    def topics(self) -> set[str]:
        return {topic for topic, _ in self._routes}

    async def dispatch(
        self,
        session: AsyncSession,
        topic: str,
        payload: dict,
        delivery_id: str | None = None,
        settings: Settings | None = None,
    ) -> DispatchOutcome:
        settings = settings or get_settings()
        log_extra = {"topic": topic, "delivery_id": delivery_id}

        schema = TOPIC_SCHEMAS.get(topic)
        if schema is None:
            logger.info(f"Ignoring unhandled webhook topic {topic}", extra=log_extra)
            return DispatchOutcome.IGNORED

        try:
            event = schema.model_validate(payload)
        except ValidationError as e:
            logger.warning(
                f"Malformed {topic} payload ignored: {e.error_count()} validation errors",
                extra={**log_extra, "errors": e.errors(include_url=False)[:5]},
            )
            return DispatchOutcome.INVALID

        route = self.resolve(topic, event.action)
        if route is None:
            logger.info(f"Ignoring unhandled webhook action {topic}.{event.action}", extra=log_extra)
            return DispatchOutcome.IGNORED

        context = WebhookContext(
            session=session,
            settings=settings,
            topic=topic,
            action=event.action,
            delivery_id=delivery_id,
        )

        try:
            if route.requires_repository:
                repository = await context.repositories.get_onboarded(event.repository.id)
                if repository is None:
                    logger.info(
                        f"Dropping {topic}.{event.action} for repository "
                        f"{event.repository.full_name}: not onboarded",
                        extra={**log_extra, "repository_github_id": event.repository.id},
                    )
                    log_audit_event(
                        AuditEvent.WEBHOOK_REPOSITORY_NOT_ONBOARDED,
                        delivery_id=delivery_id,
                        topic=topic,
                        repository=event.repository.full_name,
                    )
                    return DispatchOutcome.NOT_ONBOARDED
                context.repository = repository

            await route.handler(context, event)
        except Exception as e:
            await session.rollback()
            logger.exception(
                f"Webhook handler for {topic}.{event.action} failed: {e}",
                extra=log_extra,
            )
            return DispatchOutcome.FAILED

        logger.debug(f"Handled {topic}.{event.action}", extra=log_extra)
        return DispatchOutcome.HANDLED


router = WebhookRouter()
