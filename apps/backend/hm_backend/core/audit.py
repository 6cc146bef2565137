"""Security events logged as JSON to stdout"""
import json
import logging
from datetime import UTC, datetime
from enum import Enum

logger = logging.getLogger("audit")


class AuditEvent(str, Enum):
    WEBHOOK_SIGNATURE_INVALID = "webhook_signature_invalid"
    WEBHOOK_DUPLICATE_DELIVERY = "webhook_duplicate_delivery"
    WEBHOOK_REPOSITORY_NOT_ONBOARDED = "webhook_repository_not_onboarded"
    INSTALLATION_CREATED = "installation_created"
    INSTALLATION_DELETED = "installation_deleted"
    REPOSITORY_ONBOARDED = "repository_onboarded"
    REPOSITORIES_REMOVED = "repositories_removed"
    ISSUE_SYNC_FORCED = "issue_sync_forced"


def log_audit_event(
    event: AuditEvent,
    delivery_id: str | None = None,
    topic: str | None = None,
    repository: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    metadata: dict | None = None,
) -> None:
    """Truncates user_agent to 256 chars"""
    entry = {
        "timestamp": datetime.now(UTC).isoformat(),
        "event": event.value,
        "delivery_id": delivery_id,
        "topic": topic,
        "repository": repository,
        "ip_address": ip_address,
        "user_agent": user_agent[:256] if user_agent else None,
    }

    if metadata:
        entry.update(metadata)

    entry = {k: v for k, v in entry.items() if v is not None}

    logger.info(json.dumps(entry))
