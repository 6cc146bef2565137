"""GitHub webhook receiver."""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlmodel.ext.asyncio.session import AsyncSession

from hm_backend.api.dependencies import get_db
from hm_backend.core.audit import AuditEvent, log_audit_event
from hm_backend.core.config import get_settings
from hm_backend.core.security import InvalidSignatureError, verify_webhook_signature
from hm_backend.ingestion.webhook_handlers import process_delivery

logger = logging.getLogger(__name__)

router = APIRouter()


class WebhookAck(BaseModel):
    success: bool = True


class PingResponse(BaseModel):
    message: str = "pong"


@router.post("/github", response_model=WebhookAck | PingResponse)
async def receive_github_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> WebhookAck | PingResponse:
    """
    Verifies the signature, then routes the event.

    Every authentic delivery is acknowledged with 200, including unknown topics
    and malformed payloads, so GitHub does not keep redelivering them.
    """
    body = await request.body()
    topic = request.headers.get("x-github-event", "")
    delivery_id = request.headers.get("x-github-delivery")

    try:
        verify_webhook_signature(body, request.headers.get("x-hub-signature-256"))
    except InvalidSignatureError as e:
        log_audit_event(
            AuditEvent.WEBHOOK_SIGNATURE_INVALID,
            delivery_id=delivery_id,
            topic=topic,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
            metadata={"reason": str(e)},
        )
        raise HTTPException(status_code=401, detail="Invalid signature")

    if topic == "ping":
        return PingResponse()

    try:
        payload = json.loads(body) if body else {}
    except json.JSONDecodeError:
        logger.warning(f"Ignoring {topic} delivery {delivery_id}: body is not JSON")
        return WebhookAck()

    if not isinstance(payload, dict):
        logger.warning(f"Ignoring {topic} delivery {delivery_id}: payload is not an object")
        return WebhookAck()

    outcome = await process_delivery(db, topic, delivery_id, payload, get_settings())
    logger.info(
        f"Webhook {topic} ({delivery_id}): {outcome.value}",
        extra={"topic": topic, "delivery_id": delivery_id, "outcome": outcome.value},
    )
    return WebhookAck()
