"""Webhook delivery bookkeeping keyed by x-github-delivery"""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlmodel.ext.asyncio.session import AsyncSession

logger = logging.getLogger(__name__)

DELIVERY_PROCESSING = "processing"
DELIVERY_PROCESSED = "processed"
DELIVERY_FAILED = "failed"

# A failed or in-flight delivery may be retried by GitHub; a processed one may not
BEGIN_DELIVERY_SQL = text("""
    INSERT INTO public.webhook_deliveries (delivery_id, topic, action, status, received_at)
    VALUES (:delivery_id, :topic, :action, 'processing', now())
    ON CONFLICT (delivery_id) DO UPDATE SET
        status = 'processing',
        received_at = now()
    WHERE public.webhook_deliveries.status <> 'processed'
    RETURNING id
""")


class DeliveryLog:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def begin(self, delivery_id: str, topic: str, action: str | None) -> bool:
        """False when this delivery was already processed and must be skipped"""
        result = await self._session.execute(
            BEGIN_DELIVERY_SQL,
            {"delivery_id": delivery_id, "topic": topic, "action": action},
        )
        started = result.scalar_one_or_none() is not None
        await self._session.commit()
        return started

    async def mark_processed(self, delivery_id: str) -> None:
        await self._set_status(delivery_id, DELIVERY_PROCESSED)

    async def mark_failed(self, delivery_id: str) -> None:
        await self._set_status(delivery_id, DELIVERY_FAILED)

    async def _set_status(self, delivery_id: str, status: str) -> None:
        await self._session.execute(
            text("""
                UPDATE public.webhook_deliveries
                SET status = :status, processed_at = now()
                WHERE delivery_id = :delivery_id
            """),
            {"delivery_id": delivery_id, "status": status},
        )
        await self._session.commit()
