"""
Webhook event log - audit trail of every accepted webhook delivery.

Rows are written with status "processed" before the handler runs and may move
to "failed" or "ignored" exactly once afterwards. Payloads must already be
redacted (see apex.utils.redaction.redact_payload).
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import and_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apex.models.webhook_event import (
    STATUS_FAILED,
    STATUS_IGNORED,
    STATUS_PROCESSED,
    WebhookEvent,
)
from apex.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)

# error_message column is Text, but keep audit rows readable
MAX_ERROR_LENGTH = 2000


class WebhookLogError(Exception):
    """Storage failure while writing the webhook event log."""


class WebhookEventLog:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(
        self,
        event_id: Optional[str],
        event_type: str,
        redacted_payload: dict,
        provider: str,
        idempotency_key: Optional[str] = None,
        status: str = STATUS_PROCESSED,
        error_message: Optional[str] = None,
    ) -> WebhookEvent:
        """Insert one log row in its own transaction and return it."""
        now = datetime.now(timezone.utc)
        event = WebhookEvent(
            id=uuid.uuid4(),
            received_at=now,
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            payload=redacted_payload,
            status=status,
            error_message=_truncate(error_message),
            processed_at=now,
            idempotency_key=idempotency_key,
            correlation_id=get_correlation_id(),
        )
        try:
            async with self.session_factory() as session:
                session.add(event)
                await session.commit()
        except SQLAlchemyError as e:
            raise WebhookLogError(f"Failed to record webhook event: {e}") from e

        logger.info(
            "Webhook event recorded: %s/%s (%s)", provider, event_type, status,
            extra={"provider": provider, "event_type": event_type, "event_id": event_id},
        )
        return event

    async def mark_failed(self, record_id: uuid.UUID, error: str) -> bool:
        return await self._transition(record_id, STATUS_FAILED, error)

    async def mark_ignored(self, record_id: uuid.UUID, reason: str) -> bool:
        return await self._transition(record_id, STATUS_IGNORED, reason)

    async def _transition(self, record_id: uuid.UUID, status: str, message: str) -> bool:
        """
        Move a row out of "processed". Returns False if it had already left
        that status (the first transition wins).
        """
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(WebhookEvent)
                    .where(
                        and_(
                            WebhookEvent.id == record_id,
                            WebhookEvent.status == STATUS_PROCESSED,
                        )
                    )
                    .values(
                        status=status,
                        error_message=_truncate(message),
                        processed_at=datetime.now(timezone.utc),
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise WebhookLogError(f"Failed to update webhook event {record_id}: {e}") from e

        if result.rowcount != 1:
            logger.warning(
                "Webhook event %s already left 'processed' - %s transition skipped",
                record_id, status,
            )
            return False
        return True

    async def recent(self, limit: int = 50, event_type: Optional[str] = None) -> list[WebhookEvent]:
        """Most recent log rows, newest first."""
        query = select(WebhookEvent).order_by(WebhookEvent.received_at.desc()).limit(limit)
        if event_type:
            query = query.where(WebhookEvent.event_type == event_type)
        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise WebhookLogError(f"Failed to read webhook events: {e}") from e


def _truncate(message: Optional[str]) -> Optional[str]:
    if message is None:
        return None
    return message[:MAX_ERROR_LENGTH]
