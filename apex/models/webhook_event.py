"""
Webhook event audit trail - every accepted webhook delivery is recorded before
its handler runs. Payloads are redacted before they get here.
Rows are never deleted.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from apex.database import Base

STATUS_PROCESSED = "processed"
STATUS_FAILED = "failed"
STATUS_IGNORED = "ignored"


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    received_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    provider = Column(String(50), nullable=False, index=True)
    # Provider's own id - traceability only, not unique
    event_id = Column(String(255), nullable=True, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    payload = Column(JSONB, nullable=False)
    status = Column(String(20), nullable=False, default=STATUS_PROCESSED, server_default=STATUS_PROCESSED)
    error_message = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    idempotency_key = Column(String(255), nullable=True, index=True)
    correlation_id = Column(String(64), nullable=True, index=True)
