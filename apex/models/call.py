"""
Call model - one outbound call placed through Vapi.
Created by the campaign executor, advanced by Vapi webhooks.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Float, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from apex.database import Base

# Calls still occupying a concurrency slot
ACTIVE_CALL_STATUSES = ("queued", "ringing", "in_progress", "forwarding")


class Call(Base):
    __tablename__ = "calls"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False
    )
    campaign_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("campaigns.id")
    )
    lead_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id")
    )
    vapi_call_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True)

    status: Mapped[str] = mapped_column(
        String(20), default="queued", nullable=False
    )  # queued, ringing, in_progress, forwarding, completed, failed
    ended_reason: Mapped[Optional[str]] = mapped_column(String(100))
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float)
    cost: Mapped[Optional[float]] = mapped_column(Float)

    transcript: Mapped[Optional[str]] = mapped_column(Text)
    summary: Mapped[Optional[str]] = mapped_column(Text)
    recording_url: Mapped[Optional[str]] = mapped_column(Text)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_calls_organization_id", "organization_id"),
        Index("ix_calls_campaign_status", "campaign_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Call {self.vapi_call_id} ({self.status})>"
