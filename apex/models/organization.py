"""
Organization model - the tenancy boundary.
Campaigns, leads and calls each belong to exactly one organization.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from apex.database import Base


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_id: Mapped[Optional[str]] = mapped_column(
        String(255)
    )  # identity provider user id

    # Vapi credentials (private key is Fernet-encrypted, see apex.utils.encryption)
    vapi_public_key: Mapped[Optional[str]] = mapped_column(String(255))
    vapi_private_key_encrypted: Mapped[Optional[str]] = mapped_column(Text)

    # Billing
    subscription_status: Mapped[str] = mapped_column(
        String(30), default="trialing", nullable=False
    )  # trialing, active, past_due, canceled
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True)
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(String(100))

    settings: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_organizations_owner_id", "owner_id"),
    )

    def __repr__(self) -> str:
        return f"<Organization {self.name} ({self.subscription_status})>"
