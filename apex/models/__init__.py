"""
Database models - import all models here so Alembic can discover them.
"""
from apex.models.organization import Organization
from apex.models.campaign import Campaign
from apex.models.lead import Lead
from apex.models.call import Call
from apex.models.webhook_event import WebhookEvent
from apex.models.idempotency_key import IdempotencyKey

__all__ = [
    "Organization",
    "Campaign",
    "Lead",
    "Call",
    "WebhookEvent",
    "IdempotencyKey",
]
