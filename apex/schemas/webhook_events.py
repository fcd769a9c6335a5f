"""
Webhook event schemas - the closed set of provider events this service handles.

Each provider payload is normalized into one member of `WebhookEventModel`,
a pydantic union discriminated on `event_type`. Anything outside the set
raises UnrecognizedEventType; a known type with a malformed body raises
pydantic.ValidationError.
"""
from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union, get_args

from pydantic import BaseModel, Field, TypeAdapter


class UnrecognizedEventType(Exception):
    """Provider event type outside the handled set."""

    def __init__(self, provider: str, raw_type: Any):
        self.provider = provider
        self.raw_type = raw_type
        super().__init__(f"Unrecognized {provider} event type: {raw_type!r}")


# --- Vapi ---

class CallEndedEvent(BaseModel):
    """Vapi end-of-call-report / call-ended."""
    event_type: Literal["call.ended"] = "call.ended"
    event_id: Optional[str] = None
    vapi_call_id: str = Field(min_length=1)
    organization_id: Optional[str] = None
    campaign_id: Optional[str] = None
    lead_id: Optional[str] = None
    ended_reason: Optional[str] = None
    duration_seconds: Optional[float] = None
    cost: Optional[float] = None
    transcript: Optional[str] = None
    summary: Optional[str] = None
    recording_url: Optional[str] = None
    ended_at: Optional[datetime] = None


class CallStatusUpdateEvent(BaseModel):
    """Vapi status-update / call-started."""
    event_type: Literal["call.status_update"] = "call.status_update"
    event_id: Optional[str] = None
    vapi_call_id: str = Field(min_length=1)
    organization_id: Optional[str] = None
    campaign_id: Optional[str] = None
    lead_id: Optional[str] = None
    status: str  # queued, ringing, in_progress, forwarding, ended


class CallTranscriptEvent(BaseModel):
    """Vapi transcript / transcript-ready / transcript-complete."""
    event_type: Literal["call.transcript"] = "call.transcript"
    event_id: Optional[str] = None
    vapi_call_id: str = Field(min_length=1)
    organization_id: Optional[str] = None
    campaign_id: Optional[str] = None
    lead_id: Optional[str] = None
    transcript: Optional[str] = None  # None when the message carries no full transcript


# --- Stripe ---

class CheckoutCompletedEvent(BaseModel):
    event_type: Literal["checkout.session.completed"] = "checkout.session.completed"
    event_id: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    organization_id: Optional[str] = None


class InvoicePaidEvent(BaseModel):
    event_type: Literal["invoice.paid"] = "invoice.paid"
    event_id: str
    customer_id: str
    subscription_id: Optional[str] = None
    amount_paid: Optional[int] = None


class InvoicePaymentFailedEvent(BaseModel):
    event_type: Literal["invoice.payment_failed"] = "invoice.payment_failed"
    event_id: str
    customer_id: str
    subscription_id: Optional[str] = None
    attempt_count: Optional[int] = None


class SubscriptionUpdatedEvent(BaseModel):
    event_type: Literal["customer.subscription.updated"] = "customer.subscription.updated"
    event_id: str
    customer_id: str
    subscription_id: str
    status: str


class SubscriptionDeletedEvent(BaseModel):
    event_type: Literal["customer.subscription.deleted"] = "customer.subscription.deleted"
    event_id: str
    customer_id: str
    subscription_id: Optional[str] = None


EventUnion = Union[
    CallEndedEvent,
    CallStatusUpdateEvent,
    CallTranscriptEvent,
    CheckoutCompletedEvent,
    InvoicePaidEvent,
    InvoicePaymentFailedEvent,
    SubscriptionUpdatedEvent,
    SubscriptionDeletedEvent,
]

WebhookEventModel = Annotated[EventUnion, Field(discriminator="event_type")]

EVENT_MODELS: tuple[type[BaseModel], ...] = get_args(EventUnion)
EVENT_TYPES: frozenset[str] = frozenset(
    model.model_fields["event_type"].default for model in EVENT_MODELS
)

_adapter = TypeAdapter(WebhookEventModel)

VAPI_EVENT_TYPES = {
    "end-of-call-report": "call.ended",
    "call-ended": "call.ended",
    "status-update": "call.status_update",
    "call-started": "call.status_update",
    "transcript": "call.transcript",
    "transcript-ready": "call.transcript",
    "transcript-complete": "call.transcript",
}

STRIPE_EVENT_TYPES = frozenset({
    "checkout.session.completed",
    "invoice.paid",
    "invoice.payment_failed",
    "customer.subscription.updated",
    "customer.subscription.deleted",
})


def _dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def _normalize_call_status(status: Optional[str]) -> Optional[str]:
    if status is None:
        return None
    return str(status).strip().lower().replace("-", "_")


def parse_vapi_event(payload: dict) -> WebhookEventModel:
    """Normalize a Vapi server message ({"message": {...}} or the bare message)."""
    message = _dict(payload.get("message")) or payload
    raw_type = message.get("type")
    event_type = VAPI_EVENT_TYPES.get(raw_type) if isinstance(raw_type, str) else None
    if event_type is None:
        raise UnrecognizedEventType("vapi", raw_type)

    call = _dict(message.get("call"))
    metadata = _dict(call.get("metadata")) or _dict(_dict(call.get("assistant")).get("metadata"))
    artifact = _dict(message.get("artifact"))
    analysis = _dict(message.get("analysis"))
    call_id = call.get("id")

    data = {
        "event_type": event_type,
        "event_id": f"{call_id}:{raw_type}" if call_id else None,
        "vapi_call_id": call_id,
        "organization_id": metadata.get("organizationId"),
        "campaign_id": metadata.get("campaignId"),
        "lead_id": metadata.get("leadId"),
    }
    if event_type == "call.ended":
        data.update({
            "ended_reason": message.get("endedReason") or call.get("endedReason"),
            "duration_seconds": message.get("durationSeconds"),
            "cost": message.get("cost", call.get("cost")),
            "transcript": message.get("transcript") or artifact.get("transcript"),
            "summary": message.get("summary") or analysis.get("summary"),
            "recording_url": message.get("recordingUrl") or artifact.get("recordingUrl"),
            "ended_at": message.get("endedAt") or call.get("endedAt"),
        })
    elif event_type == "call.transcript":
        transcript = call.get("transcript") or artifact.get("transcript")
        # A live "transcript" message holds one utterance, not the whole call
        if raw_type != "transcript":
            transcript = transcript or message.get("transcript")
        data["transcript"] = transcript if isinstance(transcript, str) and transcript else None
    else:
        status = message.get("status")
        if raw_type == "call-started" and not status:
            status = "in_progress"
        data["status"] = _normalize_call_status(status)

    return _adapter.validate_python(data)


def parse_stripe_event(payload: dict) -> WebhookEventModel:
    """Normalize a Stripe event ({"id", "type", "data": {"object": {...}}})."""
    raw_type = payload.get("type")
    if not isinstance(raw_type, str) or raw_type not in STRIPE_EVENT_TYPES:
        raise UnrecognizedEventType("stripe", raw_type)

    obj = _dict(_dict(payload.get("data")).get("object"))
    metadata = _dict(obj.get("metadata"))
    data = {
        "event_type": raw_type,
        "event_id": payload.get("id"),
        "customer_id": obj.get("customer"),
    }

    if raw_type == "checkout.session.completed":
        data["subscription_id"] = obj.get("subscription")
        data["organization_id"] = obj.get("client_reference_id") or metadata.get("organization_id")
    elif raw_type == "invoice.paid":
        data["subscription_id"] = obj.get("subscription")
        data["amount_paid"] = obj.get("amount_paid")
    elif raw_type == "invoice.payment_failed":
        data["subscription_id"] = obj.get("subscription")
        data["attempt_count"] = obj.get("attempt_count")
    elif raw_type == "customer.subscription.updated":
        data["subscription_id"] = obj.get("id")
        data["status"] = obj.get("status")
    else:
        data["subscription_id"] = obj.get("id")

    return _adapter.validate_python(data)


PARSERS = {
    "vapi": parse_vapi_event,
    "stripe": parse_stripe_event,
}


def raw_event_type(provider: str, payload: dict) -> Optional[str]:
    """Provider's own type tag, without validating anything else."""
    if provider == "vapi":
        message = _dict(payload.get("message")) or payload
        raw = message.get("type")
    else:
        raw = payload.get("type")
    if not isinstance(raw, str):
        return None
    return VAPI_EVENT_TYPES.get(raw, raw) if provider == "vapi" else raw
