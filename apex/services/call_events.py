"""
Vapi call event handlers - advance Call rows and record lead outcomes.

The campaign executor inserts the Call row right after Vapi accepts the call,
so a webhook can arrive before the row exists. When the call metadata names
an organization the row is created from it (inbound calls land here too);
without one the delivery is retryable.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from apex.models.call import Call
from apex.models.campaign import Campaign
from apex.models.lead import Lead
from apex.models.organization import Organization
from apex.schemas.webhook_events import (
    CallEndedEvent,
    CallStatusUpdateEvent,
    CallTranscriptEvent,
)
from apex.services.handler_errors import RetryableHandlerError, TerminalHandlerError
from apex.services.tenancy import ensure_same_organization, parse_organization_id

logger = logging.getLogger(__name__)

TERMINAL_CALL_STATUSES = ("completed", "failed")

# Forward-only progression for status updates
_STATUS_ORDER = {"queued": 0, "ringing": 1, "in_progress": 2, "forwarding": 3}

NO_ANSWER_REASONS = frozenset({
    "customer-did-not-answer",
    "customer-busy",
    "silence-timed-out",
    "customer-ended-call-before-answer",
})
VOICEMAIL_REASONS = frozenset({"voicemail", "voicemail-detected"})
FAILED_REASON_PREFIXES = (
    "assistant-error",
    "pipeline-error",
    "twilio-failed",
    "vonage-failed",
    "call.start.error",
    "phone-call-provider",
    "assistant-not-found",
    "assistant-not-valid",
    "db-error",
    "unknown-error",
)


def classify_outcome(ended_reason: Optional[str]) -> str:
    """Map a Vapi endedReason onto a lead outcome."""
    reason = (ended_reason or "").strip().lower()
    if reason in NO_ANSWER_REASONS:
        return "no_answer"
    if reason in VOICEMAIL_REASONS:
        return "voicemail"
    if reason.startswith(FAILED_REASON_PREFIXES):
        return "failed"
    return "contacted"


async def _find_call(db: AsyncSession, vapi_call_id: str) -> Optional[Call]:
    result = await db.execute(select(Call).where(Call.vapi_call_id == vapi_call_id))
    return result.scalar_one_or_none()


async def _get_call(db: AsyncSession, vapi_call_id: str) -> Call:
    call = await _find_call(db, vapi_call_id)
    if call is None:
        raise RetryableHandlerError(f"Call {vapi_call_id} not recorded yet")
    return call


def _check_call_tenancy(call: Call, organization_id: Optional[str]) -> None:
    ensure_same_organization(
        call.organization_id,
        parse_organization_id(organization_id),
        f"Webhook for call {call.vapi_call_id}",
    )


async def _owned_id(
    db: AsyncSession, model, value: Optional[str], organization_id: uuid.UUID
) -> Optional[uuid.UUID]:
    """Id of an existing campaign/lead named in call metadata, or None."""
    if not value:
        return None
    try:
        record_id = uuid.UUID(str(value))
    except ValueError:
        logger.warning("Ignoring malformed %s id in call metadata: %r", model.__tablename__, value)
        return None
    record = await db.get(model, record_id)
    if record is None:
        return None
    ensure_same_organization(organization_id, record.organization_id, f"{model.__name__} {record_id}")
    return record_id


async def _get_or_create_call(
    db: AsyncSession, event: Union[CallEndedEvent, CallStatusUpdateEvent]
) -> Call:
    """Load the call, or record it from the event metadata when it names an organization."""
    call = await _find_call(db, event.vapi_call_id)
    if call is not None:
        _check_call_tenancy(call, event.organization_id)
        return call

    organization_id = parse_organization_id(event.organization_id)
    if organization_id is None:
        raise RetryableHandlerError(f"Call {event.vapi_call_id} not recorded yet")
    if await db.get(Organization, organization_id) is None:
        raise TerminalHandlerError(
            f"Call {event.vapi_call_id} names unknown organization {organization_id}"
        )

    call = Call(
        organization_id=organization_id,
        campaign_id=await _owned_id(db, Campaign, event.campaign_id, organization_id),
        lead_id=await _owned_id(db, Lead, event.lead_id, organization_id),
        vapi_call_id=event.vapi_call_id,
        status="queued",
    )
    db.add(call)
    try:
        await db.flush()
    except IntegrityError as e:
        raise RetryableHandlerError(f"Call {event.vapi_call_id} was recorded concurrently") from e

    logger.info(
        "Recorded call %s from %s webhook", event.vapi_call_id, event.event_type,
        extra={"organization_id": str(organization_id)},
    )
    return call


async def handle_call_ended(event: CallEndedEvent, db: AsyncSession) -> dict:
    call = await _get_or_create_call(db, event)

    if call.status in TERMINAL_CALL_STATUSES:
        logger.info(
            "Call %s already ended - report ignored", call.vapi_call_id,
            extra={"organization_id": str(call.organization_id)},
        )
        return {"call_id": str(call.id), "status": call.status, "duplicate": True}

    outcome = classify_outcome(event.ended_reason)
    status = "failed" if outcome == "failed" else "completed"
    values = {
        "status": status,
        "ended_reason": event.ended_reason,
        "duration_seconds": event.duration_seconds,
        "cost": event.cost,
        "summary": event.summary,
        "recording_url": event.recording_url,
        "ended_at": event.ended_at or datetime.now(timezone.utc),
    }
    if event.transcript:
        values["transcript"] = event.transcript

    # Only one report may finalize the call; end-of-call-report and call-ended can race
    finalized = await db.execute(
        update(Call)
        .where(Call.id == call.id, Call.status.not_in(TERMINAL_CALL_STATUSES))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if finalized.rowcount != 1:
        logger.info(
            "Call %s finalized concurrently - report ignored", call.vapi_call_id,
            extra={"organization_id": str(call.organization_id)},
        )
        current = await db.get(Call, call.id, populate_existing=True)
        return {"call_id": str(call.id), "status": current.status, "duplicate": True}

    if call.lead_id is not None:
        lead = await db.get(Lead, call.lead_id)
        if lead is not None:
            ensure_same_organization(call.organization_id, lead.organization_id, f"Lead {lead.id}")
            lead.status = outcome

    if call.campaign_id is not None:
        await db.execute(
            update(Campaign)
            .where(
                Campaign.id == call.campaign_id,
                Campaign.organization_id == call.organization_id,
            )
            .values(completed_calls=Campaign.completed_calls + 1)
        )

    logger.info(
        "Call %s ended: %s (%s)", call.vapi_call_id, outcome, event.ended_reason,
        extra={
            "organization_id": str(call.organization_id),
            "campaign_id": str(call.campaign_id) if call.campaign_id else None,
            "lead_id": str(call.lead_id) if call.lead_id else None,
        },
    )
    return {"call_id": str(call.id), "status": status, "outcome": outcome}


async def handle_call_status_update(event: CallStatusUpdateEvent, db: AsyncSession) -> dict:
    call = await _get_or_create_call(db, event)

    new_status = event.status
    if call.status in TERMINAL_CALL_STATUSES or new_status not in _STATUS_ORDER:
        # "ended" is finalized by the end-of-call report
        return {"call_id": str(call.id), "status": call.status}

    if _STATUS_ORDER[new_status] > _STATUS_ORDER.get(call.status, -1):
        call.status = new_status
        if new_status == "in_progress" and call.started_at is None:
            call.started_at = datetime.now(timezone.utc)
        logger.debug("Call %s -> %s", call.vapi_call_id, new_status)

    return {"call_id": str(call.id), "status": call.status}


async def handle_call_transcript(event: CallTranscriptEvent, db: AsyncSession) -> dict:
    """Store the full transcript on the call. Messages without one change nothing."""
    call = await _get_call(db, event.vapi_call_id)
    _check_call_tenancy(call, event.organization_id)

    if not event.transcript:
        return {"call_id": str(call.id), "transcript_stored": False}

    call.transcript = event.transcript
    logger.info(
        "Transcript stored for call %s", call.vapi_call_id,
        extra={"organization_id": str(call.organization_id)},
    )
    return {"call_id": str(call.id), "transcript_stored": True}
