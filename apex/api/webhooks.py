"""
Provider webhook endpoints - Vapi call events and Stripe billing events.

No user auth: each provider is authenticated by its signature header before
the body reaches the idempotency store. Everything after that is handled by
WebhookIngestor.
"""
import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from apex.config import get_settings
from apex.database import Database, get_database
from apex.services.idempotency import IdempotencyStore
from apex.services.webhook_ingestion import InboundWebhook, WebhookIngestor
from apex.services.webhook_log import WebhookEventLog
from apex.utils.alerting import AlertType, send_alert
from apex.utils.webhook_signatures import validate_webhook_signature

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])

IDEMPOTENCY_HEADER = "idempotency-key"


def get_webhook_ingestor(
    request: Request,
    database: Database = Depends(get_database),
) -> WebhookIngestor:
    """FastAPI dependency wiring the ingestor to the process-wide Database."""
    settings = get_settings()
    return WebhookIngestor(
        store=IdempotencyStore(
            database.session_factory,
            reservation_ttl=timedelta(seconds=settings.idempotency_reservation_ttl_seconds),
            poll_interval=settings.idempotency_poll_interval_seconds,
        ),
        event_log=WebhookEventLog(database.session_factory),
        handlers=request.app.state.handler_registry,
        session_factory=database.session_factory,
        ttl=timedelta(hours=settings.idempotency_ttl_hours),
        wait=settings.idempotency_wait_seconds,
    )


async def _validate_signature(provider: str, request: Request, body: bytes, status_code: int) -> None:
    """Validate the provider signature and raise if invalid."""
    if validate_webhook_signature(provider, request.headers, body):
        return
    client_ip = request.client.host if request.client else "unknown"
    logger.warning(
        "Invalid webhook signature: provider=%s ip=%s", provider, client_ip,
        extra={"provider": provider},
    )
    await send_alert(
        AlertType.WEBHOOK_SIGNATURE_INVALID,
        f"Invalid {provider} webhook signature from {client_ip}",
        severity="warning",
    )
    raise HTTPException(status_code=status_code, detail="Invalid webhook signature")


async def _ingest(provider: str, request: Request, body: bytes, ingestor: WebhookIngestor) -> JSONResponse:
    result = await ingestor.ingest(InboundWebhook(
        provider=provider,
        method=request.method,
        path=request.url.path,
        body=body,
        idempotency_key=request.headers.get(IDEMPOTENCY_HEADER),
    ))
    return JSONResponse(status_code=result.status_code, content=result.body, headers=result.headers)


@router.post("/vapi")
async def vapi_webhook(
    request: Request,
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
):
    """Vapi server messages (end-of-call-report, status-update, ...)."""
    body = await request.body()
    await _validate_signature("vapi", request, body, status_code=401)
    return await _ingest("vapi", request, body, ingestor)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
):
    """Stripe billing events."""
    body = await request.body()
    if not request.headers.get("stripe-signature"):
        raise HTTPException(status_code=400, detail="Missing stripe-signature header")
    await _validate_signature("stripe", request, body, status_code=400)
    return await _ingest("stripe", request, body, ingestor)
