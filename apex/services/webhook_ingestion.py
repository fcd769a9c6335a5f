"""
Webhook ingestion - the single path every provider delivery takes.

    idempotency check -> parse -> redact + log -> dispatch -> idempotency commit

Outcome rules:
- handler success                       -> 200, status "processed"
- RetryableHandlerError / DB unreachable -> 503, provider retries
- any other handler exception           -> 200, status "failed", no retry
- idempotency store or event log down   -> 503 (fail closed)

Responses below 500 are cached under the Idempotency-Key. 5xx responses
release the reservation so the retried delivery runs again.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Mapping, Optional

from pydantic import ValidationError
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apex.models.idempotency_key import MAX_KEY_LENGTH
from apex.models.webhook_event import STATUS_IGNORED
from apex.schemas.webhook_events import PARSERS, UnrecognizedEventType, raw_event_type
from apex.services.handler_errors import RetryableHandlerError, TenancyViolation
from apex.services.idempotency import (
    IdempotencyStore,
    IdempotencyStoreError,
    LookupState,
    compute_request_hash,
)
from apex.services.webhook_handlers import HandlerRegistry
from apex.services.webhook_log import WebhookEventLog, WebhookLogError
from apex.utils.alerting import AlertType, send_alert
from apex.utils.redaction import redact_payload

logger = logging.getLogger(__name__)

UNPARSEABLE_EVENT_TYPE = "unparseable"
INVALID_EVENT_TYPE = "invalid"
RETRY_AFTER_SECONDS = 5

# Database failures that mean "try again later" rather than "bad event"
TRANSIENT_DB_ERRORS = (OperationalError, InterfaceError)


@dataclass
class InboundWebhook:
    provider: str
    method: str
    path: str
    body: bytes
    idempotency_key: Optional[str] = None


@dataclass
class WebhookResponse:
    status_code: int
    body: dict
    headers: dict = field(default_factory=dict)


class WebhookIngestor:
    def __init__(
        self,
        store: IdempotencyStore,
        event_log: WebhookEventLog,
        handlers: HandlerRegistry,
        session_factory: async_sessionmaker[AsyncSession],
        ttl: timedelta = timedelta(hours=24),
        wait: float = 10.0,
        parsers: Optional[Mapping[str, Callable]] = None,
    ):
        self.store = store
        self.event_log = event_log
        self.handlers = handlers
        self.session_factory = session_factory
        self.ttl = ttl
        self.wait = wait
        self.parsers = parsers or PARSERS

    async def ingest(self, webhook: InboundWebhook) -> WebhookResponse:
        key = webhook.idempotency_key
        if key is None:
            return await self._process(webhook)

        if not key.strip() or len(key) > MAX_KEY_LENGTH:
            return WebhookResponse(
                400, {"error": f"Idempotency-Key must be 1-{MAX_KEY_LENGTH} characters"}
            )

        request_hash = compute_request_hash(webhook.method, webhook.path, webhook.body)
        try:
            lookup = await self.store.check_or_reserve(key, request_hash, wait=self.wait)
        except IdempotencyStoreError as e:
            logger.error(
                "Idempotency store unavailable: %s", str(e),
                extra={"provider": webhook.provider, "idempotency_key": key},
            )
            await send_alert(AlertType.IDEMPOTENCY_STORE_UNAVAILABLE, str(e))
            return _unavailable("Idempotency store unavailable")

        if lookup.state == LookupState.HIT:
            logger.info(
                "Idempotent replay (%s)", lookup.response_status,
                extra={"provider": webhook.provider, "idempotency_key": key},
            )
            return WebhookResponse(
                lookup.response_status,
                lookup.response_body or {},
                {"Idempotent-Replayed": "true"},
            )
        if lookup.state == LookupState.CONFLICT:
            return WebhookResponse(
                409, {"error": "Idempotency-Key was already used with a different request"}
            )
        if lookup.state == LookupState.IN_PROGRESS:
            return WebhookResponse(
                409,
                {"error": "A request with this Idempotency-Key is still in progress"},
                {"Retry-After": str(RETRY_AFTER_SECONDS)},
            )

        # MISS: this call holds the reservation
        try:
            response = await self._process(webhook)
        except Exception:
            await self._release(key, request_hash)
            raise

        if response.status_code >= 500:
            await self._release(key, request_hash)
        else:
            try:
                await self.store.commit(key, request_hash, response.status_code, response.body, self.ttl)
            except IdempotencyStoreError as e:
                # Side effects already happened - return the real outcome anyway
                logger.error(
                    "Failed to cache response for idempotency key: %s", str(e),
                    extra={"provider": webhook.provider, "idempotency_key": key},
                )
        return response

    async def _release(self, key: str, request_hash: str) -> None:
        try:
            await self.store.release(key, request_hash)
        except IdempotencyStoreError as e:
            # Reservation lapses on its own after the reservation TTL
            logger.error(
                "Failed to release idempotency reservation: %s", str(e),
                extra={"idempotency_key": key},
            )

    async def _process(self, webhook: InboundWebhook) -> WebhookResponse:
        try:
            return await self._parse_and_dispatch(webhook)
        except WebhookLogError as e:
            logger.error(
                "Webhook event log unavailable: %s", str(e),
                extra={"provider": webhook.provider},
            )
            return _unavailable("Webhook event log unavailable")

    async def _parse_and_dispatch(self, webhook: InboundWebhook) -> WebhookResponse:
        provider = webhook.provider
        key = webhook.idempotency_key
        parser = self.parsers.get(provider)
        if parser is None:
            raise ValueError(f"No parser for webhook provider {provider!r}")

        try:
            payload = json.loads(webhook.body)
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            await self.event_log.record(
                None,
                UNPARSEABLE_EVENT_TYPE,
                {"size_bytes": len(webhook.body)},
                provider,
                idempotency_key=key,
                status=STATUS_IGNORED,
                error_message="Body is not a JSON object",
            )
            return WebhookResponse(400, {"error": "Invalid JSON payload"})

        try:
            event = parser(payload)
        except UnrecognizedEventType as e:
            if e.raw_type is not None and not isinstance(e.raw_type, str):
                await self.event_log.record(
                    _raw_event_id(payload),
                    INVALID_EVENT_TYPE,
                    redact_payload(payload),
                    provider,
                    idempotency_key=key,
                    status=STATUS_IGNORED,
                    error_message=f"Event type must be a string, got {type(e.raw_type).__name__}",
                )
                logger.warning(
                    "Rejected %s event with non-string type", provider,
                    extra={"provider": provider},
                )
                return WebhookResponse(400, {"error": "Invalid event type"})
            event_type = str(e.raw_type or "unknown")[:100]
            await self.event_log.record(
                _raw_event_id(payload),
                event_type,
                redact_payload(payload),
                provider,
                idempotency_key=key,
                status=STATUS_IGNORED,
                error_message=str(e),
            )
            logger.info(
                "Ignoring unhandled %s event type %s", provider, event_type,
                extra={"provider": provider, "event_type": event_type},
            )
            return WebhookResponse(200, {"status": "ignored", "event_type": event_type})
        except ValidationError as e:
            event_type = str(raw_event_type(provider, payload) or "unknown")[:100]
            await self.event_log.record(
                _raw_event_id(payload),
                event_type,
                redact_payload(payload),
                provider,
                idempotency_key=key,
                status=STATUS_IGNORED,
                error_message=f"Invalid payload: {e.error_count()} validation error(s)",
            )
            logger.warning(
                "Rejected malformed %s %s event", provider, event_type,
                extra={"provider": provider, "event_type": event_type},
            )
            return WebhookResponse(
                400, {"error": "Invalid event payload", "event_type": event_type}
            )

        record = await self.event_log.record(
            event.event_id,
            event.event_type,
            redact_payload(payload),
            provider,
            idempotency_key=key,
        )
        log_extra = {
            "provider": provider,
            "event_type": event.event_type,
            "event_id": event.event_id,
        }

        try:
            async with self.session_factory() as db:
                await self.handlers.dispatch(event, db)
                await db.commit()
        except (RetryableHandlerError, *TRANSIENT_DB_ERRORS) as e:
            logger.warning("Webhook handler failed, provider will retry: %s", str(e), extra=log_extra)
            await self.event_log.mark_failed(record.id, str(e) or type(e).__name__)
            return WebhookResponse(
                503,
                {"status": "retry", "event_id": event.event_id, "event_type": event.event_type},
                {"Retry-After": str(RETRY_AFTER_SECONDS)},
            )
        except Exception as e:
            logger.error("Webhook handler failed permanently: %s", str(e), exc_info=True, extra=log_extra)
            await self.event_log.mark_failed(record.id, str(e) or type(e).__name__)
            if isinstance(e, TenancyViolation):
                await send_alert(AlertType.TENANCY_VIOLATION, str(e), extra={"event_type": event.event_type})
            else:
                await send_alert(
                    AlertType.WEBHOOK_HANDLER_FAILED,
                    f"{provider} {event.event_type} handler failed: {e}",
                    severity="warning",
                )
            return WebhookResponse(
                200, {"status": "failed", "event_id": event.event_id, "event_type": event.event_type}
            )

        logger.info("Webhook processed", extra=log_extra)
        return WebhookResponse(
            200, {"status": "processed", "event_id": event.event_id, "event_type": event.event_type}
        )


def _raw_event_id(payload: dict) -> Optional[str]:
    value = payload.get("id")
    return str(value)[:255] if value is not None else None


def _unavailable(message: str) -> WebhookResponse:
    return WebhookResponse(503, {"error": message}, {"Retry-After": str(RETRY_AFTER_SECONDS)})
