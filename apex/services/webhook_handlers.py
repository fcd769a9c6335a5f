"""
Handler registry - maps every event type of the webhook event union to its handler.

The registry refuses to build unless the mapping covers the whole union
exactly, so a new event type without a handler fails at startup.
"""
from typing import Awaitable, Callable, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from apex.schemas.webhook_events import EVENT_TYPES
from apex.services import billing, call_events


Handler = Callable[..., Awaitable[Optional[dict]]]


class HandlerRegistry:
    def __init__(self, handlers: Mapping[str, Handler]):
        missing = EVENT_TYPES - set(handlers)
        unknown = set(handlers) - EVENT_TYPES
        if missing:
            raise ValueError(f"No handler registered for event types: {sorted(missing)}")
        if unknown:
            raise ValueError(f"Handlers registered for unknown event types: {sorted(unknown)}")
        self._handlers = dict(handlers)

    async def dispatch(self, event, db: AsyncSession) -> Optional[dict]:
        return await self._handlers[event.event_type](event, db)

    def __contains__(self, event_type: str) -> bool:
        return event_type in self._handlers


def default_registry() -> HandlerRegistry:
    return HandlerRegistry({
        "call.ended": call_events.handle_call_ended,
        "call.status_update": call_events.handle_call_status_update,
        "call.transcript": call_events.handle_call_transcript,
        "checkout.session.completed": billing.handle_checkout_completed,
        "invoice.paid": billing.handle_invoice_paid,
        "invoice.payment_failed": billing.handle_invoice_payment_failed,
        "customer.subscription.updated": billing.handle_subscription_updated,
        "customer.subscription.deleted": billing.handle_subscription_deleted,
    })
