"""
Stripe billing event handlers - keep Organization.subscription_status and the
Stripe ids in step with the customer's subscription.

Handlers run inside the session opened by the webhook ingestor and do not
commit themselves.
"""
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from apex.models.organization import Organization
from apex.schemas.webhook_events import (
    CheckoutCompletedEvent,
    InvoicePaidEvent,
    InvoicePaymentFailedEvent,
    SubscriptionDeletedEvent,
    SubscriptionUpdatedEvent,
)
from apex.services.handler_errors import TerminalHandlerError, TenancyViolation
from apex.services.tenancy import parse_organization_id
from apex.utils.alerting import AlertType, send_alert

logger = logging.getLogger(__name__)

# Stripe subscription status -> Organization.subscription_status
STATUS_MAPPING = {
    "active": "active",
    "trialing": "trialing",
    "past_due": "past_due",
    "unpaid": "past_due",
    "incomplete": "past_due",
    "canceled": "canceled",
    "incomplete_expired": "canceled",
    "paused": "paused",
}


async def _get_by_customer(db: AsyncSession, customer_id: Optional[str]) -> Organization:
    if not customer_id:
        raise TerminalHandlerError("Stripe event has no customer id")
    result = await db.execute(
        select(Organization).where(Organization.stripe_customer_id == customer_id)
    )
    org = result.scalar_one_or_none()
    if org is None:
        raise TerminalHandlerError(f"No organization for Stripe customer {customer_id}")
    return org


async def handle_checkout_completed(event: CheckoutCompletedEvent, db: AsyncSession) -> dict:
    """Link the Stripe customer and subscription to the organization that checked out."""
    org_id = parse_organization_id(event.organization_id)
    if org_id is not None:
        org = await db.get(Organization, org_id)
        if org is None:
            raise TerminalHandlerError(f"Checkout for unknown organization {org_id}")
    else:
        org = await _get_by_customer(db, event.customer_id)

    if (
        event.customer_id
        and org.stripe_customer_id
        and org.stripe_customer_id != event.customer_id
    ):
        raise TenancyViolation(
            f"Organization {org.id} is linked to Stripe customer {org.stripe_customer_id}, "
            f"checkout came from {event.customer_id}"
        )

    if event.customer_id:
        org.stripe_customer_id = event.customer_id
    if event.subscription_id:
        org.stripe_subscription_id = event.subscription_id
    org.subscription_status = "active"

    logger.info(
        "Checkout completed - subscription active", extra={"organization_id": str(org.id)}
    )
    return {"organization_id": str(org.id), "subscription_status": org.subscription_status}


async def handle_invoice_paid(event: InvoicePaidEvent, db: AsyncSession) -> dict:
    """Successful recurring payment."""
    org = await _get_by_customer(db, event.customer_id)
    if org.subscription_status != "active":
        org.subscription_status = "active"
        logger.info(
            "Payment received, subscription set to active",
            extra={"organization_id": str(org.id)},
        )
    return {"organization_id": str(org.id), "subscription_status": org.subscription_status}


async def handle_invoice_payment_failed(event: InvoicePaymentFailedEvent, db: AsyncSession) -> dict:
    """Failed payment - mark past due and alert the operators."""
    org = await _get_by_customer(db, event.customer_id)
    org.subscription_status = "past_due"
    org_id = str(org.id)

    logger.warning("Payment failed for organization %s", org.name, extra={"organization_id": org_id})
    await send_alert(
        AlertType.PAYMENT_FAILED,
        f"Payment failed for {org.name}",
        severity="warning",
        extra={"organization_id": org_id, "attempt_count": event.attempt_count},
    )
    return {"organization_id": org_id, "subscription_status": "past_due"}


async def handle_subscription_updated(event: SubscriptionUpdatedEvent, db: AsyncSession) -> dict:
    """Upgrade, downgrade, pause or cancel-at-period-end."""
    org = await _get_by_customer(db, event.customer_id)
    old_status = org.subscription_status
    new_status = STATUS_MAPPING.get(event.status, old_status)
    org.subscription_status = new_status
    org.stripe_subscription_id = event.subscription_id

    if old_status != new_status:
        logger.info(
            "Subscription status %s -> %s", old_status, new_status,
            extra={"organization_id": str(org.id)},
        )
    return {"organization_id": str(org.id), "subscription_status": new_status}


async def handle_subscription_deleted(event: SubscriptionDeletedEvent, db: AsyncSession) -> dict:
    """Subscription canceled."""
    org = await _get_by_customer(db, event.customer_id)
    org.subscription_status = "canceled"
    org.stripe_subscription_id = None
    logger.info("Subscription canceled", extra={"organization_id": str(org.id)})
    return {"organization_id": str(org.id), "subscription_status": "canceled"}
