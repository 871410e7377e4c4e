"""Stripe webhook event handlers: reconcile subscription lifecycle events.

Each handler resolves the local subscription by its Stripe subscription ID.
Events for subscriptions that are not stored locally are logged and dropped.
Status comes from the mapping table in ``kitab.billing.status``.
"""

import logging

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kitab.billing.status import PaymentStatus, status_for_event
from kitab.billing.stripe_gateway import get_period, ts_to_naive
from kitab.models.subscription import Subscription
from kitab.models.webhook_event import ProcessedWebhookEvent
from kitab.services.payment_service import utcnow
from kitab.services.subscription_service import (
    get_subscription_by_external_id,
    transition_status,
)

logger = logging.getLogger(__name__)

PROVIDER = "stripe"


def audit_comment(event_type: str) -> str:
    """Fixed audit note recorded for a webhook-driven transition."""
    return f"Status updated due to Stripe event {event_type}"


def _invoice_subscription_id(invoice) -> str | None:
    """Extract the subscription ID from an invoice.

    Stripe API 2025-03-31 (basil) moved it from ``invoice.subscription`` to
    ``invoice.parent.subscription_details.subscription``.
    """
    subscription = getattr(invoice, "subscription", None)
    if subscription is None:
        details = getattr(getattr(invoice, "parent", None), "subscription_details", None)
        subscription = getattr(details, "subscription", None)
    if subscription is None or isinstance(subscription, str):
        return subscription
    return subscription.id


def _invoice_period(invoice):
    """Period covered by the first invoice line, as naive UTC datetimes."""
    data = getattr(getattr(invoice, "lines", None), "data", None)
    period = getattr(data[0], "period", None) if data else None
    if period is None:
        return None, None
    return (
        ts_to_naive(getattr(period, "start", None)),
        ts_to_naive(getattr(period, "end", None)),
    )


async def _lookup(db: AsyncSession, subscription_id: str | None, event: stripe.Event) -> Subscription | None:
    if not subscription_id:
        logger.info("Event %s (%s) has no subscription, skipping", event.id, event.type)
        return None
    subscription = await get_subscription_by_external_id(db, subscription_id, for_update=True)
    if subscription is None:
        logger.warning(
            "No local subscription found for Stripe subscription %s (%s)",
            subscription_id,
            event.type,
        )
    return subscription


async def _apply_subscription_event(db: AsyncSession, event: stripe.Event) -> Subscription | None:
    """Shared body of the customer.subscription.* handlers."""
    stripe_sub = event.data.object
    subscription = await _lookup(db, stripe_sub.id, event)
    if subscription is None:
        return None

    new_status = status_for_event(event.type, getattr(stripe_sub, "status", None))
    cancelled_at = None
    period = None
    if new_status is PaymentStatus.CANCELLED and event.type == "customer.subscription.deleted":
        cancelled_at = ts_to_naive(getattr(stripe_sub, "ended_at", None)) or utcnow()
    else:
        period = get_period(stripe_sub)

    await transition_status(
        db,
        subscription,
        new_status,
        audit_comment(event.type),
        period=period,
        cancelled_at=cancelled_at,
    )
    return subscription


async def handle_subscription_created(db: AsyncSession, event: stripe.Event) -> None:
    """Handle customer.subscription.created."""
    await _apply_subscription_event(db, event)


async def handle_subscription_updated(db: AsyncSession, event: stripe.Event) -> None:
    """Handle customer.subscription.updated: sync status from Stripe's own status."""
    await _apply_subscription_event(db, event)


async def handle_subscription_deleted(db: AsyncSession, event: stripe.Event) -> None:
    """Handle customer.subscription.deleted: cancel locally and revoke entitlement."""
    subscription = await _apply_subscription_event(db, event)
    if subscription is not None:
        logger.info("Subscription deleted: %s cancelled", subscription.external_subscription_id)


async def handle_payment_succeeded(db: AsyncSession, event: stripe.Event) -> None:
    """Handle invoice.payment_succeeded: confirm active status and advance the period."""
    invoice = event.data.object
    subscription = await _lookup(db, _invoice_subscription_id(invoice), event)
    if subscription is None:
        return

    await transition_status(
        db,
        subscription,
        status_for_event(event.type),
        audit_comment(event.type),
        period=_invoice_period(invoice),
    )


async def handle_payment_failed(db: AsyncSession, event: stripe.Event) -> None:
    """Handle invoice.payment_failed: cancel locally and revoke entitlement."""
    invoice = event.data.object
    subscription = await _lookup(db, _invoice_subscription_id(invoice), event)
    if subscription is None:
        return

    await transition_status(
        db,
        subscription,
        status_for_event(event.type),
        audit_comment(event.type),
    )
    logger.info(
        "Payment failed: subscription %s marked as %s",
        subscription.external_subscription_id,
        subscription.payment_status.value,
    )


# Map event types to handler functions
EVENT_HANDLERS = {
    "customer.subscription.created": handle_subscription_created,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_succeeded": handle_payment_succeeded,
    "invoice.payment_failed": handle_payment_failed,
}


async def is_processed(db: AsyncSession, event_id: str) -> bool:
    """True if this provider event was already applied."""
    result = await db.execute(
        select(ProcessedWebhookEvent.id).where(
            ProcessedWebhookEvent.provider == PROVIDER,
            ProcessedWebhookEvent.event_id == event_id,
        )
    )
    return result.scalar_one_or_none() is not None


async def handle_event(db: AsyncSession, event: stripe.Event) -> bool:
    """Dispatch a verified event to its handler.

    Returns:
        True if the event was applied, False if it was ignored (unhandled
        type or redelivery of an already processed event).
    """
    handler = EVENT_HANDLERS.get(event.type)
    if handler is None:
        logger.info("Unhandled webhook event type: %s", event.type)
        return False

    if await is_processed(db, event.id):
        logger.info("Webhook event %s already processed, skipping", event.id)
        return False

    logger.info("Processing webhook event: %s (id=%s)", event.type, event.id)
    await handler(db, event)
    db.add(ProcessedWebhookEvent(provider=PROVIDER, event_id=event.id, event_type=event.type))
    await db.flush()
    return True
