"""Canonical subscription status, provider event mapping and entitlement rules.

Every code path that writes ``Subscription.payment_status`` goes through
``PaymentStatus``. The values are the strings persisted in the database.
"""

import enum
from datetime import datetime


class PaymentStatus(str, enum.Enum):
    """Closed set of subscription states."""

    TRIALING = "Trial"
    ACTIVE = "Active"
    PAST_DUE = "PastDue"
    CANCELLED = "Cancelled"
    EXPIRED = "Expired"


# Statuses that revoke access to paid content.
REVOKING_STATUSES: frozenset[PaymentStatus] = frozenset(
    {PaymentStatus.CANCELLED, PaymentStatus.EXPIRED}
)

# Provider-agnostic default status for each handled webhook event type.
EVENT_STATUS: dict[str, PaymentStatus] = {
    "customer.subscription.created": PaymentStatus.ACTIVE,
    "customer.subscription.updated": PaymentStatus.ACTIVE,
    "customer.subscription.deleted": PaymentStatus.CANCELLED,
    "invoice.payment_succeeded": PaymentStatus.ACTIVE,
    "invoice.payment_failed": PaymentStatus.CANCELLED,
}

# Stripe subscription.status -> local status. Unlisted values keep the event default.
STRIPE_SUBSCRIPTION_STATUS: dict[str, PaymentStatus] = {
    "trialing": PaymentStatus.TRIALING,
    "active": PaymentStatus.ACTIVE,
    "past_due": PaymentStatus.PAST_DUE,
    "unpaid": PaymentStatus.PAST_DUE,
    "canceled": PaymentStatus.CANCELLED,
    "incomplete_expired": PaymentStatus.EXPIRED,
}

# Provider types whose periods are never renewed by webhooks.
NON_RENEWING_TYPES: frozenset[str] = frozenset({"wafipay"})


def status_for_event(event_type: str, provider_status: str | None = None) -> PaymentStatus:
    """Resolve the local status for a provider event.

    Raises:
        KeyError: If ``event_type`` is not a handled lifecycle event.
    """
    default = EVENT_STATUS[event_type]
    if provider_status is None or event_type not in (
        "customer.subscription.created",
        "customer.subscription.updated",
    ):
        return default
    return STRIPE_SUBSCRIPTION_STATUS.get(provider_status, default)


def entitlement_flag(status: PaymentStatus | None) -> int:
    """Value mirrored onto ``User.subscription_status`` for a subscription status."""
    if status is None or status in REVOKING_STATUSES:
        return 0
    return 1


def is_entitled(subscription, now: datetime) -> bool:
    """Read-time entitlement check for a subscription row (or ``None``).

    A non-renewing subscription whose period has ended is not entitled even
    if its stored status has not been expired yet.
    """
    if subscription is None or not entitlement_flag(subscription.payment_status):
        return False
    if (
        subscription.type in NON_RENEWING_TYPES
        and subscription.subscription_end is not None
        and subscription.subscription_end <= now
    ):
        return False
    return True
