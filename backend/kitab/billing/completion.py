"""Payment completion: the row shape both payment paths produce.

The Stripe setup-intent flow and the WaafiPay preauthorize/commit flow each
build a ``PaymentCompletion``; ``subscription_service.record_completion``
persists either one with the same upsert and entitlement logic.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from kitab.billing.status import PaymentStatus
from kitab.billing.stripe_gateway import ProviderSubscription
from kitab.billing.waafipay import WaafiPayCharge

# Provider statuses that activate a newly created Stripe subscription.
ACTIVATING_STRIPE_STATUSES: dict[str, PaymentStatus] = {
    "trialing": PaymentStatus.TRIALING,
    "active": PaymentStatus.ACTIVE,
}


@dataclass(frozen=True)
class PaymentCompletion:
    """Snapshot written to the subscriptions table after a successful payment."""

    type: str
    external_subscription_id: str
    external_customer_id: str | None
    plan_id: str | None
    plan_amount: Decimal | None
    currency: str | None
    interval: str | None
    subscription_start: datetime
    subscription_end: datetime
    payment_status: PaymentStatus
    comments: str
    trial_start: datetime | None = None
    trial_end: datetime | None = None

    @property
    def is_trial(self) -> bool:
        return self.payment_status is PaymentStatus.TRIALING


def from_stripe_subscription(
    provider_sub: ProviderSubscription,
    customer_id: str,
    now: datetime,
) -> PaymentCompletion | None:
    """Build a completion from a Stripe subscription.

    Returns ``None`` when the subscription is not trialing or active.
    Missing period bounds fall back to ``now`` and one month later.
    """
    status = ACTIVATING_STRIPE_STATUSES.get(provider_sub.status)
    if status is None:
        return None

    start = provider_sub.current_period_start or now
    end = provider_sub.current_period_end or start + timedelta(days=30)
    price = provider_sub.price
    is_trial = status is PaymentStatus.TRIALING
    return PaymentCompletion(
        type="stripe",
        external_subscription_id=provider_sub.id,
        external_customer_id=customer_id,
        plan_id=price.id if price else None,
        plan_amount=price.unit_amount if price else None,
        currency=price.currency if price else None,
        interval=price.interval if price else None,
        subscription_start=start,
        subscription_end=end,
        payment_status=status,
        comments="Subscription in trial" if is_trial else "Subscription created",
        trial_start=(provider_sub.trial_start or start) if is_trial else start,
        trial_end=(provider_sub.trial_end or end) if is_trial else end,
    )


def from_waafipay_charge(
    charge: WaafiPayCharge,
    now: datetime,
    period_days: int,
) -> PaymentCompletion:
    """Build a fixed-duration completion from a committed WaafiPay charge."""
    return PaymentCompletion(
        type="wafipay",
        external_subscription_id=charge.transaction_id,
        external_customer_id=None,
        plan_id=None,
        plan_amount=Decimal(charge.amount),
        currency=charge.currency,
        interval=None,
        subscription_start=now,
        subscription_end=now + timedelta(days=period_days),
        payment_status=PaymentStatus.ACTIVE,
        comments="Direct wallet payment committed",
    )
