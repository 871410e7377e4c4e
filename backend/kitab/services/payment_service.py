"""Payment flows for the Stripe setup-intent checkout and WaafiPay wallet charges."""

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from kitab.billing.completion import from_stripe_subscription, from_waafipay_charge
from kitab.billing.errors import (
    ActivationIncomplete,
    AlreadySubscribed,
    NotFound,
    PaymentMethodMissing,
)
from kitab.billing.status import PaymentStatus, is_entitled
from kitab.billing.stripe_gateway import SetupIntentResult, StripeGateway
from kitab.billing.waafipay import WaafiPayGateway
from kitab.models.subscription import Subscription
from kitab.models.user import User
from kitab.services.subscription_service import (
    ensure_customer,
    get_owned_subscription,
    get_subscription_for_user,
    record_completion,
    transition_status,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Current time as naive UTC, matching the DB columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def start_setup_intent(
    db: AsyncSession, user: User, gateway: StripeGateway
) -> tuple[SetupIntentResult, str]:
    """Ensure a provider customer exists and open a SetupIntent for it."""
    customer_id = await ensure_customer(db, user, gateway)
    intent = await gateway.create_setup_intent(customer_id)
    logger.info("Setup intent %s issued for user %s", intent.intent_id, user.id)
    return intent, customer_id


async def subscribe_with_setup_intent(
    db: AsyncSession,
    user: User,
    gateway: StripeGateway,
    intent_id: str,
    customer_id: str,
    trial_days: int,
    now: datetime | None = None,
) -> Subscription:
    """Attach the collected payment method and create the provider subscription.

    The trial is offered only if the user has never held one.

    Raises:
        NotFound: ``customer_id`` is not the caller's customer.
        AlreadySubscribed: The caller already holds an entitled subscription.
        PaymentMethodMissing: The setup intent has not collected a card yet.
        ActivationIncomplete: Stripe returned neither ``trialing`` nor ``active``.
    """
    now = now or utcnow()
    subscription = await get_subscription_for_user(db, user.id, for_update=True)
    if subscription is None or subscription.external_customer_id != customer_id:
        raise NotFound("Customer not found")
    if is_entitled(subscription, now):
        raise AlreadySubscribed()

    payment_method_id = await gateway.retrieve_setup_intent(intent_id)
    if not payment_method_id:
        raise PaymentMethodMissing()
    await gateway.attach_payment_method(payment_method_id, customer_id)

    grant_trial = user.trial_status is None
    provider_sub = await gateway.create_subscription(
        customer_id, trial_days=trial_days if grant_trial else None
    )

    completion = from_stripe_subscription(provider_sub, customer_id, now)
    if completion is None:
        logger.warning(
            "Subscription %s for user %s not activated (status=%s)",
            provider_sub.id,
            user.id,
            provider_sub.status,
        )
        raise ActivationIncomplete()

    return await record_completion(db, user, completion)


async def pay_with_wallet(
    db: AsyncSession,
    user: User,
    gateway: WaafiPayGateway,
    account_no: str,
    amount: str,
    currency: str,
    period_days: int,
    now: datetime | None = None,
) -> Subscription:
    """Charge a wallet through WaafiPay and record a fixed-period subscription."""
    now = now or utcnow()
    existing = await get_subscription_for_user(db, user.id, for_update=True)
    if is_entitled(existing, now):
        raise AlreadySubscribed()

    charge = await gateway.charge(account_no, amount, currency)
    completion = from_waafipay_charge(charge, now, period_days)
    return await record_completion(db, user, completion)


async def cancel_subscription(
    db: AsyncSession,
    user: User,
    gateway: StripeGateway,
    subscription_id: uuid.UUID,
    reason: str | None,
    now: datetime | None = None,
) -> datetime:
    """Cancel one of the caller's subscriptions.

    Stripe-backed rows are cancelled at Stripe first; a ``ProviderError``
    propagates and leaves the local row untouched.

    Returns:
        The cancellation timestamp.
    """
    now = now or utcnow()
    subscription = await get_owned_subscription(db, subscription_id, user.id, for_update=True)
    if subscription is None:
        raise NotFound()

    if subscription.cancelled_at is not None:
        logger.info("Subscription %s already cancelled", subscription.id)
        return subscription.cancelled_at

    if subscription.is_provider_backed:
        await gateway.cancel_subscription(subscription.external_subscription_id, reason)

    await transition_status(
        db,
        subscription,
        PaymentStatus.CANCELLED,
        f"Cancelled by user: {reason}" if reason else "Cancelled by user",
        cancelled_at=now,
    )
    return now
