"""Subscription service: reads and writes for the subscriptions table.

Every write that changes ``Subscription.payment_status`` also rewrites the
owner's ``User.subscription_status`` flag in the same session, so both land
in one transaction when the caller commits.
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kitab.billing.completion import PaymentCompletion
from kitab.billing.errors import StaleSubscriptionState
from kitab.billing.status import (
    NON_RENEWING_TYPES,
    REVOKING_STATUSES,
    PaymentStatus,
    entitlement_flag,
)
from kitab.billing.stripe_gateway import StripeGateway
from kitab.database import upsert_insert
from kitab.models.subscription import Subscription
from kitab.models.user import User

logger = logging.getLogger(__name__)


async def get_subscription_for_user(
    db: AsyncSession, user_id: uuid.UUID, *, for_update: bool = False
) -> Subscription | None:
    """Look up the single subscription row owned by a user."""
    stmt = select(Subscription).where(Subscription.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_subscription_by_external_id(
    db: AsyncSession, external_subscription_id: str, *, for_update: bool = False
) -> Subscription | None:
    """Look up subscription by provider subscription ID (used by webhooks)."""
    stmt = select(Subscription).where(
        Subscription.external_subscription_id == external_subscription_id
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_owned_subscription(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    user_id: uuid.UUID,
    *,
    for_update: bool = False,
) -> Subscription | None:
    """Look up a subscription by local ID, only if it belongs to ``user_id``."""
    stmt = select(Subscription).where(
        Subscription.id == subscription_id,
        Subscription.user_id == user_id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def _reload_for_user(db: AsyncSession, user_id: uuid.UUID) -> Subscription:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def ensure_customer(db: AsyncSession, user: User, gateway: StripeGateway) -> str:
    """Return the user's provider customer ID, creating it on first use.

    The store row is inserted with ``ON CONFLICT (user_id) DO NOTHING`` so two
    racing first calls still leave exactly one row per user.
    """
    subscription = await get_subscription_for_user(db, user.id, for_update=True)
    if subscription is not None and subscription.external_customer_id:
        logger.info(
            "Reusing customer %s for user %s", subscription.external_customer_id, user.id
        )
        return subscription.external_customer_id

    customer_id = await gateway.create_customer(
        email=user.email,
        name=user.full_name or user.email,
        user_id=str(user.id),
    )

    if subscription is not None:
        subscription.external_customer_id = customer_id
        await db.flush()
    else:
        stmt = (
            upsert_insert(db, Subscription)
            .values(user_id=user.id, external_customer_id=customer_id, type="stripe")
            .on_conflict_do_nothing(index_elements=[Subscription.user_id])
        )
        await db.execute(stmt)
        subscription = await _reload_for_user(db, user.id)

    logger.info(
        "Linked customer %s to user %s", subscription.external_customer_id, user.id
    )
    return subscription.external_customer_id


async def record_completion(
    db: AsyncSession, user: User, completion: PaymentCompletion
) -> Subscription:
    """Upsert the user's subscription from a completed payment and mirror entitlement.

    Inserts the row on first payment and updates it in place on conflict by
    ``user_id``. The user's entitlement flag and trial window are written in
    the same session.
    """
    values = {
        "external_subscription_id": completion.external_subscription_id,
        "external_customer_id": completion.external_customer_id,
        "plan_id": completion.plan_id,
        "plan_amount": completion.plan_amount,
        "currency": completion.currency,
        "interval": completion.interval,
        "subscription_start": completion.subscription_start,
        "subscription_end": completion.subscription_end,
        "payment_status": completion.payment_status,
        "type": completion.type,
        "comments": completion.comments,
        "cancelled_at": None,
    }
    insert_stmt = upsert_insert(db, Subscription).values(user_id=user.id, **values)
    updates = {
        **values,
        # Wallet payments carry no customer; keep the linked Stripe customer
        "external_customer_id": func.coalesce(
            insert_stmt.excluded.external_customer_id,
            Subscription.external_customer_id,
        ),
        "updated_at": func.now(),
    }
    stmt = insert_stmt.on_conflict_do_update(
        index_elements=[Subscription.user_id],
        set_=updates,
    )
    await db.execute(stmt)

    user.subscription_status = entitlement_flag(completion.payment_status)
    if completion.trial_start is not None:
        user.trial_start = completion.trial_start
        user.trial_end = completion.trial_end
    if completion.is_trial and user.trial_status is None:
        user.trial_status = "active"
    await db.flush()

    subscription = await _reload_for_user(db, user.id)
    logger.info(
        "Recorded %s payment for user %s: subscription %s status=%s",
        completion.type,
        user.id,
        completion.external_subscription_id,
        completion.payment_status.value,
    )
    return subscription


async def transition_status(
    db: AsyncSession,
    subscription: Subscription,
    new_status: PaymentStatus,
    comments: str,
    *,
    period: tuple[datetime | None, datetime | None] | None = None,
    cancelled_at: datetime | None = None,
) -> bool:
    """Move a subscription to ``new_status`` and resync the entitlement flag.

    The row update is a compare-and-set on the status read by the caller.
    ``period`` only ever moves the stored period forward. Rows with
    ``cancelled_at`` set only accept ``CANCELLED``.

    Returns:
        True if anything was written, False for a no-op.

    Raises:
        StaleSubscriptionState: If the status changed since it was read.
    """
    if subscription.cancelled_at is not None and new_status is not PaymentStatus.CANCELLED:
        logger.info(
            "Subscription %s was cancelled at %s; ignoring transition to %s",
            subscription.id,
            subscription.cancelled_at,
            new_status.value,
        )
        return False

    values: dict = {}
    if subscription.payment_status is not new_status:
        values["payment_status"] = new_status
    if subscription.comments != comments:
        values["comments"] = comments
    if period is not None:
        period_start, period_end = period
        if period_end is not None and (
            subscription.subscription_end is None or period_end > subscription.subscription_end
        ):
            values["subscription_start"] = period_start
            values["subscription_end"] = period_end
    if cancelled_at is not None and subscription.cancelled_at is None:
        values["cancelled_at"] = cancelled_at

    user = await db.get(User, subscription.user_id)
    flag = entitlement_flag(new_status)
    if not values and (user is None or user.subscription_status == flag):
        logger.info(
            "Subscription %s already %s; nothing to do", subscription.id, new_status.value
        )
        return False

    if values:
        expected = subscription.payment_status
        status_matches = (
            Subscription.payment_status.is_(None)
            if expected is None
            else Subscription.payment_status == expected
        )
        result = await db.execute(
            update(Subscription)
            .where(Subscription.id == subscription.id, status_matches)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "Subscription %s changed concurrently (expected status %s)",
                subscription.id,
                expected.value if expected else None,
            )
            raise StaleSubscriptionState()

    if user is not None:
        user.subscription_status = flag
    await db.flush()
    await db.refresh(subscription)

    logger.info(
        "Subscription %s (user %s) -> %s, entitlement=%s",
        subscription.id,
        subscription.user_id,
        new_status.value,
        flag,
    )
    return True


async def expire_if_lapsed(db: AsyncSession, subscription: Subscription, now: datetime) -> bool:
    """Expire a non-renewing subscription whose period has ended."""
    if (
        subscription.type not in NON_RENEWING_TYPES
        or subscription.subscription_end is None
        or subscription.subscription_end > now
        or subscription.payment_status in REVOKING_STATUSES
    ):
        return False
    logger.info(
        "Subscription %s period ended at %s; expiring",
        subscription.id,
        subscription.subscription_end,
    )
    return await transition_status(
        db, subscription, PaymentStatus.EXPIRED, "Subscription period ended"
    )


async def cancel_trial(db: AsyncSession, user: User) -> User:
    """Mark the user's trial as cancelled. The one-time grant stays consumed."""
    user.trial_status = "cancelled"
    await db.flush()
    logger.info("Trial cancelled for user %s", user.id)
    return user
