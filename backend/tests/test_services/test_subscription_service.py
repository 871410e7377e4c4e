"""Tests for the subscription service: transitions, upserts and customer linking."""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kitab.billing.completion import PaymentCompletion
from kitab.billing.errors import StaleSubscriptionState
from kitab.billing.status import PaymentStatus
from kitab.models.subscription import Subscription
from kitab.models.user import User
from kitab.services.subscription_service import (
    cancel_trial,
    ensure_customer,
    expire_if_lapsed,
    get_subscription_for_user,
    record_completion,
    transition_status,
)


async def _create_user_with_sub(
    db_session: AsyncSession,
    payment_status: PaymentStatus | None = PaymentStatus.ACTIVE,
    type: str = "stripe",
    **fields,
) -> tuple[User, Subscription]:
    """Helper: create a user with a subscription."""
    unique = uuid.uuid4().hex[:8]
    user = User(
        email=f"svc-{unique}@test.com",
        hashed_password=None,
        full_name="Service Test User",
        subscription_status=1 if payment_status in (PaymentStatus.ACTIVE, PaymentStatus.TRIALING) else 0,
    )
    db_session.add(user)
    await db_session.flush()

    values = {
        "external_subscription_id": f"sub_{unique}",
        "external_customer_id": f"cus_{unique}",
        "subscription_start": datetime(2026, 1, 1),
        "subscription_end": datetime(2026, 2, 1),
        "payment_status": payment_status,
        "type": type,
        **fields,
    }
    sub = Subscription(user_id=user.id, **values)
    db_session.add(sub)
    await db_session.flush()
    return user, sub


def _completion(**overrides) -> PaymentCompletion:
    values = {
        "type": "stripe",
        "external_subscription_id": f"sub_{uuid.uuid4().hex[:8]}",
        "external_customer_id": "cus_x",
        "plan_id": "price_monthly",
        "plan_amount": Decimal("2.00"),
        "currency": "usd",
        "interval": "month",
        "subscription_start": datetime(2026, 1, 1),
        "subscription_end": datetime(2026, 1, 2),
        "payment_status": PaymentStatus.TRIALING,
        "comments": "Subscription in trial",
        "trial_start": datetime(2026, 1, 1),
        "trial_end": datetime(2026, 1, 2),
    }
    values.update(overrides)
    return PaymentCompletion(**values)


class TestTransitionStatus:
    """transition_status: compare-and-set with entitlement mirroring."""

    async def test_transition_writes_status_and_flag(self, db_session: AsyncSession):
        user, sub = await _create_user_with_sub(db_session)
        changed = await transition_status(db_session, sub, PaymentStatus.CANCELLED, "payment failed")

        assert changed is True
        assert sub.payment_status is PaymentStatus.CANCELLED
        assert sub.comments == "payment failed"
        assert user.subscription_status == 0

    async def test_same_state_is_noop(self, db_session: AsyncSession):
        _, sub = await _create_user_with_sub(db_session, comments="steady")
        assert await transition_status(db_session, sub, PaymentStatus.ACTIVE, "steady") is False

    async def test_flag_drift_is_repaired(self, db_session: AsyncSession):
        user, sub = await _create_user_with_sub(db_session, comments="steady")
        user.subscription_status = 0
        await db_session.flush()

        assert await transition_status(db_session, sub, PaymentStatus.ACTIVE, "steady") is True
        assert user.subscription_status == 1

    async def test_concurrent_change_raises(self, db_session: AsyncSession):
        _, sub = await _create_user_with_sub(db_session)
        # Another writer moves the row without this session noticing
        await db_session.execute(
            update(Subscription)
            .where(Subscription.id == sub.id)
            .values(payment_status=PaymentStatus.CANCELLED)
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(StaleSubscriptionState):
            await transition_status(db_session, sub, PaymentStatus.PAST_DUE, "late")

    async def test_cancelled_row_is_terminal(self, db_session: AsyncSession):
        user, sub = await _create_user_with_sub(
            db_session, PaymentStatus.CANCELLED, cancelled_at=datetime(2026, 1, 10)
        )
        assert await transition_status(db_session, sub, PaymentStatus.ACTIVE, "revive") is False
        assert sub.payment_status is PaymentStatus.CANCELLED
        assert user.subscription_status == 0

    async def test_period_moves_forward_only(self, db_session: AsyncSession):
        _, sub = await _create_user_with_sub(db_session)
        await transition_status(
            db_session,
            sub,
            PaymentStatus.ACTIVE,
            "renewed",
            period=(datetime(2026, 2, 1), datetime(2026, 3, 1)),
        )
        assert sub.subscription_end == datetime(2026, 3, 1)

        await transition_status(
            db_session,
            sub,
            PaymentStatus.PAST_DUE,
            "stale period",
            period=(datetime(2025, 12, 1), datetime(2026, 1, 1)),
        )
        assert sub.subscription_start == datetime(2026, 2, 1)
        assert sub.subscription_end == datetime(2026, 3, 1)


class TestRecordCompletion:
    """record_completion: one row per user, updated in place."""

    async def test_insert_then_update_in_place(self, db_session: AsyncSession):
        user, _ = await _create_user_with_sub(db_session, payment_status=None)
        user.trial_status = None

        first = await record_completion(db_session, user, _completion())
        assert first.payment_status is PaymentStatus.TRIALING
        assert user.trial_status == "active"
        assert user.subscription_status == 1

        second = await record_completion(
            db_session,
            user,
            _completion(payment_status=PaymentStatus.ACTIVE, comments="Subscription created"),
        )
        assert second.id == first.id
        assert second.payment_status is PaymentStatus.ACTIVE

        count = await db_session.scalar(
            select(func.count()).select_from(Subscription).where(Subscription.user_id == user.id)
        )
        assert count == 1

    async def test_trial_status_not_reset(self, db_session: AsyncSession):
        user, _ = await _create_user_with_sub(db_session, payment_status=None)
        user.trial_status = "cancelled"
        await record_completion(db_session, user, _completion())
        assert user.trial_status == "cancelled"

    async def test_recording_clears_cancellation(self, db_session: AsyncSession):
        user, sub = await _create_user_with_sub(
            db_session, PaymentStatus.CANCELLED, cancelled_at=datetime(2026, 1, 10)
        )
        result = await record_completion(
            db_session,
            user,
            _completion(payment_status=PaymentStatus.ACTIVE, comments="Subscription created"),
        )
        assert result.id == sub.id
        assert result.cancelled_at is None
        assert user.subscription_status == 1


class TestEnsureCustomer:
    """ensure_customer: create the provider customer once per user."""

    async def test_reuses_existing_customer(self, db_session: AsyncSession, stripe_gateway):
        user, sub = await _create_user_with_sub(db_session)
        assert await ensure_customer(db_session, user, stripe_gateway) == sub.external_customer_id
        assert stripe_gateway.called("create_customer") == []

    async def test_links_customer_to_existing_row(self, db_session: AsyncSession, stripe_gateway):
        user, sub = await _create_user_with_sub(db_session, type="wafipay", external_customer_id=None)
        customer_id = await ensure_customer(db_session, user, stripe_gateway)

        assert customer_id == "cus_test_1"
        assert sub.external_customer_id == "cus_test_1"

    async def test_creates_row_for_new_user(self, db_session: AsyncSession, stripe_gateway, make_user):
        user = await make_user()
        customer_id = await ensure_customer(db_session, user, stripe_gateway)

        sub = await get_subscription_for_user(db_session, user.id)
        assert sub.external_customer_id == customer_id
        assert sub.payment_status is None
        assert sub.type == "stripe"


class TestExpireIfLapsed:
    """expire_if_lapsed: fixed-period wallet subscriptions."""

    async def test_lapsed_wallet_row_expires(self, db_session: AsyncSession):
        user, sub = await _create_user_with_sub(db_session, type="wafipay")
        assert await expire_if_lapsed(db_session, sub, datetime(2026, 2, 2)) is True
        assert sub.payment_status is PaymentStatus.EXPIRED
        assert sub.comments == "Subscription period ended"
        assert user.subscription_status == 0

    async def test_current_wallet_row_untouched(self, db_session: AsyncSession):
        _, sub = await _create_user_with_sub(db_session, type="wafipay")
        assert await expire_if_lapsed(db_session, sub, datetime(2026, 1, 15)) is False
        assert sub.payment_status is PaymentStatus.ACTIVE

    async def test_stripe_row_renewed_by_webhooks_only(self, db_session: AsyncSession):
        _, sub = await _create_user_with_sub(db_session)
        assert await expire_if_lapsed(db_session, sub, datetime(2026, 2, 1) + timedelta(days=5)) is False


class TestCancelTrial:
    async def test_marks_trial_cancelled(self, db_session: AsyncSession, make_user):
        user = await make_user(trial_status="active")
        await cancel_trial(db_session, user)
        assert user.trial_status == "cancelled"
