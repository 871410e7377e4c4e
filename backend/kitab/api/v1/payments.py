"""Payments API: card subscriptions through Stripe and wallet payments through WaafiPay."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from kitab.api.deps import (
    get_current_active_user,
    get_db,
    get_stripe_gateway,
    get_waafipay_gateway,
)
from kitab.billing.errors import NotFound
from kitab.billing.status import PaymentStatus, is_entitled
from kitab.billing.stripe_gateway import StripeGateway
from kitab.billing.waafipay import WaafiPayGateway
from kitab.config import settings
from kitab.models.user import User
from kitab.schemas.payments import (
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    DirectPaymentRequest,
    DirectPaymentResponse,
    SetupIntentResponse,
    SubscriptionResponse,
    TrialResponse,
)
from kitab.services import payment_service
from kitab.services.subscription_service import (
    cancel_trial,
    expire_if_lapsed,
    get_subscription_for_user,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


@router.post("/create-setup-intent", response_model=SetupIntentResponse)
async def create_setup_intent(
    user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> SetupIntentResponse:
    """Open a SetupIntent so the frontend can collect a card."""
    intent, customer_id = await payment_service.start_setup_intent(db, user, gateway)
    return SetupIntentResponse(
        client_secret=intent.client_secret,
        intent=intent.intent_id,
        customer=customer_id,
    )


@router.post("/create-subscription", response_model=CreateSubscriptionResponse)
async def create_subscription(
    body: CreateSubscriptionRequest,
    user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> CreateSubscriptionResponse:
    """Subscribe the caller using the card collected by a SetupIntent."""
    subscription = await payment_service.subscribe_with_setup_intent(
        db,
        user,
        gateway,
        intent_id=body.intent,
        customer_id=body.customer,
        trial_days=settings.stripe_trial_days,
    )
    trialing = subscription.payment_status is PaymentStatus.TRIALING
    return CreateSubscriptionResponse(
        success=True,
        status="trialing" if trialing else "active",
        message="Trial started" if trialing else "Subscription created",
        subscription_id=subscription.id,
    )


@router.post("/cancel-subscription", response_model=CancelSubscriptionResponse)
async def cancel_subscription(
    body: CancelSubscriptionRequest,
    user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> CancelSubscriptionResponse:
    """Cancel one of the caller's subscriptions, at Stripe first when it is Stripe-backed."""
    cancelled_at = await payment_service.cancel_subscription(
        db, user, gateway, body.subscription_id, body.reason
    )
    return CancelSubscriptionResponse(
        success=True,
        message="Subscription cancelled",
        cancelled_at=cancelled_at,
    )


@router.post("/payment", response_model=DirectPaymentResponse)
async def direct_payment(
    body: DirectPaymentRequest,
    user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    gateway: WaafiPayGateway = Depends(get_waafipay_gateway),
) -> DirectPaymentResponse:
    """Charge a mobile wallet through WaafiPay for one fixed subscription period."""
    subscription = await payment_service.pay_with_wallet(
        db,
        user,
        gateway,
        account_no=body.account_no,
        amount=settings.waafipay_amount,
        currency=settings.waafipay_currency,
        period_days=settings.waafipay_period_days,
    )
    return DirectPaymentResponse(
        status=True,
        message="Payment successful",
        subscription_id=subscription.id,
    )


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> SubscriptionResponse:
    """Return the caller's subscription. Lapsed wallet subscriptions are expired on read."""
    subscription = await get_subscription_for_user(db, user.id, for_update=True)
    if subscription is None:
        raise NotFound()

    now = payment_service.utcnow()
    await expire_if_lapsed(db, subscription, now)

    response = SubscriptionResponse.model_validate(subscription)
    response.entitled = is_entitled(subscription, now)
    return response


@router.post("/cancel-trial", response_model=TrialResponse)
async def cancel_user_trial(
    user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> TrialResponse:
    """Mark the caller's trial as cancelled."""
    user = await cancel_trial(db, user)
    return TrialResponse(message="Trial cancelled successfully", trial_status=user.trial_status)
