"""Pydantic v2 request/response schemas for payment and subscription endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from kitab.billing.status import PaymentStatus

# --- Request schemas ---


class CreateSubscriptionRequest(BaseModel):
    """Finish a setup intent and subscribe the customer to the plan."""

    intent: str = Field(..., min_length=1)
    customer: str = Field(..., min_length=1)


class CancelSubscriptionRequest(BaseModel):
    """Cancel one of the caller's subscriptions."""

    subscription_id: uuid.UUID
    reason: str | None = Field(default=None, max_length=500)


class DirectPaymentRequest(BaseModel):
    """Pay for a fixed-period subscription from a mobile wallet."""

    account_no: str = Field(..., min_length=1, max_length=32)


# --- Response schemas ---


class SetupIntentResponse(BaseModel):
    """Client secret the frontend uses to collect a payment method."""

    client_secret: str
    intent: str
    customer: str


class CreateSubscriptionResponse(BaseModel):
    """Result of creating a provider subscription."""

    success: bool
    status: str  # trialing | active
    message: str
    subscription_id: uuid.UUID


class CancelSubscriptionResponse(BaseModel):
    success: bool
    message: str
    cancelled_at: datetime


class DirectPaymentResponse(BaseModel):
    status: bool
    message: str
    subscription_id: uuid.UUID


class SubscriptionResponse(BaseModel):
    """The caller's subscription plus read-time entitlement."""

    id: uuid.UUID
    type: str
    payment_status: PaymentStatus | None
    external_subscription_id: str | None
    plan_id: str | None
    plan_amount: Decimal | None
    currency: str | None
    interval: str | None
    subscription_start: datetime | None
    subscription_end: datetime | None
    comments: str | None
    cancelled_at: datetime | None
    entitled: bool = False

    model_config = ConfigDict(from_attributes=True)


class TrialResponse(BaseModel):
    message: str
    trial_status: str | None


class WebhookAck(BaseModel):
    received: bool = True
