"""Async Stripe adapter.

A single ``StripeGateway`` is built at application startup and injected into
the payment flows and the webhook endpoint (see ``kitab.billing.dependencies``).
Stripe objects are translated into small dataclasses at this boundary, and
every ``stripe.StripeError`` is re-raised as ``ProviderError``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

import stripe
from stripe import StripeClient

from kitab.billing.errors import InvalidSignature, ProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SetupIntentResult:
    """Client secret handed to the frontend to collect a payment method."""

    client_secret: str
    intent_id: str


@dataclass(frozen=True)
class ProviderPrice:
    """Priced plan attached to a provider subscription."""

    id: str
    unit_amount: Decimal  # major units (e.g. 2.00 for 200 cents)
    currency: str
    interval: str


@dataclass(frozen=True)
class ProviderSubscription:
    """The fields of a Stripe subscription that get persisted locally."""

    id: str
    status: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    trial_start: datetime | None
    trial_end: datetime | None
    price: ProviderPrice | None


def ts_to_naive(ts: int | None) -> datetime | None:
    """Convert Stripe Unix timestamp to naive UTC datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def _get_first_item(stripe_sub):
    """Get the first subscription item, using bracket notation to avoid
    collision with Python dict .items() on Stripe objects.
    """
    try:
        sub_items = stripe_sub["items"]
    except KeyError:
        return None
    data = getattr(sub_items, "data", None) if sub_items else None
    return data[0] if data else None


def get_period(stripe_sub) -> tuple[datetime | None, datetime | None]:
    """Extract current period start/end.

    Since Stripe API 2025-03-31 (basil) the period lives on the subscription
    item; older payloads carry it on the subscription itself.
    """
    item = _get_first_item(stripe_sub)
    source = item if getattr(item, "current_period_start", None) else stripe_sub
    return (
        ts_to_naive(getattr(source, "current_period_start", None)),
        ts_to_naive(getattr(source, "current_period_end", None)),
    )


def _get_price(stripe_sub) -> ProviderPrice | None:
    item = _get_first_item(stripe_sub)
    price = getattr(item, "price", None)
    if not price:
        return None
    recurring = getattr(price, "recurring", None)
    return ProviderPrice(
        id=price.id,
        unit_amount=Decimal(getattr(price, "unit_amount", None) or 0) / 100,
        currency=getattr(price, "currency", None) or "usd",
        interval=getattr(recurring, "interval", None) or "month",
    )


def to_provider_subscription(stripe_sub) -> ProviderSubscription:
    """Translate a Stripe subscription object into a ``ProviderSubscription``."""
    period_start, period_end = get_period(stripe_sub)
    return ProviderSubscription(
        id=stripe_sub.id,
        status=stripe_sub.status,
        current_period_start=period_start,
        current_period_end=period_end,
        trial_start=ts_to_naive(getattr(stripe_sub, "trial_start", None)),
        trial_end=ts_to_naive(getattr(stripe_sub, "trial_end", None)),
        price=_get_price(stripe_sub),
    )


class StripeGateway:
    """Thin async wrapper around ``StripeClient`` for the subscription flows."""

    provider = "stripe"

    def __init__(self, secret_key: str, webhook_secret: str, plan_id: str) -> None:
        self.webhook_secret = webhook_secret
        self.plan_id = plan_id
        self._client = StripeClient(secret_key, http_client=stripe.HTTPXClient())

    async def create_customer(self, email: str, name: str, user_id: str) -> str:
        """Create a Stripe customer linked to a Kitab user and return its ID."""
        logger.info("Creating Stripe customer for user %s (%s)", user_id, email)
        try:
            customer = await self._client.v1.customers.create_async(
                params={
                    "email": email,
                    "name": name,
                    "metadata": {"kitab_user_id": user_id},
                }
            )
        except stripe.StripeError as e:
            raise ProviderError(f"Customer creation failed: {e.user_message or e}") from e
        logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
        return customer.id

    async def create_setup_intent(self, customer_id: str) -> SetupIntentResult:
        """Create a SetupIntent so the frontend can collect a payment method."""
        logger.info("Creating setup intent for customer %s", customer_id)
        try:
            intent = await self._client.v1.setup_intents.create_async(
                params={"customer": customer_id, "usage": "off_session"}
            )
        except stripe.StripeError as e:
            raise ProviderError(f"Setup intent creation failed: {e.user_message or e}") from e
        return SetupIntentResult(client_secret=intent.client_secret, intent_id=intent.id)

    async def retrieve_setup_intent(self, intent_id: str) -> str | None:
        """Return the payment method collected by a SetupIntent, if any."""
        try:
            intent = await self._client.v1.setup_intents.retrieve_async(intent_id)
        except stripe.StripeError as e:
            raise ProviderError(f"Setup intent lookup failed: {e.user_message or e}") from e
        payment_method = intent.payment_method
        if payment_method is None or isinstance(payment_method, str):
            return payment_method
        return payment_method.id

    async def attach_payment_method(self, payment_method_id: str, customer_id: str) -> None:
        """Attach a payment method and make it the customer's invoice default."""
        logger.info("Attaching payment method %s to customer %s", payment_method_id, customer_id)
        try:
            await self._client.v1.payment_methods.attach_async(
                payment_method_id, params={"customer": customer_id}
            )
            await self._client.v1.customers.update_async(
                customer_id,
                params={"invoice_settings": {"default_payment_method": payment_method_id}},
            )
        except stripe.StripeError as e:
            raise ProviderError(f"Payment method attach failed: {e.user_message or e}") from e

    async def create_subscription(
        self, customer_id: str, trial_days: int | None = None
    ) -> ProviderSubscription:
        """Subscribe the customer to the configured plan."""
        params: dict = {
            "customer": customer_id,
            "items": [{"price": self.plan_id}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": ["latest_invoice.payment_intent"],
        }
        if trial_days:
            params["trial_period_days"] = trial_days
        logger.info(
            "Creating subscription for customer %s on plan %s (trial_days=%s)",
            customer_id,
            self.plan_id,
            trial_days,
        )
        try:
            stripe_sub = await self._client.v1.subscriptions.create_async(params=params)
        except stripe.StripeError as e:
            raise ProviderError(f"Subscription creation failed: {e.user_message or e}") from e
        return to_provider_subscription(stripe_sub)

    async def cancel_subscription(self, subscription_id: str, reason: str | None) -> None:
        """Cancel a subscription immediately at Stripe."""
        logger.info("Cancelling Stripe subscription %s", subscription_id)
        try:
            await self._client.v1.subscriptions.cancel_async(
                subscription_id,
                params={
                    "cancellation_details": {
                        "comment": reason or "User requested cancellation",
                        "feedback": "other",
                    }
                },
            )
        except stripe.StripeError as e:
            raise ProviderError(f"Subscription cancellation failed: {e.user_message or e}") from e

    def construct_event(self, payload: bytes, sig_header: str) -> stripe.Event:
        """Verify and construct a Stripe webhook event (synchronous)."""
        try:
            return self._client.construct_event(payload, sig_header, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature() from e
        except ValueError as e:
            raise InvalidSignature("Invalid payload") from e
