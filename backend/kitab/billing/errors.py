"""Billing error kinds, each carrying the HTTP status it is rendered with."""

from fastapi import status


class BillingError(Exception):
    """Base class for subscription and payment failures."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail: str = "Billing operation failed"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class InvalidSignature(BillingError):
    """Webhook payload could not be authenticated."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid signature"


class NotFound(BillingError):
    """Subscription or user lookup miss (also used for rows owned by someone else)."""

    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Subscription not found"


class ProviderError(BillingError):
    """An upstream billing provider call failed."""

    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "Payment provider request failed"


class AlreadySubscribed(BillingError):
    """The user already holds an entitled subscription."""

    status_code = status.HTTP_409_CONFLICT
    default_detail = "Already subscribed"


class ActivationIncomplete(BillingError):
    """The provider created the subscription but did not activate it."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Subscription could not be activated"


class StaleSubscriptionState(BillingError):
    """A concurrent request changed the subscription status first."""

    status_code = status.HTTP_409_CONFLICT
    default_detail = "Subscription was modified concurrently, retry the request"


class PaymentMethodMissing(BillingError):
    """The setup intent has no collected payment method yet."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Payment method not found"
