"""Billing provider construction and FastAPI injection.

Gateways are built once in the application lifespan and stored on
``app.state``; routes receive them through these dependencies so tests can
swap in fakes with ``app.dependency_overrides``.
"""

import httpx
from fastapi import Request

from kitab.billing.stripe_gateway import StripeGateway
from kitab.billing.waafipay import WaafiPayGateway
from kitab.config import Settings


def build_stripe_gateway(settings: Settings) -> StripeGateway:
    return StripeGateway(
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        plan_id=settings.stripe_plan_id,
    )


def build_waafipay_gateway(settings: Settings, http_client: httpx.AsyncClient) -> WaafiPayGateway:
    return WaafiPayGateway(
        api_url=settings.waafipay_api_url,
        merchant_uid=settings.waafipay_merchant_uid,
        api_user_id=settings.waafipay_api_user_id,
        api_key=settings.waafipay_api_key,
        payment_method=settings.waafipay_payment_method,
        timeout=settings.waafipay_timeout_seconds,
        http_client=http_client,
    )


async def get_stripe_gateway(request: Request) -> StripeGateway:
    """Return the process-wide Stripe gateway."""
    return request.app.state.stripe_gateway


async def get_waafipay_gateway(request: Request) -> WaafiPayGateway:
    """Return the process-wide WaafiPay gateway."""
    return request.app.state.waafipay_gateway
