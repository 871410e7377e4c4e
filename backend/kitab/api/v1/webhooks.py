"""Stripe webhook endpoint: verifies the signature, then reconciles the event."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from kitab.api.deps import get_db, get_stripe_gateway
from kitab.billing.errors import InvalidSignature
from kitab.billing.stripe_gateway import StripeGateway
from kitab.billing.webhooks import handle_event
from kitab.schemas.payments import WebhookAck

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> WebhookAck:
    """Receive a Stripe event and apply it to the stored subscription.

    Any failure after verification returns 500 so Stripe redelivers.
    """
    # Raw bytes are required for signature verification
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        event = gateway.construct_event(payload, sig_header)
    except InvalidSignature as e:
        logger.warning("Webhook rejected: %s", e.detail)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.detail) from e

    try:
        await handle_event(db, event)
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.exception("Error processing webhook event %s", event.id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e

    return WebhookAck(received=True)
