"""
Webhook Endpoints.

Handles incoming webhooks from the payment provider:
- Stripe (payment intent outcomes)
"""

from typing import Any

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, Response
from loguru import logger

from app.core.config import settings
from app.core.errors import GatewayUnavailable, LockContention, ShopError
from app.modules.shop.service import PaymentService, get_payment_service

router = APIRouter()

# Intent events that can change local payment state
RECONCILED_EVENTS = {
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "payment_intent.canceled",
}


def verify_stripe_event(payload: bytes, signature: str) -> dict[str, Any] | None:
    """
    Verify Stripe webhook signature and return event.

    Args:
        payload: Raw request body
        signature: Stripe-Signature header

    Returns:
        Verified event data or None if invalid
    """
    try:
        event = stripe.Webhook.construct_event(
            payload,
            signature,
            settings.stripe_webhook_secret,
        )
    except stripe.SignatureVerificationError:
        logger.warning("Invalid Stripe webhook signature")
        return None
    except ValueError as e:
        logger.warning(f"Malformed Stripe webhook payload: {e}")
        return None

    return {
        "type": event["type"],
        "data": event["data"]["object"],
    }


@router.post("/stripe", status_code=200)
async def stripe_webhook(
    request: Request,
    payments: PaymentService = Depends(get_payment_service),
) -> Response:
    """
    Stripe Webhook Endpoint.

    Payment intent outcomes are reconciled through the same path as
    client confirmation, so duplicate deliveries are harmless.
    """
    body = await request.body()
    signature = request.headers.get("Stripe-Signature")

    if not signature:
        raise HTTPException(status_code=401, detail="Missing signature")

    event = verify_stripe_event(body, signature)
    if not event:
        raise HTTPException(status_code=401, detail="Invalid signature")

    event_type = event["type"]
    logger.info(f"Received Stripe webhook: {event_type}")

    if event_type in RECONCILED_EVENTS:
        intent_id = event["data"].get("id")
        try:
            payment = await payments.reconcile_intent(intent_id)
            logger.info(f"Intent {intent_id} reconciled, payment {payment.id} is {payment.status.value}")
        except (GatewayUnavailable, LockContention):
            # Let Stripe redeliver later
            raise
        except ShopError as e:
            # Acknowledge anyway: redelivery cannot change a domain outcome
            logger.warning(f"Could not reconcile intent {intent_id}: {e.kind.value} {e.message}")

    return Response(status_code=200)
