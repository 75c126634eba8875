"""
Payment API Endpoints.

Payment intents, confirmation and payment history for the
authenticated customer.
"""

from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field

from app.core.security import get_current_user_id
from app.models.shop import Payment, PaymentStatus
from app.modules.shop.service import PaymentService, get_payment_service

router = APIRouter()


# ==================== Schemas ====================


class CreatePaymentIntentRequest(BaseModel):
    """Create a payment intent for an order."""

    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId", min_length=1)
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    currency: str | None = Field(None, min_length=3, max_length=3)
    description: str | None = None


class ConfirmPaymentRequest(BaseModel):
    """Confirm a payment intent."""

    model_config = ConfigDict(populate_by_name=True)

    payment_intent_id: str = Field(..., alias="paymentIntentId", min_length=1)
    order_id: str = Field(..., alias="orderId", min_length=1)


def serialize_payment(payment: Payment) -> dict[str, Any]:
    """Payment as returned to clients."""
    return {
        "id": payment.id,
        "orderId": payment.order_id,
        "userId": payment.user_id,
        "amount": float(payment.amount),
        "currency": payment.currency,
        "status": payment.status.value,
        "paymentMethod": payment.payment_method,
        "paymentIntentId": payment.provider_intent_id,
        "transactionId": payment.transaction_id,
        "failureReason": payment.failure_reason,
        "createdAt": payment.created_at.isoformat(),
        "updatedAt": payment.updated_at.isoformat(),
    }


CONFIRM_MESSAGES = {
    PaymentStatus.PENDING: "Payment requires further action, retry confirmation later",
    PaymentStatus.COMPLETED: "Payment processed successfully",
    PaymentStatus.FAILED: "Payment failed",
    PaymentStatus.CANCELLED: "Payment was cancelled",
}


# ==================== Intents ====================


@router.post("/create-intent", status_code=status.HTTP_201_CREATED)
async def create_payment_intent(
    request: CreatePaymentIntentRequest,
    user_id: str = Depends(get_current_user_id),
    payments: PaymentService = Depends(get_payment_service),
) -> dict[str, Any]:
    """
    Create a payment intent for an order.

    Returns the provider client secret used by the frontend to
    collect card details.
    """
    intent = await payments.create_intent(
        user_id=user_id,
        order_id=request.order_id,
        amount=request.amount,
        currency=request.currency,
        description=request.description,
    )

    return {
        "success": True,
        "data": {
            "clientSecret": intent.client_secret,
            "paymentId": intent.payment_id,
        },
        "message": "Payment intent created successfully",
    }


@router.post("/confirm")
async def confirm_payment(
    request: ConfirmPaymentRequest,
    user_id: str = Depends(get_current_user_id),
    payments: PaymentService = Depends(get_payment_service),
) -> dict[str, Any]:
    """
    Confirm a payment intent for an order.

    Safe to repeat; a completed payment is returned unchanged.
    """
    payment = await payments.confirm_payment(
        user_id=user_id,
        payment_intent_id=request.payment_intent_id,
        order_id=request.order_id,
    )

    return {
        "success": True,
        "data": serialize_payment(payment),
        "message": CONFIRM_MESSAGES[payment.status],
    }


# ==================== History ====================


@router.get("")
async def get_payments(
    user_id: str = Depends(get_current_user_id),
    payments: PaymentService = Depends(get_payment_service),
) -> dict[str, Any]:
    """Get all payments for the current user."""
    items = await payments.list_payments(user_id)
    return {
        "success": True,
        "data": [serialize_payment(p) for p in items],
    }


@router.get("/order/{order_id}")
async def get_payment_by_order(
    order_id: str,
    user_id: str = Depends(get_current_user_id),
    payments: PaymentService = Depends(get_payment_service),
) -> dict[str, Any]:
    """Get the latest payment of an order."""
    payment = await payments.get_payment_for_order(order_id, user_id)
    return {"success": True, "data": serialize_payment(payment)}


@router.get("/{payment_id}")
async def get_payment(
    payment_id: str,
    user_id: str = Depends(get_current_user_id),
    payments: PaymentService = Depends(get_payment_service),
) -> dict[str, Any]:
    """Get a specific payment by its ID."""
    payment = await payments.get_payment(payment_id, user_id)
    return {"success": True, "data": serialize_payment(payment)}
