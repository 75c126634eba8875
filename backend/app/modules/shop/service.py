"""
Payment Service - payment intents, confirmation and reconciliation.

Composes the stock ledger, payment store, order coordinator and payment
gateway. Gateway calls never run inside an open database transaction;
every multi-entity mutation runs in exactly one transaction.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TypeVar

from fastapi import Depends, Request
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import Database, get_database
from app.core.errors import (
    GatewayUnavailable,
    InsufficientStock,
    InvalidAmount,
    InvalidTransition,
    OrderNotPayable,
    PaymentNotFound,
    ProductNotFound,
    ShopError,
)
from app.models.shop import Payment, PaymentStatus
from app.modules.shop.gateway import PaymentGateway, RemoteIntentStatus, RemoteStatus
from app.modules.shop.inventory import StockLedger
from app.modules.shop.orders import OrderCoordinator
from app.modules.shop.payments import PaymentStore

T = TypeVar("T")

# Confirmation failures after the provider reported success
GOODS_UNAVAILABLE = (InsufficientStock, ProductNotFound, OrderNotPayable)

ORPHANED_REASON = "Payment intent was never recorded"


@dataclass
class IntentResult:
    """What the client needs to finish payment on the provider side."""

    payment_id: str
    client_secret: str
    provider_id: str


class PaymentService:
    """
    Entry point for the payment flow.

    Usage:
        payments = PaymentService(db, StripeGateway())
        intent = await payments.create_intent(user_id, order_id, Decimal("100.00"))
        payment = await payments.confirm_payment(user_id, intent.provider_id, order_id)
    """

    def __init__(
        self,
        db: Database,
        gateway: PaymentGateway,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        backoff_max_seconds: float | None = None,
        timeout_seconds: float | None = None,
        cancel_on_payment_failure: bool | None = None,
        orphan_after_seconds: float | None = None,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.max_attempts = max_attempts or settings.gateway_max_attempts
        self.backoff_seconds = (
            settings.gateway_backoff_seconds if backoff_seconds is None else backoff_seconds
        )
        self.backoff_max_seconds = (
            settings.gateway_backoff_max_seconds
            if backoff_max_seconds is None
            else backoff_max_seconds
        )
        self.timeout_seconds = timeout_seconds or settings.gateway_timeout_seconds
        self.cancel_on_payment_failure = cancel_on_payment_failure
        self.orphan_after_seconds = (
            settings.orphaned_payment_seconds
            if orphan_after_seconds is None
            else orphan_after_seconds
        )

    def _orders(self, session: AsyncSession) -> OrderCoordinator:
        return OrderCoordinator(session, cancel_on_payment_failure=self.cancel_on_payment_failure)

    # ==================== Create intent ====================

    async def create_intent(
        self,
        user_id: str,
        order_id: str,
        amount: Decimal,
        currency: str | None = None,
        description: str | None = None,
    ) -> IntentResult:
        """
        Create a payment intent for an order.

        Args:
            user_id: Authenticated caller
            order_id: Order to pay
            amount: Amount the client expects to pay; must equal the order total
            currency: Currency code (default from settings)
            description: Free-text description stored on the payment

        Returns:
            Local payment id and provider client secret

        Raises:
            InvalidAmount: Amount not positive or rejected by the provider
            OrderNotFound: Order missing or owned by another user
            OrderNotPayable: Order is not PENDING
            AmountMismatch: Amount differs from the order total
            DuplicateActivePayment: Order already has a payment in progress
            GatewayUnavailable: Provider unreachable after retries
        """
        currency = (currency or settings.shop_currency).lower()
        amount = Decimal(str(amount))
        if amount <= 0:
            raise InvalidAmount(f"Amount must be positive, got {amount}")

        async def reserve(session: AsyncSession) -> Payment:
            snapshot = await self._orders(session).reserve_for_payment(
                order_id, amount, user_id=user_id
            )
            return await PaymentStore(session).create(
                order_id=order_id,
                user_id=user_id,
                amount=snapshot.total_amount,
                currency=currency,
                payment_method=settings.payment_method_label,
                description=description,
            )

        await self._release_orphaned_payment(order_id)
        payment = await self.db.run_in_transaction(reserve)

        metadata = {"order_id": order_id, "payment_id": payment.id, "user_id": user_id}
        try:
            intent = await self._call_gateway(
                f"create intent for payment {payment.id}",
                lambda: self.gateway.create_remote_intent(
                    payment.amount,
                    currency,
                    metadata,
                    idempotency_key=f"payment-{payment.id}",
                ),
            )
        except (GatewayUnavailable, InvalidAmount) as e:
            logger.warning(f"Intent creation failed for payment {payment.id}, marking FAILED")
            await self._settle_failure(payment, PaymentStatus.FAILED, e.message)
            raise

        try:
            await self.db.run_in_transaction(
                lambda session: PaymentStore(session).attach_intent(payment.id, intent.provider_id)
            )
        except (ShopError, SQLAlchemyError) as e:
            logger.error(
                f"Could not record intent {intent.provider_id} on payment {payment.id}, "
                f"marking FAILED: {e}"
            )
            await self._settle_failure(payment, PaymentStatus.FAILED, ORPHANED_REASON)
            raise

        logger.info(
            f"Payment intent {intent.provider_id} created for order {order_id} (payment {payment.id})"
        )
        return IntentResult(
            payment_id=payment.id,
            client_secret=intent.client_secret,
            provider_id=intent.provider_id,
        )

    # ==================== Confirm ====================

    async def confirm_payment(
        self,
        user_id: str,
        payment_intent_id: str,
        order_id: str,
    ) -> Payment:
        """
        Reconcile a payment with the provider's view of it.

        Safe to call any number of times: a COMPLETED payment is returned
        as-is and stock is only taken once.

        Args:
            user_id: Owner of the payment
            payment_intent_id: Local payment id or provider intent id
            order_id: Order the payment belongs to

        Returns:
            The payment after reconciliation. A payment still awaiting
            customer action is returned unchanged in PENDING.

        Raises:
            PaymentNotFound: Unknown payment, other owner or other order
            InsufficientStock: Provider succeeded but goods are unavailable;
                the payment is FAILED and the order untouched
            InvalidTransition: Provider status contradicts a settled payment
                or the remote intent is still being created
            GatewayUnavailable: Provider unreachable after retries
        """
        payment = await self._load_owned(payment_intent_id, user_id, order_id)

        if payment.status == PaymentStatus.COMPLETED:
            logger.debug(f"Payment {payment.id} already completed")
            return payment

        if not payment.provider_intent_id:
            if payment.status != PaymentStatus.PENDING:
                return payment
            if self._is_orphaned(payment):
                return await self._release(payment)
            raise InvalidTransition(f"Payment {payment.id} has no provider intent yet")

        remote = await self._call_gateway(
            f"retrieve intent {payment.provider_intent_id}",
            lambda: self.gateway.retrieve_remote_status(payment.provider_intent_id),
        )

        if remote.status == RemoteStatus.SUCCEEDED:
            return await self._complete(payment, remote)

        if remote.status == RemoteStatus.FAILED:
            return await self._settle_failure(
                payment, PaymentStatus.FAILED, remote.failure_message or "Payment declined"
            )

        if remote.status == RemoteStatus.CANCELED:
            return await self._settle_failure(
                payment, PaymentStatus.CANCELLED, "Payment intent canceled"
            )

        logger.info(f"Payment {payment.id} still requires customer action")
        return payment

    async def reconcile_intent(self, provider_intent_id: str) -> Payment:
        """Confirm a payment on behalf of its owner, e.g. from a provider callback."""
        async with self.db.session() as session:
            payment = await PaymentStore(session).find(provider_intent_id)

        if not payment:
            raise PaymentNotFound(f"No payment for intent {provider_intent_id}")

        return await self.confirm_payment(payment.user_id, provider_intent_id, payment.order_id)

    async def _complete(self, payment: Payment, remote: RemoteIntentStatus) -> Payment:
        """Complete payment, take stock and mark the order paid in one transaction."""

        async def commit(session: AsyncSession) -> Payment:
            store = PaymentStore(session)
            moved = await store.compare_and_set(
                payment.id,
                PaymentStatus.PENDING,
                PaymentStatus.COMPLETED,
                transaction_id=remote.transaction_id,
            )
            if not moved:
                # Settled by a concurrent call: COMPLETED is returned, anything else raises
                return await store.transition(
                    payment.id, PaymentStatus.PENDING, PaymentStatus.COMPLETED
                )

            orders = self._orders(session)
            snapshot = await orders.get_snapshot(payment.order_id, lock=True)

            ledger = StockLedger(session)
            # Fixed product order keeps row locks acquired in the same sequence
            for line in sorted(snapshot.lines, key=lambda line: line.product_id):
                await ledger.adjust(line.product_id, -line.quantity)

            await orders.commit_paid(payment.order_id)
            return await store.refresh(payment.id)

        try:
            completed = await self.db.run_in_transaction(commit)
        except InvalidTransition:
            logger.error(
                f"Provider collected payment {payment.id} but it is already settled locally. "
                f"Manual reconciliation required"
            )
            raise
        except GOODS_UNAVAILABLE as e:
            logger.warning(
                f"Payment {payment.id} collected by provider but order {payment.order_id} "
                f"cannot be fulfilled: {e.message}. Manual reconciliation required"
            )
            await self._settle_failure(payment, PaymentStatus.FAILED, e.message)
            raise

        logger.info(f"Payment {payment.id} completed for order {payment.order_id}")
        return completed

    async def _settle_failure(
        self,
        payment: Payment,
        status: PaymentStatus,
        reason: str,
    ) -> Payment:
        """Move a payment to FAILED/CANCELLED and apply the order failure policy."""

        async def settle(session: AsyncSession) -> Payment:
            settled = await PaymentStore(session).transition(
                payment.id, PaymentStatus.PENDING, status, failure_reason=reason
            )
            await self._orders(session).mark_payment_failed(payment.order_id)
            return settled

        return await self.db.run_in_transaction(settle)

    # ==================== Orphaned payments ====================

    def _is_orphaned(self, payment: Payment) -> bool:
        """PENDING payment whose remote intent was never recorded in time."""
        if payment.status != PaymentStatus.PENDING or payment.provider_intent_id:
            return False
        age = datetime.utcnow() - payment.created_at
        return age.total_seconds() >= self.orphan_after_seconds

    async def _release(self, payment: Payment) -> Payment:
        """Cancel an orphaned payment so its order can be paid again."""
        logger.warning(f"Cancelling payment {payment.id}: {ORPHANED_REASON}")
        return await self.db.run_in_transaction(
            lambda session: PaymentStore(session).transition(
                payment.id,
                PaymentStatus.PENDING,
                PaymentStatus.CANCELLED,
                failure_reason=ORPHANED_REASON,
            )
        )

    async def _release_orphaned_payment(self, order_id: str) -> None:
        async with self.db.session() as session:
            active = await PaymentStore(session).get_active_for_order(order_id)

        if active and self._is_orphaned(active):
            await self._release(active)

    # ==================== Reads ====================

    async def list_payments(self, user_id: str) -> list[Payment]:
        """Get all payments of the caller."""
        async with self.db.session() as session:
            return await PaymentStore(session).list_for_user(user_id)

    async def get_payment(self, payment_id: str, user_id: str) -> Payment:
        """Get one of the caller's payments."""
        async with self.db.session() as session:
            payment = await PaymentStore(session).get(payment_id)

        if not payment or payment.user_id != user_id:
            raise PaymentNotFound()
        return payment

    async def get_payment_for_order(self, order_id: str, user_id: str) -> Payment:
        """Get the latest payment of one of the caller's orders."""
        async with self.db.session() as session:
            payment = await PaymentStore(session).latest_for_order(order_id, user_id)

        if not payment:
            raise PaymentNotFound(f"No payment found for order {order_id}")
        return payment

    async def _load_owned(self, reference: str, user_id: str, order_id: str) -> Payment:
        async with self.db.session() as session:
            payment = await PaymentStore(session).find(reference)

        if not payment or payment.user_id != user_id or payment.order_id != order_id:
            raise PaymentNotFound()
        return payment

    # ==================== Gateway ====================

    async def _call_gateway(
        self,
        action: str,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Call the gateway with a timeout and bounded exponential backoff.

        Only ``GatewayUnavailable`` (and timeouts) are retried; every other
        error surfaces on the first attempt.
        """
        delay = self.backoff_seconds
        attempt = 1
        while True:
            try:
                return await asyncio.wait_for(call(), timeout=self.timeout_seconds)
            except (GatewayUnavailable, asyncio.TimeoutError) as e:
                if attempt >= self.max_attempts:
                    logger.error(f"Gateway gave up after {attempt} attempts to {action}: {e}")
                    if isinstance(e, GatewayUnavailable):
                        raise
                    raise GatewayUnavailable(
                        f"Payment provider timed out after {attempt} attempts"
                    ) from e

                logger.warning(
                    f"Gateway attempt {attempt}/{self.max_attempts} to {action} failed: {e!r}, "
                    f"retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.backoff_max_seconds)
                attempt += 1


async def get_payment_service(
    request: Request,
    db: Database = Depends(get_database),
) -> PaymentService:
    """FastAPI dependency building the payment service for a request."""
    return PaymentService(db, request.app.state.gateway)
