"""
Payment Record Store - durable state machine for payments.

States:
    PENDING -> COMPLETED
    PENDING -> FAILED
    PENDING -> CANCELLED

COMPLETED, FAILED and CANCELLED are terminal.
"""

from datetime import datetime
from decimal import Decimal

from loguru import logger
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import (
    DuplicateActivePayment,
    InvalidTransition,
    OrderNotPayable,
    PaymentNotFound,
)
from app.models.shop import Payment, PaymentStatus

TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
}


class PaymentStore:
    """
    Persistence and transitions for Payment records.

    Transitions are compare-and-set updates guarded by the expected
    current status, so replaying a transition is harmless.

    Usage:
        store = PaymentStore(session)
        payment = await store.create(order_id, user_id, Decimal("10.00"), "usd")
        await store.transition(payment.id, PaymentStatus.PENDING, PaymentStatus.COMPLETED)
    """

    def __init__(self, db: AsyncSession) -> None:
        """Initialize store with a database session."""
        self.db = db

    # ==================== Writes ====================

    async def create(
        self,
        order_id: str,
        user_id: str,
        amount: Decimal,
        currency: str,
        payment_method: str | None = None,
        description: str | None = None,
    ) -> Payment:
        """
        Create a PENDING payment for an order.

        Raises:
            DuplicateActivePayment: Order already has a PENDING payment
        """
        payment = Payment(
            order_id=order_id,
            user_id=user_id,
            amount=amount,
            currency=currency.lower(),
            status=PaymentStatus.PENDING,
            payment_method=payment_method,
            description=description,
        )
        self.db.add(payment)

        try:
            await self.db.flush()
        except IntegrityError as e:
            logger.info(f"Rejected second active payment for order {order_id}")
            raise DuplicateActivePayment(
                f"Order {order_id} already has a payment in progress"
            ) from e

        logger.info(f"Created payment {payment.id} for order {order_id}")
        return payment

    async def attach_intent(self, payment_id: str, provider_intent_id: str) -> Payment:
        """Record the provider intent id on a payment."""
        payment = await self.get(payment_id)
        if not payment:
            raise PaymentNotFound(f"Payment {payment_id} not found")

        payment.provider_intent_id = provider_intent_id
        await self.db.flush()
        return payment

    async def transition(
        self,
        payment_id: str,
        from_expected: PaymentStatus,
        to: PaymentStatus,
        transaction_id: str | None = None,
        failure_reason: str | None = None,
    ) -> Payment:
        """
        Move a payment from ``from_expected`` to ``to``.

        A payment that already holds ``to`` is returned unchanged.

        Raises:
            PaymentNotFound: No payment with this id
            InvalidTransition: Transition not allowed from the current status
            OrderNotPayable: The order already has a COMPLETED payment
        """
        moved = await self.compare_and_set(
            payment_id,
            from_expected,
            to,
            transaction_id=transaction_id,
            failure_reason=failure_reason,
        )

        payment = await self.refresh(payment_id)
        if payment is None:
            raise PaymentNotFound(f"Payment {payment_id} not found")

        if moved or payment.status == to:
            return payment

        raise InvalidTransition(
            f"Payment {payment_id} is {payment.status.value}, "
            f"expected {from_expected.value}"
        )

    async def compare_and_set(
        self,
        payment_id: str,
        from_expected: PaymentStatus,
        to: PaymentStatus,
        transaction_id: str | None = None,
        failure_reason: str | None = None,
    ) -> bool:
        """
        Single guarded UPDATE of the payment status.

        Returns:
            True if this call moved the payment, False if its status was not
            ``from_expected`` (or it does not exist)

        Raises:
            InvalidTransition: ``to`` is not reachable from ``from_expected``
            OrderNotPayable: The order already has a COMPLETED payment
        """
        if to not in TRANSITIONS.get(from_expected, frozenset()):
            raise InvalidTransition(
                f"Payment cannot move from {from_expected.value} to {to.value}"
            )

        values: dict = {"status": to, "updated_at": datetime.utcnow()}
        if transaction_id is not None:
            values["transaction_id"] = transaction_id
        if failure_reason is not None:
            values["failure_reason"] = failure_reason

        stmt = (
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == from_expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
        except IntegrityError as e:
            # Only one PENDING and one COMPLETED payment per order
            logger.warning(f"Payment {payment_id} {to.value} rejected: order already has one")
            raise OrderNotPayable(
                f"Order of payment {payment_id} already has a {to.value} payment"
            ) from e

        if result.rowcount:
            logger.info(f"Payment {payment_id} {from_expected.value} -> {to.value}")
            return True
        return False

    # ==================== Reads ====================

    async def get(self, payment_id: str) -> Payment | None:
        """Get payment by id."""
        return await self.db.get(Payment, payment_id)

    async def refresh(self, payment_id: str) -> Payment | None:
        """Get payment by id, bypassing the session's identity map."""
        return await self.db.get(Payment, payment_id, populate_existing=True)

    async def find(self, reference: str) -> Payment | None:
        """Get payment by local id or provider intent id."""
        query = select(Payment).where(
            or_(Payment.id == reference, Payment.provider_intent_id == reference)
        )
        result = await self.db.execute(query)
        return result.scalars().first()

    async def get_active_for_order(self, order_id: str) -> Payment | None:
        """Get the PENDING payment of an order, if any."""
        query = select(Payment).where(
            Payment.order_id == order_id,
            Payment.status == PaymentStatus.PENDING,
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def latest_for_order(self, order_id: str, user_id: str) -> Payment | None:
        """Get the most recent payment of a user's order."""
        query = (
            select(Payment)
            .where(Payment.order_id == order_id, Payment.user_id == user_id)
            .order_by(Payment.created_at.desc())
            .limit(1)
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str) -> list[Payment]:
        """Get all payments of a user, newest first."""
        query = (
            select(Payment)
            .where(Payment.user_id == user_id)
            .order_by(Payment.created_at.desc())
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())
