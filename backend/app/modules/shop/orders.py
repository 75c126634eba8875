"""
Order State Coordinator - order status rules for the payment flow.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.config import settings
from app.core.errors import (
    AmountMismatch,
    DuplicateActivePayment,
    OrderNotFound,
    OrderNotPayable,
)
from app.models.shop import Order, OrderStatus
from app.modules.shop.payments import PaymentStore

CENT = Decimal("0.01")


@dataclass
class OrderLine:
    """Product quantity to take from stock when the order is paid."""

    product_id: str
    quantity: int
    unit_price: Decimal


@dataclass
class OrderSnapshot:
    """Read-only view of an order taken inside a transaction."""

    id: str
    user_id: str
    status: OrderStatus
    total_amount: Decimal
    lines: list[OrderLine] = field(default_factory=list)

    @classmethod
    def from_order(cls, order: Order) -> "OrderSnapshot":
        return cls(
            id=order.id,
            user_id=order.user_id,
            status=order.status,
            total_amount=order.total_amount,
            lines=[
                OrderLine(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                )
                for item in order.items
            ],
        )


class OrderCoordinator:
    """
    Guards which orders may be paid and moves them to PROCESSING.

    Usage:
        orders = OrderCoordinator(session)
        snapshot = await orders.reserve_for_payment(order_id, Decimal("100.00"))
    """

    def __init__(
        self,
        db: AsyncSession,
        cancel_on_payment_failure: bool | None = None,
    ) -> None:
        """Initialize coordinator with a transactional session."""
        self.db = db
        self.cancel_on_payment_failure = (
            settings.cancel_order_on_payment_failure
            if cancel_on_payment_failure is None
            else cancel_on_payment_failure
        )

    async def get_snapshot(
        self,
        order_id: str,
        user_id: str | None = None,
        lock: bool = False,
    ) -> OrderSnapshot:
        """
        Load an order with its lines.

        Raises:
            OrderNotFound: Order does not exist or belongs to another user
        """
        query = (
            select(Order)
            .options(selectinload(Order.items))
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        if lock:
            query = query.with_for_update()

        result = await self.db.execute(query)
        order = result.scalar_one_or_none()

        if not order or (user_id is not None and order.user_id != user_id):
            raise OrderNotFound(f"Order {order_id} not found")

        return OrderSnapshot.from_order(order)

    async def reserve_for_payment(
        self,
        order_id: str,
        expected_amount: Decimal,
        user_id: str | None = None,
    ) -> OrderSnapshot:
        """
        Check that an order can take a new payment.

        Must run in the same transaction that creates the payment.

        Args:
            order_id: Order ID
            expected_amount: Amount the client intends to pay
            user_id: Caller; orders of other users are reported missing

        Returns:
            Snapshot of the payable order

        Raises:
            OrderNotFound: Order missing or not owned by the caller
            OrderNotPayable: Order is not PENDING
            AmountMismatch: Amount differs from the order total
            DuplicateActivePayment: Order already has a PENDING payment
        """
        snapshot = await self.get_snapshot(order_id, user_id=user_id, lock=True)

        if snapshot.status != OrderStatus.PENDING:
            raise OrderNotPayable(
                f"Order {order_id} is {snapshot.status.value} and cannot be paid"
            )

        amount = Decimal(str(expected_amount)).quantize(CENT)
        if amount != snapshot.total_amount.quantize(CENT):
            logger.warning(
                f"Amount mismatch for order {order_id}: got {amount}, expected {snapshot.total_amount}"
            )
            raise AmountMismatch(
                f"Amount {amount} does not match order total {snapshot.total_amount}"
            )

        active = await PaymentStore(self.db).get_active_for_order(order_id)
        if active:
            raise DuplicateActivePayment(
                f"Order {order_id} already has payment {active.id} in progress"
            )

        return snapshot

    async def commit_paid(self, order_id: str) -> None:
        """
        Move a PENDING order to PROCESSING.

        Must run in the same transaction as the stock decrements and the
        payment completion.

        Raises:
            OrderNotFound: Order does not exist
            OrderNotPayable: Order already left PENDING
        """
        moved = await self._move(order_id, OrderStatus.PENDING, OrderStatus.PROCESSING)
        if moved:
            logger.info(f"Order {order_id} paid, now PROCESSING")
            return

        status = await self._status(order_id)
        if status is None:
            raise OrderNotFound(f"Order {order_id} not found")
        raise OrderNotPayable(f"Order {order_id} is {status.value} and cannot be paid")

    async def mark_payment_failed(self, order_id: str) -> OrderStatus:
        """
        Apply the payment failure policy to an order.

        By default the order stays PENDING so the customer can retry with a
        new payment. With ``cancel_on_payment_failure`` the order is
        cancelled instead.

        Returns:
            Order status after the policy was applied
        """
        if self.cancel_on_payment_failure:
            if await self._move(order_id, OrderStatus.PENDING, OrderStatus.CANCELLED):
                logger.info(f"Order {order_id} cancelled after failed payment")
                return OrderStatus.CANCELLED

        status = await self._status(order_id)
        if status is None:
            raise OrderNotFound(f"Order {order_id} not found")

        logger.info(f"Payment failed for order {order_id}, order stays {status.value}")
        return status

    async def _move(self, order_id: str, current: OrderStatus, target: OrderStatus) -> bool:
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.status == current)
            .values(status=target, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return bool(result.rowcount)

    async def _status(self, order_id: str) -> OrderStatus | None:
        result = await self.db.execute(select(Order.status).where(Order.id == order_id))
        return result.scalar_one_or_none()
