"""
Stock Ledger - atomic, non-negative stock adjustment.
"""

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import InsufficientStock, ProductNotFound
from app.models.shop import Product


class StockLedger:
    """
    Adjusts product stock inside the caller's transaction.

    Each adjustment is one conditional UPDATE, so the database serializes
    concurrent writers on the product row and a decrement that would take
    stock below zero matches no row.

    Usage:
        ledger = StockLedger(session)
        remaining = await ledger.adjust(product_id, -2)
    """

    def __init__(self, db: AsyncSession) -> None:
        """Initialize ledger with a transactional session."""
        self.db = db

    async def adjust(self, product_id: str, delta: int) -> int:
        """
        Apply ``delta`` to the product's stock.

        Args:
            product_id: Product ID
            delta: Amount to add (positive) or consume (negative)

        Returns:
            Stock after the adjustment

        Raises:
            ProductNotFound: Product does not exist
            InsufficientStock: Adjustment would make stock negative
        """
        if delta == 0:
            return await self.get_stock(product_id)

        stmt = (
            update(Product)
            .where(Product.id == product_id, Product.stock + delta >= 0)
            .values(stock=Product.stock + delta)
            .returning(Product.stock)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        new_stock = result.scalar_one_or_none()

        if new_stock is None:
            current = await self._current_stock(product_id)
            if current is None:
                raise ProductNotFound(f"Product {product_id} not found")
            logger.info(
                f"Stock adjustment {delta:+d} rejected for product {product_id} (stock {current})"
            )
            raise InsufficientStock(
                f"Insufficient stock for product {product_id}: "
                f"requested {-delta}, available {current}"
            )

        logger.debug(f"Stock for product {product_id} adjusted by {delta:+d} to {new_stock}")
        return new_stock

    async def get_stock(self, product_id: str) -> int:
        """Get current stock, raising ProductNotFound when absent."""
        current = await self._current_stock(product_id)
        if current is None:
            raise ProductNotFound(f"Product {product_id} not found")
        return current

    async def _current_stock(self, product_id: str) -> int | None:
        result = await self.db.execute(
            select(Product.stock).where(Product.id == product_id)
        )
        return result.scalar_one_or_none()
