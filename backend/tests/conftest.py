"""Pytest fixtures for storefront tests."""

from dataclasses import dataclass
from decimal import Decimal

import pytest

from app.core.database import Database
from app.models.shop import Order, OrderItem, OrderStatus, Product
from app.models.user import User
from app.modules.shop.service import PaymentService
from tests.fakes import FakeGateway


@dataclass
class Shop:
    """Seeded store: one customer, one product, one pending order."""

    user_id: str
    other_user_id: str
    product_id: str
    order_id: str


# --- Helpers ---


async def add_user(db: Database, email: str) -> str:
    async with db.session() as session:
        user = User(email=email, first_name="Test", last_name="User")
        session.add(user)
        await session.commit()
        return user.id


async def add_product(db: Database, sku: str, stock: int, price: str = "20.00") -> str:
    async with db.session() as session:
        product = Product(sku=sku, name=f"Product {sku}", price=Decimal(price), stock=stock)
        session.add(product)
        await session.commit()
        return product.id


async def add_order(
    db: Database,
    user_id: str,
    lines: list[tuple[str, int, str]],
    status: OrderStatus = OrderStatus.PENDING,
    total: str | None = None,
) -> str:
    """Create an order from (product_id, quantity, unit_price) lines."""
    async with db.session() as session:
        amount = sum(Decimal(price) * qty for _, qty, price in lines)
        order = Order(
            user_id=user_id,
            status=status,
            total_amount=Decimal(total) if total else amount,
        )
        session.add(order)
        await session.flush()

        for position, (product_id, quantity, price) in enumerate(lines):
            session.add(
                OrderItem(
                    order_id=order.id,
                    product_id=product_id,
                    position=position,
                    quantity=quantity,
                    unit_price=Decimal(price),
                )
            )
        await session.commit()
        return order.id


async def get_stock(db: Database, product_id: str) -> int:
    async with db.session() as session:
        product = await session.get(Product, product_id)
        return product.stock


async def get_order_status(db: Database, order_id: str) -> OrderStatus:
    async with db.session() as session:
        order = await session.get(Order, order_id)
        return order.status


async def set_stock(db: Database, product_id: str, stock: int) -> None:
    async with db.session() as session:
        product = await session.get(Product, product_id)
        product.stock = stock
        await session.commit()


# --- Fixtures ---


@pytest.fixture
async def db(tmp_path):
    """File-backed SQLite database so concurrent sessions really contend."""
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}", lock_retries=1)
    await database.create_all()
    yield database
    await database.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def service(db, gateway):
    return PaymentService(
        db,
        gateway,
        max_attempts=3,
        backoff_seconds=0,
        backoff_max_seconds=0,
        timeout_seconds=5,
    )


@pytest.fixture
async def shop(db):
    """Order o1: PENDING, total 100.00 usd, one line of 5 x p1 (stock 5)."""
    user_id = await add_user(db, "buyer@example.com")
    other_user_id = await add_user(db, "someone@example.com")
    product_id = await add_product(db, "P1", stock=5)
    order_id = await add_order(db, user_id, [(product_id, 5, "20.00")])
    return Shop(
        user_id=user_id,
        other_user_id=other_user_id,
        product_id=product_id,
        order_id=order_id,
    )
