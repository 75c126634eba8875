"""Tests for the stock ledger."""

import asyncio

import pytest

from app.core.errors import InsufficientStock, ProductNotFound
from app.modules.shop.inventory import StockLedger
from tests.conftest import add_product, get_stock


async def adjust(db, product_id, delta):
    return await db.run_in_transaction(
        lambda session: StockLedger(session).adjust(product_id, delta)
    )


class TestAdjust:
    async def test_decrement(self, db):
        product_id = await add_product(db, "SKU-1", stock=5)

        assert await adjust(db, product_id, -2) == 3
        assert await get_stock(db, product_id) == 3

    async def test_restock(self, db):
        product_id = await add_product(db, "SKU-1", stock=0)

        assert await adjust(db, product_id, 7) == 7

    async def test_decrement_to_zero(self, db):
        product_id = await add_product(db, "SKU-1", stock=4)

        assert await adjust(db, product_id, -4) == 0

    async def test_insufficient_stock_leaves_counter(self, db):
        product_id = await add_product(db, "SKU-1", stock=3)

        with pytest.raises(InsufficientStock) as exc_info:
            await adjust(db, product_id, -5)

        assert "available 3" in exc_info.value.message
        assert await get_stock(db, product_id) == 3

    async def test_unknown_product(self, db):
        with pytest.raises(ProductNotFound):
            await adjust(db, "missing", -1)

    async def test_zero_delta_reads_stock(self, db):
        product_id = await add_product(db, "SKU-1", stock=9)

        assert await adjust(db, product_id, 0) == 9

    async def test_rolled_back_with_transaction(self, db):
        product_id = await add_product(db, "SKU-1", stock=5)

        async def work(session):
            await StockLedger(session).adjust(product_id, -2)
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            await db.run_in_transaction(work)

        assert await get_stock(db, product_id) == 5


class TestConcurrentAdjust:
    async def test_two_decrements_one_wins(self, db):
        product_id = await add_product(db, "SKU-1", stock=5)

        results = await asyncio.gather(
            adjust(db, product_id, -3),
            adjust(db, product_id, -3),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, int)]
        failures = [r for r in results if isinstance(r, InsufficientStock)]
        assert successes == [2]
        assert len(failures) == 1
        assert await get_stock(db, product_id) == 2

    async def test_many_decrements_never_negative(self, db):
        product_id = await add_product(db, "SKU-1", stock=5)

        results = await asyncio.gather(
            *(adjust(db, product_id, -1) for _ in range(8)),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, int)]
        failures = [r for r in results if isinstance(r, InsufficientStock)]
        assert len(successes) == 5
        assert len(failures) == 3
        assert sorted(successes) == [0, 1, 2, 3, 4]
        assert await get_stock(db, product_id) == 0
