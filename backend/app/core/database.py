"""
Database handle.

Owns the async SQLAlchemy engine and session factory. One instance is
created at application startup, stored on ``app.state`` and disposed at
shutdown; request handlers receive it through ``get_database``.
"""

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from fastapi import Request
from loguru import logger
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings
from app.core.errors import LockContention

T = TypeVar("T")


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class Database:
    """
    Transactional store used by the payment engine.

    Usage:
        db = Database("sqlite+aiosqlite:///store.db")
        await db.create_all()
        result = await db.run_in_transaction(work)
        await db.close()
    """

    def __init__(
        self,
        url: str | None = None,
        lock_retries: int | None = None,
        **engine_kwargs: Any,
    ) -> None:
        self.url = url or settings.database_url
        self.lock_retries = (
            settings.db_lock_retries if lock_retries is None else lock_retries
        )

        if not self.url.startswith("sqlite"):
            engine_kwargs.setdefault("pool_size", settings.database_pool_size)
            engine_kwargs.setdefault("max_overflow", settings.database_max_overflow)
            engine_kwargs.setdefault("pool_pre_ping", True)

        self.engine: AsyncEngine = create_async_engine(
            self.url, echo=settings.debug, **engine_kwargs
        )
        self.session_factory = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_all(self) -> None:
        """Create tables that do not exist yet."""
        # Register every model on the metadata before create_all
        import app.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        """Dispose the connection pool."""
        await self.engine.dispose()
        logger.info("Database connections closed")

    def session(self) -> AsyncSession:
        """Open a plain session (caller manages the transaction)."""
        return self.session_factory()

    async def run_in_transaction(
        self,
        work: Callable[[AsyncSession], Awaitable[T]],
    ) -> T:
        """
        Run ``work`` inside a single transaction.

        The transaction commits when ``work`` returns and rolls back when it
        raises. Lock contention reported by the driver is retried
        ``lock_retries`` times with a fresh session before surfacing as
        ``LockContention``.

        Args:
            work: Coroutine function receiving the transactional session

        Returns:
            Whatever ``work`` returns
        """
        attempt = 0
        while True:
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        return await work(session)
            except OperationalError as e:
                if attempt >= self.lock_retries:
                    logger.warning(f"Transaction aborted by lock contention: {e}")
                    raise LockContention() from e
                attempt += 1
                logger.warning(
                    f"Transaction hit lock contention, retrying ({attempt}/{self.lock_retries})"
                )


async def get_database(request: Request) -> Database:
    """FastAPI dependency returning the application's database handle."""
    return request.app.state.db
