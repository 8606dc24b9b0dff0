"""SQLAlchemy async engine and session management.

Provides a factory for creating async engines (asyncpg for PostgreSQL,
aiosqlite for SQLite), the :class:`SqlStorage` backend whose sessions
commit all-or-nothing, and lifecycle helpers for schema creation and
graceful shutdown.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from aggregate_store.core.errors import ConcurrencyConflict, StoreUnavailable

from .models import Base
from .repos import SqlStorageSession

logger = logging.getLogger(__name__)


def _redact(url: str) -> str:
    return url.split("@")[-1]


def create_engine(
    url: str,
    *,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    echo: bool = False,
    use_null_pool: bool = False,
) -> AsyncEngine:
    """Create and return a new SQLAlchemy :class:`AsyncEngine`.

    Args:
        url: Database connection URL, e.g. ``postgresql+asyncpg://...`` or
            ``sqlite+aiosqlite:///path/to/events.db``.
        pool_size: Number of persistent connections to keep in the pool.
        max_overflow: Maximum additional connections beyond *pool_size*.
        pool_timeout: Seconds to wait for a pooled connection.
        pool_recycle: Seconds after which a connection is recycled.
        echo: If ``True``, log all emitted SQL statements.
        use_null_pool: If ``True``, disable connection pooling entirely.

    Returns:
        A configured :class:`AsyncEngine` instance.
    """
    pool_kwargs: dict = {}
    if use_null_pool:
        pool_kwargs["poolclass"] = NullPool
    elif not url.startswith("sqlite"):
        # SQLite uses its own pool class and rejects sizing arguments.
        pool_kwargs.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
        )

    engine = create_async_engine(url, echo=echo, **pool_kwargs)
    logger.info("Created async engine for %s", _redact(url))
    return engine


async def create_all(engine: AsyncEngine) -> None:
    """Create all tables defined in the ORM metadata."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created / verified.")


class SqlStorage:
    """Relational backend over one :class:`AsyncEngine`.

    Usage::

        storage = await SqlStorage.connect("sqlite+aiosqlite:///events.db",
                                           create_tables=True)
        async with storage.session() as session:
            await session.domain_events.append(envelopes, expected_version=3)

    The session is committed on successful exit and rolled back on any
    exception, including task cancellation.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._session_factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @classmethod
    async def connect(
        cls,
        url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
        create_tables: bool = False,
    ) -> SqlStorage:
        """Build the engine and optionally create the schema.

        Args:
            url: Database connection URL.
            pool_size: Pool size forwarded to :func:`create_engine`.
            max_overflow: Overflow forwarded to :func:`create_engine`.
            echo: SQL echo flag.
            create_tables: If ``True``, run ``CREATE TABLE IF NOT EXISTS``
                for all ORM models (useful for dev/test).
        """
        engine = create_engine(
            url,
            pool_size=pool_size,
            max_overflow=max_overflow,
            echo=echo,
        )
        storage = cls(engine)
        if create_tables:
            try:
                await create_all(engine)
            except (OperationalError, InterfaceError, OSError) as exc:
                await engine.dispose()
                raise StoreUnavailable(
                    f"Cannot reach database at {_redact(url)}: {exc}"
                ) from exc
        return storage

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_all(self) -> None:
        await create_all(self._engine)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[SqlStorageSession]:
        session = self._session_factory()
        try:
            yield SqlStorageSession(session)
            await session.commit()
        except BaseException as exc:
            await session.rollback()
            if isinstance(exc, IntegrityError):
                raise ConcurrencyConflict("<unknown>", None, None) from exc
            if isinstance(exc, (OperationalError, InterfaceError, OSError)):
                logger.warning("Database unavailable: %s", exc)
                raise StoreUnavailable(str(exc)) from exc
            raise
        finally:
            await session.close()

    async def close(self) -> None:
        """Dispose of the engine and release all pooled connections."""
        await self._engine.dispose()
        logger.info("Engine disposed.")
