"""Database connection, session management and row-locking helpers."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncGenerator, Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm.exc import StaleDataError

from hr_ledger.config import get_settings
from hr_ledger.exceptions import ConcurrentModificationError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

T = TypeVar("T")


def get_engine(database_url: str | None = None) -> AsyncEngine:
    """Create async database engine."""
    url = database_url or get_settings().database_url
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)
    return create_async_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


# Global engine and session factory
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_db() -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Initialize database engine and session factory."""
    global _engine, _session_factory
    if _engine is None:
        _engine = get_engine()
        _session_factory = async_sessionmaker(
            _engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _engine, _session_factory


async def create_schema() -> None:
    """Create all tables (local development and demos)."""
    from hr_ledger.models import Base

    engine, _ = init_db()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_db() -> None:
    """Dispose the global engine."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get a database session.

    The session is the unit of work: it commits when the block exits cleanly
    and rolls back on any exception, so a failed engine operation never
    leaves a partially updated aggregate behind.
    """
    _, factory = init_db()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def lock_for_update(session: AsyncSession, model: type[T], ident: Any) -> T | None:
    """Load an aggregate root with a row lock, refreshing any cached copy.

    On PostgreSQL this is ``SELECT ... FOR UPDATE``; concurrent callers on the
    same row block until the holder commits. SQLite ignores the lock clause
    and relies on its database-level write lock.

    If this session holds a copy older than the committed row, the caller
    decided on stale data and gets ``ConcurrentModificationError``.
    """
    try:
        return await session.get(
            model,
            ident,
            with_for_update=True,
            populate_existing=True,
        )
    except StaleDataError as exc:
        # The cached copy is older than the row another writer committed
        logger.warning("Stale %s %s on lock", model.__name__, ident)
        raise ConcurrentModificationError(
            f"{model.__name__} {ident} was modified concurrently"
        ) from exc


async def flush_or_conflict(session: AsyncSession, what: str) -> None:
    """Flush pending changes, translating version conflicts."""
    try:
        await session.flush()
    except StaleDataError as exc:
        logger.warning("Concurrent modification detected on %s", what)
        raise ConcurrentModificationError(f"{what} was modified concurrently") from exc


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 3,
) -> T:
    """Run ``operation`` again when it fails with a concurrency conflict.

    ``operation`` must open its own session on each call so every attempt
    reads fresh state. All other errors propagate immediately.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except ConcurrentModificationError:
            if attempt == attempts:
                raise
            logger.info("Retrying after concurrent modification (attempt %d/%d)", attempt, attempts)
    raise AssertionError("unreachable")
