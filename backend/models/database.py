"""
Database connection and session management.

Uses SQLAlchemy async with connection pooling. Components never import a
module-level session; they receive an ``async_sessionmaker`` at construction
time (see services/engine.py), which keeps tests free to point them at a
throwaway database.

Column types are declared portably (JSON that becomes JSONB on PostgreSQL,
generic Uuid) so the same models run against SQLite in tests.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Optional
from urllib.parse import urlparse

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, AsyncEngine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _normalize_url(url: str) -> str:
    """Ensure PostgreSQL URLs use the asyncpg driver."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


# Global singletons - created once, reused forever
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def create_engine_for_url(url: str) -> AsyncEngine:
    """Create an async engine with pooling appropriate for the URL."""
    db_url = _normalize_url(url)
    if db_url.startswith("sqlite"):
        return create_async_engine(db_url, echo=False, future=True)

    # Port 6543 = pgbouncer transaction mode (must use NullPool)
    parsed = urlparse(db_url)
    db_port: int = parsed.port or 5432
    connect_args: dict[str, int] = {
        "statement_cache_size": 0,
        "prepared_statement_cache_size": 0,
    }
    if db_port == 6543:
        engine = create_async_engine(
            db_url,
            echo=False,
            future=True,
            poolclass=NullPool,
            connect_args=connect_args,
        )
        logger.info("Database engine created with NullPool (transaction mode, port %d)", db_port)
        return engine

    engine = create_async_engine(
        db_url,
        echo=False,
        future=True,
        pool_size=5,        # Base connections kept warm
        max_overflow=10,    # Up to 15 total under burst load
        pool_recycle=300,   # Recycle connections every 5 min
        pool_pre_ping=True, # Verify connection is alive before checkout
        connect_args=connect_args,
    )
    logger.info(
        "Database engine created with connection pool (port %d, pool_size=5, max_overflow=10)",
        db_port,
    )
    return engine


def get_engine() -> AsyncEngine:
    """Get the database engine (singleton - created once, reused)."""
    global _engine
    if _engine is None:
        _engine = create_engine_for_url(settings.DATABASE_URL)
    return _engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build a session factory bound to ``engine``."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,  # Don't auto-flush, we control when to commit
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the async session factory (singleton - created once, reused)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
        logger.info("Session factory created (will reuse pooled connections)")
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield an async database session from the default factory.

    Usage:
        async with get_session() as session:
            result = await session.execute(query)
            await session.commit()  # Explicit commit if needed

    Any uncommitted changes are rolled back on error.
    """
    session: AsyncSession = get_session_factory()()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables."""
    import models  # noqa: F401 - registers every model on Base.metadata

    target = engine or get_engine()
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """
    Close the database engine and release all pooled connections.
    Call this on application shutdown.
    """
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database engine disposed, all connections closed")


def dispose_engine() -> None:
    """
    Drop the engine singletons without awaiting.

    Celery runs each task in a fresh event loop; pooled asyncpg connections
    from a previous loop must not be reused.
    """
    global _engine, _session_factory
    if _engine is not None:
        _engine.sync_engine.dispose(close=False)
    _engine = None
    _session_factory = None


def get_pool_status() -> dict[str, int | str]:
    """Get current connection pool status for monitoring."""
    if _engine is None:
        return {"pool_type": "not_initialized", "pool_size": 0, "checked_in": 0, "checked_out": 0, "overflow": 0}

    pool = _engine.pool
    if isinstance(pool, NullPool) or not hasattr(pool, "checkedin"):
        return {"pool_type": type(pool).__name__, "pool_size": 0, "checked_in": 0, "checked_out": 0, "overflow": 0}

    return {
        "pool_type": type(pool).__name__,
        "pool_size": pool.size(),
        "checked_in": pool.checkedin(),
        "checked_out": pool.checkedout(),
        "overflow": pool.overflow(),
    }
