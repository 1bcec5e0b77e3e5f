"""
Database connection and session management.

Uses SQLAlchemy async against the Supabase Postgres instance.

Connection Pool Strategy:
- Supabase session mode (port 5432): local connection pool keeps connections open
- Supabase transaction mode (port 6543): NullPool (external pooler manages connections)
- Sessions run as the `authenticated` role with the caller's user id in
  `request.jwt.claim.sub`, so the deals RLS policies apply exactly as they do
  for the Supabase client
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
from urllib.parse import urlparse

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, AsyncEngine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

# Ensure URL uses asyncpg driver
_db_url = settings.DATABASE_URL
if _db_url and "+asyncpg" not in _db_url:
    _db_url = _db_url.replace("postgresql://", "postgresql+asyncpg://")

# Port 6543 = transaction mode (SET commands don't persist across statements)
_parsed_url = urlparse(_db_url) if _db_url else None
_db_port: int = _parsed_url.port if _parsed_url and _parsed_url.port else 5432
_use_null_pool: bool = _db_port == 6543

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    """Get the database engine (singleton - created once, reused)."""
    global _engine
    if _engine is None:
        # Disable prepared statement cache for Supabase/pgbouncer compatibility
        connect_args: dict[str, int] = {
            "statement_cache_size": 0,
            "prepared_statement_cache_size": 0,
        }

        if _use_null_pool:
            _engine = create_async_engine(
                _db_url,
                echo=False,
                poolclass=NullPool,
                connect_args=connect_args,
            )
            logger.info("Database engine created with NullPool (transaction mode, port %d)", _db_port)
        else:
            _engine = create_async_engine(
                _db_url,
                echo=False,
                pool_size=5,
                max_overflow=10,
                pool_recycle=300,
                pool_pre_ping=True,
                connect_args=connect_args,
            )
            logger.info(
                "Database engine created with connection pool (session mode, port %d)",
                _db_port,
            )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the async session factory (singleton - created once, reused)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


@asynccontextmanager
async def get_session(user_id: str | None = None) -> AsyncGenerator[AsyncSession, None]:
    """
    Yield an async database session scoped to a Supabase user.

    Usage:
        async with get_session(user_id=auth.user_id_str) as session:
            result = await session.execute(query)
            await session.commit()

    Without a user_id the session keeps the connecting role, which is only
    appropriate for migrations and maintenance scripts.
    """
    factory = get_session_factory()
    session: AsyncSession = factory()
    try:
        if user_id:
            await session.execute(text("SET ROLE authenticated"))
            await session.execute(
                text("SELECT set_config('request.jwt.claim.sub', :user_id, false)"),
                {"user_id": str(user_id)},
            )
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        if user_id:
            # Don't leak one user's RLS context to the next pooled checkout.
            # One statement per execute (asyncpg prepares each), committed before close.
            try:
                await session.execute(text("SELECT set_config('request.jwt.claim.sub', '', false)"))
                await session.execute(text("RESET ROLE"))
                await session.commit()
            except Exception:
                logger.warning("Failed to reset RLS context on session close", exc_info=True)
        await session.close()


async def close_db() -> None:
    """Dispose the engine and release all pooled connections."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database engine disposed, all connections closed")


def get_pool_status() -> dict[str, int | str]:
    """Get current connection pool status for monitoring."""
    if _engine is None:
        return {"pool_type": "not_initialized", "pool_size": 0, "checked_in": 0, "checked_out": 0, "overflow": 0}

    pool = _engine.pool
    if isinstance(pool, NullPool):
        return {"pool_type": "NullPool", "pool_size": 0, "checked_in": 0, "checked_out": 0, "overflow": 0}

    return {
        "pool_type": type(pool).__name__,
        "pool_size": pool.size(),
        "checked_in": pool.checkedin(),
        "checked_out": pool.checkedout(),
        "overflow": pool.overflow(),
    }
