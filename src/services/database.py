"""asyncpg connection pool for the Postgres ledger backend.

The pool is created once at app startup when ``ledger_backend`` is
``postgres`` and closed at shutdown.  The in-memory backend never touches
this module.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import asyncpg

from src.config import Settings, get_settings

logger = logging.getLogger("healthstack.db")

# Module-level connection pool, initialized once at app startup
_pool: asyncpg.Pool | None = None


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    if not s.database_url:
        raise RuntimeError("HEALTHSTACK_DATABASE_URL is required for the postgres ledger")
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=1,
        max_size=5,
        command_timeout=30,
    )
    logger.info("Database pool initialized (min=1, max=5)")
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at app shutdown."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized; call init_pool() first")
    return _pool


def pool_initialized() -> bool:
    return _pool is not None


@asynccontextmanager
async def get_connection(
    pool: asyncpg.Pool | None = None,
) -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a connection wrapped in a transaction.

    Usage::

        async with get_connection() as conn:
            await conn.execute("UPDATE health_samples SET is_synced = TRUE WHERE id = $1", sid)
    """
    pool = pool or get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            yield conn
