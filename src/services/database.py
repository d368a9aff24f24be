"""asyncpg connection pool for the Postgres store.

The pool is created once in the app lifespan when ``DATABASE_URL`` is set,
and the schema in ``src/wearables/store/schema.sql`` is applied on startup.
Every statement in that file is idempotent (``IF NOT EXISTS``).
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

import asyncpg

from src.config import Settings, get_settings

logger = logging.getLogger("wearsync.db")

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "wearables" / "store" / "schema.sql"

# Module-level connection pool, initialized once at app startup
_pool: asyncpg.Pool | None = None


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    if not s.database_url:
        raise RuntimeError("DATABASE_URL is not set")
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=2,
        max_size=20,
        command_timeout=30,
    )
    logger.info("Database pool initialized (min=2, max=20)")
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized, call init_pool() first")
    return _pool


@asynccontextmanager
async def get_connection() -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a pooled connection inside a transaction.

    Usage::

        async with get_connection() as conn:
            await conn.execute("DELETE FROM wearable_connections WHERE user_id = $1", uid)
    """
    pool = get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            yield conn


async def apply_schema(path: Path = SCHEMA_PATH) -> None:
    """Run the idempotent DDL file against the pool."""
    sql = path.read_text(encoding="utf-8")
    async with get_connection() as conn:
        await conn.execute(sql)
    logger.info("Applied schema from %s", path.name)
