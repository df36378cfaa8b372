# listing_bot/infra/db_async.py
"""
Process-wide asyncpg pool.

Created once in the application lifespan (or by the migrate command) and
shared by every Postgres adapter through ``db_conn`` / ``safe_db_conn``.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import asyncpg

from listing_bot.config import settings
from listing_bot.infra.logging_config import get_logger

logger = get_logger(__name__)

_pool: asyncpg.Pool | None = None


async def init_pool() -> None:
    global _pool

    if _pool is not None:
        return

    _pool = await asyncpg.create_pool(
        dsn=settings.database_dsn,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        timeout=settings.pg_connect_timeout,
        command_timeout=60,
        server_settings={"application_name": f"listing_bot:{settings.run_mode}"},
    )
    logger.info(f"Connection pool ready: min={settings.pg_pool_min}, max={settings.pg_pool_max}")


async def close_pool() -> None:
    global _pool

    if _pool is None:
        return

    pool, _pool = _pool, None
    await pool.close()
    logger.info("Connection pool closed")


async def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Connection pool not initialized")
    return _pool


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Borrow a pooled connection.

        async with db_conn() as conn:
            row = await conn.fetchrow("SELECT state_json FROM sessions WHERE sender_id = $1", sender_id)

    With ``autocommit=False`` the whole block is one transaction: committed
    on normal exit, rolled back when the block raises.
    """
    pool = await get_pool()

    async with pool.acquire() as conn:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn


def affected_rows(status: str | None) -> int:
    """Row count from an asyncpg command status such as ``"INSERT 0 1"`` or ``"DELETE 3"``."""
    if not status:
        return 0
    tail = status.rsplit(" ", 1)[-1]
    return int(tail) if tail.isdigit() else 0
