# listing_bot/infra/db_resilience_async.py
"""
Retry helpers for asyncpg: transient-error detection and a connection
context manager that retries acquiring a connection.
"""
from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from functools import wraps
from typing import Callable

import asyncpg
from listing_bot.infra.db_async import db_conn
from listing_bot.infra.logging_config import get_logger

logger = get_logger(__name__)

_TRANSIENT_PATTERNS = (
    "connection",
    "timeout",
    "closed",
    "network",
    "deadlock",
    "too many connections",
    "server closed",
    "connection reset",
)


def is_transient_error(exc: Exception) -> bool:
    """
    Check if a database error is worth retrying.

    Transient: connection loss, pool/connection exhaustion, deadlocks,
    timeouts.
    """
    if isinstance(exc, (
        asyncpg.PostgresConnectionError,
        asyncpg.TooManyConnectionsError,
        asyncpg.DeadlockDetectedError,
        ConnectionError,
        asyncio.TimeoutError,
    )):
        return True

    error_message = str(exc).lower()
    return any(pattern in error_message for pattern in _TRANSIENT_PATTERNS)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0,
):
    """
    Decorator to retry an async function on transient database errors.

    Example:
        @retry_on_transient_error(max_retries=3)
        async def cleanup_expired(self) -> int:
            ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not is_transient_error(exc) or attempt >= max_retries:
                        raise

                    logger.warning(
                        f"Transient error in {func.__name__} (attempt {attempt + 1}/{max_retries}): {exc}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

        return wrapper
    return decorator


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True):
    """
    Database connection with retry on transient errors while acquiring it.

    Only the acquire step is retried; an error raised from inside the
    ``async with`` body propagates unchanged, since the body may already
    have had side effects.

    Usage:
        async with safe_db_conn() as conn:
            await conn.execute("DELETE FROM sessions WHERE sender_id = $1", sender_id)
    """
    max_retries = 3
    delay = 0.1

    for attempt in range(max_retries + 1):
        cm = db_conn(autocommit=autocommit)
        try:
            conn = await cm.__aenter__()
            break
        except Exception as exc:
            if not is_transient_error(exc):
                raise
            if attempt >= max_retries:
                logger.error(f"Max retries ({max_retries}) exceeded getting connection")
                raise

            logger.warning(
                f"Transient error getting connection (attempt {attempt + 1}/{max_retries}): {exc}. "
                f"Retrying in {delay:.2f}s..."
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2.0, 5.0)

    try:
        yield conn
    except BaseException as exc:
        if not await cm.__aexit__(type(exc), exc, exc.__traceback__):
            raise
    else:
        await cm.__aexit__(None, None, None)
