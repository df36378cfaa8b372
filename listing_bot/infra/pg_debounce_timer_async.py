# listing_bot/infra/pg_debounce_timer_async.py
"""
Debounce markers on asyncpg. A marker is armed while its ``expires_at``
lies in the future; re-arming pushes the deadline forward.
"""
from __future__ import annotations

from listing_bot.core.ports import AsyncDebounceTimer
from listing_bot.infra.db_resilience_async import safe_db_conn
from listing_bot.infra.logging_config import get_logger, mask_sender
from listing_bot.infra.metrics import AppMetrics

logger = get_logger(__name__)


class AsyncPostgresDebounceTimer(AsyncDebounceTimer):

    async def arm(self, sender_id: str, window_seconds: int) -> None:
        try:
            async with safe_db_conn() as conn:
                await conn.execute(
                    """
                    INSERT INTO debounce_markers(sender_id, armed_at, expires_at)
                    VALUES ($1, now(), now() + make_interval(secs => $2))
                    ON CONFLICT (sender_id)
                    DO UPDATE SET armed_at = EXCLUDED.armed_at, expires_at = EXCLUDED.expires_at
                    """,
                    sender_id,
                    float(window_seconds),
                )
        except Exception:
            logger.error(f"Failed to arm debounce marker: sender={mask_sender(sender_id)}", exc_info=True)
            AppMetrics.database_error("marker_arm")
            raise

    async def is_armed(self, sender_id: str) -> bool:
        try:
            async with safe_db_conn() as conn:
                armed = await conn.fetchval(
                    "SELECT EXISTS(SELECT 1 FROM debounce_markers WHERE sender_id = $1 AND expires_at > now())",
                    sender_id,
                )
        except Exception:
            logger.error(f"Failed to read debounce marker: sender={mask_sender(sender_id)}", exc_info=True)
            AppMetrics.database_error("marker_read")
            raise

        return bool(armed)

    async def disarm(self, sender_id: str) -> None:
        try:
            async with safe_db_conn() as conn:
                await conn.execute("DELETE FROM debounce_markers WHERE sender_id = $1", sender_id)
        except Exception:
            logger.error(f"Failed to disarm debounce marker: sender={mask_sender(sender_id)}", exc_info=True)
            AppMetrics.database_error("marker_disarm")
            raise
