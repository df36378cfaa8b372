# listing_bot/infra/pg_inbound_repo_async.py
"""
Inbound idempotency: one ``inbound_messages`` row per provider message id.

Meta retries deliveries it did not see acknowledged, so the same ``wamid``
can arrive more than once; only the first insert wins.
"""
from __future__ import annotations

from listing_bot.core.ports import AsyncInboundMessageRepository
from listing_bot.infra.db_async import affected_rows
from listing_bot.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from listing_bot.infra.logging_config import get_logger, mask_sender
from listing_bot.infra.metrics import AppMetrics

logger = get_logger(__name__)


class AsyncPostgresInboundMessageRepository(AsyncInboundMessageRepository):

    def __init__(self, retention_days: int = 30):
        self.retention_days = retention_days

    async def seen_or_mark(self, provider: str, message_id: str, sender_id: str) -> bool:
        """True when ``message_id`` was already recorded; otherwise records it."""
        try:
            async with safe_db_conn() as conn:
                status = await conn.execute(
                    """
                    INSERT INTO inbound_messages(provider, message_id, sender_id)
                    VALUES ($1, $2, $3)
                    ON CONFLICT (provider, message_id) DO NOTHING
                    """,
                    provider,
                    message_id,
                    sender_id,
                )
        except Exception:
            logger.error(
                f"Idempotency check failed: provider={provider}, sender={mask_sender(sender_id)}",
                exc_info=True,
            )
            AppMetrics.database_error("inbound_seen_or_mark")
            raise

        duplicate = affected_rows(status) == 0
        if duplicate:
            logger.info(
                f"Redelivered message skipped: provider={provider}, message_id={message_id[:40]}",
                extra={"sender_id": sender_id},
            )
        return duplicate

    @retry_on_transient_error(max_retries=2)
    async def cleanup_old(self) -> int:
        """Forget message ids older than the retention period."""
        try:
            async with safe_db_conn() as conn:
                status = await conn.execute(
                    "DELETE FROM inbound_messages WHERE received_at < now() - make_interval(days => $1)",
                    self.retention_days,
                )
        except Exception:
            logger.error("Inbound message cleanup failed", exc_info=True)
            AppMetrics.database_error("inbound_cleanup_old")
            raise

        deleted = affected_rows(status)
        if deleted:
            logger.info(f"Inbound message cleanup: {deleted} ids older than {self.retention_days}d removed")
        return deleted
