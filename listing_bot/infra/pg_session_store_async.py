# listing_bot/infra/pg_session_store_async.py
from __future__ import annotations
import json
from typing import Optional

from listing_bot.core.domain import Session, SessionStatus
from listing_bot.core.ports import AsyncSessionStore
from listing_bot.infra.db_async import affected_rows
from listing_bot.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from listing_bot.infra.logging_config import get_logger, mask_sender
from listing_bot.infra.metrics import AppMetrics

logger = get_logger(__name__)


class AsyncPostgresSessionStore(AsyncSessionStore):
    """
    Session store on asyncpg.

    The record TTL is the ``expires_at`` column: every ``put`` pushes it to
    ``now() + ttl_seconds``, and rows past it are invisible to ``get`` and
    the scanner queries until ``cleanup_expired`` purges them.
    """

    def __init__(self, ttl_seconds: int = 3600, batch_size: int = 500):
        self.ttl_seconds = ttl_seconds
        self.batch_size = batch_size

    async def get(self, sender_id: str) -> Optional[Session]:
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT state_json::text AS state_json
                    FROM sessions
                    WHERE sender_id = $1 AND expires_at > now()
                    """,
                    sender_id,
                )
        except Exception:
            logger.error(f"Failed to get session: sender={mask_sender(sender_id)}", exc_info=True)
            AppMetrics.database_error("session_get")
            raise

        if not row:
            return None
        return Session.from_dict(json.loads(row["state_json"]))

    async def put(self, session: Session) -> None:
        payload = json.dumps(session.to_dict())
        try:
            async with safe_db_conn() as conn:
                await conn.execute(
                    """
                    INSERT INTO sessions(sender_id, state_json, status, created_at, updated_at, expires_at)
                    VALUES ($1, $2::jsonb, $3, $4, now(), now() + make_interval(secs => $5))
                    ON CONFLICT (sender_id)
                    DO UPDATE SET
                      state_json = EXCLUDED.state_json,
                      status = EXCLUDED.status,
                      updated_at = now(),
                      expires_at = EXCLUDED.expires_at
                    """,
                    session.sender_id,
                    payload,
                    session.status.value,
                    session.created_at,
                    float(self.ttl_seconds),
                )
        except Exception:
            logger.error(f"Failed to put session: sender={mask_sender(session.sender_id)}", exc_info=True)
            AppMetrics.database_error("session_put")
            raise

    async def put_if_status(self, session: Session, expected: SessionStatus) -> bool:
        """
        Conditional write used to claim a session for a pipeline step.

        The status check and the write are one UPDATE, so of two workers
        reading the same COLLECTING row only one gets a row back.
        """
        payload = json.dumps(session.to_dict())
        try:
            async with safe_db_conn() as conn:
                claimed = await conn.fetchval(
                    """
                    UPDATE sessions
                    SET state_json = $2::jsonb,
                        status = $3,
                        updated_at = now(),
                        expires_at = now() + make_interval(secs => $5)
                    WHERE sender_id = $1
                      AND status = $4
                      AND expires_at > now()
                    RETURNING 1
                    """,
                    session.sender_id,
                    payload,
                    session.status.value,
                    expected.value,
                    float(self.ttl_seconds),
                )
        except Exception:
            logger.error(
                f"Failed to claim session: sender={mask_sender(session.sender_id)}, "
                f"expected={expected.value}",
                exc_info=True,
            )
            AppMetrics.database_error("session_put_if_status")
            raise

        return claimed is not None

    async def delete(self, sender_id: str) -> None:
        try:
            async with safe_db_conn() as conn:
                await conn.execute("DELETE FROM sessions WHERE sender_id = $1", sender_id)
        except Exception:
            logger.error(f"Failed to delete session: sender={mask_sender(sender_id)}", exc_info=True)
            AppMetrics.database_error("session_delete")
            raise

    async def delete_if_stalled(
        self, sender_id: str, status: SessionStatus, idle_seconds: float
    ) -> bool:
        try:
            async with safe_db_conn() as conn:
                result = await conn.execute(
                    """
                    DELETE FROM sessions
                    WHERE sender_id = $1
                      AND status = $2
                      AND updated_at < now() - make_interval(secs => $3)
                    """,
                    sender_id,
                    status.value,
                    float(idle_seconds),
                )
        except Exception:
            logger.error(f"Failed to delete stalled session: sender={mask_sender(sender_id)}", exc_info=True)
            AppMetrics.database_error("session_delete_if_stalled")
            raise

        return affected_rows(result) == 1

    async def list_expiry_candidates(self) -> list[str]:
        """
        Filtered in SQL so that sessions the scanner would skip (awaiting
        confirmation, text only, still armed) never fill the batch.
        """
        try:
            async with safe_db_conn() as conn:
                rows = await conn.fetch(
                    """
                    SELECT s.sender_id
                    FROM sessions s
                    WHERE s.status = 'collecting'
                      AND s.expires_at > now()
                      AND jsonb_array_length(s.state_json->'media_items') > 0
                      AND NOT EXISTS (
                        SELECT 1 FROM debounce_markers d
                        WHERE d.sender_id = s.sender_id AND d.expires_at > now()
                      )
                    ORDER BY s.updated_at
                    LIMIT $1
                    """,
                    self.batch_size,
                )
        except Exception:
            logger.error("Failed to list expiry candidates", exc_info=True)
            AppMetrics.database_error("session_list_candidates")
            raise

        return [row["sender_id"] for row in rows]

    async def list_stalled(self, status: SessionStatus, idle_seconds: float) -> list[str]:
        try:
            async with safe_db_conn() as conn:
                rows = await conn.fetch(
                    """
                    SELECT sender_id FROM sessions
                    WHERE status = $1
                      AND expires_at > now()
                      AND updated_at < now() - make_interval(secs => $2)
                    ORDER BY updated_at
                    LIMIT $3
                    """,
                    status.value,
                    float(idle_seconds),
                    self.batch_size,
                )
        except Exception:
            logger.error(f"Failed to list stalled sessions: status={status.value}", exc_info=True)
            AppMetrics.database_error("session_list_stalled")
            raise

        return [row["sender_id"] for row in rows]

    @retry_on_transient_error(max_retries=2)
    async def cleanup_expired(self) -> int:
        try:
            async with safe_db_conn() as conn:
                result = await conn.execute("DELETE FROM sessions WHERE expires_at <= now()")
        except Exception:
            logger.error("Failed to cleanup expired sessions", exc_info=True)
            AppMetrics.database_error("session_cleanup")
            raise

        deleted = affected_rows(result)
        if deleted > 0:
            logger.info(f"Cleaned up {deleted} expired sessions")
        return deleted
