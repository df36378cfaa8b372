# listing_bot/infra/pg_listing_repo_async.py
"""
Dealer lookup and listing persistence (asyncpg).

The listing and its media rows are written in one transaction.
"""
from __future__ import annotations
import re
import time
import uuid
from typing import Optional, Sequence

from listing_bot.core.domain import MediaRef, Session
from listing_bot.core.ports import IdentityResolver, PersistenceSink
from listing_bot.infra.db_resilience_async import safe_db_conn
from listing_bot.infra.logging_config import get_logger, mask_sender
from listing_bot.infra.metrics import AppMetrics

logger = get_logger(__name__)


def phone_variants(sender_id: str) -> list[str]:
    """The sender number with and without a leading '+'."""
    bare = sender_id.strip().lstrip("+")
    return [bare, f"+{bare}"]


def map_condition(condition: Optional[str]) -> str:
    """Extraction condition label -> listings.condition value."""
    if not condition:
        return "foreign_used"

    normalized = condition.lower()
    if "new" in normalized and "used" not in normalized:
        return "brand_new"
    if "nigerian" in normalized or "locally" in normalized:
        return "nigerian_used"
    return "foreign_used"


def listing_title(make: str, model: str, year: Optional[int]) -> str:
    return " ".join(str(part) for part in (year, make, model) if part)


def listing_slug(make: str, model: str, year: Optional[int], now_ms: Optional[int] = None) -> str:
    """``make-model-year-<epoch ms>``, lowercased, URL-safe."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    raw = f"{make}-{model}-{year or ''}-{now_ms}".lower()
    raw = re.sub(r"\s+", "-", raw)
    return re.sub(r"[^a-z0-9-]", "", raw)


class AsyncPostgresIdentityResolver(IdentityResolver):
    """Maps a sender phone number to a registered dealer id."""

    async def resolve(self, sender_id: str) -> Optional[str]:
        variants = phone_variants(sender_id)
        try:
            async with safe_db_conn() as conn:
                dealer_id = await conn.fetchval(
                    """
                    SELECT id::text FROM dealers
                    WHERE whatsapp_number = ANY($1::text[])
                       OR phone_number = ANY($1::text[])
                    ORDER BY created_at
                    LIMIT 1
                    """,
                    variants,
                )
        except Exception:
            logger.error(f"Failed to resolve dealer: sender={mask_sender(sender_id)}", exc_info=True)
            AppMetrics.database_error("dealer_resolve")
            raise

        if dealer_id is None:
            logger.info(f"No dealer registered for sender={mask_sender(sender_id)}")
        return dealer_id


class AsyncPostgresListingSink(PersistenceSink):

    async def persist(
        self,
        session: Session,
        owner_ref: str,
        listing_id: str,
        media: Sequence[MediaRef],
    ) -> str:
        data = session.extracted
        if data is None:
            raise ValueError("Cannot persist a session without an extraction result")

        primary_index = data.primary_media_index if 0 <= data.primary_media_index < len(media) else 0

        try:
            async with safe_db_conn(autocommit=False) as conn:
                await conn.execute(
                    """
                    INSERT INTO listings(
                      id, dealer_id, title, slug, price, currency, condition, status,
                      make, model, year, transmission, color_exterior, source_sender
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, 'active', $8, $9, $10, $11, $12, $13)
                    """,
                    uuid.UUID(listing_id),
                    uuid.UUID(owner_ref),
                    listing_title(data.make, data.model, data.year),
                    listing_slug(data.make, data.model, data.year),
                    data.price or 0,
                    data.currency,
                    map_condition(data.condition),
                    data.make,
                    data.model,
                    data.year,
                    data.transmission,
                    data.color,
                    session.sender_id,
                )

                if media:
                    await conn.executemany(
                        """
                        INSERT INTO listing_media(listing_id, position, storage_key, url, media_type, is_primary)
                        VALUES ($1, $2, $3, $4, 'image', $5)
                        """,
                        [
                            (uuid.UUID(listing_id), idx, m.storage_id, m.url, idx == primary_index)
                            for idx, m in enumerate(media)
                        ],
                    )
        except Exception:
            logger.error(
                f"Failed to persist listing: listing_id={listing_id}, sender={mask_sender(session.sender_id)}",
                exc_info=True,
            )
            AppMetrics.database_error("listing_persist")
            raise

        AppMetrics.listing_finalized()
        logger.info(
            f"Listing persisted: listing_id={listing_id}, dealer={owner_ref}, media={len(media)}",
            extra={"listing_id": listing_id},
        )
        return listing_id
