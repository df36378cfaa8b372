# listing_bot/core/ports.py
from __future__ import annotations
from typing import Protocol, Optional, Sequence

from listing_bot.core.domain import Session, SessionStatus, MediaRef, ExtractionResult


# ============================================================================
# STORAGE PROTOCOLS
# ============================================================================

class AsyncSessionStore(Protocol):
    async def get(self, sender_id: str) -> Optional[Session]: ...
    async def put(self, session: Session) -> None:
        """Upsert; refreshes the record TTL to the configured ceiling."""
        ...
    async def put_if_status(self, session: Session, expected: SessionStatus) -> bool:
        """
        Write *session* only if the stored row is live and still in
        *expected*. Atomic compare-and-set: of two concurrent callers
        expecting the same status, at most one gets True.
        """
        ...
    async def delete(self, sender_id: str) -> None: ...
    async def delete_if_stalled(
        self, sender_id: str, status: SessionStatus, idle_seconds: float
    ) -> bool:
        """Delete the row only if it is in *status* and untouched for *idle_seconds*."""
        ...
    async def list_expiry_candidates(self) -> list[str]:
        """
        Live COLLECTING sessions holding media whose debounce marker has
        lapsed, oldest-updated first.
        """
        ...
    async def list_stalled(self, status: SessionStatus, idle_seconds: float) -> list[str]:
        """Live sessions in *status* not written for at least *idle_seconds*."""
        ...
    async def cleanup_expired(self) -> int: ...


class AsyncDebounceTimer(Protocol):
    async def arm(self, sender_id: str, window_seconds: int) -> None: ...
    async def is_armed(self, sender_id: str) -> bool: ...
    async def disarm(self, sender_id: str) -> None: ...


class AsyncInboundMessageRepository(Protocol):
    async def seen_or_mark(self, provider: str, message_id: str, sender_id: str) -> bool:
        """
        True  => message already seen (duplicate), skip processing
        False => first time seeing it, proceed with processing
        """
        ...


# ============================================================================
# EXTERNAL COLLABORATORS
# ============================================================================

class MediaIntake(Protocol):
    async def ingest(self, provider_media_id: str, sender_id: str) -> MediaRef:
        """Move a transport media reference into temporary storage."""
        ...

    async def delete(self, storage_ids: Sequence[str]) -> None: ...

    async def delete_for_sender(self, sender_id: str) -> None:
        """Bulk delete every temporary asset tagged with this sender."""
        ...

    async def move_to_permanent(
        self, items: Sequence[MediaRef], owner_ref: str, listing_id: str
    ) -> list[MediaRef]: ...


class ExtractionEngine(Protocol):
    async def extract(self, text: str, media: Sequence[MediaRef]) -> ExtractionResult:
        """Raises ExtractionError when no result can be produced."""
        ...


class OutboundNotifier(Protocol):
    """Fire-and-forget: implementations log delivery failures and never raise."""

    async def send_text(self, sender_id: str, text: str) -> None: ...

    async def send_confirmation(
        self, sender_id: str, body: str, image_url: Optional[str] = None
    ) -> None: ...


class IdentityResolver(Protocol):
    async def resolve(self, sender_id: str) -> Optional[str]: ...


class PersistenceSink(Protocol):
    async def persist(
        self,
        session: Session,
        owner_ref: str,
        listing_id: str,
        media: Sequence[MediaRef],
    ) -> str:
        """Durably record the listing; returns an id used for logging."""
        ...
