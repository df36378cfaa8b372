# listing_bot/core/domain.py
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# SESSION STATUS
# ============================================================================

class SessionStatus(str, Enum):
    """
    Lifecycle of an in-flight submission.

    FINALIZED and CANCELLED are transition targets only: a session reaching
    either of them is deleted from the store instead of being persisted.
    """
    COLLECTING = "collecting"
    EXTRACTING = "extracting"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({SessionStatus.FINALIZED, SessionStatus.CANCELLED})


# ============================================================================
# MEDIA + EXTRACTION
# ============================================================================

@dataclass(frozen=True)
class MediaRef:
    """A stored media asset: opaque storage key plus a fetchable URL."""
    storage_id: str
    url: str


@dataclass
class ExtractionResult:
    """Structured vehicle attributes derived from a buffered submission."""
    make: str = "Unknown"
    model: str = "Unknown"
    year: Optional[int] = None
    price: Optional[int] = None
    currency: str = "NGN"
    color: Optional[str] = None
    transmission: Optional[str] = None  # "Automatic" | "Manual"
    condition: Optional[str] = None  # "Foreign Used" | "Nigerian Used" | "New"
    primary_media_index: int = 0
    missing_fields: list[str] = field(default_factory=list)
    valid: bool = False

    def apply_price(self, amount: int) -> None:
        """Replace the price with a user-supplied correction."""
        self.price = amount
        self.missing_fields = [f for f in self.missing_fields if f != "price"]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExtractionResult":
        return cls(
            make=data.get("make", "Unknown"),
            model=data.get("model", "Unknown"),
            year=data.get("year"),
            price=data.get("price"),
            currency=data.get("currency", "NGN"),
            color=data.get("color"),
            transmission=data.get("transmission"),
            condition=data.get("condition"),
            primary_media_index=data.get("primary_media_index", 0),
            missing_fields=list(data.get("missing_fields") or []),
            valid=bool(data.get("valid", False)),
        )


# ============================================================================
# SESSION
# ============================================================================

@dataclass
class Session:
    """
    One sender's not-yet-finalized submission.

    Invariants:
      status == COLLECTING            <=> extracted is None
      status == AWAITING_CONFIRMATION <=> extracted is present and valid
    """
    sender_id: str
    created_at: datetime = field(default_factory=utcnow)
    last_updated: datetime = field(default_factory=utcnow)
    text_fragments: list[str] = field(default_factory=list)
    media_items: list[MediaRef] = field(default_factory=list)
    status: SessionStatus = SessionStatus.COLLECTING
    extracted: Optional[ExtractionResult] = None
    owner_ref: Optional[str] = None

    def touch(self) -> None:
        self.last_updated = utcnow()

    @property
    def combined_text(self) -> str:
        return "\n\n".join(self.text_fragments)

    def primary_media(self) -> Optional[MediaRef]:
        """Media item chosen by extraction as the listing's main photo."""
        if not self.media_items:
            return None
        index = self.extracted.primary_media_index if self.extracted else 0
        if 0 <= index < len(self.media_items):
            return self.media_items[index]
        return self.media_items[0]

    def to_dict(self) -> dict[str, Any]:
        return {
            "sender_id": self.sender_id,
            "created_at": self.created_at.isoformat(),
            "last_updated": self.last_updated.isoformat(),
            "text_fragments": list(self.text_fragments),
            "media_items": [asdict(m) for m in self.media_items],
            "status": self.status.value,
            "extracted": self.extracted.to_dict() if self.extracted else None,
            "owner_ref": self.owner_ref,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        extracted = data.get("extracted")
        return cls(
            sender_id=data["sender_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            last_updated=datetime.fromisoformat(data["last_updated"]),
            text_fragments=list(data.get("text_fragments") or []),
            media_items=[MediaRef(**m) for m in data.get("media_items") or []],
            status=SessionStatus(data["status"]),
            extracted=ExtractionResult.from_dict(extracted) if extracted else None,
            owner_ref=data.get("owner_ref"),
        )


# ============================================================================
# INBOUND EVENTS
# ============================================================================

class EventKind(str, Enum):
    TEXT = "text"
    MEDIA = "media"
    CONFIRMATION_CHOICE = "confirmation_choice"


class Choice(str, Enum):
    """Reply button identifiers of the confirmation prompt."""
    AFFIRM = "confirm_post"
    CORRECT = "edit_price"
    CANCEL = "cancel_listing"


@dataclass
class InboundEvent:
    """
    Normalized inbound event from the transport layer.

    ``payload`` is the message text for TEXT, the provider media id for
    MEDIA and the button id for CONFIRMATION_CHOICE.
    """
    sender_id: str
    kind: EventKind
    payload: str
    message_id: str = ""
    provider: str = "meta"
    sender_name: Optional[str] = None

    def choice(self) -> Optional[Choice]:
        if self.kind is not EventKind.CONFIRMATION_CHOICE:
            return None
        try:
            return Choice(self.payload)
        except ValueError:
            return None


# ============================================================================
# PIPELINE OUTCOMES
# ============================================================================

class Outcome(str, Enum):
    NOOP = "noop"
    INSUFFICIENT_INPUT = "insufficient_input"
    NOT_RECOGNIZED = "not_recognized"
    READY_FOR_CONFIRMATION = "ready_for_confirmation"
    OWNER_UNRESOLVED = "owner_unresolved"
    FINALIZED = "finalized"
    REPROMPT = "reprompt"
    CORRECTED = "corrected"
    PRICE_PROMPTED = "price_prompted"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class PipelineResult:
    outcome: Outcome
    sender_id: str
    discarded_media: int = 0
    record_id: Optional[str] = None
