# listing_bot/core/state_machine.py
"""
Session state machine: allowed transitions and inbound-event guards.

    ∅ ──► COLLECTING ──► EXTRACTING ──► AWAITING_CONFIRMATION ──► FINALIZED
              │  ▲            │                 │  ▲
              └──┘            ▼                 └──┘ (price correction)
                          CANCELLED ◄───────────────
                                                  (decline / teardown)

FINALIZED and CANCELLED are never written to the store: reaching them means
the session row is deleted.  COLLECTING can only be left through
EXTRACTING, which is entered by the expiry pipeline, never by a user event.
"""
from __future__ import annotations

from enum import Enum
from typing import Callable, Optional

from listing_bot.core.amount_parser import looks_like_amount
from listing_bot.core.domain import (
    EventKind,
    MediaRef,
    Session,
    SessionStatus,
    TERMINAL_STATUSES,
)
from listing_bot.core.errors import InvalidTransitionError, SessionConflictError
from listing_bot.core.ports import AsyncDebounceTimer, AsyncSessionStore
from listing_bot.infra.logging_config import get_logger, mask_sender
from listing_bot.infra.metrics import AppMetrics

logger = get_logger(__name__)


ALLOWED_TRANSITIONS: dict[Optional[SessionStatus], frozenset[SessionStatus]] = {
    None: frozenset({SessionStatus.COLLECTING}),
    SessionStatus.COLLECTING: frozenset({
        SessionStatus.COLLECTING,
        SessionStatus.EXTRACTING,
        SessionStatus.CANCELLED,
    }),
    SessionStatus.EXTRACTING: frozenset({
        SessionStatus.AWAITING_CONFIRMATION,
        SessionStatus.CANCELLED,
    }),
    SessionStatus.AWAITING_CONFIRMATION: frozenset({
        SessionStatus.AWAITING_CONFIRMATION,
        SessionStatus.FINALIZED,
        SessionStatus.CANCELLED,
    }),
    SessionStatus.FINALIZED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}


def can_transition(current: Optional[SessionStatus], target: SessionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(session: Session, target: SessionStatus) -> Session:
    """Move *session* to *target* in place, enforcing the transition graph."""
    if not can_transition(session.status, target):
        raise InvalidTransitionError(session.status.value, target.value)

    if target is SessionStatus.AWAITING_CONFIRMATION:
        if session.extracted is None or not session.extracted.valid:
            raise InvalidTransitionError(session.status.value, target.value)
    if target is SessionStatus.COLLECTING and session.extracted is not None:
        raise InvalidTransitionError(session.status.value, target.value)

    session.status = target
    session.touch()
    return session


def start_session(sender_id: str, existing: Optional[Session]) -> Session:
    """
    Open a fresh COLLECTING session.

    Precondition: the sender has no active session (*existing* is None).
    Callers holding a non-collecting session must route the event instead
    of replacing the session.
    """
    if existing is not None:
        raise SessionConflictError(
            f"Sender {mask_sender(sender_id)} already has a {existing.status.value} session"
        )
    return Session(sender_id=sender_id)


# ============================================================================
# EVENT ROUTING (pure)
# ============================================================================

class Route(str, Enum):
    BUFFER = "buffer"                  # append to a new or collecting session
    CORRECTION = "correction"          # price override while awaiting confirmation
    BUSY = "busy"                      # session mid-extraction: drop the event
    IGNORED = "ignored"                # free text while awaiting confirmation
    CONFIRM_FIRST = "confirm_first"    # media while awaiting confirmation


def route_event(session: Optional[Session], kind: EventKind, text: str = "") -> Route:
    """Decide what a text or media event means for the sender's current session."""
    if session is None or session.status is SessionStatus.COLLECTING:
        return Route.BUFFER

    if session.status is SessionStatus.EXTRACTING:
        return Route.BUSY

    if session.status is SessionStatus.AWAITING_CONFIRMATION:
        if kind is EventKind.MEDIA:
            return Route.CONFIRM_FIRST
        if looks_like_amount(text):
            return Route.CORRECTION
        return Route.IGNORED

    # Terminal statuses are never stored; treat a stray one as absent.
    return Route.BUFFER


# ============================================================================
# STATE MACHINE
# ============================================================================

class SessionStateMachine:
    """
    Writes inbound text/media into the sender's COLLECTING session and
    keeps the debounce marker armed.  The only writer of the marker.
    """

    def __init__(
        self,
        *,
        sessions: AsyncSessionStore,
        timer: AsyncDebounceTimer,
        debounce_window_seconds: int,
    ) -> None:
        self.sessions = sessions
        self.timer = timer
        self.debounce_window_seconds = debounce_window_seconds

    async def route(self, sender_id: str, kind: EventKind, text: str = "") -> Route:
        session = await self.sessions.get(sender_id)
        return route_event(session, kind, text)

    async def append_text(self, sender_id: str, text: str) -> Optional[Session]:
        """Buffer a text fragment. Returns None if the session is no longer collecting."""
        return await self._append(sender_id, "text", lambda s: s.text_fragments.append(text))

    async def append_media(self, sender_id: str, media: MediaRef) -> Optional[Session]:
        """Buffer a stored media item. Returns None if the session is no longer collecting."""
        return await self._append(sender_id, "media", lambda s: s.media_items.append(media))

    async def window_open(self, sender_id: str) -> bool:
        """True while new input keeps the debounce marker armed."""
        return await self.timer.is_armed(sender_id)

    async def release(self, sender_id: str) -> None:
        """Drop the debounce marker once the buffered input is being handled."""
        await self.timer.disarm(sender_id)

    async def _append(
        self,
        sender_id: str,
        kind: str,
        mutate: Callable[[Session], None],
    ) -> Optional[Session]:
        # Re-read right before writing: the route decision may be stale.
        session = await self.sessions.get(sender_id)

        if session is not None and session.status in TERMINAL_STATUSES:
            session = None

        if session is None:
            session = start_session(sender_id, None)
            AppMetrics.session_opened()
            logger.info(
                f"Session opened: sender={mask_sender(sender_id)}",
                extra={"sender_id": sender_id},
            )
        elif session.status is not SessionStatus.COLLECTING:
            logger.info(
                f"Inbound {kind} rejected: session is {session.status.value}, "
                f"sender={mask_sender(sender_id)}",
            )
            AppMetrics.event_dropped(kind, session.status.value)
            return None
        else:
            transition(session, SessionStatus.COLLECTING)

        mutate(session)
        session.touch()

        # Marker before row: the scanner must never see new input unarmed.
        await self.timer.arm(sender_id, self.debounce_window_seconds)
        await self.sessions.put(session)

        AppMetrics.event_accepted(kind)
        logger.debug(
            f"Buffered {kind}: sender={mask_sender(sender_id)}, "
            f"texts={len(session.text_fragments)}, media={len(session.media_items)}"
        )
        return session
