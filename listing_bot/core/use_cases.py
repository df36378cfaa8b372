# listing_bot/core/use_cases.py
from __future__ import annotations

from listing_bot.core.domain import Choice, EventKind, InboundEvent
from listing_bot.core.errors import MediaIntakeError
from listing_bot.core.orchestrator import PipelineOrchestrator
from listing_bot.core.ports import (
    AsyncInboundMessageRepository,
    MediaIntake,
    OutboundNotifier,
)
from listing_bot.core.state_machine import Route, SessionStateMachine
from listing_bot.core.texts import get_text
from listing_bot.infra.logging_config import LogContext, get_logger
from listing_bot.infra.metrics import AppMetrics

logger = get_logger(__name__)

HELP_COMMANDS = frozenset({"help", "start"})


class IntakeService:
    """
    Application service / use-case layer.
    Workflow: idempotency -> route by session state -> buffer or delegate.

    The webhook hands every normalized event to ``process_event``; text and
    media go through the state machine guard, confirmation choices go to
    the orchestrator.
    """

    def __init__(
        self,
        *,
        state_machine: SessionStateMachine,
        orchestrator: PipelineOrchestrator,
        media: MediaIntake,
        notifier: OutboundNotifier,
        inbound: AsyncInboundMessageRepository | None = None,
        min_media_items: int = 5,
        max_media_items: int = 12,
    ) -> None:
        self.state_machine = state_machine
        self.orchestrator = orchestrator
        self.media = media
        self.notifier = notifier
        self.inbound = inbound
        self.min_media_items = min_media_items
        self.max_media_items = max_media_items

    async def process_event(self, event: InboundEvent) -> dict:
        """Returns ``{"status": ..., "route"/"outcome": ...}`` for logging and tests."""
        if event.message_id and self.inbound is not None:
            if await self.inbound.seen_or_mark(event.provider, event.message_id, event.sender_id):
                AppMetrics.idempotency_hit(event.provider)
                return {"status": "duplicate"}

        if event.kind is EventKind.CONFIRMATION_CHOICE:
            return await self._process_choice(event)
        if event.kind is EventKind.TEXT:
            return await self.process_text(event.sender_id, event.payload)
        return await self.process_media(event.sender_id, event.payload)

    async def process_text(self, sender_id: str, text: str) -> dict:
        text = (text or "").strip()
        if not text:
            return {"status": "ignored", "route": "empty"}

        if text.lower() in HELP_COMMANDS:
            await self.notifier.send_text(
                sender_id,
                get_text("welcome", min_media=self.min_media_items, max_media=self.max_media_items),
            )
            return {"status": "ok", "route": "help"}

        route = await self.state_machine.route(sender_id, EventKind.TEXT, text)

        if route is Route.CORRECTION:
            result = await self.orchestrator.on_correct(sender_id, text)
            return {"status": "ok", "route": route.value, "outcome": result.outcome.value}

        if route is Route.BUFFER:
            session = await self.state_machine.append_text(sender_id, text)
            if session is not None:
                return {"status": "ok", "route": route.value}
            route = Route.BUSY

        return await self._not_buffered(sender_id, "text", route)

    async def process_media(self, sender_id: str, provider_media_id: str) -> dict:
        log = LogContext(logger, sender_id=sender_id)

        if not provider_media_id:
            log.warning("Media event without media id, ignoring")
            return {"status": "ignored", "route": "empty"}

        route = await self.state_machine.route(sender_id, EventKind.MEDIA)
        if route is not Route.BUFFER:
            return await self._not_buffered(sender_id, "media", route)

        try:
            ref = await self.media.ingest(provider_media_id, sender_id)
        except MediaIntakeError as exc:
            log.error(f"Media intake failed: {exc.detail}")
            AppMetrics.event_dropped("media", "intake_failed")
            return {"status": "error", "route": "intake_failed"}

        session = await self.state_machine.append_media(sender_id, ref)
        if session is None:
            # Session moved on while the asset was being stored.
            try:
                await self.media.delete([ref.storage_id])
            except Exception:
                log.warning("Orphaned media cleanup failed (ignored)", exc_info=True)
                AppMetrics.cleanup_failed("delete")
            return await self._not_buffered(sender_id, "media", Route.BUSY)

        return {"status": "ok", "route": route.value, "media_count": len(session.media_items)}

    async def _process_choice(self, event: InboundEvent) -> dict:
        choice = event.choice()
        if choice is None:
            logger.info(f"Unknown choice id ignored: {event.payload[:40]}")
            return {"status": "ignored", "route": "unknown_choice"}

        if choice is Choice.AFFIRM:
            result = await self.orchestrator.on_affirm(event.sender_id)
        elif choice is Choice.CORRECT:
            result = await self.orchestrator.on_edit_request(event.sender_id)
        else:
            result = await self.orchestrator.on_cancel(event.sender_id)

        return {"status": "ok", "route": choice.value, "outcome": result.outcome.value}

    async def _not_buffered(self, sender_id: str, kind: str, route: Route) -> dict:
        AppMetrics.event_dropped(kind, route.value)

        if route is Route.BUSY:
            await self.notifier.send_text(sender_id, get_text("still_processing"))
        elif route is Route.CONFIRM_FIRST:
            await self.notifier.send_text(sender_id, get_text("confirm_first"))

        return {"status": "dropped", "route": route.value}
