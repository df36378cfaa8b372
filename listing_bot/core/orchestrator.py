# listing_bot/core/orchestrator.py
"""
Pipeline orchestrator: what happens once a debounce window lapses
(validate -> extract -> confirm) and when the sender answers the
confirmation prompt (finalize / correct / cancel).

Every handler re-reads the session and checks its status before acting,
so a duplicate trigger is a no-op.  The expiry pipeline additionally
claims the session with a conditional write (COLLECTING -> EXTRACTING),
so of two overlapping scans only one extracts.  Unexpected errors in the
expiry and affirm pipelines tear the session down and send one generic
message.
Media cleanup is best-effort: failures are logged and counted, never
raised.
"""
from __future__ import annotations

import uuid
from typing import Optional

from listing_bot.core.amount_parser import parse_amount
from listing_bot.core.domain import (
    ExtractionResult,
    MediaRef,
    Outcome,
    PipelineResult,
    Session,
    SessionStatus,
)
from listing_bot.core.errors import ExtractionError
from listing_bot.core.ports import (
    AsyncSessionStore,
    ExtractionEngine,
    IdentityResolver,
    MediaIntake,
    OutboundNotifier,
    PersistenceSink,
)
from listing_bot.core.state_machine import SessionStateMachine, transition
from listing_bot.core.texts import confirmation_body, get_text
from listing_bot.infra.logging_config import LogContext, get_logger
from listing_bot.infra.metrics import AppMetrics

logger = get_logger(__name__)


class PipelineOrchestrator:

    def __init__(
        self,
        *,
        sessions: AsyncSessionStore,
        state_machine: SessionStateMachine,
        media: MediaIntake,
        extractor: ExtractionEngine,
        notifier: OutboundNotifier,
        identities: IdentityResolver,
        sink: PersistenceSink,
        min_media_items: int = 5,
        max_media_items: int = 12,
    ) -> None:
        self.sessions = sessions
        self.state_machine = state_machine
        self.media = media
        self.extractor = extractor
        self.notifier = notifier
        self.identities = identities
        self.sink = sink
        self.min_media_items = min_media_items
        self.max_media_items = max_media_items

    # ------------------------------------------------------------------
    # Debounce expiry
    # ------------------------------------------------------------------

    async def on_expiry(self, sender_id: str) -> PipelineResult:
        log = LogContext(logger, sender_id=sender_id)

        session = await self.sessions.get(sender_id)
        if session is None or session.status is not SessionStatus.COLLECTING:
            log.debug("Expiry ignored: no collecting session")
            return self._result("expiry", Outcome.NOOP, sender_id)

        if await self.state_machine.window_open(sender_id):
            log.debug("Expiry ignored: debounce window re-armed")
            return self._result("expiry", Outcome.NOOP, sender_id)

        # Store errors here propagate: nothing has changed yet.
        transition(session, SessionStatus.EXTRACTING)
        if not await self.sessions.put_if_status(session, SessionStatus.COLLECTING):
            log.info("Expiry ignored: session already claimed")
            return self._result("expiry", Outcome.NOOP, sender_id)

        try:
            await self.state_machine.release(sender_id)
            return await self._extract_and_confirm(session, log)
        except Exception as exc:
            log.error(f"Expiry pipeline failed: {exc.__class__.__name__}", exc_info=True)
            await self._teardown(sender_id)
            await self.notifier.send_text(sender_id, get_text("processing_error"))
            return self._result("expiry", Outcome.FAILED, sender_id)

    async def on_stalled_extraction(self, sender_id: str, idle_seconds: float) -> PipelineResult:
        """
        Tear down a session left in EXTRACTING by a worker that died
        mid-pipeline. The delete is conditional on the row still being
        EXTRACTING and idle; a pipeline still running past that point finds
        its session gone and writes nothing.
        """
        log = LogContext(logger, sender_id=sender_id)

        if not await self.sessions.delete_if_stalled(
            sender_id, SessionStatus.EXTRACTING, idle_seconds
        ):
            return self._result("stalled", Outcome.NOOP, sender_id)

        log.warning(f"Stalled extraction torn down after {idle_seconds:.0f}s idle")
        await self._discard_all_media(sender_id)
        await self.notifier.send_text(sender_id, get_text("processing_error"))
        return self._result("stalled", Outcome.FAILED, sender_id)

    async def _extract_and_confirm(self, session: Session, log: LogContext) -> PipelineResult:
        sender_id = session.sender_id
        count = len(session.media_items)

        if count < self.min_media_items:
            log.info(f"Insufficient media: {count} < {self.min_media_items}")
            await self._discard_all_media(sender_id)
            await self._close(session, SessionStatus.CANCELLED)
            await self.notifier.send_text(
                sender_id, get_text("insufficient_media", min_media=self.min_media_items)
            )
            return self._result("expiry", Outcome.INSUFFICIENT_INPUT, sender_id)

        excess: list[MediaRef] = []
        if count > self.max_media_items:
            kept = session.media_items[: self.max_media_items]
            excess = session.media_items[self.max_media_items:]
            await self._discard_media(excess)
            session.media_items = kept
            log.info(f"Trimmed {len(excess)} excess media items (kept {len(kept)})")

        result: Optional[ExtractionResult]
        try:
            with AppMetrics.track_extraction_time():
                result = await self.extractor.extract(session.combined_text, session.media_items)
        except ExtractionError as exc:
            log.warning(f"Extraction failed, treating as not recognized: {exc.detail}")
            result = None

        if result is None or not result.valid:
            await self._discard_all_media(sender_id)
            await self._close(session, SessionStatus.CANCELLED)
            await self.notifier.send_text(sender_id, get_text("not_recognized"))
            return self._result("expiry", Outcome.NOT_RECOGNIZED, sender_id, discarded=len(excess))

        if not 0 <= result.primary_media_index < len(session.media_items):
            result.primary_media_index = 0

        session.extracted = result
        transition(session, SessionStatus.AWAITING_CONFIRMATION)
        if not await self.sessions.put_if_status(session, SessionStatus.EXTRACTING):
            # Torn down as stalled while extraction was running.
            log.warning("Extraction result discarded: session is no longer extracting")
            return self._result("expiry", Outcome.NOOP, sender_id, discarded=len(excess))
        await self._send_confirmation(session)

        log.info(
            f"Awaiting confirmation: {result.year} {result.make} {result.model}, "
            f"media={len(session.media_items)}, missing={result.missing_fields}"
        )
        return self._result(
            "expiry", Outcome.READY_FOR_CONFIRMATION, sender_id, discarded=len(excess)
        )

    # ------------------------------------------------------------------
    # Confirmation replies
    # ------------------------------------------------------------------

    async def on_affirm(self, sender_id: str) -> PipelineResult:
        log = LogContext(logger, sender_id=sender_id)

        session = await self.sessions.get(sender_id)
        if not self._awaiting(session):
            log.info("Affirm ignored: no session awaiting confirmation")
            return self._result("affirm", Outcome.NOOP, sender_id)

        try:
            owner_ref = await self.identities.resolve(sender_id)
            if not owner_ref:
                # Session stays AWAITING_CONFIRMATION; Confirm can be pressed again.
                log.warning("Affirm blocked: sender is not a registered dealer")
                await self.notifier.send_text(sender_id, get_text("owner_unresolved"))
                return self._result("affirm", Outcome.OWNER_UNRESOLVED, sender_id)

            session.owner_ref = owner_ref
            listing_id = str(uuid.uuid4())

            relocated = await self.media.move_to_permanent(
                session.media_items, owner_ref, listing_id
            )
            record_id = await self.sink.persist(session, owner_ref, listing_id, relocated)

            await self._close(session, SessionStatus.FINALIZED)

            extracted = session.extracted
            await self.notifier.send_text(
                sender_id,
                get_text(
                    "listing_created",
                    year=extracted.year or "",
                    make=extracted.make,
                    model=extracted.model,
                ),
            )
            log.info(f"Listing finalized: record={record_id}, owner={owner_ref}")
            result = self._result("affirm", Outcome.FINALIZED, sender_id)
            result.record_id = record_id
            return result

        except Exception as exc:
            log.error(f"Finalization failed: {exc.__class__.__name__}", exc_info=True)
            await self._teardown(sender_id)
            await self.notifier.send_text(sender_id, get_text("processing_error"))
            return self._result("affirm", Outcome.FAILED, sender_id)

    async def on_edit_request(self, sender_id: str) -> PipelineResult:
        session = await self.sessions.get(sender_id)
        if not self._awaiting(session):
            return self._result("edit", Outcome.NOOP, sender_id)

        await self.notifier.send_text(sender_id, get_text("price_prompt"))
        return self._result("edit", Outcome.PRICE_PROMPTED, sender_id)

    async def on_correct(self, sender_id: str, raw_input: str) -> PipelineResult:
        session = await self.sessions.get(sender_id)
        if not self._awaiting(session):
            return self._result("correct", Outcome.NOOP, sender_id)

        amount = parse_amount(raw_input)
        if amount is None:
            await self.notifier.send_text(sender_id, get_text("price_reprompt"))
            return self._result("correct", Outcome.REPROMPT, sender_id)

        session.extracted.apply_price(amount)
        transition(session, SessionStatus.AWAITING_CONFIRMATION)
        await self.sessions.put(session)
        await self._send_confirmation(session)

        logger.info(f"Price corrected to {amount}", extra={"sender_id": sender_id})
        return self._result("correct", Outcome.CORRECTED, sender_id)

    async def on_cancel(self, sender_id: str) -> PipelineResult:
        session = await self.sessions.get(sender_id)
        if session is None:
            return self._result("cancel", Outcome.NOOP, sender_id)

        await self._discard_all_media(sender_id)
        await self._close(session, SessionStatus.CANCELLED)
        await self.notifier.send_text(sender_id, get_text("listing_cancelled"))

        logger.info("Session cancelled by sender", extra={"sender_id": sender_id})
        return self._result("cancel", Outcome.CANCELLED, sender_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _awaiting(session: Optional[Session]) -> bool:
        return (
            session is not None
            and session.status is SessionStatus.AWAITING_CONFIRMATION
            and session.extracted is not None
        )

    async def _send_confirmation(self, session: Session) -> None:
        primary = session.primary_media()
        await self.notifier.send_confirmation(
            session.sender_id,
            confirmation_body(session.extracted, len(session.media_items)),
            primary.url if primary else None,
        )

    async def _close(self, session: Session, target: SessionStatus) -> None:
        """Validate the terminal transition, then remove the session and its marker."""
        transition(session, target)
        await self.sessions.delete(session.sender_id)
        await self.state_machine.release(session.sender_id)

    async def _teardown(self, sender_id: str) -> None:
        await self._discard_all_media(sender_id)
        try:
            await self.sessions.delete(sender_id)
            await self.state_machine.release(sender_id)
        except Exception:
            logger.error(
                "Teardown could not delete session",
                extra={"sender_id": sender_id},
                exc_info=True,
            )

    async def _discard_all_media(self, sender_id: str) -> None:
        try:
            await self.media.delete_for_sender(sender_id)
        except Exception:
            logger.warning(
                "Media cleanup failed (ignored)", extra={"sender_id": sender_id}, exc_info=True
            )
            AppMetrics.cleanup_failed("delete_for_sender")

    async def _discard_media(self, items: list[MediaRef]) -> None:
        try:
            await self.media.delete([m.storage_id for m in items])
        except Exception:
            logger.warning(f"Excess media cleanup failed for {len(items)} items (ignored)", exc_info=True)
            AppMetrics.cleanup_failed("delete")

    @staticmethod
    def _result(
        stage: str, outcome: Outcome, sender_id: str, *, discarded: int = 0
    ) -> PipelineResult:
        AppMetrics.pipeline_outcome(stage, outcome.value)
        return PipelineResult(outcome=outcome, sender_id=sender_id, discarded_media=discarded)
