# tests/test_use_cases.py
"""End-to-end tests for the intake service against in-memory fakes"""
import pytest

from listing_bot.core.domain import EventKind, InboundEvent, SessionStatus
from listing_bot.core.texts import get_text
from listing_bot.infra.metrics import get_metrics_collector


def text_event(sender_id: str, body: str, message_id: str = "") -> InboundEvent:
    return InboundEvent(sender_id=sender_id, kind=EventKind.TEXT, payload=body, message_id=message_id)


def media_event(sender_id: str, media_id: str, message_id: str = "") -> InboundEvent:
    return InboundEvent(sender_id=sender_id, kind=EventKind.MEDIA, payload=media_id, message_id=message_id)


def choice_event(sender_id: str, choice: str, message_id: str = "") -> InboundEvent:
    return InboundEvent(
        sender_id=sender_id,
        kind=EventKind.CONFIRMATION_CHOICE,
        payload=choice,
        message_id=message_id,
    )


async def submit_and_lapse(bot, sender_id, photos=6, text="Toyota Camry 2015 5m"):
    for i in range(photos):
        await bot.intake.process_event(media_event(sender_id, f"m{i}", f"wamid.m{i}"))
    await bot.intake.process_event(text_event(sender_id, text, "wamid.t1"))
    return await bot.lapse(sender_id)


class TestSubmissionFlow:
    @pytest.mark.asyncio
    async def test_six_images_and_text_reach_confirmation(self, bot, sender_id):
        scan = await submit_and_lapse(bot, sender_id)

        assert scan["processed"] == 1
        assert bot.extractor.calls == [("Toyota Camry 2015 5m", 6)]
        session = await bot.session()
        assert session.status is SessionStatus.AWAITING_CONFIRMATION
        assert len(bot.notifier.confirmations) == 1
        assert list(bot.sessions.rows) == [sender_id]

    @pytest.mark.asyncio
    async def test_price_correction_reprompts(self, bot, sender_id):
        await submit_and_lapse(bot, sender_id)

        result = await bot.intake.process_event(text_event(sender_id, "6m", "wamid.t2"))

        assert result["route"] == "correction"
        session = await bot.session()
        assert session.extracted.price == 6_000_000
        assert session.status is SessionStatus.AWAITING_CONFIRMATION
        assert len(bot.notifier.confirmations) == 2

    @pytest.mark.asyncio
    async def test_cancel_choice_discards_session_and_media(self, bot, sender_id):
        await submit_and_lapse(bot, sender_id)
        temp_keys = list(bot.media.stored[sender_id])

        result = await bot.intake.process_event(choice_event(sender_id, "cancel_listing", "wamid.c1"))

        assert result == {"status": "ok", "route": "cancel_listing", "outcome": "cancelled"}
        assert await bot.session() is None
        assert sorted(bot.media.deleted) == sorted(temp_keys)

    @pytest.mark.asyncio
    async def test_confirm_choice_finalizes(self, bot, sender_id):
        await submit_and_lapse(bot, sender_id)

        result = await bot.intake.process_event(choice_event(sender_id, "confirm_post", "wamid.c1"))

        assert result["outcome"] == "finalized"
        assert len(bot.sink.records) == 1
        assert await bot.session() is None

    @pytest.mark.asyncio
    async def test_edit_choice_prompts_for_price(self, bot, sender_id):
        await submit_and_lapse(bot, sender_id)

        result = await bot.intake.process_event(choice_event(sender_id, "edit_price", "wamid.c1"))

        assert result["outcome"] == "price_prompted"
        assert bot.notifier.last_text == get_text("price_prompt")

    @pytest.mark.asyncio
    async def test_unknown_choice_is_ignored(self, bot, sender_id):
        result = await bot.intake.process_event(choice_event(sender_id, "something_else"))
        assert result == {"status": "ignored", "route": "unknown_choice"}


class TestRouting:
    @pytest.mark.asyncio
    async def test_duplicate_message_is_processed_once(self, bot, sender_id):
        first = await bot.intake.process_event(media_event(sender_id, "m1", "wamid.same"))
        second = await bot.intake.process_event(media_event(sender_id, "m1", "wamid.same"))

        assert first["status"] == "ok"
        assert second == {"status": "duplicate"}
        assert len((await bot.session()).media_items) == 1
        assert get_metrics_collector().get_metrics()["counters"]["idempotency_hits_total{provider=meta}"] == 1

    @pytest.mark.asyncio
    async def test_events_while_extracting_are_dropped(self, bot, sender_id):
        await bot.send_photos(5)
        session = await bot.session()
        session.status = SessionStatus.EXTRACTING
        await bot.sessions.put(session)

        text_result = await bot.intake.process_text(sender_id, "one more thing")
        media_result = await bot.intake.process_media(sender_id, "late-photo")

        assert text_result == {"status": "dropped", "route": "busy"}
        assert media_result == {"status": "dropped", "route": "busy"}
        assert bot.notifier.last_text == get_text("still_processing")
        after = await bot.session()
        assert after.text_fragments == []
        assert len(after.media_items) == 5
        assert bot.media.temp_count(sender_id) == 5

    @pytest.mark.asyncio
    async def test_media_while_awaiting_confirmation_asks_to_confirm(self, bot, sender_id):
        await submit_and_lapse(bot, sender_id)

        result = await bot.intake.process_media(sender_id, "extra")

        assert result == {"status": "dropped", "route": "confirm_first"}
        assert bot.notifier.last_text == get_text("confirm_first")
        assert len((await bot.session()).media_items) == 6

    @pytest.mark.asyncio
    async def test_free_text_while_awaiting_confirmation_is_ignored(self, bot, sender_id):
        await submit_and_lapse(bot, sender_id)
        sent_before = len(bot.notifier.texts)

        result = await bot.intake.process_text(sender_id, "is the price fine?")

        assert result == {"status": "dropped", "route": "ignored"}
        assert len(bot.notifier.texts) == sent_before
        assert (await bot.session()).extracted.price == 5_000_000

    @pytest.mark.asyncio
    async def test_help_command_sends_welcome(self, bot, sender_id):
        result = await bot.intake.process_text(sender_id, "Help")

        assert result == {"status": "ok", "route": "help"}
        assert "Welcome" in bot.notifier.last_text
        assert await bot.session() is None

    @pytest.mark.asyncio
    async def test_empty_text_is_ignored(self, bot, sender_id):
        assert await bot.intake.process_text(sender_id, "   ") == {"status": "ignored", "route": "empty"}
        assert await bot.session() is None

    @pytest.mark.asyncio
    async def test_media_intake_failure_leaves_session_untouched(self, bot, sender_id):
        await bot.send_photos(2)
        bot.media.fail_ingest = True

        result = await bot.intake.process_media(sender_id, "broken")

        assert result == {"status": "error", "route": "intake_failed"}
        assert len((await bot.session()).media_items) == 2

    @pytest.mark.asyncio
    async def test_new_submission_after_finalization(self, bot, sender_id):
        await submit_and_lapse(bot, sender_id)
        await bot.intake.process_event(choice_event(sender_id, "confirm_post", "wamid.c1"))

        result = await bot.intake.process_media(sender_id, "next-car")

        assert result["route"] == "buffer"
        session = await bot.session()
        assert session.status is SessionStatus.COLLECTING
        assert len(session.media_items) == 1
