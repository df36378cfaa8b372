# tests/test_state_machine.py
"""Tests for session transitions, event routing and buffering"""
import pytest

from conftest import camry
from listing_bot.core.domain import EventKind, MediaRef, Session, SessionStatus
from listing_bot.core.errors import InvalidTransitionError, SessionConflictError
from listing_bot.core.state_machine import (
    Route,
    can_transition,
    route_event,
    start_session,
    transition,
)


class TestTransitions:
    def test_only_collecting_from_nothing(self):
        assert can_transition(None, SessionStatus.COLLECTING)
        assert not can_transition(None, SessionStatus.EXTRACTING)
        assert not can_transition(None, SessionStatus.AWAITING_CONFIRMATION)

    def test_collecting_cannot_skip_extraction(self):
        session = Session(sender_id="s1")
        with pytest.raises(InvalidTransitionError):
            transition(session, SessionStatus.AWAITING_CONFIRMATION)
        with pytest.raises(InvalidTransitionError):
            transition(session, SessionStatus.FINALIZED)

    def test_awaiting_requires_valid_extraction(self):
        session = Session(sender_id="s1", status=SessionStatus.EXTRACTING)
        with pytest.raises(InvalidTransitionError):
            transition(session, SessionStatus.AWAITING_CONFIRMATION)

        session.extracted = camry(valid=False)
        with pytest.raises(InvalidTransitionError):
            transition(session, SessionStatus.AWAITING_CONFIRMATION)

        session.extracted = camry()
        transition(session, SessionStatus.AWAITING_CONFIRMATION)
        assert session.status is SessionStatus.AWAITING_CONFIRMATION

    def test_terminal_states_are_final(self):
        for status in (SessionStatus.FINALIZED, SessionStatus.CANCELLED):
            session = Session(sender_id="s1", status=status)
            with pytest.raises(InvalidTransitionError):
                transition(session, SessionStatus.COLLECTING)

    def test_extracting_cannot_go_back_to_collecting(self):
        session = Session(sender_id="s1", status=SessionStatus.EXTRACTING)
        with pytest.raises(InvalidTransitionError):
            transition(session, SessionStatus.COLLECTING)

    def test_start_session_refuses_existing(self):
        existing = Session(sender_id="s1", status=SessionStatus.EXTRACTING)
        with pytest.raises(SessionConflictError):
            start_session("s1", existing)
        assert start_session("s1", None).status is SessionStatus.COLLECTING


class TestRouteEvent:
    def test_no_session_buffers(self):
        assert route_event(None, EventKind.MEDIA) is Route.BUFFER
        assert route_event(None, EventKind.TEXT, "Camry 2015") is Route.BUFFER

    def test_collecting_buffers(self):
        session = Session(sender_id="s1")
        assert route_event(session, EventKind.TEXT, "5m") is Route.BUFFER

    def test_extracting_is_busy(self):
        session = Session(sender_id="s1", status=SessionStatus.EXTRACTING)
        assert route_event(session, EventKind.MEDIA) is Route.BUSY
        assert route_event(session, EventKind.TEXT, "hello") is Route.BUSY

    def test_awaiting_confirmation(self):
        session = Session(
            sender_id="s1", status=SessionStatus.AWAITING_CONFIRMATION, extracted=camry()
        )
        assert route_event(session, EventKind.TEXT, "4.5m") is Route.CORRECTION
        assert route_event(session, EventKind.TEXT, "€5000") is Route.CORRECTION
        assert route_event(session, EventKind.TEXT, "4.5m ngn") is Route.CORRECTION
        assert route_event(session, EventKind.TEXT, "nice car") is Route.IGNORED
        assert route_event(session, EventKind.MEDIA) is Route.CONFIRM_FIRST


class TestSessionStateMachine:
    @pytest.mark.asyncio
    async def test_first_event_opens_session_and_arms_marker(self, bot, sender_id):
        session = await bot.state_machine.append_text(sender_id, "Toyota Camry 2015")

        assert session.status is SessionStatus.COLLECTING
        assert session.text_fragments == ["Toyota Camry 2015"]
        assert await bot.timer.is_armed(sender_id)
        assert (await bot.session()).text_fragments == ["Toyota Camry 2015"]

    @pytest.mark.asyncio
    async def test_fragments_and_media_keep_arrival_order(self, bot, sender_id):
        await bot.state_machine.append_text(sender_id, "first")
        await bot.state_machine.append_media(sender_id, MediaRef("k1", "u1"))
        await bot.state_machine.append_text(sender_id, "second")
        await bot.state_machine.append_media(sender_id, MediaRef("k2", "u2"))

        session = await bot.session()
        assert session.text_fragments == ["first", "second"]
        assert [m.storage_id for m in session.media_items] == ["k1", "k2"]
        assert session.combined_text == "first\n\nsecond"

    @pytest.mark.asyncio
    async def test_every_append_rearms(self, bot, sender_id):
        await bot.state_machine.append_text(sender_id, "a")
        bot.timer.expire(sender_id)
        await bot.state_machine.append_media(sender_id, MediaRef("k1", "u1"))

        assert bot.timer.arm_calls == 2
        assert await bot.timer.is_armed(sender_id)

    @pytest.mark.asyncio
    async def test_append_rejected_while_extracting(self, bot, sender_id):
        await bot.sessions.put(Session(sender_id=sender_id, status=SessionStatus.EXTRACTING))

        assert await bot.state_machine.append_text(sender_id, "late") is None
        assert (await bot.session()).text_fragments == []
        assert not await bot.timer.is_armed(sender_id)

    @pytest.mark.asyncio
    async def test_release_disarms(self, bot, sender_id):
        await bot.state_machine.append_text(sender_id, "a")
        await bot.state_machine.release(sender_id)
        assert not await bot.timer.is_armed(sender_id)
