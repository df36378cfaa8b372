# tests/conftest.py
"""Pytest configuration and in-memory fakes for the intake core"""
import asyncio
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from listing_bot.core.domain import ExtractionResult, MediaRef, Session, SessionStatus
from listing_bot.core.errors import ExtractionError, MediaIntakeError
from listing_bot.core.orchestrator import PipelineOrchestrator
from listing_bot.core.scanner import ExpiryScanner
from listing_bot.core.state_machine import SessionStateMachine
from listing_bot.core.use_cases import IntakeService
from listing_bot.infra.metrics import get_metrics_collector


SENDER = "2348012345678"


class InMemorySessionStore:
    """
    Keeps serialized sessions so every read goes through from_dict.

    ``markers`` is the debounce timer's armed set, shared so that expiry
    candidates are filtered the way the SQL query filters them.
    """

    def __init__(self, markers: Optional[dict] = None):
        self.rows: dict[str, dict] = {}
        self.updated_at: dict[str, float] = {}
        self.markers = markers if markers is not None else {}
        self.cleanup_calls = 0
        self.fail_writes: Optional[Exception] = None

    def _write(self, session: Session) -> None:
        if self.fail_writes is not None:
            raise self.fail_writes
        self.rows[session.sender_id] = session.to_dict()
        self.updated_at[session.sender_id] = time.monotonic()

    def _idle(self, sender_id: str) -> float:
        return time.monotonic() - self.updated_at[sender_id]

    def _oldest_first(self) -> list[str]:
        return sorted(self.rows, key=lambda s: self.updated_at[s])

    def backdate(self, sender_id: str, seconds: float) -> None:
        """Pretend the row was last written *seconds* earlier."""
        self.updated_at[sender_id] -= seconds

    async def get(self, sender_id: str) -> Optional[Session]:
        row = self.rows.get(sender_id)
        return Session.from_dict(row) if row else None

    async def put(self, session: Session) -> None:
        self._write(session)

    async def put_if_status(self, session: Session, expected: SessionStatus) -> bool:
        row = self.rows.get(session.sender_id)
        if row is None or row["status"] != expected.value:
            return False
        self._write(session)
        return True

    async def delete(self, sender_id: str) -> None:
        self.rows.pop(sender_id, None)
        self.updated_at.pop(sender_id, None)

    async def delete_if_stalled(
        self, sender_id: str, status: SessionStatus, idle_seconds: float
    ) -> bool:
        row = self.rows.get(sender_id)
        if row is None or row["status"] != status.value or self._idle(sender_id) < idle_seconds:
            return False
        await self.delete(sender_id)
        return True

    async def list_expiry_candidates(self) -> list[str]:
        return [
            s for s in self._oldest_first()
            if self.rows[s]["status"] == SessionStatus.COLLECTING.value
            and self.rows[s]["media_items"]
            and s not in self.markers
        ]

    async def list_stalled(self, status: SessionStatus, idle_seconds: float) -> list[str]:
        return [
            s for s in self._oldest_first()
            if self.rows[s]["status"] == status.value and self._idle(s) >= idle_seconds
        ]

    async def cleanup_expired(self) -> int:
        self.cleanup_calls += 1
        return 0


class YieldingSessionStore(InMemorySessionStore):
    """Hands control back to the event loop on every call, like a networked store."""

    async def get(self, sender_id: str) -> Optional[Session]:
        await asyncio.sleep(0)
        return await super().get(sender_id)

    async def put(self, session: Session) -> None:
        await asyncio.sleep(0)
        await super().put(session)

    async def put_if_status(self, session: Session, expected: SessionStatus) -> bool:
        await asyncio.sleep(0)
        return await super().put_if_status(session, expected)

    async def delete(self, sender_id: str) -> None:
        await asyncio.sleep(0)
        await super().delete(sender_id)

    async def list_expiry_candidates(self) -> list[str]:
        await asyncio.sleep(0)
        return await super().list_expiry_candidates()


class FakeTimer:
    def __init__(self):
        self.armed: dict[str, int] = {}
        self.arm_calls = 0

    async def arm(self, sender_id: str, window_seconds: int) -> None:
        self.arm_calls += 1
        self.armed[sender_id] = window_seconds

    async def is_armed(self, sender_id: str) -> bool:
        return sender_id in self.armed

    async def disarm(self, sender_id: str) -> None:
        self.armed.pop(sender_id, None)

    def expire(self, sender_id: str) -> None:
        """Simulate the debounce window lapsing."""
        self.armed.pop(sender_id, None)


class FakeInbound:
    def __init__(self):
        self.seen: set[tuple[str, str]] = set()

    async def seen_or_mark(self, provider: str, message_id: str, sender_id: str) -> bool:
        key = (provider, message_id)
        if key in self.seen:
            return True
        self.seen.add(key)
        return False


class FakeMediaIntake:
    """Temp assets live in ``stored``; permanent ones in ``permanent``."""

    def __init__(self):
        self.stored: dict[str, list[str]] = {}
        self.permanent: list[str] = []
        self.deleted: list[str] = []
        self.fail_ingest = False
        self.fail_delete: Optional[Exception] = None
        self._seq = 0

    async def ingest(self, provider_media_id: str, sender_id: str) -> MediaRef:
        if self.fail_ingest:
            raise MediaIntakeError("download failed", retryable=False)
        self._seq += 1
        key = f"intake_temp/{sender_id}/{self._seq}.jpg"
        self.stored.setdefault(sender_id, []).append(key)
        return MediaRef(storage_id=key, url=f"https://cdn.test/{key}")

    async def delete(self, storage_ids: Sequence[str]) -> None:
        if self.fail_delete is not None:
            raise self.fail_delete
        for key in storage_ids:
            self.deleted.append(key)
            for keys in self.stored.values():
                if key in keys:
                    keys.remove(key)

    async def delete_for_sender(self, sender_id: str) -> None:
        if self.fail_delete is not None:
            raise self.fail_delete
        self.deleted.extend(self.stored.pop(sender_id, []))

    async def move_to_permanent(
        self, items: Sequence[MediaRef], owner_ref: str, listing_id: str
    ) -> list[MediaRef]:
        moved = []
        for item in items:
            name = item.storage_id.rsplit("/", 1)[-1]
            key = f"listings/{owner_ref}/{listing_id}/{name}"
            self.permanent.append(key)
            moved.append(MediaRef(storage_id=key, url=f"https://cdn.test/{key}"))
            for keys in self.stored.values():
                if item.storage_id in keys:
                    keys.remove(item.storage_id)
        return moved

    def temp_count(self, sender_id: str) -> int:
        return len(self.stored.get(sender_id, []))


class RecordingNotifier:
    def __init__(self):
        self.texts: list[tuple[str, str]] = []
        self.confirmations: list[tuple[str, str, Optional[str]]] = []

    async def send_text(self, sender_id: str, text: str) -> None:
        self.texts.append((sender_id, text))

    async def send_confirmation(
        self, sender_id: str, body: str, image_url: Optional[str] = None
    ) -> None:
        self.confirmations.append((sender_id, body, image_url))

    @property
    def last_text(self) -> Optional[str]:
        return self.texts[-1][1] if self.texts else None


def camry(**overrides) -> ExtractionResult:
    fields = dict(
        make="Toyota",
        model="Camry",
        year=2015,
        price=5_000_000,
        condition="Foreign Used",
        transmission="Automatic",
        primary_media_index=1,
        valid=True,
    )
    fields.update(overrides)
    return ExtractionResult(**fields)


class FakeExtractor:
    def __init__(self, result: Optional[ExtractionResult] = None):
        self.result = result if result is not None else camry()
        self.error: Optional[Exception] = None
        self.calls: list[tuple[str, int]] = []

    async def extract(self, text: str, media: Sequence[MediaRef]) -> ExtractionResult:
        self.calls.append((text, len(media)))
        if self.error is not None:
            raise self.error
        return ExtractionResult.from_dict(self.result.to_dict())


class FakeIdentityResolver:
    def __init__(self, known: Optional[dict[str, str]] = None):
        self.known = known if known is not None else {SENDER: "dealer-1"}

    async def resolve(self, sender_id: str) -> Optional[str]:
        return self.known.get(sender_id)


class FakeSink:
    def __init__(self):
        self.records: list[dict] = []
        self.error: Optional[Exception] = None

    async def persist(self, session, owner_ref, listing_id, media) -> str:
        if self.error is not None:
            raise self.error
        self.records.append(
            {
                "owner_ref": owner_ref,
                "listing_id": listing_id,
                "media": list(media),
                "extracted": session.extracted,
            }
        )
        return listing_id


class Bot:
    """The intake core wired to in-memory fakes."""

    def __init__(self, *, min_media: int = 5, max_media: int = 12, store_cls=InMemorySessionStore):
        self.timer = FakeTimer()
        self.sessions = store_cls(markers=self.timer.armed)
        self.inbound = FakeInbound()
        self.media = FakeMediaIntake()
        self.notifier = RecordingNotifier()
        self.extractor = FakeExtractor()
        self.identities = FakeIdentityResolver()
        self.sink = FakeSink()

        self.state_machine = SessionStateMachine(
            sessions=self.sessions, timer=self.timer, debounce_window_seconds=60
        )
        self.orchestrator = PipelineOrchestrator(
            sessions=self.sessions,
            state_machine=self.state_machine,
            media=self.media,
            extractor=self.extractor,
            notifier=self.notifier,
            identities=self.identities,
            sink=self.sink,
            min_media_items=min_media,
            max_media_items=max_media,
        )
        self.intake = IntakeService(
            state_machine=self.state_machine,
            orchestrator=self.orchestrator,
            media=self.media,
            notifier=self.notifier,
            inbound=self.inbound,
            min_media_items=min_media,
            max_media_items=max_media,
        )
        self.scanner = ExpiryScanner(
            sessions=self.sessions,
            orchestrator=self.orchestrator,
            interval_seconds=0.01,
            stall_after_seconds=300,
        )

    async def send_photos(self, count: int, sender_id: str = SENDER) -> None:
        for i in range(count):
            await self.intake.process_media(sender_id, f"media-{i}")

    async def lapse(self, sender_id: str = SENDER):
        self.timer.expire(sender_id)
        return await self.scanner.run_once()

    async def session(self, sender_id: str = SENDER) -> Optional[Session]:
        return await self.sessions.get(sender_id)


@pytest.fixture
def bot():
    return Bot()


@pytest.fixture
def sender_id():
    return SENDER


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset()
    yield
