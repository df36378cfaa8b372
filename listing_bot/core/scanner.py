# listing_bot/core/scanner.py
"""
Expiry scanner: finds senders whose debounce marker has lapsed and hands
them to the orchestrator.

The store has no expiry notifications, so this polls on a fixed interval.
Overlapping runs (same or another instance) are allowed: the orchestrator
claims each session with a conditional write, so a second trigger for the
same sender is a no-op.  Each run also reaps sessions stuck in EXTRACTING
after a worker died mid-pipeline.
"""
from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional

from listing_bot.core.domain import Outcome, SessionStatus
from listing_bot.core.orchestrator import PipelineOrchestrator
from listing_bot.core.ports import AsyncSessionStore
from listing_bot.infra.logging_config import get_logger, mask_sender
from listing_bot.infra.metrics import AppMetrics, inc_counter

logger = get_logger(__name__)


class ExpiryScanner:
    """
    Usage:
        scanner = ExpiryScanner(sessions=..., orchestrator=...)
        await scanner.start()
        ...
        await scanner.stop()
    """

    def __init__(
        self,
        *,
        sessions: AsyncSessionStore,
        orchestrator: PipelineOrchestrator,
        interval_seconds: float = 10.0,
        stall_after_seconds: Optional[float] = None,
        cleanup_every: int = 30,
        housekeeping: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self._sessions = sessions
        self._orchestrator = orchestrator
        self._interval = interval_seconds
        self._stall_after = stall_after_seconds
        self._task: asyncio.Task | None = None
        self._running = False
        self.last_run_at: float | None = None
        self._cleanup_every = max(1, cleanup_every)
        self._loops = 0
        self._housekeeping = housekeeping

    async def find_expired(self) -> list[str]:
        """Senders with a COLLECTING session holding media and no armed marker."""
        return await self._sessions.list_expiry_candidates()

    async def find_stalled(self) -> list[str]:
        """Senders whose session has sat in EXTRACTING past the stall threshold."""
        if not self._stall_after:
            return []
        return await self._sessions.list_stalled(SessionStatus.EXTRACTING, self._stall_after)

    async def run_once(self) -> dict:
        """One scan. Each sender is processed independently of the others."""
        expired = await self.find_expired()
        stalled = await self.find_stalled()

        results = await asyncio.gather(
            *(self._orchestrator.on_expiry(sender_id) for sender_id in expired),
            *(
                self._orchestrator.on_stalled_extraction(sender_id, self._stall_after)
                for sender_id in stalled
            ),
            return_exceptions=True,
        )

        processed = 0
        failed = 0
        for sender_id, result in zip(expired + stalled, results):
            if isinstance(result, BaseException):
                failed += 1
                logger.error(
                    f"Expiry processing error: sender={mask_sender(sender_id)}, "
                    f"error={result.__class__.__name__}: {result}",
                    exc_info=(type(result), result, result.__traceback__),
                )
            elif result.outcome is not Outcome.NOOP:
                processed += 1

        self.last_run_at = time.time()
        AppMetrics.scanner_run(processed)
        if expired or stalled:
            logger.info(
                f"Scan complete: expired={len(expired)}, stalled={len(stalled)}, "
                f"processed={processed}, failed={failed}"
            )

        return {"expired": len(expired), "stalled": len(stalled), "processed": processed, "failed": failed}

    async def cleanup(self) -> dict:
        """Purge sessions past their TTL and run any extra housekeeping."""
        purged = await self._sessions.cleanup_expired()
        if self._housekeeping is not None:
            await self._housekeeping()
        return {"purged_sessions": purged}

    async def start(self) -> None:
        """Start the polling loop as an asyncio task."""
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="expiry_scanner")
        self._task.add_done_callback(self._on_task_done)
        logger.info(f"Expiry scanner started: interval={self._interval}s")

    async def stop(self) -> None:
        """Stop polling and wait for the current scan to unwind."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Expiry scanner stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
                self._loops += 1
                if self._loops % self._cleanup_every == 0:
                    await self.cleanup()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Expiry scanner loop error: {exc}", exc_info=True)
                inc_counter("scanner_loop_errors")
            await asyncio.sleep(self._interval)

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        """Log unexpected scanner death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Expiry scanner task died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
