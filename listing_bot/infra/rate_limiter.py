# listing_bot/infra/rate_limiter.py
"""
Per-sender inbound rate limit for the webhook.

State lives in process memory, so with N replicas the effective limit is
N x ``max_requests``. Good enough to stop one runaway chat from flooding
media intake; not a quota system.
"""
from __future__ import annotations

import time
from collections import deque
from threading import Lock
from typing import Callable, Optional

from listing_bot.infra.logging_config import get_logger, mask_sender

logger = get_logger(__name__)


class InMemoryRateLimiter:
    """Sliding window: at most ``max_requests`` events per ``window_seconds`` per key."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: int = 60,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = Lock()

    def is_allowed(self, key: str) -> tuple[bool, Optional[int]]:
        """Returns ``(allowed, retry_after_seconds)``; the event is counted only when allowed."""
        now = self._clock()

        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= now - self.window_seconds:
                hits.popleft()

            if len(hits) >= self.max_requests:
                retry_after = int(hits[0] + self.window_seconds - now) + 1
                logger.warning(
                    f"Rate limit exceeded: sender={mask_sender(key)}, "
                    f"limit={self.max_requests}/{self.window_seconds}s, retry_after={retry_after}s"
                )
                return False, retry_after

            hits.append(now)
            return True, None

    def cleanup(self, max_age_seconds: int = 3600) -> int:
        """Forget senders idle for longer than ``max_age_seconds``. Returns keys removed."""
        cutoff = self._clock() - max_age_seconds

        with self._lock:
            idle = [key for key, hits in self._hits.items() if not hits or hits[-1] < cutoff]
            for key in idle:
                del self._hits[key]

        if idle:
            logger.info(f"Rate limiter cleanup: forgot {len(idle)} idle senders")
        return len(idle)
