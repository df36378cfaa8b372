# listing_bot/infra/http_client.py
"""
aiohttp session factories.

Session profiles
~~~~~~~~~~~~~~~~
- **graph** – Graph API calls: sends, media id lookups (total=25 s, connect=5 s, pool limit=20)
- **media** – media binary downloads (total=60 s, connect=15 s, pool limit=10)

Sessions are built once in the application lifespan (``HttpSessions.open``)
and handed to the components that need them; ``close()`` runs on shutdown.
"""
from __future__ import annotations

from dataclasses import dataclass

import aiohttp

from listing_bot.infra.logging_config import get_logger

logger = get_logger(__name__)

_PROFILES: dict[str, tuple[aiohttp.ClientTimeout, int]] = {
    "graph": (aiohttp.ClientTimeout(total=25, connect=5), 20),
    "media": (aiohttp.ClientTimeout(total=60, connect=15), 10),
}


def create_session(profile: str) -> aiohttp.ClientSession:
    """New ClientSession for a named profile. Must be called inside a running loop."""
    timeout, limit = _PROFILES[profile]
    session = aiohttp.ClientSession(
        timeout=timeout,
        connector=aiohttp.TCPConnector(
            keepalive_timeout=30,
            limit=limit,
            enable_cleanup_closed=True,
        ),
    )
    logger.debug("HTTP session '%s' created (limit=%d)", profile, limit)
    return session


@dataclass
class HttpSessions:
    graph: aiohttp.ClientSession
    media: aiohttp.ClientSession

    @classmethod
    def open(cls) -> "HttpSessions":
        return cls(graph=create_session("graph"), media=create_session("media"))

    async def close(self) -> None:
        for name, session in (("graph", self.graph), ("media", self.media)):
            if not session.closed:
                await session.close()
                logger.debug("HTTP session '%s' closed", name)
