# listing_bot/infra/media_intake.py
"""
Media intake: moves inbound WhatsApp photos into temporary S3 storage and,
on finalization, into the listing's permanent location.

Meta media is downloaded with the Graph API two-step flow:
    GET /vXX.X/{media-id}  ->  {"url": "https://..."}
    GET {url}              ->  binary (same Bearer token)
"""
from __future__ import annotations

import asyncio
import uuid
from typing import Optional, Sequence

import aiohttp
from botocore.exceptions import BotoCoreError, ClientError

from listing_bot.core.domain import MediaRef
from listing_bot.core.errors import MediaIntakeError
from listing_bot.core.ports import MediaIntake
from listing_bot.infra.logging_config import get_logger, mask_sender
from listing_bot.infra.metrics import inc_counter
from listing_bot.infra.s3_storage import S3Storage

logger = get_logger(__name__)

_EXT_BY_CONTENT_TYPE = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/heic": "heic",
}


def ext_for(content_type: Optional[str]) -> str:
    base = (content_type or "").split(";")[0].strip().lower()
    return _EXT_BY_CONTENT_TYPE.get(base, "jpg")


class MetaMediaFetcher:
    """
    Downloads inbound media from the Meta Graph API.

    Raises MediaIntakeError with ``retryable`` set from the HTTP status.
    """

    def __init__(
        self,
        graph_session: aiohttp.ClientSession,
        media_session: aiohttp.ClientSession,
        access_token: str,
        graph_api_version: str = "v21.0",
        *,
        max_bytes: int = 10 * 1024 * 1024,
        max_retries: int = 3,
    ):
        self._graph_session = graph_session
        self._media_session = media_session
        self._access_token = access_token
        self._base_url = f"https://graph.facebook.com/{graph_api_version}"
        self._max_bytes = max_bytes
        self._max_retries = max_retries

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    async def _resolve_media_url(self, media_id: str) -> str:
        session = self._graph_session

        async with session.get(
            f"{self._base_url}/{media_id}",
            headers=self._auth_headers(),
            timeout=aiohttp.ClientTimeout(total=10, connect=5),
        ) as resp:
            if resp.status != 200:
                raise MediaIntakeError(
                    f"Graph API returned {resp.status} resolving media id {media_id[:20]}",
                    retryable=resp.status >= 500 or resp.status == 429,
                )

            data = await resp.json()
            download_url = data.get("url")
            if not download_url:
                raise MediaIntakeError(
                    f"Graph API response missing 'url' for media id {media_id[:20]}",
                    retryable=False,
                )
            return download_url

    async def _download(self, download_url: str) -> tuple[bytes, Optional[str]]:
        session = self._media_session

        async with session.get(download_url, headers=self._auth_headers()) as resp:
            if resp.status != 200:
                raise MediaIntakeError(
                    f"Media download returned {resp.status}",
                    retryable=resp.status >= 500 or resp.status == 429,
                )

            data = await resp.read()
            if not data:
                raise MediaIntakeError("Media download returned empty body")
            if len(data) > self._max_bytes:
                raise MediaIntakeError(
                    f"Media too large: {len(data)} bytes (limit {self._max_bytes})",
                    retryable=False,
                )

            cl_header = resp.headers.get("Content-Length")
            if cl_header and len(data) < int(cl_header):
                raise MediaIntakeError(f"Incomplete download: got {len(data)} of {cl_header} bytes")

            return data, resp.headers.get("Content-Type")

    async def fetch(self, media_id: str) -> tuple[bytes, Optional[str]]:
        """Returns ``(data, content_type)``."""
        last_error: Optional[Exception] = None

        for attempt in range(self._max_retries):
            try:
                download_url = await self._resolve_media_url(media_id)
                data, content_type = await self._download(download_url)
                logger.info(f"Meta media fetched: {len(data)} bytes, content_type={content_type}")
                return data, content_type

            except MediaIntakeError as e:
                if not e.retryable or attempt == self._max_retries - 1:
                    raise
                last_error = e
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = e
                if attempt == self._max_retries - 1:
                    raise MediaIntakeError(
                        f"Meta media fetch failed after {self._max_retries} attempts: {e}"
                    ) from e

            wait = (attempt + 1) * 2
            logger.warning(
                f"Meta media fetch failed (attempt {attempt + 1}/{self._max_retries}), "
                f"retrying in {wait}s: {last_error}"
            )
            await asyncio.sleep(wait)

        raise MediaIntakeError(f"Meta media fetch failed after {self._max_retries} attempts: {last_error}")


class S3MediaIntake(MediaIntake):
    """
    MediaIntake over S3Storage; temp assets are grouped by sender prefix.

    A photo that cannot be moved on finalization stays at its temporary key
    and the listing references it there. Such keys are remembered and skipped
    by later deletes of the sender's temporary prefix.
    """

    def __init__(
        self,
        storage: S3Storage,
        fetcher: MetaMediaFetcher,
        *,
        move_attempts: int = 3,
        retry_delay: float = 0.5,
    ):
        self.storage = storage
        self.fetcher = fetcher
        self.move_attempts = max(1, move_attempts)
        self.retry_delay = retry_delay
        self.retained: set[str] = set()

    async def ingest(self, provider_media_id: str, sender_id: str) -> MediaRef:
        data, content_type = await self.fetcher.fetch(provider_media_id)

        key = self.storage.temp_key(sender_id, f"{uuid.uuid4().hex}.{ext_for(content_type)}")
        try:
            url = await self.storage.upload(key, data, content_type or "image/jpeg")
        except (ClientError, BotoCoreError) as e:
            raise MediaIntakeError(f"Temporary upload failed: {e}") from e

        logger.info(
            f"Media stored: sender={mask_sender(sender_id)}, key={key}",
            extra={"sender_id": sender_id},
        )
        return MediaRef(storage_id=key, url=url)

    async def delete(self, storage_ids: Sequence[str]) -> None:
        keys = [k for k in storage_ids if k not in self.retained]
        if keys:
            await self.storage.delete_keys(keys)

    async def delete_for_sender(self, sender_id: str) -> None:
        prefix = self.storage.sender_prefix(sender_id)
        keys = [k for k in await self.storage.list_keys(prefix) if k not in self.retained]
        if keys:
            deleted = await self.storage.delete_keys(keys)
            logger.info(f"Deleted {deleted} temporary objects under prefix={prefix}")

    async def move_to_permanent(
        self, items: Sequence[MediaRef], owner_ref: str, listing_id: str
    ) -> list[MediaRef]:
        """
        Relocate each item under the listing's permanent prefix.

        Each move is retried; an item that still fails keeps its temporary
        reference, so the listing is still created with every photo.
        """
        moved: list[MediaRef] = []

        for item in items:
            name = item.storage_id.rsplit("/", 1)[-1]
            dst_key = self.storage.permanent_key(owner_ref, listing_id, name)
            url = await self._move_with_retry(item.storage_id, dst_key, listing_id)
            if url is None:
                self.retained.add(item.storage_id)
                moved.append(item)
            else:
                moved.append(MediaRef(storage_id=dst_key, url=url))

        return moved

    async def _move_with_retry(self, src_key: str, dst_key: str, listing_id: str) -> Optional[str]:
        for attempt in range(1, self.move_attempts + 1):
            try:
                return await self.storage.move(src_key, dst_key)
            except (ClientError, BotoCoreError) as e:
                if attempt == self.move_attempts:
                    logger.warning(
                        f"Media move failed after {attempt} attempts, keeping temporary "
                        f"reference: key={src_key}",
                        extra={"listing_id": listing_id},
                        exc_info=True,
                    )
                    inc_counter("media_move_failures_total")
                    return None
                logger.info(f"Media move attempt {attempt} failed, retrying: key={src_key}, error={e}")
                await asyncio.sleep(self.retry_delay * attempt)
        return None
