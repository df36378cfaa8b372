# listing_bot/infra/s3_storage.py
"""
S3-compatible object storage for listing photos (AWS S3, Cloudflare R2,
MinIO).

Key layout:
    {temp_prefix}/{sender}/{uuid}.{ext}               in-flight submission
    {permanent_prefix}/{owner}/{listing_id}/{name}    finalized listing

The per-sender temp prefix is what ties temporary assets to a submission:
discarding a session deletes everything under it.

boto3 is synchronous; every call is pushed to a worker thread.
"""
from __future__ import annotations

import asyncio
import re
from typing import Iterable, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from listing_bot.config import Settings
from listing_bot.infra.logging_config import get_logger
from listing_bot.infra.metrics import inc_counter

logger = get_logger(__name__)

_DELETE_BATCH = 1000  # DeleteObjects limit
_UNSAFE_KEY_CHARS = re.compile(r"[^0-9A-Za-z_-]")


def safe_key_part(value: str) -> str:
    """Strip characters that do not belong in an object key segment."""
    cleaned = _UNSAFE_KEY_CHARS.sub("", value or "")
    return cleaned or "unknown"


class S3Storage:

    def __init__(
        self,
        client,
        *,
        bucket: str,
        endpoint_url: Optional[str] = None,
        public_url: Optional[str] = None,
        temp_prefix: str = "intake_temp",
        permanent_prefix: str = "listings",
    ):
        self._client = client
        self._bucket = bucket
        self._endpoint_url = endpoint_url
        self._public_url = public_url
        self.temp_prefix = temp_prefix.strip("/")
        self.permanent_prefix = permanent_prefix.strip("/")

    @classmethod
    def from_settings(cls, s: Settings) -> "S3Storage":
        if not s.s3_enabled:
            raise RuntimeError("S3 storage not configured")

        client = boto3.client(
            "s3",
            endpoint_url=s.s3_endpoint_url,
            aws_access_key_id=s.s3_access_key,
            aws_secret_access_key=s.s3_secret_key,
            region_name=s.s3_region,
            config=Config(
                signature_version="s3v4",
                retries={"max_attempts": 3, "mode": "adaptive"},
                s3={"addressing_style": "path" if s.s3_force_path_style else "virtual"},
            ),
        )
        logger.info(f"S3 storage initialized: bucket={s.s3_bucket_name}, endpoint={s.s3_endpoint_url}")

        return cls(
            client,
            bucket=s.s3_bucket_name,
            endpoint_url=s.s3_endpoint_url,
            public_url=s.s3_public_url,
            temp_prefix=s.s3_temp_prefix,
            permanent_prefix=s.s3_permanent_prefix,
        )

    # ------------------------------------------------------------------
    # Keys and URLs
    # ------------------------------------------------------------------

    def sender_prefix(self, sender_id: str) -> str:
        return f"{self.temp_prefix}/{safe_key_part(sender_id)}/"

    def temp_key(self, sender_id: str, name: str) -> str:
        return f"{self.sender_prefix(sender_id)}{name}"

    def permanent_key(self, owner_ref: str, listing_id: str, name: str) -> str:
        return f"{self.permanent_prefix}/{safe_key_part(owner_ref)}/{safe_key_part(listing_id)}/{name}"

    def public_url(self, key: str) -> str:
        """
        URL stored with the listing and shown in prompts.

        Without ``s3_public_url`` this falls back to the endpoint URL, which
        only works for buckets readable from outside.
        """
        if self._public_url:
            return f"{self._public_url.rstrip('/')}/{key}"
        return f"{(self._endpoint_url or '').rstrip('/')}/{self._bucket}/{key}"

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def upload(self, key: str, data: bytes, content_type: str = "image/jpeg") -> str:
        """Store *data* under *key*; returns its public URL."""
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except ClientError as e:
            logger.error(f"S3 upload failed: key={key}, error={e}", exc_info=True)
            inc_counter("s3_uploads_failed")
            raise

        logger.debug(f"Object uploaded: key={key}, size={len(data)}")
        inc_counter("s3_uploads_success")
        return self.public_url(key)

    async def move(self, src_key: str, dst_key: str) -> str:
        """Copy *src_key* to *dst_key*, then delete the source. Returns the new URL."""
        await asyncio.to_thread(
            self._client.copy_object,
            Bucket=self._bucket,
            Key=dst_key,
            CopySource={"Bucket": self._bucket, "Key": src_key},
        )
        await asyncio.to_thread(self._client.delete_object, Bucket=self._bucket, Key=src_key)
        inc_counter("s3_moves_success")
        return self.public_url(dst_key)

    async def delete_keys(self, keys: Iterable[str]) -> int:
        """Bulk delete; missing keys count as deleted. Returns the number deleted."""
        keys = [k for k in keys if k]
        deleted = 0

        for start in range(0, len(keys), _DELETE_BATCH):
            batch = keys[start:start + _DELETE_BATCH]
            response = await asyncio.to_thread(
                self._client.delete_objects,
                Bucket=self._bucket,
                Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
            )
            errors = response.get("Errors") or []
            if errors:
                logger.warning(f"S3 bulk delete reported {len(errors)} errors, first={errors[0]}")
                inc_counter("s3_delete_errors", len(errors))
            deleted += len(batch) - len(errors)

        return deleted

    async def list_keys(self, prefix: str) -> list[str]:
        paginator = self._client.get_paginator("list_objects_v2")

        def _collect() -> list[str]:
            keys: list[str] = []
            for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents") or [])
            return keys

        return await asyncio.to_thread(_collect)
