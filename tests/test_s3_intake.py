# tests/test_s3_intake.py
"""Tests for S3 storage and media intake with a mocked boto3 client"""
from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError

from listing_bot.core.domain import MediaRef
from listing_bot.core.errors import MediaIntakeError
from listing_bot.infra.media_intake import S3MediaIntake, ext_for
from listing_bot.infra.s3_storage import S3Storage, safe_key_part


def client_error(op: str = "PutObject") -> ClientError:
    return ClientError({"Error": {"Code": "500", "Message": "boom"}}, op)


def make_storage(client=None) -> S3Storage:
    return S3Storage(
        client or MagicMock(),
        bucket="photos",
        endpoint_url="https://s3.example.com",
        public_url="https://cdn.example.com/",
        temp_prefix="intake_temp",
        permanent_prefix="listings",
    )


def make_fetcher(data: bytes = b"\xff\xd8jpeg", content_type: str = "image/jpeg") -> MagicMock:
    fetcher = MagicMock()
    fetcher.fetch = AsyncMock(return_value=(data, content_type))
    return fetcher


class TestKeys:
    def test_key_layout(self):
        storage = make_storage()
        assert storage.temp_key("+2348012345678", "a.jpg") == "intake_temp/2348012345678/a.jpg"
        assert storage.permanent_key("dealer-1", "lst-1", "a.jpg") == "listings/dealer-1/lst-1/a.jpg"
        assert storage.public_url("listings/x.jpg") == "https://cdn.example.com/listings/x.jpg"

    def test_public_url_falls_back_to_endpoint(self):
        storage = S3Storage(MagicMock(), bucket="photos", endpoint_url="https://s3.example.com")
        assert storage.public_url("k.jpg") == "https://s3.example.com/photos/k.jpg"

    def test_safe_key_part(self):
        assert safe_key_part("../etc/passwd") == "etcpasswd"
        assert safe_key_part("") == "unknown"

    def test_ext_for(self):
        assert ext_for("image/png") == "png"
        assert ext_for("image/jpeg; charset=binary") == "jpg"
        assert ext_for(None) == "jpg"


class TestS3MediaIntake:
    @pytest.mark.asyncio
    async def test_ingest_uploads_under_sender_prefix(self):
        client = MagicMock()
        intake = S3MediaIntake(make_storage(client), make_fetcher(content_type="image/png"))

        ref = await intake.ingest("MEDIA1", "2348012345678")

        assert ref.storage_id.startswith("intake_temp/2348012345678/")
        assert ref.storage_id.endswith(".png")
        assert ref.url == f"https://cdn.example.com/{ref.storage_id}"
        kwargs = client.put_object.call_args.kwargs
        assert kwargs["Bucket"] == "photos"
        assert kwargs["ContentType"] == "image/png"

    @pytest.mark.asyncio
    async def test_upload_failure_becomes_intake_error(self):
        client = MagicMock()
        client.put_object.side_effect = client_error()
        intake = S3MediaIntake(make_storage(client), make_fetcher())

        with pytest.raises(MediaIntakeError):
            await intake.ingest("MEDIA1", "2348012345678")

    @pytest.mark.asyncio
    async def test_delete_for_sender_removes_prefix(self):
        client = MagicMock()
        paginator = MagicMock()
        paginator.paginate.return_value = [
            {"Contents": [{"Key": "intake_temp/234/a.jpg"}, {"Key": "intake_temp/234/b.jpg"}]}
        ]
        client.get_paginator.return_value = paginator
        client.delete_objects.return_value = {}
        intake = S3MediaIntake(make_storage(client), make_fetcher())

        await intake.delete_for_sender("234")

        assert paginator.paginate.call_args.kwargs["Prefix"] == "intake_temp/234/"
        objects = client.delete_objects.call_args.kwargs["Delete"]["Objects"]
        assert objects == [{"Key": "intake_temp/234/a.jpg"}, {"Key": "intake_temp/234/b.jpg"}]

    @pytest.mark.asyncio
    async def test_delete_batches(self):
        client = MagicMock()
        client.delete_objects.return_value = {}
        storage = make_storage(client)

        deleted = await storage.delete_keys([f"k{i}" for i in range(1500)])

        assert deleted == 1500
        assert client.delete_objects.call_count == 2

    @pytest.mark.asyncio
    async def test_move_to_permanent(self):
        client = MagicMock()
        intake = S3MediaIntake(make_storage(client), make_fetcher())
        items = [MediaRef("intake_temp/234/a.jpg", "u1"), MediaRef("intake_temp/234/b.jpg", "u2")]

        moved = await intake.move_to_permanent(items, "dealer-1", "lst-1")

        assert [m.storage_id for m in moved] == ["listings/dealer-1/lst-1/a.jpg", "listings/dealer-1/lst-1/b.jpg"]
        assert moved[0].url == "https://cdn.example.com/listings/dealer-1/lst-1/a.jpg"
        assert client.copy_object.call_count == 2
        assert client.delete_object.call_count == 2

    @pytest.mark.asyncio
    async def test_transient_move_failure_is_retried(self):
        client = MagicMock()
        client.copy_object.side_effect = [client_error("CopyObject"), None]
        intake = S3MediaIntake(make_storage(client), make_fetcher(), retry_delay=0)
        items = [MediaRef("intake_temp/234/a.jpg", "u1")]

        moved = await intake.move_to_permanent(items, "dealer-1", "lst-1")

        assert moved[0].storage_id == "listings/dealer-1/lst-1/a.jpg"
        assert client.copy_object.call_count == 2
        assert intake.retained == set()

    @pytest.mark.asyncio
    async def test_failed_move_keeps_temporary_reference(self):
        client = MagicMock()
        client.copy_object.side_effect = [client_error("CopyObject")] * 3 + [None]
        intake = S3MediaIntake(make_storage(client), make_fetcher(), move_attempts=3, retry_delay=0)
        items = [MediaRef("intake_temp/234/a.jpg", "u1"), MediaRef("intake_temp/234/b.jpg", "u2")]

        moved = await intake.move_to_permanent(items, "dealer-1", "lst-1")

        assert moved[0] == items[0]
        assert moved[1].storage_id == "listings/dealer-1/lst-1/b.jpg"
        assert intake.retained == {"intake_temp/234/a.jpg"}

    @pytest.mark.asyncio
    async def test_sender_cleanup_spares_photos_a_listing_still_uses(self):
        client = MagicMock()
        client.copy_object.side_effect = client_error("CopyObject")
        paginator = MagicMock()
        paginator.paginate.return_value = [
            {"Contents": [{"Key": "intake_temp/234/a.jpg"}, {"Key": "intake_temp/234/new.jpg"}]}
        ]
        client.get_paginator.return_value = paginator
        client.delete_objects.return_value = {}
        intake = S3MediaIntake(make_storage(client), make_fetcher(), move_attempts=2, retry_delay=0)

        await intake.move_to_permanent([MediaRef("intake_temp/234/a.jpg", "u1")], "dealer-1", "lst-1")
        await intake.delete_for_sender("234")
        await intake.delete(["intake_temp/234/a.jpg"])

        assert client.delete_objects.call_count == 1
        objects = client.delete_objects.call_args.kwargs["Delete"]["Objects"]
        assert objects == [{"Key": "intake_temp/234/new.jpg"}]
