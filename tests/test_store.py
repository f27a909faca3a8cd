"""Unit tests for the full-object stores."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import MagicMock

import httpx
import pytest
from botocore.exceptions import ClientError
from range_overlay import MemoryStore, RangeSettings, S3Store
from range_overlay.store import StoreHandle

URL = "https://origin.test/media/clip.mp4?v=2"


def client_error(code: str, operation: str) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": code},
            "ResponseMetadata": {"HTTPStatusCode": 404 if code == "404" else 403},
        },
        operation,
    )


@pytest.fixture
def s3_store() -> S3Store:
    settings = RangeSettings(
        store_endpoint="http://127.0.0.1:9000",
        store_bucket="ranges",
        store_bucket_location="eu-central-1",
    )
    store = S3Store(settings)
    store._client = MagicMock()
    return store


class TestS3Store:
    """Test S3Store against a mocked boto3 client."""

    def test_object_key(self):
        """Test that resource URLs map to host-prefixed object keys."""
        assert S3Store.object_key(URL) == "origin.test/media/clip.mp4?v=2"
        assert S3Store.object_key("https://origin.test/a.bin") == "origin.test/a.bin"

    @pytest.mark.anyio
    @pytest.mark.parametrize("code", ["404", "NoSuchKey", "NoSuchBucket"])
    async def test_lookup_miss(self, s3_store: S3Store, code: str):
        """Test that a missing object is reported as None."""
        s3_store._client.get_object.side_effect = client_error(code, "GetObject")

        assert await s3_store.lookup(URL) is None
        s3_store._client.get_object.assert_called_once_with(
            Bucket="ranges", Key="origin.test/media/clip.mp4?v=2"
        )

    @pytest.mark.anyio
    async def test_lookup_error_propagates(self, s3_store: S3Store):
        """Test that errors other than a miss are raised to the caller."""
        s3_store._client.get_object.side_effect = client_error(
            "AccessDenied", "GetObject"
        )

        with pytest.raises(ClientError):
            await s3_store.lookup(URL)

    @pytest.mark.anyio
    async def test_lookup_hit(self, s3_store: S3Store):
        """Test that stored objects expose origin validators and a chunked body."""
        body = MagicMock()
        body.read.side_effect = [b"abc", b"def", b""]
        s3_store._client.get_object.return_value = {
            "Body": body,
            "ContentLength": 6,
            "ContentType": "video/mp4",
            "ETag": '"s3-computed"',
            "LastModified": datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC),
            "Metadata": {"origin-etag": '"v1"'},
        }

        stored = await s3_store.lookup(URL)

        assert stored is not None
        assert stored.headers["content-length"] == "6"
        assert stored.headers["content-type"] == "video/mp4"
        assert stored.headers["etag"] == '"v1"'
        assert stored.headers["last-modified"] == "Tue, 02 Jan 2024 03:04:05 GMT"
        assert stored.body is not None
        assert b"".join([chunk async for chunk in stored.body]) == b"abcdef"
        body.close.assert_called_once()

    @pytest.mark.anyio
    async def test_closing_unread_body(self, s3_store: S3Store):
        body = MagicMock()
        s3_store._client.get_object.return_value = {"Body": body, "ContentLength": 6}

        stored = await s3_store.lookup(URL)
        assert stored is not None
        assert stored.body is not None
        first = await stored.body.__anext__()
        await stored.aclose()

        assert first is body.read.return_value
        body.close.assert_called_once()

    @pytest.mark.anyio
    async def test_discarding_unstarted_body(self, s3_store: S3Store):
        body = MagicMock()
        s3_store._client.get_object.return_value = {"Body": body, "ContentLength": 6}

        stored = await s3_store.lookup(URL)
        assert stored is not None
        stored.discard()
        stored.discard()

        body.read.assert_not_called()
        body.close.assert_called_once()

    @pytest.mark.anyio
    async def test_put_creates_bucket_once(self, s3_store: S3Store):
        """Test that put creates a missing bucket and records origin validators."""
        s3_store._client.head_bucket.side_effect = client_error("404", "HeadBucket")
        response = httpx.Response(
            200,
            content=b"payload",
            headers={
                "content-type": "video/mp4",
                "etag": '"v1"',
                "last-modified": "Wed, 21 Oct 2015 07:28:00 GMT",
                "cache-control": "max-age=60",
            },
        )

        await s3_store.put(URL, response)
        await s3_store.put(URL, response)

        s3_store._client.create_bucket.assert_called_once_with(
            Bucket="ranges",
            CreateBucketConfiguration={"LocationConstraint": "eu-central-1"},
        )
        assert s3_store._client.head_bucket.call_count == 1
        assert s3_store._client.put_object.call_count == 2
        kwargs = s3_store._client.put_object.call_args.kwargs
        assert kwargs["Bucket"] == "ranges"
        assert kwargs["Key"] == "origin.test/media/clip.mp4?v=2"
        assert kwargs["Body"] == b"payload"
        assert kwargs["ContentType"] == "video/mp4"
        assert kwargs["CacheControl"] == "max-age=60"
        assert kwargs["Metadata"] == {
            "origin-etag": '"v1"',
            "origin-last-modified": "Wed, 21 Oct 2015 07:28:00 GMT",
        }

    @pytest.mark.anyio
    async def test_put_existing_bucket(self, s3_store: S3Store):
        response = httpx.Response(200, content=b"payload")

        await s3_store.put(URL, response)

        s3_store._client.create_bucket.assert_not_called()
        kwargs = s3_store._client.put_object.call_args.kwargs
        assert kwargs["Metadata"] == {}
        assert "ContentType" not in kwargs

    @pytest.mark.anyio
    async def test_put_bucket_check_error_propagates(self, s3_store: S3Store):
        s3_store._client.head_bucket.side_effect = client_error(
            "AccessDenied", "HeadBucket"
        )

        with pytest.raises(ClientError):
            await s3_store.put(URL, httpx.Response(200, content=b"payload"))

        s3_store._client.put_object.assert_not_called()


class TestMemoryStore:
    @pytest.mark.anyio
    async def test_lookup_chunks(self):
        store = MemoryStore(chunk_size=4)
        store.add(URL, b"0123456789", content_type="text/plain")

        stored = await store.lookup(URL)

        assert stored is not None
        assert stored.headers["content-length"] == "10"
        assert stored.headers["content-type"] == "text/plain"
        assert stored.body is not None
        assert [chunk async for chunk in stored.body] == [b"0123", b"4567", b"89"]

    @pytest.mark.anyio
    async def test_lookup_miss_and_remove(self):
        store = MemoryStore()
        store.add(URL, b"data")
        store.remove(URL)

        assert await store.lookup(URL) is None
        assert URL not in store

    @pytest.mark.anyio
    async def test_put_keeps_validators(self):
        store = MemoryStore()
        response = httpx.Response(
            200,
            content=b"data",
            headers={"etag": '"v1"', "x-request-id": "abc", "content-type": "image/png"},
        )

        await store.put(URL, response)
        stored = await store.lookup(URL)

        assert stored is not None
        assert stored.headers["etag"] == '"v1"'
        assert stored.headers["content-type"] == "image/png"
        assert "x-request-id" not in stored.headers
        await stored.aclose()


def test_store_handle_rebuilds_after_invalidate():
    built: list[MemoryStore] = []

    def factory() -> MemoryStore:
        store = MemoryStore()
        built.append(store)
        return store

    handle = StoreHandle(factory)
    assert not handle.valid
    first = handle.get()
    assert handle.get() is first

    handle.invalidate()

    assert not handle.valid
    assert handle.get() is not first
    assert len(built) == 2
