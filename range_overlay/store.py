from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import format_datetime
from functools import partial
from typing import TYPE_CHECKING, Any, Protocol
from urllib.parse import urlsplit

import anyio
import httpx
from anyio import to_thread
from anyio.lowlevel import checkpoint
from boto3.session import Session
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Mapping

    from .settings import RangeSettings

LOG = logging.getLogger("range_overlay.store")

READ_CHUNK_SIZE = 1024 * 64
_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}
_ORIGIN_ETAG = "origin-etag"
_ORIGIN_LAST_MODIFIED = "origin-last-modified"


async def _run_sync(func: Callable[..., Any], /, *args: Any) -> Any:
    return await to_thread.run_sync(func, *args)


@dataclass
class StoredObject:
    """A full object held by a store: its response headers and a forward byte stream."""

    headers: httpx.Headers
    body: AsyncIterator[bytes] | None
    on_discard: Callable[[], None] | None = None

    async def aclose(self) -> None:
        aclose = getattr(self.body, "aclose", None)
        if aclose is not None:
            await aclose()

    def discard(self) -> None:
        """Release the underlying reader of a body that will never be consumed.

        Unlike :meth:`aclose` this does not await, so it can run from a
        finalizer.
        """
        on_discard, self.on_discard = self.on_discard, None
        if on_discard is not None:
            on_discard()


class Store(Protocol):
    async def lookup(self, key: str) -> StoredObject | None: ...

    async def put(self, key: str, response: httpx.Response) -> None: ...


class StoreHandle:
    """Lazily built, shared store instance; dropped after an access error."""

    def __init__(self, factory: Callable[[], Store]):
        self._factory = factory
        self._store: Store | None = None

    @property
    def valid(self) -> bool:
        return self._store is not None

    def get(self) -> Store:
        if self._store is None:
            self._store = self._factory()
        return self._store

    def invalidate(self) -> None:
        if self._store is not None:
            LOG.debug("invalidating store handle %r", self._store)
        self._store = None


class MemoryStore:
    """Process-local store, mostly useful for tests and single-node setups."""

    def __init__(self, chunk_size: int = READ_CHUNK_SIZE):
        self.chunk_size = chunk_size
        self._objects: dict[str, tuple[dict[str, str], bytes]] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._objects

    def add(
        self,
        key: str,
        content: bytes,
        *,
        content_type: str | None = "application/octet-stream",
        headers: Mapping[str, str] | None = None,
    ) -> None:
        stored = dict(headers or {})
        if content_type is not None:
            stored.setdefault("Content-Type", content_type)
        stored["Content-Length"] = str(len(content))
        self._objects[key] = (stored, content)

    def remove(self, key: str) -> None:
        self._objects.pop(key, None)

    async def lookup(self, key: str) -> StoredObject | None:
        await checkpoint()
        entry = self._objects.get(key)
        if entry is None:
            return None
        headers, content = entry
        return StoredObject(headers=httpx.Headers(headers), body=self._iter(content))

    async def put(self, key: str, response: httpx.Response) -> None:
        content = await response.aread()
        headers = {
            name: value
            for name, value in response.headers.items()
            if name.lower()
            in {"content-type", "etag", "last-modified", "cache-control"}
        }
        self.add(key, content, content_type=None, headers=headers)

    async def _iter(self, content: bytes) -> AsyncIterator[bytes]:
        for offset in range(0, len(content), self.chunk_size):
            await checkpoint()
            yield content[offset : offset + self.chunk_size]


class S3Store:
    """Full objects kept in a bucket of an S3-compatible service.

    Resource URLs map to object keys as ``host/path[?query]``. The origin's
    ``ETag`` and ``Last-Modified`` are kept as object metadata, because S3
    computes its own ETag on upload.
    """

    def __init__(self, settings: RangeSettings):
        self._settings = settings
        self._client = self._build_client()
        self._bucket_ready = False

    def _build_client(self):
        session = Session(
            aws_access_key_id=self._settings.store_access_key,
            aws_secret_access_key=self._settings.store_secret_key,
            aws_session_token=self._settings.store_session_token,
            region_name=self._settings.store_region,
        )
        return session.client(
            "s3",
            endpoint_url=self._settings.store_endpoint,
            config=BotoConfig(
                signature_version="s3v4",
                retries={"max_attempts": 3},
                s3={"addressing_style": "path"},
            ),
        )

    @property
    def bucket(self) -> str:
        return self._settings.store_bucket

    @staticmethod
    def object_key(url: str) -> str:
        parts = urlsplit(url)
        key = f"{parts.netloc}{parts.path}".lstrip("/")
        if parts.query:
            key = f"{key}?{parts.query}"
        return key

    async def lookup(self, key: str) -> StoredObject | None:
        object_key = self.object_key(key)
        try:
            result = await _run_sync(
                partial(self._client.get_object, Bucket=self.bucket, Key=object_key)
            )
        except ClientError as error:
            code = error.response.get("Error", {}).get("Code")
            if code in _NOT_FOUND_CODES:
                LOG.debug("store miss for s3://%s/%s", self.bucket, object_key)
                return None
            raise

        headers = httpx.Headers(self._object_headers(result))
        streaming_body = result.get("Body")
        if streaming_body is None:
            return StoredObject(headers=headers, body=None)

        async def iterator() -> AsyncIterator[bytes]:
            try:
                while True:
                    chunk = await to_thread.run_sync(
                        streaming_body.read, READ_CHUNK_SIZE, abandon_on_cancel=True
                    )
                    if not chunk:
                        break
                    yield chunk
            finally:
                # closing the body also unblocks a read abandoned by cancellation
                with anyio.CancelScope(shield=True):
                    await _run_sync(streaming_body.close)

        return StoredObject(
            headers=headers, body=iterator(), on_discard=streaming_body.close
        )

    async def put(self, key: str, response: httpx.Response) -> None:
        object_key = self.object_key(key)
        body = await response.aread()
        await self._ensure_bucket()

        metadata: dict[str, str] = {}
        if response.headers.get("etag"):
            metadata[_ORIGIN_ETAG] = response.headers["etag"]
        if response.headers.get("last-modified"):
            metadata[_ORIGIN_LAST_MODIFIED] = response.headers["last-modified"]

        put_kwargs: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": object_key,
            "Body": body,
            "Metadata": metadata,
        }
        for header, field in (
            ("content-type", "ContentType"),
            ("content-encoding", "ContentEncoding"),
            ("content-disposition", "ContentDisposition"),
            ("content-language", "ContentLanguage"),
            ("cache-control", "CacheControl"),
        ):
            if response.headers.get(header):
                put_kwargs[field] = response.headers[header]

        await _run_sync(partial(self._client.put_object, **put_kwargs))
        LOG.info(
            "stored %s as s3://%s/%s (%s bytes)",
            key,
            self.bucket,
            object_key,
            len(body),
        )

    async def _ensure_bucket(self) -> None:
        if self._bucket_ready:
            return
        try:
            await _run_sync(partial(self._client.head_bucket, Bucket=self.bucket))
        except ClientError as error:
            code = error.response.get("Error", {}).get("Code")
            if code not in _NOT_FOUND_CODES:
                raise
            create_kwargs: dict[str, Any] = {"Bucket": self.bucket}
            location = self._settings.store_bucket_location
            if location and location != "us-east-1":
                create_kwargs["CreateBucketConfiguration"] = {
                    "LocationConstraint": location
                }
            await _run_sync(partial(self._client.create_bucket, **create_kwargs))
            LOG.info("created store bucket %s", self.bucket)
        self._bucket_ready = True

    def _object_headers(self, result: Mapping[str, Any]) -> dict[str, str]:
        headers: dict[str, str] = {}
        mapping = {
            "Cache-Control": "CacheControl",
            "Content-Encoding": "ContentEncoding",
            "Content-Length": "ContentLength",
            "Content-Type": "ContentType",
            "ETag": "ETag",
            "Last-Modified": "LastModified",
        }

        for header, key in mapping.items():
            value = result.get(key)
            if value is None:
                continue
            headers[header] = self._format_header_value(value)

        metadata = result.get("Metadata") or {}
        if metadata.get(_ORIGIN_ETAG):
            headers["ETag"] = metadata[_ORIGIN_ETAG]
        if metadata.get(_ORIGIN_LAST_MODIFIED):
            headers["Last-Modified"] = metadata[_ORIGIN_LAST_MODIFIED]

        return headers

    @staticmethod
    def _format_header_value(value: Any) -> str:
        if isinstance(value, datetime):
            aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
            aware = aware.astimezone(UTC)
            return format_datetime(aware, usegmt=True)
        return str(value)
