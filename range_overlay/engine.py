from __future__ import annotations

import logging
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

import anyio
import httpx
from litestar.response import Response, Stream

from .admission import AdmissionController
from .caches import CachedRange, FileMetadata, LRUCache
from .cancellation import CancelToken, cancel_on, merge_tokens
from .exceptions import RangeError, RequestAborted, StoreAccessError
from .extractor import extract_range
from .network import NetworkFetch
from .ranges import ByteRange, if_range_matches, parse_range, should_cache_range
from .restore import RestoreCoordinator
from .settings import RangeSettings, load_settings_from_env
from .store import MemoryStore, S3Store, StoreHandle

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from .cancellation import MergedToken
    from .store import Store, StoredObject

LOG = logging.getLogger("range_overlay.engine")

PARTIAL_CONTENT = 206
DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class RangeRequest:
    url: str
    range_header: str
    headers: httpx.Headers = field(default_factory=httpx.Headers)

    @property
    def if_range(self) -> str | None:
        return self.headers.get("if-range")

    @property
    def cache_key(self) -> str:
        return f"{self.url}|{self.range_header}"


def metadata_from_headers(headers: httpx.Headers) -> FileMetadata | None:
    """Derive object metadata from a stored response; ``None`` without a usable size."""
    content_length = headers.get("content-length")
    if not content_length:
        return None
    try:
        size = int(content_length)
    except ValueError:
        return None
    if size <= 0:
        return None
    return FileMetadata(
        size=size,
        content_type=headers.get("content-type") or DEFAULT_CONTENT_TYPE,
        etag=headers.get("etag") or None,
        last_modified=headers.get("last-modified") or None,
    )


def build_range_headers(
    byte_range: ByteRange,
    metadata: FileMetadata,
    cache_control: str | None = None,
) -> dict[str, str]:
    headers = {
        "Accept-Ranges": "bytes",
        "Content-Range": byte_range.content_range(metadata.size),
        "Content-Length": str(byte_range.size),
        "Content-Type": metadata.content_type,
    }
    if cache_control:
        headers["Cache-Control"] = cache_control
    return headers


def _abandon(stored: StoredObject, finish: Callable[[], None]) -> None:
    # a handed-off stream that was dropped without being iterated
    stored.discard()
    finish()


class RangeEngine:
    """Serves single-range GET requests from a full-object store.

    A request is answered from the range cache when possible. Otherwise it
    takes an admission slot for its URL, looks the object up in the store,
    validates it and slices the requested bytes out of the stored stream.
    Anything that prevents local serving ends in a passthrough fetch from
    the origin. A missing object additionally schedules a background restore.
    """

    def __init__(
        self,
        settings: RangeSettings,
        *,
        store_factory: Callable[[], Store] | None = None,
        network: NetworkFetch | None = None,
    ):
        self.settings = settings
        self.network = network or NetworkFetch(settings.passthrough_header)
        self.store = StoreHandle(store_factory or self._default_store_factory())
        self.admission = AdmissionController(
            settings.max_concurrent_ranges_per_url,
            latest_wins=settings.prioritize_latest_request,
            max_tracked_urls=settings.max_tracked_urls,
        )
        self.range_cache: LRUCache[str, CachedRange] = LRUCache(
            settings.max_cached_ranges
        )
        self.metadata_cache: LRUCache[str, FileMetadata] = LRUCache(
            settings.max_cached_ranges
        )
        self.restore = RestoreCoordinator(self.store, self.network)
        self._assets = set(settings.assets) if settings.assets else None
        self._inflight: set[CancelToken] = set()

    @classmethod
    def from_env(cls) -> RangeEngine:
        """Create a RangeEngine instance from environment variables.

        Returns:
            RangeEngine configured from environment variables.
        """
        return cls(load_settings_from_env())

    def _default_store_factory(self) -> Callable[[], Store]:
        if self.settings.store_backend == "memory":
            memory = MemoryStore()
            return lambda: memory
        return partial(S3Store, self.settings)

    @asynccontextmanager
    async def lifespan(self) -> AsyncIterator[RangeEngine]:
        """Run the engine: open the origin client and the task group restores run in."""
        await self.network.startup()
        try:
            async with anyio.create_task_group() as tg:
                self.restore.bind(tg)
                LOG.info(
                    "range overlay ready (upstream=%s, store=%s, cached ranges=%d, "
                    "per-url slots=%d, latest wins=%s)",
                    self.settings.upstream_endpoint,
                    self.settings.store_backend,
                    self.settings.max_cached_ranges,
                    self.settings.max_concurrent_ranges_per_url,
                    self.settings.prioritize_latest_request,
                )
                try:
                    yield self
                finally:
                    for token in list(self._inflight):
                        token.cancel()
                    self.restore.bind(None)
                    tg.cancel_scope.cancel()
        finally:
            await self.network.shutdown()

    def resource_url(self, path: str, query: str = "") -> str:
        url = f"{self.settings.upstream_base}{path or '/'}"
        if query:
            url = f"{url}?{query}"
        return url

    async def serve(
        self,
        request: RangeRequest,
        client_token: CancelToken | None = None,
    ) -> Response | None:
        """Answer ``request`` with a 206 or a passthrough response.

        Returns ``None`` when the client went away or the Range header cannot
        be satisfied by the stored object; the caller decides what to send.
        """
        client_token = client_token or CancelToken()
        url = request.url
        if client_token.cancelled:
            LOG.debug("client already gone for %s", url)
            return None

        cached = self.range_cache.get(request.cache_key)
        if cached is not None:
            LOG.debug(
                "returning 206 from range cache for %s (%d bytes)",
                url,
                len(cached.body),
            )
            return Response(
                content=cached.body,
                status_code=PARTIAL_CONTENT,
                headers=dict(cached.headers),
                media_type=cached.headers.get("Content-Type"),
            )

        request_token = CancelToken()
        self._inflight.add(request_token)
        try:
            response = await self._serve_local(request, client_token, request_token)
        except RangeError as error:
            LOG.debug(
                "cannot serve range %r of %s: %s", request.range_header, url, error
            )
            return None
        except RequestAborted:
            if client_token.cancelled:
                LOG.debug("request for %s aborted by the client", url)
                return None
            LOG.debug("request for %s preempted, falling back to network", url)
            response = None
        except StoreAccessError as error:
            LOG.debug("store failed for %s, falling back to network: %s", url, error)
            response = None
        except Exception:
            if client_token.cancelled:
                return None
            LOG.exception(
                "unexpected error serving %s with range %s, falling back to network",
                url,
                request.range_header,
            )
            self.store.invalidate()
            response = None
        finally:
            self._inflight.discard(request_token)

        if response is not None:
            return response
        if client_token.cancelled:
            return None
        return await self._fallback(request, client_token)

    async def _serve_local(
        self,
        request: RangeRequest,
        client_token: CancelToken,
        request_token: CancelToken,
    ) -> Response | None:
        url = request.url
        setup = merge_tokens(client_token, request_token)
        grant = None
        try:
            with cancel_on(setup):
                grant = await self.admission.acquire(url)
        finally:
            setup.detach()
        if setup.cancelled or grant is None:
            if grant is not None:
                grant.release()
            raise RequestAborted

        work = merge_tokens(client_token, request_token, grant.token)
        abandoned: weakref.finalize | None = None

        def finish() -> None:
            if abandoned is not None:
                abandoned.detach()
            grant.release()
            work.detach()

        handed_off = False
        try:
            if work.cancelled:
                raise RequestAborted
            stored = await self._lookup(url, work)
            if stored is None:
                self._maybe_restore(url)
                LOG.debug("skipping %s (object not in store)", url)
                return None
            try:
                prepared = self._prepare(request, stored)
                if prepared is None:
                    return None
                byte_range, metadata, headers = prepared
                if work.cancelled:
                    raise RequestAborted

                assert stored.body is not None
                body = extract_range(stored.body, byte_range, work)
                self.metadata_cache.set(url, metadata)

                if self.range_cache.enabled and should_cache_range(
                    byte_range, self.settings.max_cacheable_range_size
                ):
                    data = b"".join([chunk async for chunk in body])
                    self.range_cache.set(request.cache_key, CachedRange(data, headers))
                    LOG.debug(
                        "returning 206 for %s range size %d bytes (cached)",
                        url,
                        byte_range.size,
                    )
                    return Response(
                        content=data,
                        status_code=PARTIAL_CONTENT,
                        headers=dict(headers),
                        media_type=metadata.content_type,
                    )

                stream = self._stream(url, body, work, finish)
                abandoned = weakref.finalize(stream, _abandon, stored, finish)
                handed_off = True
                LOG.debug(
                    "returning 206 for %s range size %d bytes (streamed)",
                    url,
                    byte_range.size,
                )
                return Stream(
                    content=stream,
                    status_code=PARTIAL_CONTENT,
                    headers=headers,
                    media_type=metadata.content_type,
                )
            finally:
                if not handed_off:
                    await stored.aclose()
        finally:
            if not handed_off:
                finish()

    async def _lookup(self, url: str, work: MergedToken) -> StoredObject | None:
        stored: StoredObject | None = None
        try:
            store = self.store.get()
            with cancel_on(work):
                stored = await store.lookup(url)
        except Exception as error:
            self.store.invalidate()
            LOG.warning("store lookup failed for %s", url, exc_info=True)
            raise StoreAccessError(str(error)) from error
        if work.cancelled:
            if stored is not None:
                await stored.aclose()
            raise RequestAborted
        return stored

    def _prepare(
        self, request: RangeRequest, stored: StoredObject
    ) -> tuple[ByteRange, FileMetadata, dict[str, str]] | None:
        url = request.url
        metadata = self._metadata_for(url, stored.headers)
        if metadata is None:
            LOG.debug("skipping %s (no valid metadata)", url)
            return None
        if stored.body is None:
            LOG.debug("skipping %s (stored object has no body)", url)
            return None

        if_range = request.if_range
        if if_range and not if_range_matches(if_range, metadata):
            LOG.debug("skipping %s (If-Range does not match)", url)
            return None

        byte_range = parse_range(request.range_header, metadata.size)
        headers = build_range_headers(
            byte_range, metadata, self.settings.range_response_cache_control
        )
        return byte_range, metadata, headers

    def _metadata_for(self, url: str, headers: httpx.Headers) -> FileMetadata | None:
        metadata = self.metadata_cache.get(url)
        if metadata is not None and headers.get("content-length") != str(metadata.size):
            LOG.debug("stored size of %s changed, dropping cached metadata", url)
            self.metadata_cache.pop(url)
            metadata = None
        if metadata is None:
            metadata = metadata_from_headers(headers)
        return metadata

    def _maybe_restore(self, url: str) -> None:
        if not self.settings.restore_missing_to_store:
            return
        if self._assets is not None and not (
            url in self._assets or urlsplit(url).path in self._assets
        ):
            return
        self.restore.start_restore(url)

    async def _stream(
        self,
        url: str,
        body: AsyncIterator[bytes],
        work: MergedToken,
        finish: Callable[[], None],
    ) -> AsyncIterator[bytes]:
        self._inflight.add(work)
        try:
            async for chunk in body:
                yield chunk
        except RequestAborted:
            LOG.debug("streamed range of %s aborted", url)
            raise
        finally:
            self._inflight.discard(work)
            aclose = getattr(body, "aclose", None)
            if aclose is not None:
                with anyio.CancelScope(shield=True):
                    await aclose()
            finish()

    async def _fallback(
        self, request: RangeRequest, client_token: CancelToken
    ) -> Response | None:
        headers = httpx.Headers(request.headers)
        headers["Range"] = request.range_header

        response: httpx.Response | None = None
        with cancel_on(client_token):
            response = await self.network.fetch(request.url, headers)
        if response is None:
            LOG.debug("fallback for %s aborted by the client", request.url)
            return None

        if response.status_code != PARTIAL_CONTENT:
            LOG.warning(
                "fallback for %s returned %s instead of 206; the origin or an "
                "intermediary ignored the Range header or re-intercepted a "
                "request tagged with %s",
                request.url,
                response.status_code,
                self.network.passthrough_header,
            )
        LOG.debug("fallback response for %s status=%s", request.url, response.status_code)
        return self.network.to_response(response)
