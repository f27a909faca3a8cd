from __future__ import annotations

from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx
import pytest
from litestar.response import Stream
from range_overlay import (
    MemoryStore,
    NetworkFetch,
    RangeEngine,
    RangeError,
    RangeSettings,
    parse_range,
)

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable

    from litestar.response import Response
    from range_overlay.store import StoredObject

UPSTREAM = "https://origin.test"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@dataclass
class Origin:
    """In-process stand-in for the origin server, served through httpx.MockTransport."""

    objects: dict[str, tuple[bytes, dict[str, str]]] = field(default_factory=dict)
    requests: list[httpx.Request] = field(default_factory=list)

    def add(self, url: str, content: bytes, **headers: str) -> None:
        self.objects[url] = (content, {"content-type": "application/octet-stream", **headers})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        entry = self.objects.get(str(request.url))
        if entry is None:
            return self._respond(404, b"not found")
        content, headers = entry
        range_header = request.headers.get("range")
        if range_header is None:
            return self._respond(200, content, headers)
        try:
            byte_range = parse_range(range_header, len(content))
        except RangeError:
            return self._respond(
                416, b"", {"content-range": f"bytes */{len(content)}"}
            )
        return self._respond(
            206,
            content[byte_range.start : byte_range.end + 1],
            {**headers, "content-range": byte_range.content_range(len(content))},
        )

    @staticmethod
    def _respond(
        status_code: int, body: bytes, headers: dict[str, str] | None = None
    ) -> httpx.Response:
        # a streamed body, as a network transport would hand it over
        return httpx.Response(
            status_code,
            headers={**(headers or {}), "content-length": str(len(body))},
            stream=httpx.ByteStream(body),
        )

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class CountingStore(MemoryStore):
    def __init__(self, chunk_size: int = 64):
        super().__init__(chunk_size=chunk_size)
        self.lookups = 0
        self.discarded = 0

    async def lookup(self, key: str) -> StoredObject | None:
        self.lookups += 1
        stored = await super().lookup(key)
        if stored is not None:
            stored.on_discard = self._count_discard
        return stored

    def _count_discard(self) -> None:
        self.discarded += 1


@pytest.fixture
def payload() -> bytes:
    return bytes(i % 251 for i in range(1000))


@pytest.fixture
def origin() -> Origin:
    return Origin()


@pytest.fixture
def store() -> CountingStore:
    return CountingStore()


@pytest.fixture
def build_engine(
    origin: Origin, store: CountingStore
) -> Callable[..., RangeEngine]:
    def build(**overrides: Any) -> RangeEngine:
        settings = RangeSettings(
            upstream_endpoint=UPSTREAM, store_backend="memory", **overrides
        )
        return RangeEngine(
            settings,
            store_factory=lambda: store,
            network=NetworkFetch(
                settings.passthrough_header, transport=origin.transport()
            ),
        )

    return build


@pytest.fixture
async def make_engine(
    build_engine: Callable[..., RangeEngine],
) -> AsyncGenerator[Callable[..., Awaitable[RangeEngine]]]:
    """Build engines that are running now and stopped after the test."""
    async with AsyncExitStack() as stack:

        async def make(**overrides: Any) -> RangeEngine:
            engine = build_engine(**overrides)
            return await stack.enter_async_context(engine.lifespan())

        yield make


async def read_body(response: Response) -> bytes:
    if isinstance(response, Stream):
        iterator: Any = response.iterator
        if callable(iterator):
            iterator = iterator()
        return b"".join([chunk async for chunk in iterator])
    return response.content


@pytest.fixture
def body_of() -> Callable[[Response], Awaitable[bytes]]:
    return read_body
