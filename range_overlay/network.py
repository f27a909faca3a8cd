from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx
from litestar.response import Stream

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

LOG = logging.getLogger("range_overlay.network")

HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)


class NetworkFetch:
    """Outbound requests to the origin, tagged so the overlay does not intercept them again."""

    def __init__(
        self,
        passthrough_header: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.passthrough_header = passthrough_header
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    @property
    def started(self) -> bool:
        return self._http_client is not None

    async def startup(self) -> None:
        if self._http_client is not None:
            return
        self._http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(60.0, read=300.0),
            trust_env=False,
            transport=self._transport,
        )

    async def shutdown(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def is_passthrough(self, headers: Mapping[str, str]) -> bool:
        return bool(headers.get(self.passthrough_header))

    async def fetch(
        self,
        url: str,
        headers: Mapping[str, str] | None = None,
        *,
        method: str = "GET",
        content: bytes | None = None,
    ) -> httpx.Response:
        """Send a tagged request and return the streamed response.

        The caller owns the response and must close it (``to_response`` does).
        """
        if self._http_client is None:
            message = "network client not initialised"
            raise RuntimeError(message)

        outgoing = self.prepare_outgoing_headers(headers or {})
        outgoing[self.passthrough_header] = "1"
        request = self._http_client.build_request(
            method, url, headers=outgoing, content=content
        )
        LOG.debug("fetch method=%s url=%s headers=%s", method, url, sorted(outgoing))
        return await self._http_client.send(request, stream=True)

    @staticmethod
    def prepare_outgoing_headers(headers: Mapping[str, str]) -> dict[str, str]:
        prepared: dict[str, str] = {}
        for key, value in headers.items():
            lowered = key.lower()
            if lowered in HOP_BY_HOP or lowered in {"host", "content-length"}:
                continue
            prepared[key] = value
        return prepared

    @staticmethod
    def prepare_response_headers(
        headers: list[tuple[bytes, bytes]],
    ) -> dict[str, str]:
        prepared: dict[str, str] = {}
        for key_bytes, value_bytes in headers:
            key = key_bytes.decode("latin-1")
            value = value_bytes.decode("latin-1")
            if key.lower() in HOP_BY_HOP:
                continue
            prepared[key] = value
        return prepared

    def to_response(self, response: httpx.Response) -> Stream:
        headers = self.prepare_response_headers(response.headers.raw)

        async def iterator() -> AsyncIterator[bytes]:
            try:
                async for chunk in response.aiter_raw():
                    yield chunk
            finally:
                await response.aclose()

        return Stream(
            content=iterator(), status_code=response.status_code, headers=headers
        )
