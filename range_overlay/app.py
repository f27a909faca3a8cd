from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import anyio
import httpx
from litestar import Litestar, Request, get
from litestar.config.cors import CORSConfig
from litestar.handlers import asgi
from litestar.plugins.prometheus import PrometheusConfig, PrometheusController

from .cancellation import CancelToken
from .engine import RangeEngine, RangeRequest
from .filters import should_process
from .settings import RangeSettings, load_settings_from_env

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from litestar.response import Response
    from litestar.types import Receive, Scope, Send

LOG = logging.getLogger("range_overlay.app")

prometheus_config = PrometheusConfig(app_name="range_overlay", prefix="range_overlay")


async def _watch_disconnect(receive: Receive, token: CancelToken) -> None:
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            token.cancel()
            return


async def _read_body(receive: Receive) -> bytes:
    """Read the entire request body as bytes directly from ASGI scope."""
    body_parts = []

    while True:
        message = await receive()
        if message["type"] == "http.request":
            body = message.get("body", b"")
            if body:
                body_parts.append(body)
            if not message.get("more_body", False):
                break
        elif message["type"] == "http.disconnect":
            break

    return b"".join(body_parts)


async def dispatch(
    engine: RangeEngine, request: Request, scope: Scope, receive: Receive
) -> Response | None:
    """Serve one request: range requests through the engine, the rest from the origin."""
    path = scope.get("path", "/")
    query = scope.get("query_string", b"").decode("latin-1")
    url = engine.resource_url(path, query)
    headers = httpx.Headers(list(request.headers.items()))
    range_header = headers.get("range")
    settings = engine.settings

    eligible = (
        request.method == "GET"
        and bool(range_header)
        and not engine.network.is_passthrough(headers)
        and should_process(url, settings.include, settings.exclude)
    )
    if not eligible:
        LOG.debug("proxying method=%s url=%s to origin", request.method, url)
        content = None
        if request.method in {"POST", "PUT", "PATCH"}:
            content = await _read_body(receive)
        upstream = await engine.network.fetch(
            url, headers, method=request.method, content=content
        )
        return engine.network.to_response(upstream)

    assert range_header is not None
    client_token = CancelToken()
    async with anyio.create_task_group() as tg:
        tg.start_soon(_watch_disconnect, receive, client_token)
        try:
            response = await engine.serve(
                RangeRequest(url=url, range_header=range_header, headers=headers),
                client_token,
            )
        finally:
            tg.cancel_scope.cancel()

    if response is not None:
        return response
    if client_token.cancelled:
        return None

    # unsatisfiable for the stored object, let the origin answer (usually 416)
    upstream = await engine.network.fetch(url, headers)
    return engine.network.to_response(upstream)


def create_app(
    settings: RangeSettings | None = None,
    *,
    engine: RangeEngine | None = None,
) -> Litestar:
    """Create the range overlay ASGI application."""
    if engine is None:
        engine = RangeEngine(settings or load_settings_from_env())

    @get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @asgi(path="/", is_mount=True, copy_scope=True)
    async def range_handler(scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope=scope, receive=receive)
        path = scope.get("path", "/")
        if not path.startswith("/"):
            scope["path"] = f"/{path}"
        response = await dispatch(engine, request, scope, receive)
        if response is None:
            LOG.debug("client disconnected, nothing to send for %s", scope["path"])
            return
        asgi_response = response.to_asgi_response(None, request)
        await asgi_response(scope, receive, send)

    @asynccontextmanager
    async def engine_lifespan(app: Litestar) -> AsyncIterator[None]:
        async with engine.lifespan():
            yield

    cors_config = CORSConfig(
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Accept-Ranges", "Content-Range", "Content-Length", "ETag"],
    )

    app = Litestar(
        route_handlers=[health, range_handler, PrometheusController],
        lifespan=[engine_lifespan],
        cors_config=cors_config,
        middleware=[prometheus_config.middleware],
    )
    app.state.engine = engine
    return app


app = create_app()
