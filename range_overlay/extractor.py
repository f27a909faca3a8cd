from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import anyio

from .cancellation import cancel_on
from .exceptions import RequestAborted, TruncatedObject

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .cancellation import CancelToken
    from .ranges import ByteRange

LOG = logging.getLogger("range_overlay.extractor")


async def extract_range(
    source: AsyncIterator[bytes],
    byte_range: ByteRange,
    token: CancelToken,
) -> AsyncIterator[bytes]:
    """Yield the bytes of ``byte_range`` from a full-object chunk stream.

    The source is consumed lazily, one chunk at a time, and closed as soon as
    the last requested byte has been produced. A pending read is interrupted
    when ``token`` fires, in which case :class:`RequestAborted` is raised.
    A source that ends before ``byte_range.end`` raises :class:`TruncatedObject`.
    """
    position = 0
    try:
        while True:
            if token.cancelled:
                raise RequestAborted
            chunk: bytes | None = None
            with cancel_on(token):
                try:
                    chunk = await source.__anext__()
                except StopAsyncIteration:
                    msg = (
                        f"stored body ended at offset {position}, "
                        f"before byte {byte_range.end}"
                    )
                    raise TruncatedObject(msg) from None
            if chunk is None:
                # the read was interrupted by the token
                raise RequestAborted

            chunk_start = position
            chunk_end = position + len(chunk)
            position = chunk_end

            if chunk_end <= byte_range.start:
                continue
            if chunk_start > byte_range.end:
                return

            start = max(byte_range.start - chunk_start, 0)
            end = min(byte_range.end - chunk_start + 1, len(chunk))
            if start < end:
                yield chunk[start:end]
            if chunk_end > byte_range.end:
                return
    finally:
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            with anyio.CancelScope(shield=True):
                await aclose()
        LOG.debug(
            "extraction of bytes %d-%d stopped at offset %d",
            byte_range.start,
            byte_range.end,
            position,
        )
