from __future__ import annotations

import re
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING

from .exceptions import (
    EndOutOfBounds,
    InvalidFormat,
    InvalidSuffixValue,
    StartOutOfBounds,
)

if TYPE_CHECKING:
    from datetime import datetime

    from .caches import FileMetadata

_SUFFIX_RE = re.compile(r"^bytes=-([0-9]+)$")
_RANGE_RE = re.compile(r"^bytes=([0-9]+)-([0-9]*)$")
_WEAK_PREFIX_RE = re.compile(r"^\s*W/", re.IGNORECASE)


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte offsets into a stored object."""

    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start + 1

    def content_range(self, full_size: int) -> str:
        return f"bytes {self.start}-{self.end}/{full_size}"


def parse_range(header_value: str, full_size: int) -> ByteRange:
    """Parse a single-range ``Range`` header against an object of ``full_size``.

    Supports ``bytes=start-end``, ``bytes=start-`` and ``bytes=-suffix``.

    Raises:
        InvalidFormat: The value matches none of the supported forms.
        InvalidSuffixValue: The suffix length is zero.
        StartOutOfBounds: ``start`` is past the end of the object.
        EndOutOfBounds: ``end`` is before ``start`` or past the end of the object.
    """
    trimmed = header_value.strip()

    suffix_match = _SUFFIX_RE.match(trimmed)
    if suffix_match:
        suffix_length = int(suffix_match.group(1))
        if suffix_length <= 0:
            msg = "Invalid suffix range value"
            raise InvalidSuffixValue(msg)
        start = max(0, full_size - suffix_length)
        end = full_size - 1
        if end < start:
            msg = "Range end is out of bounds"
            raise EndOutOfBounds(msg)
        return ByteRange(start, end)

    range_match = _RANGE_RE.match(trimmed)
    if not range_match:
        msg = "Invalid or unsupported range header format"
        raise InvalidFormat(msg)

    start = int(range_match.group(1))
    end_str = range_match.group(2)
    end = int(end_str) if end_str else full_size - 1

    if start < 0 or start >= full_size:
        msg = "Range start is out of bounds"
        raise StartOutOfBounds(msg)
    if end < start or end >= full_size:
        msg = "Range end is out of bounds"
        raise EndOutOfBounds(msg)

    return ByteRange(start, end)


def _parse_http_date(value: str) -> datetime | None:
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None


def _normalize_etag(value: str) -> str:
    stripped = _WEAK_PREFIX_RE.sub("", value)
    if stripped.startswith('"'):
        stripped = stripped[1:]
    if stripped.endswith('"'):
        stripped = stripped[:-1]
    return stripped.strip()


def if_range_matches(value: str, metadata: FileMetadata) -> bool:
    """Check an ``If-Range`` value against the stored object's validators."""
    value = value.strip()
    if not value:
        return False

    if metadata.last_modified:
        requested = _parse_http_date(value)
        if requested is not None:
            stored = _parse_http_date(metadata.last_modified)
            return stored is not None and requested == stored

    if metadata.etag:
        return _normalize_etag(value) == _normalize_etag(metadata.etag)

    return False


def should_cache_range(byte_range: ByteRange, max_cacheable_range_size: int) -> bool:
    return byte_range.size <= max_cacheable_range_size
