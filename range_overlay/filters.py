from __future__ import annotations

from fnmatch import fnmatchcase
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

if TYPE_CHECKING:
    from collections.abc import Sequence


def _pathname(url: str) -> str:
    return urlsplit(url).path or "/"


def matches_glob(url: str, pattern: str) -> bool:
    """Match the path of ``url`` against a glob; ``*`` also crosses ``/``."""
    return fnmatchcase(_pathname(url), pattern)


def should_process(
    url: str,
    include: Sequence[str] | None = None,
    exclude: Sequence[str] | None = None,
) -> bool:
    if not include and not exclude:
        return True
    pathname = _pathname(url)

    if exclude and any(fnmatchcase(pathname, pattern) for pattern in exclude):
        return False
    if include:
        return any(fnmatchcase(pathname, pattern) for pattern in include)
    return True
