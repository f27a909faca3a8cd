from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")

__all__ = ["CachedRange", "FileMetadata", "LRUCache"]


@dataclass(frozen=True)
class FileMetadata:
    size: int
    content_type: str
    etag: str | None = None
    last_modified: str | None = None


@dataclass(frozen=True)
class CachedRange:
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)


class LRUCache(Generic[K, V]):
    """Bounded insertion-ordered map; a capacity of 0 disables it entirely."""

    def __init__(self, capacity: int):
        if capacity < 0:
            raise ValueError("Capacity must not be negative")

        self.capacity = capacity
        self._entries: OrderedDict[K, V] = OrderedDict()

    @property
    def enabled(self) -> bool:
        return self.capacity > 0

    def get(self, key: K) -> V | None:
        value = self._entries.get(key)
        if value is not None:
            self._entries.move_to_end(key)
        return value

    def set(self, key: K, value: V) -> K | None:
        """Store ``value`` and return the key evicted to make room, if any."""
        if not self.enabled:
            return None
        if key in self._entries:
            self._entries[key] = value
            self._entries.move_to_end(key)
            return None

        evicted: K | None = None
        if len(self._entries) >= self.capacity:
            evicted, _ = self._entries.popitem(last=False)
        self._entries[key] = value
        return evicted

    def pop(self, key: K) -> V | None:
        return self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        yield from self._entries
