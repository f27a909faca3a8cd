"""Range-request overlay serving byte ranges from a full-object store."""

from .admission import AdmissionController, Grant
from .app import create_app
from .caches import CachedRange, FileMetadata, LRUCache
from .cancellation import CancelToken, merge_tokens
from .engine import RangeEngine, RangeRequest
from .exceptions import (
    EndOutOfBounds,
    InvalidFormat,
    InvalidRangeFormat,
    InvalidSuffixValue,
    RangeError,
    RangeOutOfBounds,
    RequestAborted,
    StartOutOfBounds,
    StoreAccessError,
    TruncatedObject,
)
from .extractor import extract_range
from .filters import should_process
from .network import NetworkFetch
from .ranges import ByteRange, if_range_matches, parse_range
from .restore import RestoreCoordinator
from .settings import RangeSettings
from .store import MemoryStore, S3Store, Store, StoredObject

__all__ = [
    "AdmissionController",
    "Grant",
    "ByteRange",
    "CachedRange",
    "CancelToken",
    "EndOutOfBounds",
    "FileMetadata",
    "InvalidFormat",
    "InvalidRangeFormat",
    "InvalidSuffixValue",
    "LRUCache",
    "MemoryStore",
    "NetworkFetch",
    "RangeEngine",
    "RangeError",
    "RangeOutOfBounds",
    "RangeRequest",
    "RangeSettings",
    "RequestAborted",
    "RestoreCoordinator",
    "S3Store",
    "StartOutOfBounds",
    "Store",
    "StoreAccessError",
    "StoredObject",
    "TruncatedObject",
    "create_app",
    "extract_range",
    "if_range_matches",
    "merge_tokens",
    "parse_range",
    "should_process",
]
