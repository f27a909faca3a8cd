from __future__ import annotations


class RangeError(ValueError):
    """A Range header that cannot be served from a stored object."""


class InvalidRangeFormat(RangeError):
    pass


class InvalidFormat(InvalidRangeFormat):
    pass


class InvalidSuffixValue(InvalidRangeFormat):
    pass


class RangeOutOfBounds(RangeError):
    pass


class StartOutOfBounds(RangeOutOfBounds):
    pass


class EndOutOfBounds(RangeOutOfBounds):
    pass


class StoreAccessError(Exception):
    """The full-object store failed while looking up an object."""


class RequestAborted(Exception):
    """Raised when a client disconnect or a newer request cancels the work."""


class TruncatedObject(StoreAccessError):
    """The stored body ended before the byte range its headers promised."""
