from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING

import anyio

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator


class CancelToken:
    """One-shot cancellation signal shared between tasks on the same event loop.

    Callbacks run synchronously inside :meth:`cancel`, so a callback that
    cancels an anyio ``CancelScope`` interrupts whatever the owning task is
    awaiting right away.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], object]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], object]) -> Callable[[], None]:
        """Run ``callback`` on cancellation and return a function that unregisters it."""
        if self._cancelled:
            callback()
            return _noop
        self._callbacks.append(callback)

        def remove() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return remove


class MergedToken(CancelToken):
    """A token that fires as soon as any of its sources fires."""

    def __init__(self, *sources: CancelToken) -> None:
        super().__init__()
        self._detach = [source.add_callback(self.cancel) for source in sources]

    def detach(self) -> None:
        """Stop listening to the sources, so long-lived tokens do not collect callbacks."""
        detach, self._detach = self._detach, []
        for remove in detach:
            remove()


def merge_tokens(*sources: CancelToken | None) -> MergedToken:
    return MergedToken(*(source for source in sources if source is not None))


@contextmanager
def cancel_on(token: CancelToken) -> Iterator[anyio.CancelScope]:
    """Open a cancel scope that is cancelled when ``token`` fires.

    Check ``scope.cancelled_caught`` (or ``token.cancelled``) after the block
    to tell an interrupted await from a normal exit.
    """
    with anyio.CancelScope() as scope:
        remove = token.add_callback(scope.cancel)
        try:
            yield scope
        finally:
            remove()


def _noop() -> None:
    return None
