from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, NamedTuple

import anyio

from .cancellation import CancelToken

if TYPE_CHECKING:
    from collections.abc import Callable

    Release = Callable[[], None]

LOG = logging.getLogger("range_overlay.admission")


def _noop_release() -> None:
    return None


class Grant(NamedTuple):
    """An admission slot and the preemption token that was current when it was granted."""

    release: Release
    token: CancelToken


class _Waiter:
    """The single suspended acquirer of a key.

    Resolved with a grant when promoted, or with ``None`` when a
    newer request displaces it.
    """

    def __init__(self) -> None:
        self._event = anyio.Event()
        self.resolved = False
        self.grant: Grant | None = None

    def resolve(self, grant: Grant | None) -> None:
        if self.resolved:
            return
        self.resolved = True
        self.grant = grant
        self._event.set()

    async def wait(self) -> Grant | None:
        await self._event.wait()
        return self.grant


@dataclass
class UrlState:
    active: int = 0
    waiter: _Waiter | None = None
    token: CancelToken = field(default_factory=CancelToken)

    @property
    def idle(self) -> bool:
        return self.active == 0 and self.waiter is None


class AdmissionController:
    """Per-key limit on concurrent range extractions.

    With ``latest_wins`` enabled, an arrival at a full key cancels the key's
    current preemption token (interrupting the extractions holding its slots)
    and takes over the single waiter slot. The request it displaces gets
    ``None`` from :meth:`acquire`. Without ``latest_wins`` admission is
    unlimited and nothing is tracked.
    """

    def __init__(
        self,
        max_concurrent_per_key: int,
        *,
        latest_wins: bool = True,
        max_tracked_urls: int = 512,
    ):
        if max_concurrent_per_key < 1:
            raise ValueError("max_concurrent_per_key must be at least 1")
        if max_tracked_urls < 0:
            raise ValueError("max_tracked_urls must not be negative")

        self.max_concurrent_per_key = max_concurrent_per_key
        self.latest_wins = latest_wins
        self.max_tracked_urls = max_tracked_urls
        self._states: dict[str, UrlState] = {}

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, key: object) -> bool:
        return key in self._states

    def state_for(self, key: str) -> UrlState:
        state = self._states.get(key)
        if state is None:
            if self.max_tracked_urls > 0 and len(self._states) >= self.max_tracked_urls:
                self._evict_idle()
            state = UrlState()
            self._states[key] = state
        return state

    def token_for(self, key: str) -> CancelToken:
        return self.state_for(key).token

    async def acquire(self, key: str) -> Grant | None:
        """Wait for a slot on ``key``.

        The returned token is the one that preempts this holder; it is fixed
        when the slot is granted, so a newer arrival always reaches it.
        """
        if not self.latest_wins:
            return Grant(_noop_release, CancelToken())

        state = self.state_for(key)
        if state.active < self.max_concurrent_per_key:
            state.active += 1
            return Grant(self._releaser(state), state.token)

        LOG.debug("preempting %d active extraction(s) for %s", state.active, key)
        state.token.cancel()
        state.token = CancelToken()
        previous = state.waiter
        state.waiter = None
        if previous is not None:
            previous.resolve(None)

        waiter = _Waiter()
        state.waiter = waiter
        try:
            return await waiter.wait()
        except BaseException:
            if state.waiter is waiter:
                state.waiter = None
            elif waiter.grant is not None:
                # promoted while being cancelled, give the slot back
                waiter.grant.release()
            raise

    def _releaser(self, state: UrlState) -> Release:
        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            state.active -= 1
            waiter = state.waiter
            state.waiter = None
            if waiter is not None:
                state.active += 1
                waiter.resolve(Grant(self._releaser(state), state.token))

        return release

    def _evict_idle(self) -> None:
        for key, state in self._states.items():
            if state.idle:
                del self._states[key]
                LOG.debug("stopped tracking idle key %s", key)
                return
        LOG.debug(
            "all %d tracked keys are busy, tracking beyond the limit",
            len(self._states),
        )
