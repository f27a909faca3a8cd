from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from anyio.abc import TaskGroup

    from .network import NetworkFetch
    from .store import StoreHandle

LOG = logging.getLogger("range_overlay.restore")


class RestoreCoordinator:
    """Fire-and-forget background download of objects missing from the store.

    At most one restore runs per key. Failures are only logged at debug
    level; the next request for the key simply tries again.
    """

    def __init__(self, store: StoreHandle, network: NetworkFetch):
        self._store = store
        self._network = network
        self._in_progress: set[str] = set()
        self._task_group: TaskGroup | None = None

    def bind(self, task_group: TaskGroup | None) -> None:
        self._task_group = task_group

    def in_progress(self, key: str) -> bool:
        return key in self._in_progress

    def start_restore(self, key: str) -> bool:
        """Schedule a restore of ``key`` and return whether one was started."""
        if key in self._in_progress:
            return False
        if self._task_group is None:
            LOG.warning("restore requested for %s before startup, skipping", key)
            return False

        self._in_progress.add(key)
        self._task_group.start_soon(self._restore, key, name=f"restore {key}")
        return True

    async def _restore(self, key: str) -> None:
        try:
            store = self._store.get()
            try:
                existing = await store.lookup(key)
            except Exception:
                self._store.invalidate()
                raise
            if existing is not None:
                await existing.aclose()
                LOG.debug("restore skipped for %s (already in store)", key)
                return

            LOG.debug("restore fetch for %s (full object, no Range)", key)
            response = await self._network.fetch(key)
            try:
                if not response.is_success:
                    LOG.debug(
                        "restore of %s got status %s, not storing",
                        key,
                        response.status_code,
                    )
                    return
                try:
                    await store.put(key, response)
                except Exception:
                    self._store.invalidate()
                    raise
            finally:
                await response.aclose()
            LOG.info("restored %s into the store", key)
        except Exception:
            LOG.debug("restore of %s failed", key, exc_info=True)
        finally:
            self._in_progress.discard(key)
            LOG.debug("restore finished for %s", key)
