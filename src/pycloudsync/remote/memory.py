"""In-process remote store.

Behaves like the hosted store from the engine's point of view: every
operation is a suspension point and change notifications are delivered
on a later loop iteration, never inline with the write.
"""

from __future__ import annotations

import asyncio
import logging

from pycloudsync.keys import EntryKey
from pycloudsync.remote.base import ChangeCallback, Unsubscribe

_logger = logging.getLogger(__name__)


class MemoryRemoteStore:
    """Dictionary-backed :class:`~pycloudsync.remote.base.RemoteStore`."""

    def __init__(self, entries: dict[str, str] | None = None) -> None:
        self._entries: dict[str, str] = dict(entries or {})
        self._subscribers: dict[str, list[ChangeCallback]] = {}

    def peek(self, key: EntryKey) -> str | None:
        """Synchronous read for inspection; bypasses the async interface."""
        return self._entries.get(key.composite)

    def subscriber_count(self, key: EntryKey) -> int:
        return len(self._subscribers.get(key.composite, []))

    async def get_by_key(self, key: EntryKey) -> str | None:
        await asyncio.sleep(0)
        return self._entries.get(key.composite)

    async def upsert(self, key: EntryKey, value: str) -> None:
        await asyncio.sleep(0)
        composite = key.composite
        self._entries[composite] = value
        loop = asyncio.get_running_loop()
        for callback in list(self._subscribers.get(composite, [])):
            loop.call_soon(self._deliver, composite, callback, value)

    def _deliver(self, composite: str, callback: ChangeCallback, value: str) -> None:
        if callback not in self._subscribers.get(composite, []):
            return
        try:
            callback(value)
        except Exception:
            _logger.debug("Change callback failed key=%s", composite, exc_info=True)

    async def subscribe(self, key: EntryKey, on_change: ChangeCallback) -> Unsubscribe:
        composite = key.composite
        self._subscribers.setdefault(composite, []).append(on_change)

        async def unsubscribe() -> None:
            callbacks = self._subscribers.get(composite, [])
            if on_change in callbacks:
                callbacks.remove(on_change)
            if not callbacks:
                self._subscribers.pop(composite, None)

        return unsubscribe
