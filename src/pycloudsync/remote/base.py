"""Remote store interface."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Protocol

from pycloudsync.keys import EntryKey

#: Receives the serialized value of every upsert matching a subscription.
ChangeCallback = Callable[[str], None]

#: Releases a change-feed subscription.
Unsubscribe = Callable[[], Awaitable[None]]


async def noop_unsubscribe() -> None:
    return None


class RemoteStore(Protocol):
    """Authoritative key/value store with a per-key change feed.

    Values are serialized JSON text. ``get_by_key`` returns ``None`` for a
    missing entry and raises :class:`~pycloudsync.exceptions.RetrievalError`
    for any other failure; ``upsert`` raises
    :class:`~pycloudsync.exceptions.WriteError`. The change feed delivers
    writes from every writer, including this process.
    """

    async def get_by_key(self, key: EntryKey) -> str | None:
        ...

    async def upsert(self, key: EntryKey, value: str) -> None:
        ...

    async def subscribe(self, key: EntryKey, on_change: ChangeCallback) -> Unsubscribe:
        ...
