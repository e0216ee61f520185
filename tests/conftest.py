from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import pytest

from pycloudsync.exceptions import RetrievalError, WriteError
from pycloudsync.identity import Identity, IdentityContext
from pycloudsync.keys import EntryKey
from pycloudsync.remote.memory import MemoryRemoteStore
from pycloudsync.storage.local import MemoryLocalCache

USER = "auth0|user-1"


class RecordingRemoteStore(MemoryRemoteStore):
    """In-process store that records calls and can be told to fail."""

    def __init__(self, entries: dict[str, str] | None = None) -> None:
        super().__init__(entries)
        self.reads: list[str] = []
        self.upserts: list[tuple[str, str]] = []
        self.fail_reads = False
        self.fail_write_keys: set[str] = set()
        self.fail_all_writes = False
        self.read_gate: asyncio.Event | None = None
        self.write_gate: asyncio.Event | None = None

    async def get_by_key(self, key: EntryKey) -> str | None:
        self.reads.append(key.composite)
        if self.fail_reads:
            raise RetrievalError("remote unreachable", key=key.composite)
        value = self.peek(key)
        if self.read_gate is not None:
            await self.read_gate.wait()
        await asyncio.sleep(0)
        return value

    async def upsert(self, key: EntryKey, value: str) -> None:
        if self.fail_all_writes or key.logical_key in self.fail_write_keys:
            raise WriteError("remote unreachable", key=key.composite)
        if self.write_gate is not None:
            await self.write_gate.wait()
        self.upserts.append((key.composite, value))
        await super().upsert(key, value)

    def upsert_count(self, composite: str) -> int:
        return sum(1 for key, _ in self.upserts if key == composite)


class RecordingLocalCache(MemoryLocalCache):
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        super().__init__(initial)
        self.sets: list[tuple[str, str]] = []

    def set(self, key: str, value: str) -> None:
        self.sets.append((key, value))
        super().set(key, value)


@pytest.fixture
def user() -> Identity:
    return Identity(subject=USER)


@pytest.fixture
def identity_ctx(user: Identity) -> IdentityContext:
    return IdentityContext(user)


@pytest.fixture
def local() -> RecordingLocalCache:
    return RecordingLocalCache()


@pytest.fixture
def remote() -> RecordingRemoteStore:
    return RecordingRemoteStore()


@pytest.fixture
def settle() -> Callable[[], Awaitable[None]]:
    """Let pending callbacks, writes and pushes run."""

    async def _settle(rounds: int = 20) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _settle
