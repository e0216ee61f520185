"""Sync engine: one reactive value per logical key.

A :class:`SyncEngine` serves a value synchronously (the caller's default
until something better is known), loads the authoritative value from the
remote store once an identity is available, falls back to the local
cache when the remote store cannot be read, applies writes optimistically
and follows the remote change feed for as long as it is open.

Several engines may be open for the same key at once; they converge
through the change feed. Writes are last-write-wins with no queue, no
coalescing and no retry.
"""

from __future__ import annotations

import asyncio
import copy
import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pycloudsync.config import LocalKeyScope
from pycloudsync.exceptions import (
    CloudSyncError,
    NotAuthenticatedError,
    RetrievalError,
    SerializationError,
    WriteError,
)
from pycloudsync.identity import Identity, IdentityContext
from pycloudsync.keys import EntryKey, dumps, loads, local_cache_key
from pycloudsync.remote.base import RemoteStore, Unsubscribe
from pycloudsync.state.events import CacheEvent, CacheState, CacheStatus
from pycloudsync.state.policy import next_status, source_for
from pycloudsync.storage.local import LocalCache

_logger = logging.getLogger(__name__)

T = TypeVar("T")

StateListener = Callable[[CacheState], None]

_KEEP: Any = object()


@dataclass(frozen=True)
class WriteOutcome:
    """Result of the remote half of one ``set_value`` call."""

    key: str
    error: WriteError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SyncEngine(Generic[T]):
    """Reactive ``(value, status, set_value)`` for one logical key.

    Usage::

        async with SyncEngine("students", [], identity=ctx, local=cache, remote=store) as students:
            await students.wait_until_loaded()
            await students.set_value(lambda rows: [*rows, new_row])

    Identity changes must be published on the event loop the engine
    runs on.
    """

    def __init__(
        self,
        logical_key: str,
        initial_value: T,
        *,
        identity: IdentityContext,
        local: LocalCache,
        remote: RemoteStore,
        local_key_scope: LocalKeyScope = LocalKeyScope.SHARED,
    ) -> None:
        if not logical_key:
            raise ValueError("logical_key must be non-empty")
        self._logical_key = logical_key
        self._initial: T = copy.deepcopy(initial_value)
        self._identity = identity
        self._local = local
        self._remote = remote
        self._local_key_scope = local_key_scope

        self._state = CacheState(value=copy.deepcopy(initial_value))
        self._listeners: list[StateListener] = []
        self._loaded = asyncio.Event()

        # Bumped on every identity switch and on close; stale loads and
        # pushes compare against it and drop themselves.
        self._generation = 0
        # Bumped on every optimistic write and push; a load that sees it
        # move does not overwrite the newer value.
        self._mutations = 0

        self._activation: asyncio.Task[None] | None = None
        self._unsubscribe: Unsubscribe | None = None
        self._pending_writes: set[asyncio.Task[WriteOutcome]] = set()
        self._remove_identity_listener: Callable[[], None] | None = None
        self._started = False
        self._closed = False

    # ------------------------------------------------------------------
    # Public state
    # ------------------------------------------------------------------

    @property
    def logical_key(self) -> str:
        return self._logical_key

    @property
    def state(self) -> CacheState:
        return self._state

    @property
    def value(self) -> T:
        """A copy of the current value; never missing."""
        return copy.deepcopy(self._state.value)

    @property
    def status(self) -> CacheStatus:
        return self._state.status

    @property
    def pending_writes(self) -> int:
        return len(self._pending_writes)

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Call *listener* with every new state; returns a remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def wait_until_loaded(self) -> CacheState:
        """Wait until the status leaves ``LOADING``."""
        await self._loaded.wait()
        return self._state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> SyncEngine[T]:
        """Begin following the identity context. Idempotent."""
        if self._started:
            return self
        if self._closed:
            raise CloudSyncError("SyncEngine is closed")
        self._started = True
        self._remove_identity_listener = self._identity.add_listener(self._on_identity_changed)
        identity = self._identity.current
        if identity is not None:
            self._schedule_activation(identity)
        return self

    async def close(self) -> None:
        """Stop loading, release the change-feed subscription.

        Writes already issued are left to settle.
        """
        if self._closed:
            return
        self._closed = True
        self._generation += 1
        if self._remove_identity_listener is not None:
            self._remove_identity_listener()
            self._remove_identity_listener = None
        await self._cancel_activation()
        await self._release_subscription()

    async def __aenter__(self) -> SyncEngine[T]:
        return self.start()

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def flush(self) -> list[WriteOutcome]:
        """Wait for every pending remote write and return the outcomes."""
        tasks = list(self._pending_writes)
        if not tasks:
            return []
        return list(await asyncio.gather(*tasks))

    async def reload(self) -> CacheState:
        """Read the remote value again for the current identity."""
        identity = self._require_identity()
        await self._load(EntryKey(identity.subject, self._logical_key), identity, self._generation)
        return self._state

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def set_value(self, value: T | Callable[[T], T]) -> asyncio.Task[WriteOutcome]:
        """Apply *value* (or ``updater(current)``) and persist it.

        The in-memory state and the local cache are updated before this
        returns. The remote upsert runs in the returned task; awaiting it
        yields a :class:`WriteOutcome` and never raises :class:`WriteError`.

        Raises
        ------
        NotAuthenticatedError
            No identity is available. Nothing is changed.
        SerializationError
            The new value is not JSON-serializable. Nothing is changed.
        """
        identity = self._require_identity()
        if self._closed:
            raise CloudSyncError("SyncEngine is closed")

        new_value = value(self.value) if callable(value) else value
        serialized = dumps(new_value)
        key = EntryKey(identity.subject, self._logical_key)

        self._mutations += 1
        self._transition(CacheEvent.WRITE, value=new_value)
        try:
            self._local.set(self._local_key(identity), serialized)
        except OSError as exc:
            _logger.warning("Local cache write of %s failed, still writing remotely: %s", self._logical_key, exc)

        task = asyncio.get_running_loop().create_task(self._persist(key, serialized))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)
        return task

    async def _persist(self, key: EntryKey, serialized: str) -> WriteOutcome:
        try:
            await self._remote.upsert(key, serialized)
        except CloudSyncError as exc:
            error = exc if isinstance(exc, WriteError) else WriteError(str(exc), key=key.composite)
            if error is not exc:
                error.__cause__ = exc
            _logger.warning("Remote write of %s failed, keeping local value: %s", key.composite, exc)
            self._update(write_error=error)
            return WriteOutcome(key=key.composite, error=error)

        _logger.debug("Remote write of %s settled", key.composite)
        if self._state.write_error is not None:
            self._update(write_error=None)
        return WriteOutcome(key=key.composite)

    # ------------------------------------------------------------------
    # Identity and load path
    # ------------------------------------------------------------------

    def _require_identity(self) -> Identity:
        identity = self._identity.current
        if identity is None:
            raise NotAuthenticatedError(f"Cannot access {self._logical_key!r} without an authenticated identity")
        return identity

    def _local_key(self, identity: Identity | None) -> str:
        return local_cache_key(
            self._local_key_scope,
            identity.subject if identity is not None else None,
            self._logical_key,
        )

    def _on_identity_changed(self, identity: Identity | None) -> None:
        if self._closed:
            return
        self._transition(CacheEvent.RESET, value=self._initial)
        self._schedule_activation(identity)

    def _schedule_activation(self, identity: Identity | None) -> None:
        self._generation += 1
        previous = self._activation
        if previous is not None and not previous.done():
            previous.cancel()
        task = asyncio.get_running_loop().create_task(self._activate(identity, self._generation, previous))
        task.add_done_callback(self._on_activation_done)
        self._activation = task

    def _on_activation_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        _logger.warning("Activation of %s failed: %s", self._logical_key, exc, exc_info=exc)
        if self._closed or task is not self._activation:
            return
        identity = self._identity.current
        key = EntryKey(identity.subject, self._logical_key).composite if identity is not None else self._logical_key
        error = RetrievalError(f"Activation failed: {exc}", key=key)
        error.__cause__ = exc
        if self._state.status != CacheStatus.LOADING:
            fallback = _KEEP
        elif identity is not None:
            fallback = self._fallback_value(identity)
        else:
            fallback = self._initial
        self._transition(CacheEvent.LOAD_FAILED, value=fallback, error=error)

    async def _activate(
        self,
        identity: Identity | None,
        generation: int,
        previous: asyncio.Task[None] | None,
    ) -> None:
        if previous is not None:
            await asyncio.wait([previous])
        await self._release_subscription()
        if identity is None:
            return

        key = EntryKey(identity.subject, self._logical_key)
        try:
            self._unsubscribe = await self._remote.subscribe(key, functools.partial(self._on_push, generation))
        except CloudSyncError as exc:
            _logger.warning("Change feed unavailable for %s: %s", key.composite, exc)

        await self._load(key, identity, generation)

    async def _cancel_activation(self) -> None:
        task = self._activation
        self._activation = None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.wait([task])

    async def _release_subscription(self) -> None:
        unsubscribe = self._unsubscribe
        self._unsubscribe = None
        if unsubscribe is None:
            return
        try:
            await unsubscribe()
        except CloudSyncError:
            _logger.debug("Unsubscribe of %s failed", self._logical_key, exc_info=True)

    async def _load(self, key: EntryKey, identity: Identity, generation: int) -> None:
        baseline = self._mutations
        try:
            text = await self._remote.get_by_key(key)
            if text is None:
                value: Any = self._initial
                if self._mutations == baseline:
                    await self._write_back_default(key)
            else:
                value = loads(text)
        except CloudSyncError as exc:
            if generation != self._generation:
                return
            error = exc if isinstance(exc, RetrievalError) else RetrievalError(str(exc), key=key.composite)
            if error is not exc:
                error.__cause__ = exc
            _logger.warning("Remote read of %s failed, using local fallback: %s", key.composite, exc)
            fallback = self._fallback_value(identity) if self._mutations == baseline else _KEEP
            self._transition(CacheEvent.LOAD_FAILED, value=fallback, error=error)
            return

        if generation != self._generation:
            return
        self._transition(CacheEvent.LOADED, value=value if self._mutations == baseline else _KEEP)

    async def _write_back_default(self, key: EntryKey) -> None:
        try:
            await self._remote.upsert(key, dumps(self._initial))
        except CloudSyncError as exc:
            _logger.warning("Writing default for %s failed: %s", key.composite, exc)

    def _fallback_value(self, identity: Identity) -> Any:
        text = self._local.get(self._local_key(identity))
        if not text:
            return self._initial
        try:
            return loads(text)
        except SerializationError:
            _logger.warning("Local cache entry for %s is malformed, using default", self._logical_key)
            return self._initial

    # ------------------------------------------------------------------
    # Realtime reconciliation
    # ------------------------------------------------------------------

    def _on_push(self, generation: int, text: str) -> None:
        if generation != self._generation or self._closed:
            return
        try:
            value = loads(text)
        except SerializationError:
            _logger.warning("Ignoring malformed change for %s", self._logical_key)
            return
        # May clobber this engine's own newer optimistic value until the
        # echo of that write arrives.
        self._mutations += 1
        self._transition(CacheEvent.PUSH, value=value)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _transition(
        self,
        event: CacheEvent,
        *,
        value: Any = _KEEP,
        error: CloudSyncError | None = None,
    ) -> None:
        current = self._state
        status = next_status(current.status, event)
        if value is _KEEP:
            new_value = current.value
            source = current.last_source
        else:
            new_value = copy.deepcopy(value)
            source = source_for(event)
        self._state = CacheState(
            value=new_value,
            status=status,
            last_source=source,
            error=error if status == CacheStatus.ERROR else None,
            write_error=None if event == CacheEvent.RESET else current.write_error,
        )
        if status == CacheStatus.LOADING:
            self._loaded.clear()
        else:
            self._loaded.set()
        _logger.debug("%s: %s -> %s on %s", self._logical_key, current.status, status, event)
        self._notify()

    def _update(self, **changes: Any) -> None:
        self._state = self._state.model_copy(update=changes)
        self._notify()

    def _notify(self) -> None:
        state = self._state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                _logger.debug("State listener failed for %s", self._logical_key, exc_info=True)
