"""High-level async client tying identity, caches and engines together."""

from __future__ import annotations

import asyncio
import logging
import weakref
from typing import Any, TypeVar

import aiohttp

from pycloudsync.config import CloudSyncConfig
from pycloudsync.engine import SyncEngine
from pycloudsync.exceptions import CloudSyncError
from pycloudsync.identity import Identity, IdentityContext
from pycloudsync.migration import MigrationReport, run_migration_once, sentinel_store_for
from pycloudsync.remote.base import RemoteStore
from pycloudsync.remote.supabase import SupabaseRemoteStore
from pycloudsync.storage.local import FileLocalCache, LocalCache, MemoryLocalCache

_logger = logging.getLogger(__name__)

T = TypeVar("T")


class CloudStorageClient:
    """Entry point for consumers of the sync layer.

    Usage::

        async with CloudStorageClient(CloudSyncConfig.from_env()) as client:
            client.set_identity(Identity(subject="auth0|abc"))
            students = client.open("students", [])
            await students.wait_until_loaded()

    When an identity becomes current the client first runs the one-time
    migration for it (if ``auto_migrate``) and only then lets open
    engines load. Until then, engines stay ``LOADING`` and refuse writes.
    """

    def __init__(
        self,
        config: CloudSyncConfig,
        *,
        identity: IdentityContext | None = None,
        local: LocalCache | None = None,
        remote: RemoteStore | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._config = config
        self._identity = identity or IdentityContext()
        # Engines follow this context; it lags the public one by the migration.
        self._active = IdentityContext()
        if local is None:
            local = FileLocalCache(config.local_cache_path) if config.local_cache_path else MemoryLocalCache()
        self._local = local
        self._remote = remote
        self._owns_remote = remote is None
        self._external_session = session is not None
        self._http_session = session
        self._engines: weakref.WeakSet[SyncEngine[Any]] = weakref.WeakSet()
        self._migrations: dict[str, asyncio.Task[MigrationReport]] = {}
        self._identity_task: asyncio.Task[None] | None = None
        self._remove_identity_listener: Any = None

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> CloudStorageClient:
        if self._remote is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            self._remote = SupabaseRemoteStore(self._config, self._http_session)
        self._remove_identity_listener = self._identity.add_listener(self._on_identity_changed)
        current = self._identity.current
        if current is not None:
            self._on_identity_changed(current)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if self._remove_identity_listener is not None:
            self._remove_identity_listener()
            self._remove_identity_listener = None
        task = self._identity_task
        self._identity_task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait([task])
        migrations = [t for t in self._migrations.values() if not t.done()]
        self._migrations.clear()
        for migration in migrations:
            migration.cancel()
        if migrations:
            await asyncio.wait(migrations)
        for engine in list(self._engines):
            await engine.close()
        if self._owns_remote and isinstance(self._remote, SupabaseRemoteStore):
            await self._remote.close()
            self._remote = None
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @property
    def identity(self) -> IdentityContext:
        return self._identity

    @property
    def active_identity(self) -> Identity | None:
        """The identity engines currently operate for (post-migration)."""
        return self._active.current

    @property
    def local(self) -> LocalCache:
        return self._local

    @property
    def remote(self) -> RemoteStore:
        return self._require_remote()

    def set_identity(self, identity: Identity | None) -> None:
        self._identity.set(identity)

    def clear_identity(self) -> None:
        self._identity.clear()

    def _on_identity_changed(self, identity: Identity | None) -> None:
        previous = self._identity_task
        if previous is not None and not previous.done():
            previous.cancel()
        self._identity_task = None
        self._active.clear()
        if identity is None:
            return
        self._identity_task = asyncio.get_running_loop().create_task(self._activate_identity(identity))

    async def _activate_identity(self, identity: Identity) -> None:
        if self._config.auto_migrate:
            try:
                await self.run_migration_once(identity)
            except CloudSyncError as exc:
                _logger.warning("Migration for %s could not run: %s", identity.subject, exc)
        if self._identity.current == identity:
            self._active.set(identity)

    # ------------------------------------------------------------------
    # Consumer API
    # ------------------------------------------------------------------

    def _require_remote(self) -> RemoteStore:
        if self._remote is None:
            raise CloudSyncError("Client not initialized. Use 'async with CloudStorageClient(...) as client:'")
        return self._remote

    def open(self, logical_key: str, initial_value: T) -> SyncEngine[T]:
        """Return a started engine for *logical_key*.

        Must be called on the running event loop. Close the engine (or
        use it as an async context manager) when done; the client closes
        any engine still open when it exits.
        """
        engine: SyncEngine[T] = SyncEngine(
            logical_key,
            initial_value,
            identity=self._active,
            local=self._local,
            remote=self._require_remote(),
            local_key_scope=self._config.local_key_scope,
        )
        self._engines.add(engine)
        return engine.start()

    async def run_migration_once(self, identity: Identity) -> MigrationReport:
        """Migrate legacy local data for *identity*, at most once.

        Concurrent calls for the same subject share one run; later calls
        are decided by the sentinel alone.
        """
        remote = self._require_remote()
        subject = identity.subject
        task = self._migrations.get(subject)
        if task is None:
            task = asyncio.get_running_loop().create_task(
                run_migration_once(
                    identity,
                    local=self._local,
                    remote=remote,
                    keys=self._config.migration_keys,
                    sentinel=sentinel_store_for(self._config.sentinel_location, local=self._local, remote=remote),
                )
            )
            self._migrations[subject] = task
            task.add_done_callback(lambda _t: self._migrations.pop(subject, None))
        # A cancelled caller must not abort a run other callers share.
        return await asyncio.shield(task)
