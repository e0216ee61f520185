"""One-time transfer of pre-sync local data into the remote store.

Data written before cloud sync existed lives in the local cache under
bare logical keys. For each identity it is copied once, then a sentinel
records that the copy happened. The sentinel is written even when some
keys failed to upload, so those keys are never retried.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from pycloudsync._constants import DEFAULT_MIGRATION_KEYS, MIGRATION_SENTINEL_VALUE
from pycloudsync.config import SentinelLocation
from pycloudsync.exceptions import CloudSyncError, NotAuthenticatedError
from pycloudsync.identity import Identity
from pycloudsync.keys import EntryKey, sentinel_entry_key, sentinel_local_key
from pycloudsync.remote.base import RemoteStore
from pycloudsync.storage.local import LocalCache

_logger = logging.getLogger(__name__)

# Per event loop, per subject; serializes concurrent runs for one identity.
_subject_locks: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[str, asyncio.Lock]] = (
    weakref.WeakKeyDictionary()
)


def _subject_lock(subject: str) -> asyncio.Lock:
    locks = _subject_locks.setdefault(asyncio.get_running_loop(), {})
    return locks.setdefault(subject, asyncio.Lock())


@dataclass(frozen=True)
class MigrationReport:
    """What one ``run_migration_once`` call did."""

    identity_id: str
    skipped: bool
    migrated: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    empty: tuple[str, ...] = ()


class SentinelStore(Protocol):
    """Persistence of the "already migrated" marker."""

    async def is_set(self, identity_id: str) -> bool:
        ...

    async def mark(self, identity_id: str) -> None:
        ...


class LocalSentinelStore:
    """Marker in the local cache.

    Does not follow the identity to another device or browser profile:
    migration runs again there, against whatever that cache holds.
    """

    def __init__(self, local: LocalCache) -> None:
        self._local = local

    async def is_set(self, identity_id: str) -> bool:
        return bool(self._local.get(sentinel_local_key(identity_id)))

    async def mark(self, identity_id: str) -> None:
        self._local.set(sentinel_local_key(identity_id), MIGRATION_SENTINEL_VALUE)


class RemoteSentinelStore:
    """Marker stored as an entry of the identity in the remote store."""

    def __init__(self, remote: RemoteStore) -> None:
        self._remote = remote

    async def is_set(self, identity_id: str) -> bool:
        return bool(await self._remote.get_by_key(sentinel_entry_key(identity_id)))

    async def mark(self, identity_id: str) -> None:
        await self._remote.upsert(sentinel_entry_key(identity_id), MIGRATION_SENTINEL_VALUE)


def sentinel_store_for(
    location: SentinelLocation,
    *,
    local: LocalCache,
    remote: RemoteStore,
) -> SentinelStore:
    if location == SentinelLocation.REMOTE:
        return RemoteSentinelStore(remote)
    return LocalSentinelStore(local)


async def run_migration_once(
    identity: Identity,
    *,
    local: LocalCache,
    remote: RemoteStore,
    keys: Iterable[str] = DEFAULT_MIGRATION_KEYS,
    sentinel: SentinelStore | None = None,
) -> MigrationReport:
    """Copy legacy local entries of *keys* to the remote store, once.

    Existing remote entries for those keys are overwritten. Nothing is
    read back. Upload failures are logged and reported, and the sentinel
    is still set afterwards. Concurrent calls for the same subject on one
    event loop run one after the other; the later ones see the sentinel.

    Raises
    ------
    NotAuthenticatedError
        *identity* is not authenticated.
    RetrievalError
        A remote sentinel could not be read; nothing was migrated.
    """
    if not identity.usable:
        raise NotAuthenticatedError("Migration requires an authenticated identity")

    subject = identity.subject
    sentinel = sentinel or LocalSentinelStore(local)
    async with _subject_lock(subject):
        if await sentinel.is_set(subject):
            _logger.debug("Migration already completed for %s", subject)
            return MigrationReport(identity_id=subject, skipped=True)
        return await _copy_legacy_entries(subject, local=local, remote=remote, keys=keys, sentinel=sentinel)


async def _copy_legacy_entries(
    subject: str,
    *,
    local: LocalCache,
    remote: RemoteStore,
    keys: Iterable[str],
    sentinel: SentinelStore,
) -> MigrationReport:
    migrated: list[str] = []
    failed: list[str] = []
    empty: list[str] = []
    for logical_key in keys:
        data = local.get(logical_key)
        if not data:
            empty.append(logical_key)
            continue
        try:
            await remote.upsert(EntryKey(subject, logical_key), data)
        except CloudSyncError as exc:
            _logger.warning("Migration of %s for %s failed and will not be retried: %s", logical_key, subject, exc)
            failed.append(logical_key)
            continue
        migrated.append(logical_key)

    await sentinel.mark(subject)
    _logger.info(
        "Migration completed for %s migrated=%s failed=%s",
        subject,
        migrated,
        failed,
    )
    return MigrationReport(
        identity_id=subject,
        skipped=False,
        migrated=tuple(migrated),
        failed=tuple(failed),
        empty=tuple(empty),
    )
