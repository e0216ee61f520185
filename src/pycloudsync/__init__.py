"""pycloudsync - Async keyed value cache in front of a Supabase table."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pycloudsync")
except PackageNotFoundError:
    __version__ = "0+local"
from pycloudsync.client import CloudStorageClient
from pycloudsync.config import CloudSyncConfig, LocalKeyScope, SentinelLocation
from pycloudsync.engine import SyncEngine, WriteOutcome
from pycloudsync.exceptions import (
    CloudSyncConfigError,
    CloudSyncError,
    CloudTransportError,
    InvalidTransitionError,
    NotAuthenticatedError,
    RealtimeError,
    RemoteApiError,
    RetrievalError,
    SerializationError,
    WriteError,
)
from pycloudsync.identity import Identity, IdentityContext
from pycloudsync.keys import EntryKey
from pycloudsync.migration import MigrationReport, run_migration_once
from pycloudsync.remote import MemoryRemoteStore, RemoteStore, SupabaseRemoteStore
from pycloudsync.state.events import CacheSource, CacheState, CacheStatus
from pycloudsync.storage import FileLocalCache, LocalCache, MemoryLocalCache

__all__ = [
    "__version__",
    "CacheSource",
    "CacheState",
    "CacheStatus",
    "CloudStorageClient",
    "CloudSyncConfig",
    "CloudSyncConfigError",
    "CloudSyncError",
    "CloudTransportError",
    "EntryKey",
    "FileLocalCache",
    "Identity",
    "IdentityContext",
    "InvalidTransitionError",
    "LocalCache",
    "LocalKeyScope",
    "MemoryLocalCache",
    "MemoryRemoteStore",
    "MigrationReport",
    "NotAuthenticatedError",
    "RealtimeError",
    "RemoteApiError",
    "RemoteStore",
    "RetrievalError",
    "SentinelLocation",
    "SerializationError",
    "SupabaseRemoteStore",
    "SyncEngine",
    "WriteError",
    "WriteOutcome",
    "run_migration_once",
]
