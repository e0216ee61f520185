"""Remote store interface and implementations."""

from pycloudsync.remote.base import ChangeCallback, RemoteStore, Unsubscribe
from pycloudsync.remote.memory import MemoryRemoteStore
from pycloudsync.remote.supabase import SupabaseRemoteStore

__all__ = [
    "ChangeCallback",
    "MemoryRemoteStore",
    "RemoteStore",
    "SupabaseRemoteStore",
    "Unsubscribe",
]
