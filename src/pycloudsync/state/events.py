"""Cache status, sources and the per-engine state snapshot."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict

from pycloudsync.exceptions import CloudSyncError


class CacheStatus(StrEnum):
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class CacheSource(StrEnum):
    """Where the current value came from."""

    REMOTE = "remote"
    LOCAL_FALLBACK = "local_fallback"
    REALTIME_PUSH = "realtime_push"
    OPTIMISTIC_WRITE = "optimistic_write"


class CacheEvent(StrEnum):
    """Inputs of the cache state machine."""

    LOADED = "loaded"
    LOAD_FAILED = "load_failed"
    WRITE = "write"
    PUSH = "push"
    RESET = "reset"


class CacheState(BaseModel):
    """Immutable snapshot of one engine.

    ``value`` is always defined; before anything was loaded it is the
    caller's default. ``error`` is the last retrieval failure (only while
    ``status`` is ``ERROR``); ``write_error`` is the last failed remote
    upsert and stays set until a later upsert succeeds.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    value: Any
    status: CacheStatus = CacheStatus.LOADING
    last_source: CacheSource | None = None
    error: CloudSyncError | None = None
    write_error: CloudSyncError | None = None
