"""Cache state machine.

``LOADING -> READY <-> ERROR``. ``READY`` is re-entered on every
optimistic write and every realtime push, including the echo of this
engine's own write, which may briefly restore an older value. ``RESET``
(identity change) returns to ``LOADING`` from anywhere.
"""

from __future__ import annotations

from pycloudsync.exceptions import InvalidTransitionError
from pycloudsync.state.events import CacheEvent, CacheSource, CacheStatus

_TRANSITIONS: dict[tuple[CacheStatus, CacheEvent], CacheStatus] = {
    (CacheStatus.LOADING, CacheEvent.LOADED): CacheStatus.READY,
    (CacheStatus.LOADING, CacheEvent.LOAD_FAILED): CacheStatus.ERROR,
    (CacheStatus.LOADING, CacheEvent.WRITE): CacheStatus.READY,
    (CacheStatus.LOADING, CacheEvent.PUSH): CacheStatus.READY,
    (CacheStatus.LOADING, CacheEvent.RESET): CacheStatus.LOADING,
    # A load may finish after a write or push already made the engine ready.
    (CacheStatus.READY, CacheEvent.LOADED): CacheStatus.READY,
    (CacheStatus.READY, CacheEvent.LOAD_FAILED): CacheStatus.ERROR,
    (CacheStatus.READY, CacheEvent.WRITE): CacheStatus.READY,
    (CacheStatus.READY, CacheEvent.PUSH): CacheStatus.READY,
    (CacheStatus.READY, CacheEvent.RESET): CacheStatus.LOADING,
    (CacheStatus.ERROR, CacheEvent.LOADED): CacheStatus.READY,
    (CacheStatus.ERROR, CacheEvent.LOAD_FAILED): CacheStatus.ERROR,
    (CacheStatus.ERROR, CacheEvent.WRITE): CacheStatus.READY,
    (CacheStatus.ERROR, CacheEvent.PUSH): CacheStatus.READY,
    (CacheStatus.ERROR, CacheEvent.RESET): CacheStatus.LOADING,
}


def next_status(current: CacheStatus, event: CacheEvent) -> CacheStatus:
    """Return the status reached from *current* on *event*."""
    try:
        return _TRANSITIONS[(current, event)]
    except KeyError:
        raise InvalidTransitionError(f"No transition from {current} on {event}") from None


_SOURCES: dict[CacheEvent, CacheSource | None] = {
    CacheEvent.LOADED: CacheSource.REMOTE,
    CacheEvent.LOAD_FAILED: CacheSource.LOCAL_FALLBACK,
    CacheEvent.WRITE: CacheSource.OPTIMISTIC_WRITE,
    CacheEvent.PUSH: CacheSource.REALTIME_PUSH,
    CacheEvent.RESET: None,
}


def source_for(event: CacheEvent) -> CacheSource | None:
    """Value source recorded after *event* (``None`` once reset)."""
    return _SOURCES[event]
