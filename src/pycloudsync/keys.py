"""Key namespacing and value serialization.

Both stores share one wire format: compact JSON text. Remote entries are
addressed by ``"<identityId>:<logicalKey>"``; local cache keys follow the
configured :class:`~pycloudsync.config.LocalKeyScope`.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from pycloudsync._constants import KEY_SEPARATOR, MIGRATION_SENTINEL_KEY
from pycloudsync.config import LocalKeyScope
from pycloudsync.exceptions import SerializationError


@dataclass(frozen=True)
class EntryKey:
    """Composite address of one remote entry."""

    identity_id: str
    logical_key: str

    def __post_init__(self) -> None:
        if not self.identity_id:
            raise ValueError("identity_id must be non-empty")
        if not self.logical_key:
            raise ValueError("logical_key must be non-empty")

    @property
    def composite(self) -> str:
        return f"{self.identity_id}{KEY_SEPARATOR}{self.logical_key}"

    def __str__(self) -> str:
        return self.composite


def local_cache_key(scope: LocalKeyScope, identity_id: str | None, logical_key: str) -> str:
    """Return the local cache key for *logical_key*.

    ``SHARED`` keeps the bare logical key, which is where data written
    before cloud sync lives, and is readable by any identity on the same
    device. ``IDENTITY`` prefixes the identity id and needs one.
    """
    if scope == LocalKeyScope.SHARED:
        return logical_key
    if not identity_id:
        raise ValueError("identity-scoped local keys require an identity id")
    return f"{identity_id}{KEY_SEPARATOR}{logical_key}"


def sentinel_local_key(identity_id: str) -> str:
    return f"{identity_id}{KEY_SEPARATOR}{MIGRATION_SENTINEL_KEY}"


def sentinel_entry_key(identity_id: str) -> EntryKey:
    return EntryKey(identity_id, MIGRATION_SENTINEL_KEY)


def dumps(value: Any) -> str:
    """Encode *value* as compact JSON text."""
    try:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"Value is not JSON-serializable: {exc}") from exc


def loads(text: str | None) -> Any:
    """Decode JSON text produced by :func:`dumps` (or by the web client)."""
    if not isinstance(text, str):
        raise SerializationError(f"Expected JSON text, got {type(text).__name__}")
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise SerializationError(f"Malformed JSON payload: {text[:64]!r}") from exc
