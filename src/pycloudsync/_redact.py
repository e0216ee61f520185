"""Masking of credentials and entry payloads in debug logs."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

_REDACTED = "<redacted>"

# Request headers, realtime join payloads, and row fields of change frames.
_SENSITIVE_KEYS: frozenset[str] = frozenset(
    {"apikey", "authorization", "access_token", "value", "record", "old_record"}
)


def redact_for_log(value: Any, *, max_string: int = 512) -> Any:
    """Return a copy of *value* with sensitive mapping keys masked.

    Mappings and lists are copied recursively and long strings are
    truncated; anything else is returned unchanged.
    """
    if isinstance(value, Mapping):
        return {
            str(key): _REDACTED if str(key).lower() in _SENSITIVE_KEYS else redact_for_log(item, max_string=max_string)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact_for_log(item, max_string=max_string) for item in value]
    if isinstance(value, str) and len(value) > max_string:
        return f"{value[:max_string]}…<truncated>"
    return value
