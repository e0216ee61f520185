from __future__ import annotations

import math

import pytest

from pycloudsync.config import LocalKeyScope
from pycloudsync.exceptions import SerializationError
from pycloudsync.keys import EntryKey, dumps, loads, local_cache_key, sentinel_entry_key, sentinel_local_key


def test_entry_key_composite() -> None:
    key = EntryKey("auth0|user-1", "students")
    assert key.composite == "auth0|user-1:students"
    assert str(key) == "auth0|user-1:students"


@pytest.mark.parametrize(("identity_id", "logical_key"), [("", "students"), ("auth0|user-1", "")])
def test_entry_key_rejects_empty_parts(identity_id: str, logical_key: str) -> None:
    with pytest.raises(ValueError):
        EntryKey(identity_id, logical_key)


def test_local_cache_key_scopes() -> None:
    assert local_cache_key(LocalKeyScope.SHARED, "auth0|user-1", "students") == "students"
    assert local_cache_key(LocalKeyScope.SHARED, None, "students") == "students"
    assert local_cache_key(LocalKeyScope.IDENTITY, "auth0|user-1", "students") == "auth0|user-1:students"
    with pytest.raises(ValueError):
        local_cache_key(LocalKeyScope.IDENTITY, None, "students")


def test_sentinel_keys() -> None:
    assert sentinel_local_key("auth0|user-1") == "auth0|user-1:migration_completed"
    assert sentinel_entry_key("auth0|user-1").composite == "auth0|user-1:migration_completed"


def test_dumps_is_compact_and_keeps_unicode() -> None:
    assert dumps([{"name": "Zoë", "minutes": 45}]) == '[{"name":"Zoë","minutes":45}]'
    assert loads(dumps({"a": [1, None, True]})) == {"a": [1, None, True]}


@pytest.mark.parametrize("value", [{1, 2}, object(), math.nan])
def test_dumps_rejects_unserializable_values(value: object) -> None:
    with pytest.raises(SerializationError):
        dumps(value)


@pytest.mark.parametrize("text", ["{oops", "", None, b"[]"])
def test_loads_rejects_malformed_text(text: object) -> None:
    with pytest.raises(SerializationError):
        loads(text)  # type: ignore[arg-type]
