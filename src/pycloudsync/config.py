"""Client configuration for pycloudsync."""

from __future__ import annotations

import dataclasses
import os
from enum import StrEnum
from typing import Any

from pycloudsync._constants import (
    DEFAULT_HEARTBEAT_INTERVAL,
    DEFAULT_MIGRATION_KEYS,
    DEFAULT_SCHEMA,
    DEFAULT_TABLE,
)
from pycloudsync.exceptions import CloudSyncConfigError


class LocalKeyScope(StrEnum):
    """How logical keys are namespaced in the local cache."""

    #: Bare logical key shared by every identity on this device.
    SHARED = "shared"
    #: ``"<identityId>:<logicalKey>"``, isolated per identity.
    IDENTITY = "identity"


class SentinelLocation(StrEnum):
    """Where the one-time migration marker is stored."""

    LOCAL = "local"
    REMOTE = "remote"


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_float(name: str, value: str) -> float:
    try:
        return float(value)
    except ValueError as exc:
        raise CloudSyncConfigError(f"{name} must be a number, got {value!r}") from exc


@dataclasses.dataclass(frozen=True)
class CloudSyncConfig:
    """Client configuration.

    Parameters
    ----------
    supabase_url : str
        Project URL, e.g. ``"https://abc.supabase.co"``.
    supabase_key : str
        Anon (publishable) API key sent as ``apikey``.
    access_token : str or None
        Bearer token for row-level security. Defaults to *supabase_key*.
    table : str
        Table holding the key/value entries.
    schema : str
        Postgres schema of *table*.
    realtime_enabled : bool
        Subscribe to the Supabase Realtime change feed.
    realtime_heartbeat_interval : float
        Seconds between Phoenix heartbeats on the realtime socket.
    request_timeout : float or None
        Total timeout for REST requests in seconds. ``None`` (default)
        waits indefinitely.
    local_cache_path : str or None
        JSON file backing the local cache. ``None`` keeps it in memory.
    local_key_scope : LocalKeyScope
        Namespacing of local cache keys. ``SHARED`` matches data written
        before cloud sync existed but is visible to every identity on
        the device.
    sentinel_location : SentinelLocation
        Where the migration marker lives. ``LOCAL`` does not follow the
        identity to other devices.
    auto_migrate : bool
        Run the one-time migration whenever an identity becomes active.
    migration_keys : tuple of str
        Logical keys copied by the migration.
    """

    supabase_url: str
    supabase_key: str
    access_token: str | None = None
    table: str = DEFAULT_TABLE
    schema: str = DEFAULT_SCHEMA
    realtime_enabled: bool = True
    realtime_heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    request_timeout: float | None = None
    local_cache_path: str | None = None
    local_key_scope: LocalKeyScope = LocalKeyScope.SHARED
    sentinel_location: SentinelLocation = SentinelLocation.LOCAL
    auto_migrate: bool = True
    migration_keys: tuple[str, ...] = DEFAULT_MIGRATION_KEYS

    def __post_init__(self) -> None:
        if not self.supabase_url.strip():
            raise CloudSyncConfigError("supabase_url must be non-empty")
        if not self.supabase_key.strip():
            raise CloudSyncConfigError("supabase_key must be non-empty")
        try:
            object.__setattr__(self, "local_key_scope", LocalKeyScope(self.local_key_scope))
            object.__setattr__(self, "sentinel_location", SentinelLocation(self.sentinel_location))
        except ValueError as exc:
            raise CloudSyncConfigError(str(exc)) from exc
        object.__setattr__(self, "supabase_url", self.supabase_url.rstrip("/"))
        object.__setattr__(self, "migration_keys", tuple(self.migration_keys))

    @property
    def rest_url(self) -> str:
        return f"{self.supabase_url}/rest/v1"

    @property
    def bearer_token(self) -> str:
        return self.access_token or self.supabase_key

    @classmethod
    def from_env(cls, **overrides: Any) -> CloudSyncConfig:
        """Create configuration from environment variables.

        Reads ``SUPABASE_URL``, ``SUPABASE_ANON_KEY`` and optional
        ``CLOUDSYNC_*`` variables. Explicit keyword arguments override
        environment values.

        Raises
        ------
        CloudSyncConfigError
            A required value is missing or a numeric value is malformed.
        """
        env = os.environ

        _ENV_CONFIG_MAP = {
            "SUPABASE_URL": "supabase_url",
            "SUPABASE_ANON_KEY": "supabase_key",
            "SUPABASE_ACCESS_TOKEN": "access_token",
            "CLOUDSYNC_TABLE": "table",
            "CLOUDSYNC_SCHEMA": "schema",
            "CLOUDSYNC_LOCAL_CACHE_PATH": "local_cache_path",
            "CLOUDSYNC_LOCAL_KEY_SCOPE": "local_key_scope",
            "CLOUDSYNC_SENTINEL_LOCATION": "sentinel_location",
        }
        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        if "realtime_enabled" not in overrides:
            config_kwargs["realtime_enabled"] = _env_bool(env.get("CLOUDSYNC_REALTIME_ENABLED"), True)

        if "auto_migrate" not in overrides:
            config_kwargs["auto_migrate"] = _env_bool(env.get("CLOUDSYNC_AUTO_MIGRATE"), True)

        heartbeat_env = env.get("CLOUDSYNC_HEARTBEAT_INTERVAL")
        if heartbeat_env is not None and "realtime_heartbeat_interval" not in overrides:
            config_kwargs["realtime_heartbeat_interval"] = _env_float("CLOUDSYNC_HEARTBEAT_INTERVAL", heartbeat_env)

        timeout_env = env.get("CLOUDSYNC_REQUEST_TIMEOUT")
        if timeout_env is not None and "request_timeout" not in overrides:
            config_kwargs["request_timeout"] = _env_float("CLOUDSYNC_REQUEST_TIMEOUT", timeout_env)

        keys_env = env.get("CLOUDSYNC_MIGRATION_KEYS")
        if keys_env is not None and "migration_keys" not in overrides:
            config_kwargs["migration_keys"] = tuple(k.strip() for k in keys_env.split(",") if k.strip())

        config_kwargs.update(overrides)

        for required in ("supabase_url", "supabase_key"):
            if not config_kwargs.get(required):
                raise CloudSyncConfigError(f"Missing required setting: {required}")

        return cls(**config_kwargs)
