"""Remote store backed by a Supabase project (PostgREST + Realtime)."""

from __future__ import annotations

import logging

import aiohttp

from pycloudsync._api.user_data import fetch_value, upsert_value
from pycloudsync._realtime import ChangeEvent, RealtimeRuntime
from pycloudsync._transport import RestTransport, Transport
from pycloudsync.config import CloudSyncConfig
from pycloudsync.exceptions import CloudSyncError, RetrievalError, WriteError
from pycloudsync.keys import EntryKey, dumps
from pycloudsync.remote.base import ChangeCallback, Unsubscribe, noop_unsubscribe

_logger = logging.getLogger(__name__)


class SupabaseRemoteStore:
    """:class:`~pycloudsync.remote.base.RemoteStore` over a Supabase table.

    Parameters
    ----------
    config : CloudSyncConfig
        Project URL, key, table and realtime settings.
    http_session : aiohttp.ClientSession
        Session shared by REST calls and the realtime websocket.
    transport : Transport or None
        REST transport override (tests).
    realtime : RealtimeRuntime or None
        Realtime runtime override (tests).
    """

    def __init__(
        self,
        config: CloudSyncConfig,
        http_session: aiohttp.ClientSession,
        *,
        transport: Transport | None = None,
        realtime: RealtimeRuntime | None = None,
    ) -> None:
        self._config = config
        self._transport: Transport = transport or RestTransport(config, http_session)
        self._realtime = realtime or RealtimeRuntime(config=config, http_session=http_session, logger=_logger)

    @property
    def realtime(self) -> RealtimeRuntime:
        return self._realtime

    async def get_by_key(self, key: EntryKey) -> str | None:
        try:
            return await fetch_value(config=self._config, transport=self._transport, key=key)
        except CloudSyncError as exc:
            raise RetrievalError(f"Lookup of {key.composite} failed: {exc}", key=key.composite) from exc

    async def upsert(self, key: EntryKey, value: str) -> None:
        try:
            await upsert_value(config=self._config, transport=self._transport, key=key, value=value)
        except CloudSyncError as exc:
            raise WriteError(f"Upsert of {key.composite} failed: {exc}", key=key.composite) from exc

    async def subscribe(self, key: EntryKey, on_change: ChangeCallback) -> Unsubscribe:
        if not self._config.realtime_enabled:
            _logger.debug("Realtime disabled; not subscribing key=%s", key.composite)
            return noop_unsubscribe

        def handle(change: ChangeEvent) -> None:
            value = change.record.get("value")
            if value is None or value == "":
                return
            on_change(value if isinstance(value, str) else dumps(value))

        topic = await self._realtime.join(f"key=eq.{key.composite}", handle)

        async def unsubscribe() -> None:
            await self._realtime.leave(topic)

        return unsubscribe

    async def close(self) -> None:
        await self._realtime.stop()
