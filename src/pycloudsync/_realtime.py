"""Internal Supabase Realtime runtime, message parsing and channel dispatch.

Realtime speaks the Phoenix channel protocol over a websocket: every
frame is a JSON object with ``topic``, ``event``, ``payload``, ``ref``
and ``join_ref``. One socket multiplexes all channels.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pycloudsync._constants import (
    CHANNEL_NAME,
    CHANNEL_TOPIC_PREFIX,
    DEFAULT_RECONNECT_DELAYS,
    PHOENIX_TOPIC,
    REALTIME_PATH,
    REALTIME_VSN,
)
from pycloudsync._redact import redact_for_log
from pycloudsync.config import CloudSyncConfig
from pycloudsync.exceptions import RealtimeError


class RealtimeMessage(BaseModel):
    """One Phoenix frame."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    topic: str
    event: str
    payload: dict[str, Any] = Field(default_factory=dict)
    ref: str | None = None
    join_ref: str | None = None


class _PostgresChangeData(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    type: str = ""
    schema_name: str = Field(default="", alias="schema")
    table: str = ""
    record: dict[str, Any] = Field(default_factory=dict)
    old_record: dict[str, Any] = Field(default_factory=dict)


class _PostgresChangePayload(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    data: _PostgresChangeData


@dataclass(frozen=True)
class ChangeEvent:
    """Normalized row change delivered on a channel."""

    topic: str
    type: str
    record: dict[str, Any]
    old_record: dict[str, Any]


ChangeHandler = Callable[[ChangeEvent], None]


def build_realtime_url(config: CloudSyncConfig) -> str:
    """Websocket URL derived from the project URL."""
    base = config.supabase_url
    if base.startswith("https://"):
        base = "wss://" + base[len("https://") :]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://") :]
    return f"{base}{REALTIME_PATH}?apikey={config.supabase_key}&vsn={REALTIME_VSN}"


def decode_realtime_message(text: str) -> RealtimeMessage:
    """Parse one websocket text frame."""
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise RealtimeError(f"Realtime frame is not JSON: {text[:64]!r}") from exc
    if not isinstance(raw, dict):
        raise RealtimeError("Realtime frame is not a JSON object")
    try:
        return RealtimeMessage.model_validate(raw)
    except ValidationError as exc:
        raise RealtimeError(f"Realtime frame has an unexpected shape: {exc}") from exc


def parse_change_event(message: RealtimeMessage) -> ChangeEvent | None:
    """Extract the row change from a ``postgres_changes`` frame."""
    if message.event != "postgres_changes":
        return None
    try:
        payload = _PostgresChangePayload.model_validate(message.payload)
    except ValidationError:
        return None
    return ChangeEvent(
        topic=message.topic,
        type=payload.data.type,
        record=payload.data.record,
        old_record=payload.data.old_record,
    )


@dataclass
class _Channel:
    topic: str
    key_filter: str
    on_change: ChangeHandler
    join_ref: str | None = None


class RealtimeRuntime:
    """Websocket runtime that dispatches row changes to per-key channels.

    The socket is opened lazily by the first :meth:`join`. If it drops
    while channels are registered, it is reopened after the delays in
    *reconnect_delays* and every registered channel is joined again. A
    channel the server reports as errored is rejoined on the open socket.
    """

    def __init__(
        self,
        *,
        config: CloudSyncConfig,
        http_session: aiohttp.ClientSession,
        logger: logging.Logger | None = None,
        reconnect_delays: Sequence[float] = DEFAULT_RECONNECT_DELAYS,
    ) -> None:
        if not reconnect_delays:
            raise ValueError("reconnect_delays must not be empty")
        self._config = config
        self._http = http_session
        self._logger = logger or logging.getLogger(__name__)
        self._reconnect_delays = tuple(reconnect_delays)
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task[None] | None = None
        self._heartbeat: asyncio.Task[None] | None = None
        self._reconnect: asyncio.Task[None] | None = None
        self._rejoins: set[asyncio.Task[None]] = set()
        self._channels: dict[str, _Channel] = {}
        self._refs = itertools.count(1)
        self._topics = itertools.count(1)
        self._start_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        """Whether the websocket is open."""
        return self._ws is not None and not self._ws.closed

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    def _next_ref(self) -> str:
        return str(next(self._refs))

    async def start(self) -> None:
        """Connect (if needed) and join every registered channel."""
        async with self._start_lock:
            if self.is_running:
                return
            await self._close_socket()
            url = build_realtime_url(self._config)
            self._logger.debug("Realtime connecting to %s", url.split("?", 1)[0])
            try:
                ws = await self._http.ws_connect(url)
            except (aiohttp.ClientError, OSError) as exc:
                raise RealtimeError(f"Realtime connection failed: {exc}") from exc
            self._ws = ws
            self._reader = asyncio.create_task(self._read_loop(ws))
            self._heartbeat = asyncio.create_task(self._heartbeat_loop(ws))
            self._logger.debug("Realtime socket open channels=%s", len(self._channels))
            for channel in list(self._channels.values()):
                await self._send_join(channel)

    async def stop(self) -> None:
        """Leave every channel and close the socket."""
        self._channels.clear()
        pending = [t for t in (self._reconnect, *self._rejoins) if t is not None and not t.done()]
        self._reconnect = None
        self._rejoins.clear()
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)
        await self._close_socket()

    async def _close_socket(self) -> None:
        ws = self._ws
        self._ws = None
        for task in (self._heartbeat, self._reader):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._heartbeat = None
        self._reader = None
        if ws is not None and not ws.closed:
            await ws.close()
            self._logger.debug("Realtime socket closed")

    async def join(self, key_filter: str, on_change: ChangeHandler) -> str:
        """Open a channel for rows matching *key_filter*; returns its topic."""
        topic = f"{CHANNEL_TOPIC_PREFIX}{CHANNEL_NAME}:{next(self._topics)}"
        channel = _Channel(topic=topic, key_filter=key_filter, on_change=on_change)
        self._channels[topic] = channel
        try:
            if self.is_running:
                await self._send_join(channel)
            else:
                await self.start()
        except BaseException:
            self._channels.pop(topic, None)
            raise
        return topic

    async def leave(self, topic: str) -> None:
        """Close the channel *topic*. Unknown topics are ignored."""
        channel = self._channels.pop(topic, None)
        if channel is None or not self.is_running:
            return
        try:
            await self._send(
                {
                    "topic": topic,
                    "event": "phx_leave",
                    "payload": {},
                    "ref": self._next_ref(),
                    "join_ref": channel.join_ref,
                }
            )
        except RealtimeError:
            self._logger.debug("Realtime leave failed topic=%s", topic, exc_info=True)

    async def _send_join(self, channel: _Channel) -> None:
        ref = self._next_ref()
        channel.join_ref = ref
        await self._send(
            {
                "topic": channel.topic,
                "event": "phx_join",
                "payload": {
                    "config": {
                        "broadcast": {"ack": False, "self": False},
                        "presence": {"key": ""},
                        "postgres_changes": [
                            {
                                "event": "*",
                                "schema": self._config.schema,
                                "table": self._config.table,
                                "filter": channel.key_filter,
                            }
                        ],
                        "private": False,
                    },
                    "access_token": self._config.bearer_token,
                },
                "ref": ref,
                "join_ref": ref,
            }
        )
        self._logger.debug("Realtime join topic=%s filter=%s", channel.topic, channel.key_filter)

    async def _send(self, message: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise RealtimeError("Realtime socket is not connected")
        try:
            await ws.send_str(json.dumps(message, separators=(",", ":")))
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise RealtimeError(f"Realtime send failed: {exc}") from exc

    async def _heartbeat_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        interval = self._config.realtime_heartbeat_interval
        while not ws.closed:
            await asyncio.sleep(interval)
            try:
                await self._send({"topic": PHOENIX_TOPIC, "event": "heartbeat", "payload": {}, "ref": self._next_ref()})
            except RealtimeError:
                self._logger.debug("Realtime heartbeat failed", exc_info=True)
                return

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    message = decode_realtime_message(msg.data)
                except RealtimeError:
                    self._logger.debug("Realtime frame parse failure", exc_info=True)
                    continue
                self.dispatch(message)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                self._logger.warning("Realtime socket error: %s", ws.exception())
                break
        self._logger.debug("Realtime read loop ended close_code=%s", ws.close_code)
        if self._ws is ws and self._channels and (self._reconnect is None or self._reconnect.done()):
            self._logger.warning("Realtime socket dropped with %s channel(s) open, reconnecting", len(self._channels))
            self._reconnect = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        attempt = 0
        while self._channels and not self.is_running:
            delay = self._reconnect_delays[min(attempt, len(self._reconnect_delays) - 1)]
            attempt += 1
            await asyncio.sleep(delay)
            if not self._channels:
                return
            try:
                await self.start()
            except RealtimeError as exc:
                self._logger.warning("Realtime reconnect attempt %s failed: %s", attempt, exc)
                continue
            self._logger.info("Realtime reconnected after %s attempt(s) channels=%s", attempt, len(self._channels))

    async def _rejoin(self, topic: str) -> None:
        channel = self._channels.get(topic)
        if channel is None or not self.is_running:
            return
        try:
            await self._send_join(channel)
        except RealtimeError:
            self._logger.debug("Realtime rejoin failed topic=%s", topic, exc_info=True)

    def dispatch(self, message: RealtimeMessage) -> None:
        """Route one decoded frame to its channel."""
        if message.event == "phx_reply":
            status = message.payload.get("status")
            if status not in (None, "ok"):
                self._logger.warning(
                    "Realtime request rejected topic=%s response=%s",
                    message.topic,
                    redact_for_log(message.payload),
                )
            return

        if message.event in ("phx_error", "phx_close"):
            if message.topic not in self._channels:
                return
            self._logger.warning("Realtime channel %s closed by server (%s), rejoining", message.topic, message.event)
            task = asyncio.get_running_loop().create_task(self._rejoin(message.topic))
            self._rejoins.add(task)
            task.add_done_callback(self._rejoins.discard)
            return

        change = parse_change_event(message)
        if change is None:
            self._logger.debug("Realtime event=%s topic=%s ignored", message.event, message.topic)
            return

        channel = self._channels.get(message.topic)
        if channel is None:
            return
        try:
            channel.on_change(change)
        except Exception:
            self._logger.debug("Realtime change handler failed topic=%s", message.topic, exc_info=True)
