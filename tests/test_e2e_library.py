from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import pytest

from pycloudsync._realtime import ChangeEvent
from pycloudsync._transport import RestResponse
from pycloudsync.client import CloudStorageClient
from pycloudsync.config import CloudSyncConfig, LocalKeyScope, SentinelLocation
from pycloudsync.exceptions import RetrievalError
from pycloudsync.identity import Identity
from pycloudsync.state.events import CacheSource, CacheStatus
from pycloudsync.storage.local import MemoryLocalCache

ANA = {"name": "Ana", "license": "B"}


@dataclass
class FakeSupabaseBackend:
    """PostgREST table plus realtime fan-out, in process."""

    rows: dict[str, str] = field(default_factory=dict)
    calls: dict[str, int] = field(default_factory=dict)
    reads_should_fail: bool = False
    channels: dict[str, tuple[str, Callable[[ChangeEvent], None]]] = field(default_factory=dict)
    _topic_seq: int = 0

    def _record_call(self, method: str) -> None:
        self.calls[method] = self.calls.get(method, 0) + 1

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Any = None,
        headers: Any = None,
        json_body: Any = None,
    ) -> RestResponse:
        self._record_call(method)
        await asyncio.sleep(0)
        assert endpoint == "/user_data"

        if method == "GET":
            if self.reads_should_fail:
                return RestResponse(status=503, body=None)
            key = params["key"].removeprefix("eq.")
            if key not in self.rows:
                return RestResponse(
                    status=406,
                    body={"code": "PGRST116", "message": "JSON object requested, multiple (or no) rows returned"},
                )
            return RestResponse(status=200, body={"value": self.rows[key]})

        if method == "POST":
            assert params == {"on_conflict": "key"}
            key = json_body["key"]
            assert key.startswith(f"{json_body['user_id']}:")
            self.rows[key] = json_body["value"]
            self._broadcast(key, json_body["value"])
            return RestResponse(status=201, body=None)

        raise AssertionError(f"Unexpected request in fake backend: {method} {endpoint}")

    def _broadcast(self, key: str, value: str) -> None:
        loop = asyncio.get_running_loop()
        for topic, (key_filter, handler) in list(self.channels.items()):
            if key_filter == f"key=eq.{key}":
                change = ChangeEvent(topic=topic, type="UPDATE", record={"key": key, "value": value}, old_record={})
                loop.call_soon(self._deliver, topic, handler, change)

    def _deliver(self, topic: str, handler: Callable[[ChangeEvent], None], change: ChangeEvent) -> None:
        if topic in self.channels:
            handler(change)

    def join(self, key_filter: str, on_change: Callable[[ChangeEvent], None]) -> str:
        self._topic_seq += 1
        topic = f"realtime:user_data_changes:{self._topic_seq}"
        self.channels[topic] = (key_filter, on_change)
        return topic

    def leave(self, topic: str) -> None:
        self.channels.pop(topic, None)


@pytest.fixture
def config() -> CloudSyncConfig:
    return CloudSyncConfig(supabase_url="https://example.supabase.co", supabase_key="anon-key")


@pytest.fixture
def backend(monkeypatch: pytest.MonkeyPatch) -> FakeSupabaseBackend:
    fake_backend = FakeSupabaseBackend()

    async def fake_request(_self: Any, method: str, endpoint: str, **kwargs: Any) -> RestResponse:
        return await fake_backend.request(method, endpoint, **kwargs)

    async def fake_join(_self: Any, key_filter: str, on_change: Callable[[ChangeEvent], None]) -> str:
        return fake_backend.join(key_filter, on_change)

    async def fake_leave(_self: Any, topic: str) -> None:
        fake_backend.leave(topic)

    async def fake_stop(_self: Any) -> None:
        fake_backend.channels.clear()

    monkeypatch.setattr("pycloudsync._transport.RestTransport.request", fake_request)
    monkeypatch.setattr("pycloudsync._realtime.RealtimeRuntime.join", fake_join)
    monkeypatch.setattr("pycloudsync._realtime.RealtimeRuntime.leave", fake_leave)
    monkeypatch.setattr("pycloudsync._realtime.RealtimeRuntime.stop", fake_stop)

    return fake_backend


async def _settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_e2e_client_happy_path_exercises_full_library(
    config: CloudSyncConfig, backend: FakeSupabaseBackend
) -> None:
    local = MemoryLocalCache({"students": '[{"name":"Ana","license":"B"}]'})
    user = Identity(subject="auth0|user-1")

    async with CloudStorageClient(config, local=local) as client:
        client.set_identity(user)
        students = client.open("students", [])
        other_tab = client.open("students", [])
        lessons = client.open("lessons", [])

        state = await students.wait_until_loaded()
        await other_tab.wait_until_loaded()
        await lessons.wait_until_loaded()
        await _settle()

        assert state.value == [ANA]
        assert state.last_source == CacheSource.REMOTE
        assert lessons.value == []
        assert backend.rows["auth0|user-1:lessons"] == "[]"
        assert len(backend.channels) == 3

        outcome = await students.set_value(lambda rows: [*rows, {"name": "Ben", "license": "A2"}])
        await _settle()

        assert outcome.ok
        assert other_tab.value == [ANA, {"name": "Ben", "license": "A2"}]
        assert other_tab.state.last_source == CacheSource.REALTIME_PUSH
        assert backend.rows["auth0|user-1:students"] == '[{"name":"Ana","license":"B"},{"name":"Ben","license":"A2"}]'

    assert backend.channels == {}
    assert local.get("auth0|user-1:migration_completed") == "true"


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_e2e_unreachable_store_falls_back_then_recovers(
    config: CloudSyncConfig, backend: FakeSupabaseBackend
) -> None:
    backend.rows["auth0|user-1:classes"] = '[{"day":"mon"}]'
    backend.reads_should_fail = True
    local = MemoryLocalCache({"classes": '[{"day":"tue"}]'})

    async with CloudStorageClient(config, local=local) as client:
        client.set_identity(Identity(subject="auth0|user-1"))
        classes = client.open("classes", [])

        state = await classes.wait_until_loaded()
        assert state.status == CacheStatus.ERROR
        assert state.value == [{"day": "tue"}]
        assert isinstance(state.error, RetrievalError)

        backend.reads_should_fail = False
        state = await classes.reload()

    assert state.status == CacheStatus.READY
    # Migration copied the legacy local value over the remote one.
    assert state.value == [{"day": "tue"}]


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_e2e_identity_switch_isolates_entries(backend: FakeSupabaseBackend) -> None:
    backend.rows["auth0|user-2:students"] = '[{"name":"Cara","license":"C"}]'
    # Shared local keys would let user-2's migration pick up user-1's write.
    config = CloudSyncConfig(
        supabase_url="https://example.supabase.co",
        supabase_key="anon-key",
        local_key_scope=LocalKeyScope.IDENTITY,
    )

    async with CloudStorageClient(config) as client:
        client.set_identity(Identity(subject="auth0|user-1"))
        students = client.open("students", [])
        await students.wait_until_loaded()
        await students.set_value([ANA])

        client.set_identity(Identity(subject="auth0|user-2"))
        assert students.status == CacheStatus.LOADING
        state = await students.wait_until_loaded()
        await _settle()

        assert state.value == [{"name": "Cara", "license": "C"}]
        assert [flt for flt, _ in backend.channels.values()] == ["key=eq.auth0|user-2:students"]

    assert backend.rows["auth0|user-1:students"] == '[{"name":"Ana","license":"B"}]'


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_e2e_remote_sentinel_prevents_migration_on_second_device(backend: FakeSupabaseBackend) -> None:
    config = CloudSyncConfig(
        supabase_url="https://example.supabase.co",
        supabase_key="anon-key",
        sentinel_location=SentinelLocation.REMOTE,
        realtime_enabled=False,
    )
    user = Identity(subject="auth0|user-1")

    async with CloudStorageClient(config, local=MemoryLocalCache({"lessons": '[{"minutes":45}]'})) as client:
        report = await client.run_migration_once(user)
        assert report.migrated == ("lessons",)

    assert backend.rows["auth0|user-1:migration_completed"] == "true"

    async with CloudStorageClient(config, local=MemoryLocalCache({"lessons": '[{"minutes":5}]'})) as client:
        report = await client.run_migration_once(user)
        assert report.skipped is True

    assert backend.rows["auth0|user-1:lessons"] == '[{"minutes":45}]'
    assert backend.channels == {}
