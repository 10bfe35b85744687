from __future__ import annotations

import asyncio
from urllib.parse import parse_qs, urlparse

import pytest

from taskboard.changes import ChangeChannel, Deleted, Inserted, Resync
from taskboard.errors import StreamError
from taskboard.models import Task
from taskboard.realtime import (
    RealtimeClient,
    build_join_message,
    postgres_change_payload,
    realtime_url,
)

from .fakes import FakeConnector, FakeSocket

ROW = {
    "id": "task-1",
    "title": "Ship it",
    "description": None,
    "is_completed": False,
    "user_id": "user-1",
    "created_at": "2026-01-01T00:00:00+00:00",
}


class _GatedSocket:
    def __init__(self, gate: asyncio.Event, socket: FakeSocket) -> None:
        self.gate = gate
        self.socket = socket

    async def __aenter__(self) -> FakeSocket:
        await self.gate.wait()
        return self.socket

    async def __aexit__(self, *exc_info) -> None:
        return None


class _GatedConnector(FakeConnector):
    """Connects only once the gate opens."""

    def __init__(self, gate: asyncio.Event, *outcomes) -> None:
        super().__init__(*outcomes)
        self.gate = gate

    def __call__(self, url: str):
        return _GatedSocket(self.gate, super().__call__(url))


async def _next(channel: ChangeChannel):
    iterator = channel.__aiter__()
    return await asyncio.wait_for(iterator.__anext__(), 1.0)


def _client(connector: FakeConnector) -> RealtimeClient:
    return RealtimeClient(
        "https://backend.test",
        "anon",
        connect=connector,
        heartbeat_interval=60.0,
        join_timeout=1.0,
        retry_delays=(0.01,),
    )


def test_realtime_url_switches_scheme_and_adds_key():
    url = realtime_url("https://backend.test/", "anon")

    parsed = urlparse(url)
    assert parsed.scheme == "wss"
    assert parsed.path == "/realtime/v1/websocket"
    assert parse_qs(parsed.query) == {"apikey": ["anon"], "vsn": ["1.0.0"]}
    assert realtime_url("http://localhost:54321", "k").startswith("ws://localhost:54321/")


def test_join_message_filters_by_predicate():
    message = build_join_message("realtime:tasks", "tasks", "user_id=eq.u1", "tok", "1")

    change_filter = message["payload"]["config"]["postgres_changes"][0]
    assert message["event"] == "phx_join"
    assert message["payload"]["access_token"] == "tok"
    assert change_filter == {
        "event": "*",
        "schema": "public",
        "table": "tasks",
        "filter": "user_id=eq.u1",
    }


def test_postgres_change_payload_requires_data():
    with pytest.raises(StreamError):
        postgres_change_payload({"topic": "realtime:tasks", "payload": {}})


@pytest.mark.asyncio
async def test_subscription_forwards_changes_and_resyncs_after_reconnect():
    first, second = FakeSocket(), FakeSocket()
    connector = FakeConnector(first, second)
    client = _client(connector)
    channel = ChangeChannel()

    subscription = client.subscribe("tasks", "user_id=eq.user-1", channel, "tok")
    assert await subscription.wait_first_attempt(1.0) is True
    assert subscription.live is True

    first.push_change("realtime:tasks", "INSERT", ROW)
    first.push_change("realtime:tasks", "DELETE", None, {"id": "task-1"})
    assert await _next(channel) == Inserted(Task.from_row(ROW))
    assert await _next(channel) == Deleted("task-1")

    first.drop()
    assert await _next(channel) == Resync()
    await asyncio.wait_for(second.joined.wait(), 1.0)

    await client.unsubscribe(subscription)

    assert subscription.live is False
    assert second.sent[-1]["event"] == "phx_leave"
    assert first.sent[0]["payload"]["access_token"] == "tok"


@pytest.mark.asyncio
async def test_undecodable_and_foreign_messages_are_skipped():
    socket = FakeSocket()
    client = _client(FakeConnector(socket))
    channel = ChangeChannel()
    subscription = client.subscribe("tasks", None, channel, "tok")
    await subscription.wait_first_attempt(1.0)

    socket.push_change("realtime:other", "INSERT", ROW)
    socket.push_change("realtime:tasks", "INSERT", {"id": "broken"})
    socket.push_change("realtime:tasks", "UPDATE", {**ROW, "title": "Shipped"})

    event = await _next(channel)
    assert event.task.title == "Shipped"

    await client.unsubscribe(subscription)


@pytest.mark.asyncio
async def test_rejected_join_retries_and_resyncs_once_established():
    rejected, accepted = FakeSocket(join_status="error"), FakeSocket()
    client = _client(FakeConnector(OSError("refused"), rejected, accepted))
    channel = ChangeChannel()

    subscription = client.subscribe("tasks", None, channel, "tok")
    assert await subscription.wait_first_attempt(1.0) is False

    assert await _next(channel) == Resync()
    assert subscription.live is True
    assert subscription.attempts == 3

    await client.unsubscribe(subscription)


@pytest.mark.asyncio
async def test_first_join_timeout_forces_resync_on_late_join():
    socket = FakeSocket()
    gate = asyncio.Event()
    client = _client(_GatedConnector(gate, socket))
    channel = ChangeChannel()
    subscription = client.subscribe("tasks", None, channel, "tok")

    assert await subscription.wait_first_attempt(0.01) is False
    gate.set()

    assert await _next(channel) == Resync()
    await client.unsubscribe(subscription)


@pytest.mark.asyncio
async def test_garbage_frames_before_join_reply_are_skipped():
    socket = FakeSocket()
    socket.push_raw("not-json{")
    socket.push_raw("[1, 2]")
    connector = FakeConnector(socket)
    client = _client(connector)
    channel = ChangeChannel()

    subscription = client.subscribe("tasks", None, channel, "tok")

    assert await subscription.wait_first_attempt(1.0) is True
    assert len(connector.urls) == 1
    await client.unsubscribe(subscription)


@pytest.mark.asyncio
async def test_join_answered_only_with_garbage_reconnects():
    silent = FakeSocket(answer_join=False)
    silent.push_raw("not-json{")
    silent.push_raw('"just a string"')
    healthy = FakeSocket()
    connector = FakeConnector(silent, healthy)
    client = RealtimeClient(
        "https://backend.test",
        "anon",
        connect=connector,
        heartbeat_interval=60.0,
        join_timeout=0.05,
        retry_delays=(0.01,),
    )
    channel = ChangeChannel()

    subscription = client.subscribe("tasks", None, channel, "tok")

    assert await subscription.wait_first_attempt(1.0) is False
    assert await _next(channel) == Resync()
    assert subscription.live is True
    assert len(connector.urls) == 2
    await client.unsubscribe(subscription)
