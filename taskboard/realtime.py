"""Client side of the hosted backend's change-notification socket.

Each subscription owns one websocket connection and one background task. The
task joins a ``postgres_changes`` topic for a table, forwards decoded row
events into a :class:`ChangeChannel` and reconnects with a capped backoff
when the socket drops. Every re-join that may have missed events posts a
:class:`Resync` marker so the consumer can reload.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Callable
from urllib.parse import urlencode

import websockets
from websockets.exceptions import WebSocketException

from taskboard.changes import ChangeChannel, Resync, decode_change
from taskboard.errors import StreamError

logger = logging.getLogger(__name__)

REALTIME_PATH = "/realtime/v1/websocket"
PROTOCOL_VERSION = "1.0.0"
DEFAULT_RETRY_DELAYS = (1.0, 2.0, 5.0, 10.0, 30.0)

_TRANSPORT_ERRORS = (
    OSError,
    ValueError,
    asyncio.TimeoutError,
    WebSocketException,
    StreamError,
)


def realtime_url(backend_url: str, api_key: str) -> str:
    """Build the websocket URL for a backend base URL."""
    base = backend_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://") :]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://") :]
    query = urlencode({"apikey": api_key, "vsn": PROTOCOL_VERSION})
    return f"{base}{REALTIME_PATH}?{query}"


def build_join_message(
    topic: str, table: str, predicate: str | None, access_token: str, ref: str
) -> dict[str, Any]:
    change_filter: dict[str, Any] = {"event": "*", "schema": "public", "table": table}
    if predicate:
        change_filter["filter"] = predicate
    return {
        "topic": topic,
        "event": "phx_join",
        "payload": {
            "config": {
                "broadcast": {"self": False},
                "presence": {"key": ""},
                "postgres_changes": [change_filter],
            },
            "access_token": access_token,
        },
        "ref": ref,
    }


def postgres_change_payload(message: dict[str, Any]) -> dict[str, Any]:
    """Map a socket ``postgres_changes`` message to ``{old, new, eventType}``."""
    payload = message.get("payload")
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        raise StreamError(
            "INVALID_EVENT",
            "Change message is missing its data.",
            {"topic": str(message.get("topic"))},
        )
    return {
        "eventType": data.get("type"),
        "new": data.get("record"),
        "old": data.get("old_record"),
    }


class Subscription:
    """Handle for one live table subscription."""

    def __init__(
        self,
        *,
        url: str,
        table: str,
        predicate: str | None,
        channel: ChangeChannel,
        access_token: str,
        connect: Callable[[str], Any],
        heartbeat_interval: float,
        join_timeout: float,
        retry_delays: tuple[float, ...],
    ) -> None:
        self.table = table
        self.predicate = predicate
        self.topic = f"realtime:{table}"
        self.channel = channel
        self.live = False
        self.attempts = 0
        self._url = url
        self._access_token = access_token
        self._connect = connect
        self._heartbeat_interval = heartbeat_interval
        self._join_timeout = join_timeout
        self._retry_delays = retry_delays or DEFAULT_RETRY_DELAYS
        self._ref = 0
        self._closing = False
        self._resync_on_join = False
        self._first_attempt_done = asyncio.Event()
        self._socket: Any = None
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"realtime-{self.topic}")

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    async def wait_first_attempt(self, timeout: float) -> bool:
        """Wait for the first join to finish; on timeout the next join resyncs."""
        try:
            await asyncio.wait_for(self._first_attempt_done.wait(), timeout)
        except asyncio.TimeoutError:
            self._resync_on_join = True
            return False
        return self.live

    async def _run(self) -> None:
        failures = 0
        while not self._closing:
            self.attempts += 1
            try:
                async with self._connect(self._url) as socket:
                    self._socket = socket
                    await self._join(socket)
                    failures = 0
                    self.live = True
                    logger.info("subscribed to %s", self.topic)
                    if self.attempts > 1 or self._resync_on_join:
                        self._resync_on_join = False
                        self.channel.post(Resync())
                    self._first_attempt_done.set()
                    await self._pump(socket)
            except _TRANSPORT_ERRORS as exc:
                if not self._closing:
                    logger.warning("change stream for %s failed: %s", self.topic, exc)
            except Exception:
                logger.exception("unexpected change stream failure on %s", self.topic)
            finally:
                self._socket = None
                self.live = False
                self._first_attempt_done.set()
            if self._closing:
                break
            delay = self._retry_delays[min(failures, len(self._retry_delays) - 1)]
            failures += 1
            await asyncio.sleep(delay)

    async def _join(self, socket: Any) -> None:
        ref = self._next_ref()
        message = build_join_message(
            self.topic, self.table, self.predicate, self._access_token, ref
        )
        await socket.send(json.dumps(message))

        async def _await_reply() -> dict[str, Any]:
            while True:
                raw = await socket.recv()
                try:
                    reply = json.loads(raw)
                except ValueError:
                    logger.warning("ignoring non-JSON message on %s", self.topic)
                    continue
                if not isinstance(reply, dict):
                    continue
                if reply.get("event") == "phx_reply" and reply.get("ref") == ref:
                    return reply

        reply = await asyncio.wait_for(_await_reply(), self._join_timeout)
        payload = reply.get("payload")
        if not isinstance(payload, dict):
            payload = {}
        if payload.get("status") != "ok":
            raise StreamError(
                "JOIN_REJECTED",
                "Change stream subscription was rejected.",
                {"topic": self.topic, "response": payload.get("response")},
            )

    async def _pump(self, socket: Any) -> None:
        heartbeat = asyncio.create_task(self._heartbeat(socket))
        try:
            async for raw in socket:
                self._handle(raw)
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

    async def _heartbeat(self, socket: Any) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            await socket.send(
                json.dumps(
                    {
                        "topic": "phoenix",
                        "event": "heartbeat",
                        "payload": {},
                        "ref": self._next_ref(),
                    }
                )
            )

    def _handle(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("ignoring non-JSON message on %s", self.topic)
            return
        if not isinstance(message, dict) or message.get("topic") != self.topic:
            return
        event = message.get("event")
        if event in {"phx_error", "phx_close"}:
            raise StreamError(
                "CHANNEL_CLOSED",
                "Change stream channel closed by the server.",
                {"topic": self.topic, "event": event},
            )
        if event != "postgres_changes":
            return
        try:
            change = decode_change(postgres_change_payload(message))
        except StreamError as exc:
            logger.warning("skipping undecodable change on %s: %s", self.topic, exc)
            return
        self.channel.post(change)

    async def close(self) -> None:
        self._closing = True
        socket = self._socket
        if socket is not None:
            leave = {
                "topic": self.topic,
                "event": "phx_leave",
                "payload": {},
                "ref": self._next_ref(),
            }
            with contextlib.suppress(*_TRANSPORT_ERRORS):
                await socket.send(json.dumps(leave))
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self.live = False


class RealtimeClient:
    """Factory for table subscriptions on one backend."""

    def __init__(
        self,
        backend_url: str,
        api_key: str,
        *,
        connect: Callable[[str], Any] | None = None,
        heartbeat_interval: float = 25.0,
        join_timeout: float = 10.0,
        retry_delays: tuple[float, ...] = DEFAULT_RETRY_DELAYS,
    ) -> None:
        self.url = realtime_url(backend_url, api_key)
        self._connect = connect or websockets.connect
        self._heartbeat_interval = heartbeat_interval
        self._join_timeout = join_timeout
        self._retry_delays = retry_delays

    def subscribe(
        self,
        table: str,
        predicate: str | None,
        channel: ChangeChannel,
        access_token: str,
    ) -> Subscription:
        subscription = Subscription(
            url=self.url,
            table=table,
            predicate=predicate,
            channel=channel,
            access_token=access_token,
            connect=self._connect,
            heartbeat_interval=self._heartbeat_interval,
            join_timeout=self._join_timeout,
            retry_delays=self._retry_delays,
        )
        subscription.start()
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        await subscription.close()
        logger.info("unsubscribed from %s", subscription.topic)
