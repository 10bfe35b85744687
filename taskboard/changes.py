"""Change notifications and the channel that carries them to a reconciler."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator, Union

from taskboard.errors import FetchError, StreamError
from taskboard.models import Task

EVENT_KINDS = {"INSERT", "UPDATE", "DELETE"}


@dataclass(frozen=True)
class Inserted:
    task: Task


@dataclass(frozen=True)
class Updated:
    task: Task


@dataclass(frozen=True)
class Deleted:
    task_id: str


@dataclass(frozen=True)
class Resync:
    """Posted by the transport after a reconnect; missed events must be reloaded."""


ChangeEvent = Union[Inserted, Updated, Deleted]
ChannelMessage = Union[Inserted, Updated, Deleted, Resync]


def decode_change(payload: dict[str, Any]) -> ChangeEvent:
    """Turn a row-level ``{old, new, eventType}`` notification into an event."""
    event_kind = payload.get("eventType")
    if event_kind not in EVENT_KINDS:
        raise StreamError(
            "INVALID_EVENT",
            "Unknown change event type.",
            {"eventType": str(event_kind)},
        )
    try:
        if event_kind == "INSERT":
            return Inserted(Task.from_row(payload.get("new")))
        if event_kind == "UPDATE":
            return Updated(Task.from_row(payload.get("new")))
    except FetchError as exc:
        raise StreamError(
            "INVALID_EVENT", exc.error.message, exc.error.details
        ) from exc

    old = payload.get("old")
    if not isinstance(old, dict) or old.get("id") in (None, ""):
        raise StreamError(
            "INVALID_EVENT",
            "Delete event is missing the row id.",
            {"eventType": event_kind},
        )
    return Deleted(str(old["id"]))


class ChangeChannel:
    """Single-consumer queue of change messages."""

    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def post(self, message: ChannelMessage) -> None:
        if self._closed:
            return
        self._queue.put_nowait(message)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    def pending(self) -> int:
        return self._queue.qsize()

    async def __aiter__(self) -> AsyncIterator[ChannelMessage]:
        while True:
            message = await self._queue.get()
            if message is self._CLOSED:
                return
            yield message
