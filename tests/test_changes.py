import asyncio

import pytest

from taskboard.changes import ChangeChannel, Deleted, Inserted, Resync, Updated, decode_change
from taskboard.errors import StreamError

ROW = {
    "id": "task-1",
    "title": "Write tests",
    "description": None,
    "is_completed": False,
    "user_id": "user-1",
    "created_at": "2026-01-01T00:00:00+00:00",
}


def test_decode_insert_and_update():
    inserted = decode_change({"eventType": "INSERT", "new": ROW, "old": {}})
    updated = decode_change(
        {"eventType": "UPDATE", "new": {**ROW, "is_completed": True}, "old": {"id": "task-1"}}
    )

    assert isinstance(inserted, Inserted)
    assert inserted.task.owner == "user-1"
    assert isinstance(updated, Updated)
    assert updated.task.is_completed is True


def test_decode_delete_uses_old_row_id():
    event = decode_change({"eventType": "DELETE", "new": {}, "old": {"id": 17}})

    assert event == Deleted("17")


def test_decode_rejects_unknown_event():
    with pytest.raises(StreamError) as excinfo:
        decode_change({"eventType": "TRUNCATE"})

    assert excinfo.value.error.code == "INVALID_EVENT"


def test_decode_rejects_malformed_rows():
    with pytest.raises(StreamError):
        decode_change({"eventType": "INSERT", "new": {"id": "x"}})
    with pytest.raises(StreamError):
        decode_change({"eventType": "DELETE", "old": {}})


@pytest.mark.asyncio
async def test_channel_delivers_in_order_until_closed():
    channel = ChangeChannel()
    channel.post(Deleted("1"))
    channel.post(Resync())
    channel.close()
    channel.post(Deleted("2"))

    received = [message async for message in channel]

    assert received == [Deleted("1"), Resync()]
    assert channel.closed is True
