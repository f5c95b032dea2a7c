from __future__ import annotations
import pytest
from stlbridge.services.realtime import ChannelFrame, RealtimeChannel, room_name

def frame(n: int) -> ChannelFrame:
    return ChannelFrame("import-status-update", {"seq": n})

def received(subscriber):
    frames = []
    while not subscriber.queue.empty():
        frames.append(subscriber.queue.get_nowait().data["seq"])
    return frames

def test_room_name():
    assert room_name("abc") == "import-abc"

@pytest.mark.asyncio
async def test_publish_reaches_only_room_members():
    channel = RealtimeChannel()
    alice = channel.connect("alice")
    bob = channel.connect("bob")
    channel.join(alice, "job-1")
    channel.join(bob, "job-2")

    assert channel.publish("job-1", frame(1)) == 1
    assert received(alice) == [1]
    assert received(bob) == []

@pytest.mark.asyncio
async def test_frames_are_fifo_per_room():
    channel = RealtimeChannel()
    sub = channel.connect()
    channel.join(sub, "job-1")
    channel.join(sub, "job-2")

    channel.publish_many("job-1", [frame(1), frame(2)])
    channel.publish("job-2", frame(10))
    channel.publish("job-1", frame(3))

    assert received(sub) == [1, 2, 10, 3]

@pytest.mark.asyncio
async def test_leave_and_disconnect_stop_delivery():
    channel = RealtimeChannel()
    sub = channel.connect()
    channel.join(sub, "job-1")
    channel.join(sub, "job-2")

    assert channel.leave(sub, "job-1")
    assert not channel.leave(sub, "job-1")
    assert channel.publish("job-1", frame(1)) == 0

    channel.disconnect(sub)
    assert channel.publish("job-2", frame(2)) == 0
    assert channel.subscriber_count == 0
    assert channel.room_count == 0

@pytest.mark.asyncio
async def test_join_delivers_snapshot_first():
    channel = RealtimeChannel()
    sub = channel.connect()
    channel.join(sub, "job-1", snapshot=[frame(0)])
    channel.publish("job-1", frame(1))
    assert received(sub) == [0, 1]

@pytest.mark.asyncio
async def test_close_room_removes_all_members():
    channel = RealtimeChannel()
    subs = [channel.connect() for _ in range(3)]
    for sub in subs:
        channel.join(sub, "job-1")

    assert channel.close_room("job-1") == 3
    assert channel.room_members("job-1") == []
    assert all("job-1" not in sub.rooms for sub in subs)
    assert channel.publish("job-1", frame(1)) == 0

@pytest.mark.asyncio
async def test_full_inbox_drops_frames():
    channel = RealtimeChannel(max_queue_size=2)
    sub = channel.connect()
    channel.join(sub, "job-1")

    delivered = channel.publish_many("job-1", [frame(1), frame(2), frame(3)])

    assert delivered == 2
    assert received(sub) == [1, 2]

@pytest.mark.asyncio
async def test_receive_waits_for_frames():
    channel = RealtimeChannel()
    sub = channel.connect()
    channel.join(sub, "job-1")
    channel.publish("job-1", frame(7))
    got = await sub.receive()
    assert got.to_dict() == {"event": "import-status-update", "data": {"seq": 7}}
