from __future__ import annotations

import json

from app.core.events import StreamEvent, StreamEventHub, StreamEventType


class FakeSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def accept(self):
        pass

    async def send_text(self, payload):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(payload))


async def test_emit_broadcasts_and_drops_dead_sockets():
    hub = StreamEventHub(buffer_size=10)
    alive, dead = FakeSocket(), FakeSocket(fail=True)
    await hub.connect(alive)
    await hub.connect(dead)

    await hub.emit_status({"state": "live", "current_video_id": 3})
    assert alive.sent[0]["event_type"] == "STATUS_CHANGED"
    assert alive.sent[0]["video_id"] == 3
    assert hub.get_stats()["active_connections"] == 1


async def test_buffer_is_bounded_and_filterable():
    hub = StreamEventHub(buffer_size=3)
    for i in range(5):
        await hub.emit(StreamEvent(event_type=StreamEventType.LOOP_ADVANCED.value, video_id=i))
    await hub.emit(StreamEvent(event_type=StreamEventType.ENCODER_EXITED.value))

    assert [e.video_id for e in hub.recent(event_types=["LOOP_ADVANCED"])] == [3, 4]
    assert hub.get_stats()["buffer_size"] == 3
    assert hub.get_stats()["total_events_emitted"] == 6


async def test_replay_sends_buffered_events():
    hub = StreamEventHub()
    await hub.emit(StreamEvent(event_type=StreamEventType.ENCODER_STARTED.value, video_id=1))
    socket = FakeSocket()
    await hub.replay(socket)
    assert [m["event_type"] for m in socket.sent] == ["ENCODER_STARTED"]
