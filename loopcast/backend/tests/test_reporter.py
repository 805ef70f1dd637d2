from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.models.models import StreamState
from app.services.stream.reporter import UptimeReporter, format_uptime

START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("elapsed_ms,expected", [
    (0, "00:00:00"),
    (999, "00:00:00"),
    (3_661_000, "01:01:01"),
    (90_000_000, "25:00:00"),
    (-5, "00:00:00"),
])
def test_format_uptime(elapsed_ms, expected):
    assert format_uptime(elapsed_ms) == expected


async def test_tick_writes_uptime_while_live(store):
    await store.create_or_update_stream_status({
        "state": StreamState.LIVE, "current_video_id": 1, "started_at": START,
    })
    updates = []

    async def on_update(record):
        updates.append(record.uptime)

    reporter = UptimeReporter(store, clock=lambda: START + timedelta(seconds=65),
                              on_update=on_update)
    record = await reporter.tick()
    assert record.uptime == "00:01:05"
    assert record.viewer_count == 0
    assert updates == ["00:01:05"]


async def test_tick_does_nothing_when_not_live(store):
    reporter = UptimeReporter(store, clock=lambda: START + timedelta(hours=1))
    assert await reporter.tick() is None
    status = await store.get_stream_status()
    assert status.state == StreamState.OFFLINE
    assert status.uptime == "00:00:00"


async def test_stale_tick_does_not_resurrect_live(store):
    await store.create_or_update_stream_status({
        "state": StreamState.LIVE, "current_video_id": 1, "started_at": START,
    })
    reporter = UptimeReporter(store, clock=lambda: START + timedelta(seconds=10))

    original_get = store.get_stream_status

    async def read_then_stop():
        # The stop lands between the reporter's read and its write
        snapshot = await original_get()
        await store.create_or_update_stream_status({
            "state": StreamState.OFFLINE, "current_video_id": None, "started_at": None,
        })
        return snapshot

    store.get_stream_status = read_then_stop
    assert await reporter.tick() is None
    store.get_stream_status = original_get

    status = await store.get_stream_status()
    assert status.state == StreamState.OFFLINE
    assert status.uptime == "00:00:00"


async def test_start_and_stop_are_idempotent(store):
    reporter = UptimeReporter(store, interval=3600)
    reporter.start()
    reporter.start()
    assert reporter.running
    reporter.stop()
    reporter.stop()
    assert not reporter.running
