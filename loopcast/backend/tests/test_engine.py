from __future__ import annotations

import sys

import pytest

from app.core.errors import NotFoundError, PreconditionError
from app.core.events import StreamEventHub
from app.models.models import StreamState
from app.services.stream.engine import FOREGROUND_SLOT, StreamEngine
from app.services.stream.supervisor import ProcessSupervisor
from conftest import add_profile, add_videos


@pytest.fixture
async def engine(store, supervisor, settings):
    engine = StreamEngine(store, supervisor, settings, hub=StreamEventHub())
    yield engine
    await engine.shutdown()


async def settle(engine):
    """Handle queued encoder events and any loop advance they scheduled."""
    await engine.drain_events()
    await engine.wait_for_advance()


async def test_start_without_selection_fails_and_keeps_state(engine, store):
    await add_profile(store)
    with pytest.raises(PreconditionError, match="No video selected"):
        await engine.go_live()
    status = await store.get_stream_status()
    assert status.state == StreamState.OFFLINE


async def test_start_without_profile_fails(engine, store):
    (a,) = await add_videos(store, "a")
    await engine.set_current(a.id)
    with pytest.raises(PreconditionError, match="Stream configuration not found"):
        await engine.go_live()


async def test_go_live_spawns_encoder(engine, store, supervisor):
    (a,) = await add_videos(store, "a")
    await add_profile(store, stream_key="secret")
    await engine.set_current(a.id)

    status, started = await engine.go_live()
    assert started
    assert status.state == StreamState.LIVE
    assert status.current_video_id == a.id
    assert status.started_at is not None
    assert status.uptime == "00:00:00"

    job = supervisor.started[-1]
    assert job.slot_key == FOREGROUND_SLOT
    assert job.video_id == a.id
    assert job.argv[-1] == "rtmp://localhost:1935/live/secret"
    assert engine.is_stream_active()
    assert engine.get_active_streams() == [FOREGROUND_SLOT]


async def test_stop_goes_offline(engine, store, supervisor):
    (a,) = await add_videos(store, "a")
    await add_profile(store)
    await engine.set_current(a.id)
    await engine.enable_loop()
    await engine.go_live()

    status = await engine.stop()
    assert status.state == StreamState.OFFLINE
    assert status.current_video_id is None
    assert status.started_at is None
    assert status.loop_playlist is False
    assert not engine.is_loop_enabled()
    assert supervisor.stopped == [FOREGROUND_SLOT]

    # The requested exit is not treated as an end of playback
    await settle(engine)
    assert (await store.get_stream_status()).state == StreamState.OFFLINE


async def test_loop_cycles_through_playlist(engine, store, supervisor):
    a, b, c = await add_videos(store, "a", "b", "c")
    await add_profile(store)
    await engine.set_current(a.id)
    await engine.enable_loop()
    await engine.go_live()
    assert engine.is_loop_enabled()

    played = [supervisor.started[-1].video_id]
    for _ in range(3):
        await supervisor.finish()
        await settle(engine)
        status = await store.get_stream_status()
        assert status.state == StreamState.LIVE
        assert status.loop_playlist is True
        played.append(supervisor.started[-1].video_id)
        assert status.current_video_id == played[-1]

    assert played == [a.id, b.id, c.id, a.id]


async def test_exit_without_loop_goes_offline(engine, store, supervisor):
    a, b = await add_videos(store, "a", "b")
    await add_profile(store)
    await engine.set_current(a.id)
    await engine.go_live()

    await supervisor.finish(return_code=0)
    await settle(engine)
    status = await store.get_stream_status()
    assert status.state == StreamState.OFFLINE
    assert status.current_video_id is None
    assert len(supervisor.started) == 1


async def test_failed_exit_without_loop_is_error(engine, store, supervisor):
    (a,) = await add_videos(store, "a")
    await add_profile(store)
    await engine.set_current(a.id)
    await engine.go_live()

    await supervisor.finish(return_code=1)
    await settle(engine)
    assert (await store.get_stream_status()).state == StreamState.ERROR


async def test_disable_loop_while_live(engine, store, supervisor):
    a, b = await add_videos(store, "a", "b")
    await add_profile(store)
    await engine.set_current(a.id)
    await engine.enable_loop()
    await engine.go_live()

    status = await engine.disable_loop()
    assert status.state == StreamState.LIVE
    assert status.current_video_id == a.id
    assert status.loop_playlist is False
    assert not engine.is_loop_enabled()

    # Playback now ends with the current item
    await supervisor.finish()
    await settle(engine)
    assert (await store.get_stream_status()).state == StreamState.OFFLINE


async def test_launch_failure_sets_error(engine, store, supervisor):
    (a,) = await add_videos(store, "a")
    await add_profile(store)
    await engine.set_current(a.id)
    supervisor.fail_launch = True

    _, started = await engine.go_live()
    assert not started
    await settle(engine)
    status = await store.get_stream_status()
    assert status.state == StreamState.ERROR
    assert not engine.is_loop_enabled()


async def test_every_item_failing_ends_in_error(engine, store, supervisor):
    a, b = await add_videos(store, "a", "b")
    await add_profile(store)
    await engine.set_current(a.id)
    await engine.enable_loop()
    await engine.go_live()

    await supervisor.finish(return_code=1)
    await settle(engine)
    assert (await store.get_stream_status()).current_video_id == b.id

    await supervisor.finish(return_code=1)
    await settle(engine)
    status = await store.get_stream_status()
    assert status.state == StreamState.ERROR
    assert len(supervisor.started) == 2


async def test_connected_run_resets_failure_count(engine, store, supervisor):
    a, b = await add_videos(store, "a", "b")
    await add_profile(store)
    await engine.set_current(a.id)
    await engine.enable_loop()
    await engine.go_live()

    await supervisor.finish(return_code=1)
    await settle(engine)
    await supervisor.finish(return_code=1, connected=True)
    await settle(engine)
    status = await store.get_stream_status()
    assert status.state == StreamState.LIVE
    assert status.current_video_id == a.id


async def test_empty_playlist_during_loop_goes_offline(engine, store, supervisor):
    (a,) = await add_videos(store, "a")
    await add_profile(store)
    await engine.set_current(a.id)
    await engine.enable_loop()
    await engine.go_live()

    await store.delete_video(a.id)
    await supervisor.finish()
    await settle(engine)
    assert (await store.get_stream_status()).state == StreamState.OFFLINE


async def test_restart_starts_from_first_item(engine, store, supervisor):
    with pytest.raises(PreconditionError, match="No videos in playlist"):
        await engine.restart()

    a, b = await add_videos(store, "a", "b")
    await add_profile(store)
    await engine.set_current(b.id)
    await engine.go_live()

    status, started = await engine.restart()
    assert started
    assert status.state == StreamState.LIVE
    assert status.current_video_id == a.id
    assert 100 <= status.viewer_count <= 2099
    assert status.loop_playlist is False
    assert supervisor.started[-1].video_id == a.id


async def test_set_current_unknown_video(engine):
    with pytest.raises(NotFoundError):
        await engine.set_current(404)


async def test_status_changes_reach_the_hub(store, supervisor, settings):
    hub = StreamEventHub()
    engine = StreamEngine(store, supervisor, settings, hub=hub)
    (a,) = await add_videos(store, "a")
    await add_profile(store)
    await engine.set_current(a.id)
    await engine.go_live()
    await engine.shutdown()

    kinds = [e.event_type for e in hub.recent()]
    assert "ENCODER_STARTED" in kinds
    states = [e.data["state"] for e in hub.recent(event_types=["STATUS_CHANGED"])]
    assert states[-1] == "live"


async def test_exit_queued_before_stop_does_not_override_offline(engine, store, supervisor):
    (a,) = await add_videos(store, "a")
    await add_profile(store)
    await engine.set_current(a.id)
    await engine.go_live()

    # The encoder dies on its own, then the operator stops before the exit is handled
    await supervisor.finish(return_code=1)
    await engine.stop()
    await settle(engine)

    status = await store.get_stream_status()
    assert status.state == StreamState.OFFLINE
    assert status.current_video_id is None


@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
async def test_restart_reaps_encoder_that_ignores_sigterm(store, settings, tmp_path):
    encoder = tmp_path / "stubborn-ffmpeg"
    encoder.write_text("#!/bin/sh\ntrap '' TERM\nexec sleep 30\n")
    encoder.chmod(0o755)

    supervisor = ProcessSupervisor(binary=str(encoder), stop_timeout=1.0)
    engine = StreamEngine(store, supervisor, settings)
    a, b = await add_videos(store, "a", "b")
    await add_profile(store)
    await engine.set_current(b.id)

    _, started = await engine.go_live()
    assert started
    old = supervisor.get_job(FOREGROUND_SLOT)
    try:
        status, started = await engine.restart()
        assert started
        assert status.current_video_id == a.id

        new = supervisor.get_job(FOREGROUND_SLOT)
        assert new.id != old.id
        # The replaced encoder was killed before its successor was spawned
        assert old.process.returncode is not None
        assert new.process.returncode is None
    finally:
        for slot_key in supervisor.list_active():
            supervisor.get_job(slot_key).process.kill()
        await engine.shutdown()
