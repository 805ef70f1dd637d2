"""
Supervisor tests against real short-lived child processes (the Python
interpreter stands in for the encoder binary).
"""
from __future__ import annotations

import asyncio
import sys

import pytest

from app.services.stream.supervisor import (
    EncoderEventType,
    ProcessSupervisor,
    classify_output,
)

SLEEP_FOREVER = ["-c", "import time; time.sleep(30)"]


async def next_event(supervisor, timeout=10):
    return await asyncio.wait_for(supervisor.events.get(), timeout=timeout)


@pytest.mark.parametrize("line,kind", [
    ("Stream mapping:", "connected"),
    ("Press [q] to stop, [?] for help", "connected"),
    ("rtmp://x: Connection refused", "connection_refused"),
    ("HTTP error 403 Forbidden", "auth_rejected"),
    ("Network is unreachable", "network_unreachable"),
    ("frame=  100 fps= 30 q=23.0 size=1024kB", None),
])
def test_classify_output(line, kind):
    assert classify_output(line) == kind


async def test_clean_exit_publishes_event():
    supervisor = ProcessSupervisor(binary=sys.executable)
    script = "import sys; sys.stderr.write('Stream mapping:\\r  Stream #0:0\\n'); sys.exit(0)"
    job = await supervisor.start("foreground", ["-c", script], video_id=7)
    assert job is not None
    assert supervisor.is_active("foreground")

    event = await next_event(supervisor)
    assert event.event_type == EncoderEventType.EXITED
    assert event.job_id == job.id
    assert event.video_id == 7
    assert event.return_code == 0
    assert event.connected is True
    assert event.requested is False
    assert not event.failed
    assert not supervisor.is_active("foreground")


async def test_non_zero_exit_is_failed():
    supervisor = ProcessSupervisor(binary=sys.executable)
    await supervisor.start("foreground", ["-c", "import sys; sys.exit(3)"])
    event = await next_event(supervisor)
    assert event.return_code == 3
    assert event.failed


async def test_stop_marks_exit_as_requested():
    supervisor = ProcessSupervisor(binary=sys.executable)
    await supervisor.start("foreground", SLEEP_FOREVER)
    assert await supervisor.stop("foreground") is True
    assert supervisor.list_active() == []

    event = await next_event(supervisor)
    assert event.requested is True
    assert not event.failed
    assert await supervisor.stop("foreground") is False


async def test_start_replaces_running_process():
    supervisor = ProcessSupervisor(binary=sys.executable, stop_timeout=5)
    first = await supervisor.start("foreground", SLEEP_FOREVER)
    second = await supervisor.start("foreground", SLEEP_FOREVER)

    # The replaced process was reaped before the new one was spawned
    assert first.process.returncode is not None
    assert supervisor.current_job_id("foreground") == second.id

    event = await next_event(supervisor)
    assert event.job_id == first.id
    assert event.requested is True

    await supervisor.stop_all()
    await supervisor.wait_all()
    event = await next_event(supervisor)
    assert event.job_id == second.id


async def test_launch_failure_publishes_failed_event():
    supervisor = ProcessSupervisor(binary="/nonexistent/ffmpeg")
    job = await supervisor.start("foreground", ["-version"], video_id=3)
    assert job is None
    assert not supervisor.is_active("foreground")

    event = await next_event(supervisor)
    assert event.event_type == EncoderEventType.FAILED
    assert event.video_id == 3
    assert event.error
    assert event.failed


async def test_diagnostics_are_forwarded():
    seen = []

    async def listener(slot_key, kind, line):
        seen.append((slot_key, kind))

    supervisor = ProcessSupervisor(binary=sys.executable, on_diagnostic=listener)
    script = "print('Connection refused'); print('Stream mapping:'); print('Stream mapping:')"
    await supervisor.start("foreground", ["-c", script])
    await next_event(supervisor)
    assert seen == [("foreground", "connection_refused"), ("foreground", "connected")]
