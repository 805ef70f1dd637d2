"""
Shared fixtures: in-memory store, test settings and a scriptable supervisor.
"""
from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from typing import Dict, List, Optional

import pytest

from app.core.config import Settings
from app.core.database import create_engine_for, create_session_factory, init_db
from app.services.store.stream_store import StreamStore
from app.services.stream.supervisor import EncoderEvent, EncoderEventType


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        db_url="sqlite+aiosqlite://",
        upload_dir=str(tmp_path / "uploads"),
        ffmpeg_binary="/nonexistent/ffmpeg",
        ffprobe_binary="/nonexistent/ffprobe",
        uptime_interval_seconds=3600,
        loop_advance_delay_seconds=0.01,
        encoder_stop_timeout_seconds=2.0,
    )


@pytest.fixture
async def store():
    engine = create_engine_for("sqlite+aiosqlite://")
    await init_db(engine)
    yield StreamStore(create_session_factory(engine))
    await engine.dispose()


async def add_videos(store: StreamStore, *titles: str):
    return [
        await store.create_video(title=t, filename=f"{t}.mp4", file_size=1024, duration="01:00")
        for t in titles
    ]


async def add_profile(store: StreamStore, **overrides):
    fields = {
        "platform": "custom",
        "stream_key": "test-key",
        "rtmp_url": None,
        "resolution": "1280x720",
        "framerate": 30,
        "bitrate": 3000,
        "audio_quality": 128,
    }
    fields.update(overrides)
    return await store.create_or_update_stream_config(fields)


@dataclass
class FakeJob:
    id: str
    slot_key: str
    argv: List[str]
    video_id: Optional[int]
    pid: int


class FakeSupervisor:
    """Records spawns; tests decide when and how processes end."""

    def __init__(self):
        self.on_diagnostic = None
        self.events: asyncio.Queue = asyncio.Queue()
        self.jobs: Dict[str, FakeJob] = {}
        self.started: List[FakeJob] = []
        self.stopped: List[str] = []
        self.fail_launch = False
        self._ids = itertools.count(1)

    async def start(self, slot_key, argv, video_id=None):
        job_id = f"job-{next(self._ids)}"
        if self.fail_launch:
            await self.events.put(EncoderEvent(
                slot_key=slot_key, job_id=job_id, event_type=EncoderEventType.FAILED,
                video_id=video_id, error="No such file or directory",
            ))
            return None
        old = self.jobs.pop(slot_key, None)
        if old:
            await self.events.put(self._exit_event(old, 255, requested=True))
        job = FakeJob(job_id, slot_key, list(argv), video_id, pid=1000 + len(self.started))
        self.jobs[slot_key] = job
        self.started.append(job)
        return job

    async def stop(self, slot_key):
        job = self.jobs.pop(slot_key, None)
        if not job:
            return False
        self.stopped.append(slot_key)
        await self.events.put(self._exit_event(job, 255, requested=True))
        return True

    async def stop_all(self):
        for slot_key in list(self.jobs):
            await self.stop(slot_key)

    async def wait_all(self, timeout=None):
        return None

    def is_active(self, slot_key):
        return slot_key in self.jobs

    def list_active(self):
        return list(self.jobs)

    def current_job_id(self, slot_key):
        job = self.jobs.get(slot_key)
        return job.id if job else None

    def get_job(self, slot_key):
        return self.jobs.get(slot_key)

    async def finish(self, slot_key="foreground", return_code=0, connected=False):
        """The running process ends on its own."""
        job = self.jobs.pop(slot_key)
        await self.events.put(self._exit_event(job, return_code, connected=connected))
        return job

    @staticmethod
    def _exit_event(job, return_code, requested=False, connected=False):
        return EncoderEvent(
            slot_key=job.slot_key,
            job_id=job.id,
            event_type=EncoderEventType.EXITED,
            video_id=job.video_id,
            return_code=return_code,
            requested=requested,
            connected=connected,
        )


@pytest.fixture
def supervisor():
    return FakeSupervisor()
