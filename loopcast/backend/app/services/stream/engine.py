"""
Loopcast Stream Engine — turns "play this playlist to this RTMP target" into a
supervised encoder process and keeps the status record honest.

Composition:
  ┌──────────────┐ commands  ┌───────────────────┐  argv   ┌──────────────┐
  │  API routes  │──────────▶│   StreamEngine    │────────▶│  Supervisor  │──▶ ffmpeg
  └──────────────┘           │  (playback rules) │◀────────│  (events)    │
          ▲                  └─────────┬─────────┘  exit   └──────────────┘
          │ poll / WS                  │ patches
          └──────────── status record ◀┴── UptimeReporter

All commands and encoder events are serialized by one lock, so each
playback decision is applied against a consistent status snapshot.
"""
from __future__ import annotations

import asyncio
import logging
import os
import random
from typing import Any, Dict, List, Optional

from app.core.config import Settings
from app.core.errors import NotFoundError
from app.core.events import StreamEvent, StreamEventHub, StreamEventType
from app.core.metrics import LOOP_ADVANCES, STREAM_LIVE
from app.models.models import StreamConfig, StreamState, StreamStatus
from app.services.store.stream_store import StreamStore
from app.services.stream import playback
from app.services.stream.encoder_args import (
    EncodeQuality,
    RtmpTarget,
    build_encoder_args,
    platform_base_url,
    resolution_label,
)
from app.services.stream.playback import Decision, StatusView
from app.services.stream.reporter import UptimeReporter, utcnow
from app.services.stream.supervisor import EncoderEvent, EncoderEventType, ProcessSupervisor

logger = logging.getLogger(__name__)

FOREGROUND_SLOT = "foreground"


def target_from_profile(profile: StreamConfig, rtmp_port: int) -> RtmpTarget:
    """Resolve a destination profile into an encoder target."""
    return RtmpTarget(
        output_url=platform_base_url(profile.platform, profile.rtmp_url, rtmp_port),
        stream_key=profile.stream_key or "default",
        encode=EncodeQuality(
            quality=resolution_label(profile.resolution),
            bitrate=f"{profile.bitrate or 3000}k",
            fps=profile.framerate or 30,
        ),
    )


class StreamEngine:
    """Single stream orchestration engine, one per server process."""

    def __init__(
        self,
        store: StreamStore,
        supervisor: ProcessSupervisor,
        settings: Settings,
        hub: Optional[StreamEventHub] = None,
        clock=utcnow,
    ):
        self._store = store
        self._supervisor = supervisor
        self._settings = settings
        self._hub = hub
        self._clock = clock
        self._lock = asyncio.Lock()
        self._loop_enabled = False
        self._targets: Dict[str, RtmpTarget] = {}
        self._consecutive_failures = 0
        self._consumer: Optional[asyncio.Task] = None
        self._advance_task: Optional[asyncio.Task] = None
        self._reporter = UptimeReporter(
            store,
            interval=settings.uptime_interval_seconds,
            clock=clock,
            on_update=self._publish_status,
        )
        if supervisor.on_diagnostic is None:
            supervisor.on_diagnostic = self.forward_diagnostic

    # ── Lifecycle ────────────────────────────────────────────────────

    async def startup(self) -> None:
        """Begin consuming encoder events."""
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume_events())
        logger.info("Stream engine started")

    async def shutdown(self) -> None:
        """Stop every encoder and background task; used on process exit."""
        logger.info("Shutting down RTMP streams...")
        self._cancel_advance()
        await self.stop_all_streams()
        await self._supervisor.wait_all()
        self._reporter.stop()
        if self._consumer and not self._consumer.done():
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
        self._consumer = None

    # ── Slot-level API ───────────────────────────────────────────────

    async def start_stream(self, video_id: int, target: RtmpTarget) -> bool:
        """Spawn the encoder for one playlist item. Fire-and-forget."""
        video = await self._store.get_video(video_id)
        if not video:
            logger.error(f"Error starting stream: video {video_id} not found")
            return False

        source = os.path.join(self._settings.upload_dir, video.filename)
        argv = build_encoder_args(
            source,
            target.destination,
            target.encode,
            preset=self._settings.encoder_preset,
            tune=self._settings.encoder_tune,
            reconnect_delay_max=self._settings.reconnect_delay_max,
        )
        logger.info(
            f"Starting RTMP stream for video {video_id} "
            f"({target.encode.quality} {target.encode.fps}fps {target.encode.bitrate})"
        )

        job = await self._supervisor.start(FOREGROUND_SLOT, argv, video_id=video_id)
        if job is None:
            return False

        self._targets[FOREGROUND_SLOT] = target
        self._reporter.start()
        await self._emit(StreamEventType.ENCODER_STARTED, video_id=video_id, data={"pid": job.pid})
        return True

    async def stop_stream(self, slot_key: str) -> bool:
        stopped = await self._supervisor.stop(slot_key)
        self._targets.pop(slot_key, None)
        if not self._supervisor.list_active():
            self._reporter.stop()
        return stopped

    async def stop_all_streams(self) -> None:
        for slot_key in self._supervisor.list_active():
            await self.stop_stream(slot_key)
        self._reporter.stop()

    def set_loop_enabled(self, enabled: bool) -> None:
        self._loop_enabled = enabled

    def is_loop_enabled(self) -> bool:
        return self._loop_enabled

    def is_stream_active(self, slot_key: str = FOREGROUND_SLOT) -> bool:
        return self._supervisor.is_active(slot_key)

    def get_active_streams(self) -> List[str]:
        return self._supervisor.list_active()

    # ── Commands ─────────────────────────────────────────────────────

    async def go_live(self) -> tuple[StreamStatus, bool]:
        """Start streaming the selected item to the active profile.

        Raises PreconditionError when nothing is selected, the selection is
        gone, or no profile is active. Returns the status record and whether
        the encoder was spawned.
        """
        async with self._lock:
            status = await self._store.get_stream_status()
            view = StatusView.of(status)
            video = (
                await self._store.get_video(view.current_video_id)
                if view.current_video_id is not None else None
            )
            profile = await self._store.get_stream_config()
            playback.check_can_start(view, video, profile)

            self._cancel_advance()
            self._consecutive_failures = 0
            target = await self._target_for(profile)
            if not await self.start_stream(video.id, target):
                return status, False

            record = await self._apply(playback.on_start(view, self._clock()))
            return record, True

    async def stop(self) -> StreamStatus:
        """Stop everything and go offline with loop disabled."""
        async with self._lock:
            self._cancel_advance()
            await self.stop_all_streams()
            return await self._apply(playback.on_stop())

    async def restart(self) -> tuple[StreamStatus, bool]:
        """Restart from the first playlist item."""
        async with self._lock:
            playlist = await self._store.get_videos()
            profile = await self._store.get_stream_config()
            playback.check_can_restart([v.id for v in playlist], profile)

            # start_stream replaces a running encoder, waiting for its exit
            self._cancel_advance()
            self._consecutive_failures = 0

            first = playlist[0]
            target = await self._target_for(profile)
            if not await self.start_stream(first.id, target):
                return await self._store.get_stream_status(), False

            viewer_count = random.randint(100, 2099)
            record = await self._apply(playback.on_restart(first.id, self._clock(), viewer_count))
            return record, True

    async def set_current(self, video_id: int) -> StreamStatus:
        async with self._lock:
            video = await self._store.get_video(video_id)
            if not video:
                raise NotFoundError("Video not found")
            record = await self._store.create_or_update_stream_status({"current_video_id": video_id})
            await self._publish_status(record)
            return record

    async def enable_loop(self) -> StreamStatus:
        return await self._set_loop(True)

    async def disable_loop(self) -> StreamStatus:
        return await self._set_loop(False)

    async def _set_loop(self, enabled: bool) -> StreamStatus:
        async with self._lock:
            status = await self._store.get_stream_status()
            return await self._apply(playback.on_loop_change(StatusView.of(status), enabled))

    # ── Encoder events ───────────────────────────────────────────────

    async def _consume_events(self):
        while True:
            event = await self._supervisor.events.get()
            try:
                await self.handle_event(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error handling encoder event: {e}", exc_info=True)

    async def drain_events(self) -> None:
        """Handle every queued encoder event now (used when no consumer runs)."""
        while not self._supervisor.events.empty():
            await self.handle_event(self._supervisor.events.get_nowait())

    async def handle_event(self, event: EncoderEvent) -> None:
        async with self._lock:
            if event.requested:
                logger.debug(f"Ignoring exit of stopped encoder job {event.job_id}")
                return
            current = self._supervisor.current_job_id(event.slot_key)
            if current is not None and current != event.job_id:
                logger.debug(f"Ignoring stale event from replaced job {event.job_id}")
                return

            status = await self._store.get_stream_status()
            view = StatusView.of(status)

            if event.event_type == EncoderEventType.EXITED and view.state != StreamState.LIVE:
                logger.debug(f"Ignoring exit of job {event.job_id}: stream is {view.state.value}")
                return

            if event.event_type == EncoderEventType.FAILED:
                logger.error(f"FFmpeg error: {event.error}")
                await self._emit(StreamEventType.ENCODER_FAILED, video_id=event.video_id,
                                 data={"error": event.error})
                decision = playback.on_encoder_error()
            else:
                logger.info(f"FFmpeg process exited with code {event.return_code}")
                await self._emit(StreamEventType.ENCODER_EXITED, video_id=event.video_id,
                                 data={"return_code": event.return_code})
                # A run that reached the server breaks the failure streak
                streak = event.failed and not event.connected
                self._consecutive_failures = self._consecutive_failures + 1 if streak else 0
                playlist = await self._store.get_videos()
                decision = playback.on_encoder_exit(
                    view,
                    self._loop_enabled,
                    [v.id for v in playlist],
                    self._clock(),
                    failed=event.failed,
                    consecutive_failures=self._consecutive_failures,
                )

            target = self._targets.get(event.slot_key)
            if not self._supervisor.list_active():
                self._targets.pop(event.slot_key, None)
            if decision.start_video_id is not None and target is None:
                logger.error("Loop playback: no destination to continue with, going offline")
                decision = playback.on_stop()

            await self._apply(decision, target=target)

    # ── Internals ────────────────────────────────────────────────────

    async def _apply(self, decision: Decision, target: Optional[RtmpTarget] = None) -> StreamStatus:
        """Write a decision's patch and run its side effects."""
        if decision.loop_enabled is not None:
            self._loop_enabled = decision.loop_enabled
        if decision.reporter is False:
            self._reporter.stop()
        elif decision.reporter is True and self._supervisor.list_active():
            self._reporter.start()

        record = await self._store.create_or_update_stream_status(decision.patch or {})
        logger.info(f"Stream status → {record.state.value} ({decision.reason})")
        await self._publish_status(record)

        if decision.start_video_id is not None and target is not None:
            logger.info(f"Loop playback: moving to video {decision.start_video_id}")
            self._schedule_advance(decision.start_video_id, target)
        return record

    def _schedule_advance(self, video_id: int, target: RtmpTarget) -> None:
        self._cancel_advance()
        self._advance_task = asyncio.create_task(self._advance_after(video_id, target))

    def _cancel_advance(self) -> None:
        if self._advance_task and not self._advance_task.done():
            self._advance_task.cancel()
        self._advance_task = None

    async def _advance_after(self, video_id: int, target: RtmpTarget):
        """Start the loop successor after a short delay, unless something changed."""
        await asyncio.sleep(self._settings.loop_advance_delay_seconds)
        async with self._lock:
            status = await self._store.get_stream_status()
            if (
                status.state != StreamState.LIVE
                or status.current_video_id != video_id
                or not self._loop_enabled
            ):
                logger.info(f"Loop playback: advance to video {video_id} abandoned")
                return

            if await self.start_stream(video_id, target):
                LOOP_ADVANCES.inc()
                await self._emit(StreamEventType.LOOP_ADVANCED, video_id=video_id)
                return

            if await self._store.get_video(video_id) is None:
                # Deleted between the exit and the advance; no event will follow
                await self._apply(playback.on_encoder_error())

    async def wait_for_advance(self) -> None:
        """Await a pending loop advance, if any."""
        task = self._advance_task
        if task and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    async def _target_for(self, profile: StreamConfig) -> RtmpTarget:
        system = await self._store.get_system_config()
        return target_from_profile(profile, system.rtmp_port or self._settings.default_rtmp_port)

    async def _publish_status(self, record: StreamStatus) -> None:
        STREAM_LIVE.set(1 if record.state == StreamState.LIVE else 0)
        if self._hub:
            await self._hub.emit_status(record.to_dict())

    async def _emit(self, event_type: StreamEventType, video_id: Optional[int] = None,
                    data: Optional[Dict[str, Any]] = None) -> None:
        if self._hub:
            await self._hub.emit(StreamEvent(
                event_type=event_type.value,
                slot_key=FOREGROUND_SLOT,
                video_id=video_id,
                data=data,
            ))

    async def forward_diagnostic(self, slot_key: str, kind: str, line: str) -> None:
        """Supervisor diagnostic callback: relay to dashboard clients."""
        if kind == "connected":
            self._consecutive_failures = 0
        if self._hub:
            await self._hub.emit(StreamEvent(
                event_type=StreamEventType.ENCODER_DIAGNOSTIC.value,
                slot_key=slot_key,
                data={"kind": kind, "line": line},
            ))
