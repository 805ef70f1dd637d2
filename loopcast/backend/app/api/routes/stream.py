"""
Loopcast API — Stream routes: destination profile, status and playback commands.
"""
from __future__ import annotations

import asyncio
import logging
import re
import subprocess
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from app.api.deps import get_app_settings, get_store, get_stream_engine
from app.core.config import Settings
from app.core.errors import NotFoundError, PreconditionError
from app.schemas.schemas import (
    ActiveStreams,
    EncoderTestResult,
    LoopStatus,
    SetCurrentRequest,
    StreamConfigCreate,
    StreamConfigSchema,
    StreamStatusSchema,
)
from app.services.store.stream_store import StreamStore
from app.services.stream.engine import StreamEngine

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Stream"])

_VERSION_RE = re.compile(r"ffmpeg version (\S+)")


# ── Destination Profile ─────────────────────────────────────────────────

@router.get("/stream-config", response_model=Optional[StreamConfigSchema])
async def get_stream_config(store: StreamStore = Depends(get_store)):
    return await store.get_stream_config()


@router.post("/stream-config", response_model=StreamConfigSchema)
async def save_stream_config(
    request: StreamConfigCreate,
    store: StreamStore = Depends(get_store),
):
    """Replace the active destination profile."""
    return await store.create_or_update_stream_config(request.model_dump())


# ── Status ──────────────────────────────────────────────────────────────

@router.get("/stream-status", response_model=StreamStatusSchema)
async def get_stream_status(store: StreamStore = Depends(get_store)):
    return await store.get_stream_status()


# ── Commands ────────────────────────────────────────────────────────────

@router.post("/stream/start", response_model=StreamStatusSchema)
async def start_stream(engine: StreamEngine = Depends(get_stream_engine)):
    try:
        status, started = await engine.go_live()
    except PreconditionError as e:
        raise HTTPException(400, str(e))
    if not started:
        raise HTTPException(500, "Failed to start RTMP stream")
    return status


@router.post("/stream/stop", response_model=StreamStatusSchema)
async def stop_stream(engine: StreamEngine = Depends(get_stream_engine)):
    return await engine.stop()


@router.post("/stream/restart", response_model=StreamStatusSchema)
async def restart_stream(engine: StreamEngine = Depends(get_stream_engine)):
    try:
        status, started = await engine.restart()
    except PreconditionError as e:
        raise HTTPException(400, str(e))
    if not started:
        raise HTTPException(500, "Failed to restart stream")
    return status


@router.post("/stream/set-current", response_model=StreamStatusSchema)
async def set_current_video(
    request: SetCurrentRequest,
    engine: StreamEngine = Depends(get_stream_engine),
):
    try:
        return await engine.set_current(request.video_id)
    except NotFoundError as e:
        raise HTTPException(404, str(e))


@router.post("/stream/loop/enable", response_model=StreamStatusSchema)
async def enable_loop(engine: StreamEngine = Depends(get_stream_engine)):
    return await engine.enable_loop()


@router.post("/stream/loop/disable", response_model=StreamStatusSchema)
async def disable_loop(engine: StreamEngine = Depends(get_stream_engine)):
    return await engine.disable_loop()


@router.get("/stream/loop/status", response_model=LoopStatus)
async def loop_status(
    store: StreamStore = Depends(get_store),
    engine: StreamEngine = Depends(get_stream_engine),
):
    status = await store.get_stream_status()
    return LoopStatus(
        loop_enabled=bool(status.loop_playlist),
        runtime_loop_enabled=engine.is_loop_enabled(),
    )


@router.get("/stream/active", response_model=ActiveStreams)
async def active_streams(engine: StreamEngine = Depends(get_stream_engine)):
    return ActiveStreams(
        active=engine.get_active_streams(),
        loop_enabled=engine.is_loop_enabled(),
    )


@router.post("/stream/test", response_model=EncoderTestResult)
async def test_encoder(settings: Settings = Depends(get_app_settings)):
    """Check that the encoder binary is installed and runs."""
    try:
        result = await asyncio.to_thread(
            subprocess.run,
            [settings.ffmpeg_binary, "-version"],
            capture_output=True, text=True, timeout=5,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"FFmpeg test failed: {e}")
        raise HTTPException(400, f"FFmpeg is not available: {e}")

    match = _VERSION_RE.search(result.stdout or "")
    if result.returncode != 0 or not match:
        raise HTTPException(400, "FFmpeg is not available or did not report a version")

    version = match.group(1)
    return EncoderTestResult(
        message=f"Connection test successful - FFmpeg {version} is available and working",
        version=version,
    )
