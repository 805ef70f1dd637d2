"""
Loopcast Upload Service — stores playlist uploads and probes their duration.

  1. Validate content type (mp4 / avi / mov / quicktime)
  2. Copy the upload into the upload directory as ``<epoch-ms>-<random><ext>``,
     aborting once it exceeds the size limit
  3. Probe the duration with ffprobe → ``MM:SS`` (``00:00`` when unknown)
  4. Append the item to the end of the playlist
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import random
import subprocess
import time
from pathlib import Path
from typing import Optional

from fastapi import UploadFile

from app.core.config import Settings
from app.core.errors import UploadRejected
from app.models.models import Video
from app.services.store.stream_store import StreamStore

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
UNKNOWN_DURATION = "00:00"


def unique_filename(original_name: Optional[str]) -> str:
    ext = Path(original_name or "").suffix.lower()
    return f"{int(time.time() * 1000)}-{random.randint(0, 10**9)}{ext}"


def format_duration(seconds: Optional[float]) -> str:
    """Seconds → ``MM:SS``; minutes are not wrapped into hours."""
    if not seconds or seconds < 0:
        return UNKNOWN_DURATION
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes:02d}:{secs:02d}"


def probe_duration(path: str, ffprobe_binary: str = "ffprobe") -> str:
    """Read the container duration with ffprobe. Never raises."""
    try:
        probe_out = subprocess.run(
            [
                ffprobe_binary, "-v", "quiet", "-print_format", "json",
                "-show_format", str(path),
            ],
            capture_output=True, text=True, timeout=30,
        )
        if probe_out.returncode != 0:
            logger.warning(f"ffprobe failed for {path} (code {probe_out.returncode})")
            return UNKNOWN_DURATION
        probe = json.loads(probe_out.stdout or "{}")
        duration = probe.get("format", {}).get("duration")
        return format_duration(float(duration)) if duration else UNKNOWN_DURATION
    except (OSError, subprocess.SubprocessError, ValueError) as e:
        logger.warning(f"Error getting video duration for {path}: {e}")
        return UNKNOWN_DURATION


class UploadService:
    def __init__(self, store: StreamStore, settings: Settings):
        self._store = store
        self._settings = settings

    @property
    def upload_dir(self) -> Path:
        return Path(self._settings.upload_dir)

    async def save_upload(self, upload: UploadFile, title: Optional[str] = None) -> Video:
        if upload.content_type not in self._settings.allowed_video_types:
            raise UploadRejected("Invalid file type. Only MP4, AVI, and MOV files are allowed.")

        self.upload_dir.mkdir(parents=True, exist_ok=True)
        filename = unique_filename(upload.filename)
        path = self.upload_dir / filename

        size = 0
        try:
            with open(path, "wb") as out:
                while True:
                    chunk = await upload.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    size += len(chunk)
                    if size > self._settings.max_upload_bytes:
                        raise UploadRejected("File too large", status_code=413)
                    out.write(chunk)
        except UploadRejected:
            path.unlink(missing_ok=True)
            raise

        duration = await asyncio.to_thread(probe_duration, str(path), self._settings.ffprobe_binary)
        video = await self._store.create_video(
            title=title or upload.filename or filename,
            filename=filename,
            file_size=size,
            duration=duration,
            thumbnail_url=None,
        )
        logger.info(f"Uploaded {filename} ({size} bytes, {duration})")
        return video

    def remove_file(self, filename: str) -> None:
        path = self.upload_dir / filename
        try:
            os.remove(path)
        except FileNotFoundError:
            logger.warning(f"Upload already gone: {path}")
