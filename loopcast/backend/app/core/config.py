"""
Loopcast Core Settings — playlist-to-RTMP streaming server.

All values can be overridden through ``LOOPCAST_*`` environment variables
or a ``.env`` file next to the process working directory.
"""
from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8",
        env_prefix="LOOPCAST_", case_sensitive=False,
    )

    # ── App ──────────────────────────────────────────────────────────────
    app_name: str = "Loopcast"
    app_version: str = "1.2.0"
    debug: bool = False
    log_level: str = "INFO"
    api_prefix: str = "/api"

    # ── PostgreSQL ───────────────────────────────────────────────────────
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "loopcast"
    db_password: str = "loopcast_secret"
    db_name: str = "streaming_db"
    # Explicit URL wins over the db_* parts (e.g. sqlite+aiosqlite:///...)
    db_url: Optional[str] = None

    @property
    def database_url(self) -> str:
        if self.db_url:
            return self.db_url
        return (
            f"postgresql+asyncpg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    # ── Uploads ──────────────────────────────────────────────────────────
    upload_dir: str = "uploads"
    max_upload_bytes: int = 500 * 1024 * 1024
    allowed_video_types: List[str] = [
        "video/mp4", "video/avi", "video/mov", "video/quicktime",
    ]

    # ── Encoder ──────────────────────────────────────────────────────────
    ffmpeg_binary: str = "ffmpeg"
    ffprobe_binary: str = "ffprobe"
    encoder_preset: str = "veryfast"
    encoder_tune: str = "zerolatency"
    reconnect_delay_max: int = 5
    # Seconds to wait for a replaced encoder to exit before SIGKILL
    encoder_stop_timeout_seconds: float = 5.0

    # ── RTMP ─────────────────────────────────────────────────────────────
    default_rtmp_port: int = 1935
    default_web_port: int = 5000

    # ── Playback ─────────────────────────────────────────────────────────
    uptime_interval_seconds: float = 5.0
    loop_advance_delay_seconds: float = 1.0

    # ── Events ───────────────────────────────────────────────────────────
    event_buffer_size: int = 500


@lru_cache()
def get_settings() -> Settings:
    return Settings()
