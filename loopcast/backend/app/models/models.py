"""
Loopcast ORM Models — playlist, destination profile, stream status, system config.

The stream status and system config tables hold a single row each.
"""
from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, DateTime, Enum, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


# ═══════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════

class Platform(str, enum.Enum):
    YOUTUBE = "youtube"
    TWITCH = "twitch"
    FACEBOOK = "facebook"
    CUSTOM = "custom"


class StreamState(str, enum.Enum):
    OFFLINE = "offline"
    STARTING = "starting"
    LIVE = "live"
    PAUSED = "paused"
    ERROR = "error"


# ═══════════════════════════════════════════════════════════════════════
# Playlist
# ═══════════════════════════════════════════════════════════════════════

class Video(Base):
    __tablename__ = "videos"
    __table_args__ = (
        Index("ix_videos_playlist_order", "playlist_order"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(512))
    filename: Mapped[str] = mapped_column(String(512))
    file_size: Mapped[int] = mapped_column(Integer)
    duration: Mapped[str] = mapped_column(String(16), default="00:00")
    thumbnail_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    playlist_order: Mapped[int] = mapped_column(Integer)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ═══════════════════════════════════════════════════════════════════════
# Streaming
# ═══════════════════════════════════════════════════════════════════════

class StreamConfig(Base):
    """Destination profile. At most one row has is_active=True."""
    __tablename__ = "stream_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    platform: Mapped[Platform] = mapped_column(Enum(Platform), default=Platform.YOUTUBE)
    stream_key: Mapped[str] = mapped_column(Text)
    rtmp_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    resolution: Mapped[str] = mapped_column(String(16), default="1280x720")
    framerate: Mapped[int] = mapped_column(Integer, default=30)
    bitrate: Mapped[int] = mapped_column(Integer, default=3000)
    audio_quality: Mapped[int] = mapped_column(Integer, default=128)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)


class StreamStatus(Base):
    __tablename__ = "stream_status"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    state: Mapped[StreamState] = mapped_column(Enum(StreamState), default=StreamState.OFFLINE)
    viewer_count: Mapped[int] = mapped_column(Integer, default=0)
    uptime: Mapped[str] = mapped_column(String(32), default="00:00:00")
    current_video_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    loop_playlist: Mapped[bool] = mapped_column(Boolean, default=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "viewer_count": self.viewer_count,
            "uptime": self.uptime,
            "current_video_id": self.current_video_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "loop_playlist": self.loop_playlist,
        }


class SystemConfig(Base):
    __tablename__ = "system_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rtmp_port: Mapped[int] = mapped_column(Integer, default=1935)
    web_port: Mapped[int] = mapped_column(Integer, default=5000)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
