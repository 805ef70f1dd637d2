"""
Loopcast API Schemas — Pydantic v2 models for request/response validation.
"""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.models import Platform, StreamState


# ═══════════════════════════════════════════════════════════════════════
# Playlist
# ═══════════════════════════════════════════════════════════════════════

class VideoSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    filename: str
    file_size: int
    duration: str
    thumbnail_url: Optional[str] = None
    playlist_order: int
    uploaded_at: Optional[datetime] = None


class VideoUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=512)
    playlist_order: Optional[int] = Field(None, ge=0)
    thumbnail_url: Optional[str] = None


class ReorderRequest(BaseModel):
    video_ids: List[int]


# ═══════════════════════════════════════════════════════════════════════
# Destination Profile
# ═══════════════════════════════════════════════════════════════════════

class StreamConfigCreate(BaseModel):
    platform: Platform = Platform.YOUTUBE
    stream_key: str = Field(..., min_length=1)
    rtmp_url: Optional[str] = None
    resolution: str = "1280x720"
    framerate: int = Field(30, ge=1, le=120)
    bitrate: int = Field(3000, ge=100)
    audio_quality: int = Field(128, ge=32)

    @model_validator(mode="after")
    def _check_custom_url(self) -> "StreamConfigCreate":
        if self.rtmp_url and not self.rtmp_url.startswith(("rtmp://", "rtmps://")):
            raise ValueError("rtmp_url must start with rtmp:// or rtmps://")
        return self


class StreamConfigSchema(StreamConfigCreate):
    model_config = ConfigDict(from_attributes=True)

    id: int
    is_active: bool


# ═══════════════════════════════════════════════════════════════════════
# Stream Status & Commands
# ═══════════════════════════════════════════════════════════════════════

class StreamStatusSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    state: StreamState
    viewer_count: int = 0
    uptime: str = "00:00:00"
    current_video_id: Optional[int] = None
    started_at: Optional[datetime] = None
    loop_playlist: bool = False


class SetCurrentRequest(BaseModel):
    video_id: int


class LoopStatus(BaseModel):
    loop_enabled: bool
    runtime_loop_enabled: bool


class ActiveStreams(BaseModel):
    active: List[str]
    loop_enabled: bool


class EncoderTestResult(BaseModel):
    message: str
    version: str


# ═══════════════════════════════════════════════════════════════════════
# System
# ═══════════════════════════════════════════════════════════════════════

class SystemConfigSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    rtmp_port: int
    web_port: int
    updated_at: Optional[datetime] = None


class SystemConfigUpdate(BaseModel):
    rtmp_port: Optional[int] = Field(None, ge=1, le=65535)
    web_port: Optional[int] = Field(None, ge=1, le=65535)


class MessageResponse(BaseModel):
    message: str
