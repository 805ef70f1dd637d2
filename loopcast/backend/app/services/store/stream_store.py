"""
Loopcast Stream Store — record store for playlist, profiles and status.

Every method opens its own short-lived session, so the store can be shared
by the engine, the uptime reporter and request handlers alike.

The stream status row is read-modify-write: callers pass a partial patch,
optionally guarded by the state the row must still be in.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.models import (
    StreamConfig,
    StreamState,
    StreamStatus,
    SystemConfig,
    Video,
)

logger = logging.getLogger(__name__)

_STATUS_FIELDS = {
    "state", "viewer_count", "uptime", "current_video_id", "started_at", "loop_playlist",
}
_VIDEO_FIELDS = {"title", "filename", "file_size", "duration", "thumbnail_url", "playlist_order"}
_CONFIG_FIELDS = {
    "platform", "stream_key", "rtmp_url", "resolution", "framerate", "bitrate", "audio_quality",
}
_SYSTEM_FIELDS = {"rtmp_port", "web_port"}


class StreamStore:
    """Async repository over the Loopcast tables."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        default_rtmp_port: int = 1935,
        default_web_port: int = 5000,
    ):
        self._session_factory = session_factory
        self._default_rtmp_port = default_rtmp_port
        self._default_web_port = default_web_port

    # ── Playlist ─────────────────────────────────────────────────────────

    async def get_videos(self) -> List[Video]:
        """All playlist items in play order."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Video).order_by(Video.playlist_order, Video.id)
            )
            return list(result.scalars().all())

    async def get_video(self, video_id: int) -> Optional[Video]:
        async with self._session_factory() as db:
            return await db.get(Video, video_id)

    async def create_video(self, **fields: Any) -> Video:
        """Insert a playlist item; appended to the end unless an order is given."""
        async with self._session_factory() as db:
            if fields.get("playlist_order") is None:
                count = await db.scalar(select(func.count(Video.id))) or 0
                fields["playlist_order"] = count
            video = Video(**_pick(fields, _VIDEO_FIELDS))
            db.add(video)
            await db.commit()
            await db.refresh(video)
            logger.info(f"Video added to playlist: {video.id} ({video.title})")
            return video

    async def update_video(self, video_id: int, fields: Dict[str, Any]) -> Optional[Video]:
        async with self._session_factory() as db:
            video = await db.get(Video, video_id)
            if not video:
                return None
            for key, value in _pick(fields, _VIDEO_FIELDS).items():
                setattr(video, key, value)
            await db.commit()
            await db.refresh(video)
            return video

    async def delete_video(self, video_id: int) -> Optional[Video]:
        """Remove a playlist item and close the gap in ordinals.

        Returns the deleted record so the caller can remove its file.
        """
        async with self._session_factory() as db:
            video = await db.get(Video, video_id)
            if not video:
                return None
            await db.delete(video)
            await db.flush()

            result = await db.execute(select(Video).order_by(Video.playlist_order, Video.id))
            for position, remaining in enumerate(result.scalars().all()):
                remaining.playlist_order = position
            await db.commit()
            logger.info(f"Video removed from playlist: {video_id}")
            return video

    async def reorder_playlist(self, video_ids: Iterable[int]) -> List[Video]:
        """Assign ordinals 0..n-1 in the given order.

        Items missing from ``video_ids`` keep their relative order after the
        listed ones; unknown ids are ignored.
        """
        wanted = list(dict.fromkeys(video_ids))
        async with self._session_factory() as db:
            result = await db.execute(select(Video).order_by(Video.playlist_order, Video.id))
            videos = list(result.scalars().all())
            by_id = {v.id: v for v in videos}

            ordered = [by_id[vid] for vid in wanted if vid in by_id]
            listed = {v.id for v in ordered}
            ordered.extend(v for v in videos if v.id not in listed)

            for position, video in enumerate(ordered):
                video.playlist_order = position
            await db.commit()
            return ordered

    # ── Destination Profile ──────────────────────────────────────────────

    async def get_stream_config(self) -> Optional[StreamConfig]:
        """The active destination profile, if any."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(StreamConfig).where(StreamConfig.is_active.is_(True)).limit(1)
            )
            return result.scalars().first()

    async def create_or_update_stream_config(self, fields: Dict[str, Any]) -> StreamConfig:
        """Replace the active profile wholesale and deactivate every other one."""
        values = _pick(fields, _CONFIG_FIELDS)
        async with self._session_factory() as db:
            result = await db.execute(
                select(StreamConfig).where(StreamConfig.is_active.is_(True)).limit(1)
            )
            config = result.scalars().first()
            if config is None:
                config = StreamConfig(**values, is_active=True)
                db.add(config)
                await db.flush()
            else:
                for key in _CONFIG_FIELDS:
                    setattr(config, key, values.get(key))

            await db.execute(
                update(StreamConfig)
                .where(StreamConfig.id != config.id)
                .values(is_active=False)
            )
            await db.commit()
            await db.refresh(config)
            logger.info(f"Active stream profile saved: platform={config.platform.value}")
            return config

    # ── Stream Status ────────────────────────────────────────────────────

    async def get_stream_status(self) -> StreamStatus:
        async with self._session_factory() as db:
            status = await self._status_row(db)
            await db.commit()
            return status

    async def create_or_update_stream_status(
        self,
        patch: Dict[str, Any],
        expected_state: Optional[StreamState] = None,
    ) -> Optional[StreamStatus]:
        """Apply a partial patch to the status row.

        With ``expected_state`` the patch is only applied if the row is still
        in that state; ``None`` is returned when the guard fails.
        """
        values = _pick(patch, _STATUS_FIELDS, keep_none=True)
        async with self._session_factory() as db:
            status = await self._status_row(db)
            if expected_state is None:
                for key, value in values.items():
                    setattr(status, key, value)
            else:
                # State check and write in one statement
                result = await db.execute(
                    update(StreamStatus)
                    .where(StreamStatus.id == status.id, StreamStatus.state == expected_state)
                    .values(**(values or {"state": expected_state}))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    await db.rollback()
                    return None
            await db.commit()
            await db.refresh(status)
            return status

    async def _status_row(self, db: AsyncSession) -> StreamStatus:
        result = await db.execute(select(StreamStatus).order_by(StreamStatus.id).limit(1))
        status = result.scalars().first()
        if status is None:
            status = StreamStatus(
                state=StreamState.OFFLINE,
                viewer_count=0,
                uptime="00:00:00",
                current_video_id=None,
                started_at=None,
                loop_playlist=False,
            )
            db.add(status)
            await db.flush()
        return status

    # ── System Config ────────────────────────────────────────────────────

    async def get_system_config(self) -> SystemConfig:
        async with self._session_factory() as db:
            config = await self._system_row(db)
            await db.commit()
            return config

    async def create_or_update_system_config(self, fields: Dict[str, Any]) -> SystemConfig:
        async with self._session_factory() as db:
            config = await self._system_row(db)
            for key, value in _pick(fields, _SYSTEM_FIELDS).items():
                setattr(config, key, value)
            await db.commit()
            await db.refresh(config)
            return config

    async def _system_row(self, db: AsyncSession) -> SystemConfig:
        result = await db.execute(select(SystemConfig).order_by(SystemConfig.id).limit(1))
        config = result.scalars().first()
        if config is None:
            config = SystemConfig(
                rtmp_port=self._default_rtmp_port,
                web_port=self._default_web_port,
            )
            db.add(config)
            await db.flush()
        return config


def _pick(fields: Dict[str, Any], allowed: set, keep_none: bool = False) -> Dict[str, Any]:
    return {
        k: v for k, v in fields.items()
        if k in allowed and (keep_none or v is not None)
    }
