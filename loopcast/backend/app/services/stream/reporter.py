"""
Loopcast Uptime Reporter — keeps uptime and viewer count fresh while live.

Every tick recomputes ``now - started_at`` from the status record and writes
it back, guarded on the record still reading ``live`` so that a tick racing
a stop can never resurrect the stream.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from app.models.models import StreamState, StreamStatus
from app.services.store.stream_store import StreamStore

logger = logging.getLogger(__name__)

# Real platform analytics are not available
VIEWER_COUNT = 0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def format_uptime(elapsed_ms: float) -> str:
    """Milliseconds → ``HH:MM:SS``; hours keep counting past 24."""
    total_seconds = max(int(elapsed_ms // 1000), 0)
    hours, rest = divmod(total_seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


class UptimeReporter:
    def __init__(
        self,
        store: StreamStore,
        interval: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
        on_update: Optional[Callable[[StreamStatus], Awaitable[None]]] = None,
    ):
        self._store = store
        self._interval = interval
        self._clock = clock
        self._on_update = on_update
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.debug("Uptime reporter started")

    def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            logger.debug("Uptime reporter stopped")
        self._task = None

    async def tick(self) -> Optional[StreamStatus]:
        """One refresh. Returns the written record, or None when not live."""
        status = await self._store.get_stream_status()
        if status.state != StreamState.LIVE or status.started_at is None:
            return None

        elapsed = self._clock() - as_utc(status.started_at)
        record = await self._store.create_or_update_stream_status(
            {
                "uptime": format_uptime(elapsed.total_seconds() * 1000),
                "viewer_count": VIEWER_COUNT,
            },
            expected_state=StreamState.LIVE,
        )
        if record and self._on_update:
            await self._on_update(record)
        return record

    async def _run(self):
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Uptime update failed: {e}")
