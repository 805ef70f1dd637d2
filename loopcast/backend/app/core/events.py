"""
Loopcast Event Streaming — live stream status via WebSocket + SSE.

The engine emits an event whenever the status record changes or the
encoder process starts, exits or reports a diagnostic. Events are broadcast
to every connected dashboard client and kept in a bounded replay buffer.

Status events:   STATUS_CHANGED, LOOP_ADVANCED
Encoder events:  ENCODER_STARTED, ENCODER_EXITED, ENCODER_FAILED, ENCODER_DIAGNOSTIC
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Event Types
# ═══════════════════════════════════════════════════════════════════════════

class StreamEventType(str, Enum):
    STATUS_CHANGED = "STATUS_CHANGED"
    LOOP_ADVANCED = "LOOP_ADVANCED"
    ENCODER_STARTED = "ENCODER_STARTED"
    ENCODER_EXITED = "ENCODER_EXITED"
    ENCODER_FAILED = "ENCODER_FAILED"
    ENCODER_DIAGNOSTIC = "ENCODER_DIAGNOSTIC"
    HEARTBEAT = "HEARTBEAT"


@dataclass
class StreamEvent:
    event_type: str
    timestamp: float = field(default_factory=time.time)
    slot_key: Optional[str] = None
    video_id: Optional[int] = None
    data: Optional[Dict[str, Any]] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)


# ═══════════════════════════════════════════════════════════════════════════
# Connection Manager
# ═══════════════════════════════════════════════════════════════════════════

class StreamEventHub:
    """
    Fan-out of stream events to dashboard clients.

    - Maintains the set of active WebSocket connections
    - Keeps a bounded event buffer for replay (last N events)
    """

    def __init__(self, buffer_size: int = 500):
        self._connections: Set[WebSocket] = set()
        self._buffer: Deque[StreamEvent] = deque(maxlen=buffer_size)
        self._lock = asyncio.Lock()
        self._stats = {
            "total_events_emitted": 0,
            "active_connections": 0,
        }

    # ── Connection Lifecycle ─────────────────────────────────────────────

    async def connect(self, ws: WebSocket):
        await ws.accept()
        async with self._lock:
            self._connections.add(ws)
            self._stats["active_connections"] = len(self._connections)
        logger.info(f"Stream WS connected (total={len(self._connections)})")

    async def disconnect(self, ws: WebSocket):
        async with self._lock:
            self._connections.discard(ws)
            self._stats["active_connections"] = len(self._connections)
        logger.info(f"Stream WS disconnected (total={len(self._connections)})")

    # ── Event Emission ───────────────────────────────────────────────────

    async def emit(self, event: StreamEvent):
        """Emit an event to all connected clients and buffer it."""
        self._buffer.append(event)
        self._stats["total_events_emitted"] += 1

        if not self._connections:
            return

        payload = event.to_json()
        dead: List[WebSocket] = []

        for ws in list(self._connections):
            try:
                await ws.send_text(payload)
            except Exception:
                dead.append(ws)

        if dead:
            async with self._lock:
                for ws in dead:
                    self._connections.discard(ws)
                self._stats["active_connections"] = len(self._connections)

    async def emit_status(self, status: Dict[str, Any]):
        await self.emit(StreamEvent(
            event_type=StreamEventType.STATUS_CHANGED.value,
            video_id=status.get("current_video_id"),
            data=status,
        ))

    # ── Replay ───────────────────────────────────────────────────────────

    def recent(
        self,
        since: Optional[float] = None,
        event_types: Optional[List[str]] = None,
        limit: int = 200,
    ) -> List[StreamEvent]:
        events = list(self._buffer)
        if since:
            events = [e for e in events if e.timestamp >= since]
        if event_types:
            events = [e for e in events if e.event_type in event_types]
        return events[-limit:]

    async def replay(
        self,
        ws: WebSocket,
        since: Optional[float] = None,
        event_types: Optional[List[str]] = None,
    ):
        """Send buffered events to a newly connected client for catchup."""
        for event in self.recent(since=since, event_types=event_types):
            try:
                await ws.send_text(event.to_json())
            except Exception:
                break

    # ── SSE Fallback Generator ───────────────────────────────────────────

    async def sse_stream(self, since: Optional[float] = None, poll_interval: float = 0.5):
        """Async generator for Server-Sent Events fallback."""
        events = self.recent(since=since)
        for event in events:
            yield f"data: {event.to_json()}\n\n"

        last_ts = events[-1].timestamp if events else time.time()
        idle_polls = 0
        while True:
            await asyncio.sleep(poll_interval)
            new_events = [e for e in self._buffer if e.timestamp > last_ts]
            for event in new_events:
                yield f"data: {event.to_json()}\n\n"
                last_ts = event.timestamp

            idle_polls = 0 if new_events else idle_polls + 1
            # Heartbeat roughly every 15s of silence
            if idle_polls * poll_interval >= 15:
                idle_polls = 0
                yield f"data: {StreamEvent(event_type=StreamEventType.HEARTBEAT.value).to_json()}\n\n"

    # ── Stats ────────────────────────────────────────────────────────────

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "buffer_size": len(self._buffer),
            "buffer_capacity": self._buffer.maxlen,
        }
