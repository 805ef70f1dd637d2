"""
Loopcast API — WebSocket & SSE routes for live stream status.

WebSocket primary, SSE fallback. Supports:
  - Status and encoder events as they happen
  - Replay from timestamp
  - Event type filtering
"""
from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse

from app.api.deps import get_hub
from app.core.events import StreamEventHub

logger = logging.getLogger(__name__)
router = APIRouter(tags=["WebSocket"])


@router.websocket("/ws/stream")
async def stream_websocket(
    ws: WebSocket,
    replay_since: Optional[float] = Query(None),
    event_types: Optional[str] = Query(None),
):
    """
    Query params:
      replay_since: Unix timestamp to replay buffered events from
      event_types: Comma-separated event type filter for the replay
    """
    hub: StreamEventHub = ws.app.state.hub
    await hub.connect(ws)

    try:
        types_filter = event_types.split(",") if event_types else None
        await hub.replay(ws, since=replay_since, event_types=types_filter)

        while True:
            data = await ws.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                continue

            if msg.get("type") == "ping":
                await ws.send_text(json.dumps({"type": "pong"}))
            elif msg.get("type") == "replay":
                await hub.replay(ws, since=msg.get("since"))

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        await hub.disconnect(ws)


@router.get("/sse/stream")
async def stream_sse(
    replay_since: Optional[float] = Query(None),
    hub: StreamEventHub = Depends(get_hub),
):
    """SSE fallback for clients without WebSocket support."""
    return StreamingResponse(
        hub.sse_stream(since=replay_since),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/ws/stats")
async def websocket_stats(hub: StreamEventHub = Depends(get_hub)):
    return hub.get_stats()
