"""
Loopcast Playback State Machine — pure decisions over commands and encoder events.

States:  offline → live → offline | error
         (starting and paused exist for the dashboard / external mutation only)

Every function takes a snapshot of the status record plus whatever else it
needs and returns a ``Decision``: the status patch to write, the playlist
item to start next (after the loop delay), and what the uptime reporter
should do. Nothing here touches the store, the clock or processes.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Sequence

from app.core.errors import PreconditionError
from app.models.models import StreamState

ZERO_UPTIME = "00:00:00"


@dataclass(frozen=True)
class StatusView:
    state: StreamState
    current_video_id: Optional[int] = None
    started_at: Optional[datetime] = None
    loop_playlist: bool = False

    @classmethod
    def of(cls, record) -> "StatusView":
        return cls(
            state=StreamState(record.state),
            current_video_id=record.current_video_id,
            started_at=record.started_at,
            loop_playlist=bool(record.loop_playlist),
        )


@dataclass(frozen=True)
class Decision:
    patch: Optional[Dict[str, Any]] = None
    start_video_id: Optional[int] = None
    # True: run the reporter, False: cancel it, None: leave as is
    reporter: Optional[bool] = None
    # New runtime loop flag, None: leave as is
    loop_enabled: Optional[bool] = None
    reason: str = ""


# ── Patches ─────────────────────────────────────────────────────────────

def offline_patch() -> Dict[str, Any]:
    return {
        "state": StreamState.OFFLINE,
        "viewer_count": 0,
        "uptime": ZERO_UPTIME,
        "current_video_id": None,
        "started_at": None,
        "loop_playlist": False,
    }


def error_patch() -> Dict[str, Any]:
    return {**offline_patch(), "state": StreamState.ERROR}


def live_patch(video_id: int, now: datetime, loop: bool, viewer_count: int = 0) -> Dict[str, Any]:
    return {
        "state": StreamState.LIVE,
        "viewer_count": viewer_count,
        "uptime": ZERO_UPTIME,
        "current_video_id": video_id,
        "started_at": now,
        "loop_playlist": loop,
    }


# ── Playlist ────────────────────────────────────────────────────────────

def next_video_id(playlist_ids: Sequence[int], current_id: Optional[int]) -> Optional[int]:
    """Circular successor of ``current_id`` in play order.

    An id that is no longer in the playlist restarts from the first item.
    """
    if not playlist_ids:
        return None
    try:
        index = list(playlist_ids).index(current_id)
    except ValueError:
        index = -1
    return playlist_ids[(index + 1) % len(playlist_ids)]


# ── Commands ────────────────────────────────────────────────────────────

def check_can_start(status: StatusView, video, profile) -> None:
    if status.current_video_id is None:
        raise PreconditionError("No video selected for streaming")
    if video is None:
        raise PreconditionError("Selected video not found")
    if profile is None:
        raise PreconditionError("Stream configuration not found")


def check_can_restart(playlist_ids: Sequence[int], profile) -> None:
    if not playlist_ids:
        raise PreconditionError("No videos in playlist")
    if profile is None:
        raise PreconditionError("Stream configuration not found")


def on_start(status: StatusView, now: datetime) -> Decision:
    """The encoder for the selected item was spawned."""
    return Decision(
        patch=live_patch(status.current_video_id, now, status.loop_playlist),
        reporter=True,
        loop_enabled=status.loop_playlist,
        reason="started",
    )


def on_stop() -> Decision:
    return Decision(patch=offline_patch(), reporter=False, loop_enabled=False, reason="stopped")


def on_restart(first_video_id: int, now: datetime, viewer_count: int) -> Decision:
    return Decision(
        patch=live_patch(first_video_id, now, loop=False, viewer_count=viewer_count),
        reporter=True,
        loop_enabled=False,
        reason="restarted",
    )


def on_loop_change(status: StatusView, enabled: bool) -> Decision:
    """Loop toggles only touch the flag; the runtime flag follows while live."""
    runtime = enabled if (status.state == StreamState.LIVE or not enabled) else None
    return Decision(
        patch={"loop_playlist": enabled},
        loop_enabled=runtime,
        reason="loop enabled" if enabled else "loop disabled",
    )


# ── Encoder events ──────────────────────────────────────────────────────

def on_encoder_exit(
    status: StatusView,
    loop_enabled: bool,
    playlist_ids: Sequence[int],
    now: datetime,
    failed: bool = False,
    consecutive_failures: int = 0,
) -> Decision:
    """The current encoder process ended on its own."""
    if not loop_enabled:
        if failed:
            return Decision(patch=error_patch(), reporter=False, loop_enabled=False,
                            reason="encoder failed")
        return Decision(patch=offline_patch(), reporter=False, loop_enabled=False,
                        reason="encoder exited")

    if not playlist_ids:
        return Decision(patch=offline_patch(), reporter=False, loop_enabled=False,
                        reason="playlist empty")

    # A full pass of failing items: give up instead of cycling forever
    if failed and consecutive_failures >= len(playlist_ids):
        return Decision(patch=error_patch(), reporter=False, loop_enabled=False,
                        reason="every playlist item failed")

    successor = next_video_id(playlist_ids, status.current_video_id)
    return Decision(
        patch=live_patch(successor, now, loop=True),
        start_video_id=successor,
        reporter=False,
        reason="loop advance",
    )


def on_encoder_error() -> Decision:
    """Launch failure or an asynchronous process error."""
    return Decision(patch=error_patch(), reporter=False, loop_enabled=False,
                    reason="encoder error")
