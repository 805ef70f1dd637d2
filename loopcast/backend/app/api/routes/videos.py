"""
Loopcast API — Playlist routes.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from app.api.deps import get_store, get_upload_service
from app.core.errors import UploadRejected
from app.schemas.schemas import MessageResponse, ReorderRequest, VideoSchema, VideoUpdate
from app.services.media.upload_service import UploadService
from app.services.store.stream_store import StreamStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/videos", tags=["Videos"])


@router.get("", response_model=List[VideoSchema])
async def list_videos(store: StreamStore = Depends(get_store)):
    """Playlist items in play order."""
    return await store.get_videos()


@router.post("", response_model=VideoSchema, status_code=201)
async def upload_video(
    video: Optional[UploadFile] = File(None),
    title: Optional[str] = Form(None),
    uploads: UploadService = Depends(get_upload_service),
):
    """Upload a file and append it to the playlist."""
    if video is None:
        raise HTTPException(400, "No video file uploaded")
    try:
        return await uploads.save_upload(video, title=title)
    except UploadRejected as e:
        raise HTTPException(e.status_code, str(e))


# Declared before /{video_id} so "reorder" is not parsed as an id
@router.post("/reorder", response_model=MessageResponse)
async def reorder_playlist(
    request: ReorderRequest,
    store: StreamStore = Depends(get_store),
):
    await store.reorder_playlist(request.video_ids)
    return MessageResponse(message="Playlist reordered successfully")


@router.put("/{video_id}", response_model=VideoSchema)
async def update_video(
    video_id: int,
    request: VideoUpdate,
    store: StreamStore = Depends(get_store),
):
    video = await store.update_video(video_id, request.model_dump(exclude_unset=True))
    if not video:
        raise HTTPException(404, "Video not found")
    return video


@router.delete("/{video_id}", response_model=MessageResponse)
async def delete_video(
    video_id: int,
    store: StreamStore = Depends(get_store),
    uploads: UploadService = Depends(get_upload_service),
):
    video = await store.delete_video(video_id)
    if not video:
        raise HTTPException(404, "Video not found")
    uploads.remove_file(video.filename)
    return MessageResponse(message="Video deleted successfully")
