"""
Loopcast API dependencies — shared objects built in the app lifespan.
"""
from __future__ import annotations

from fastapi import Request

from app.core.config import Settings
from app.core.events import StreamEventHub
from app.services.media.upload_service import UploadService
from app.services.store.stream_store import StreamStore
from app.services.stream.engine import StreamEngine


def get_store(request: Request) -> StreamStore:
    return request.app.state.store


def get_stream_engine(request: Request) -> StreamEngine:
    return request.app.state.engine


def get_upload_service(request: Request) -> UploadService:
    return request.app.state.uploads


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_hub(request: Request) -> StreamEventHub:
    return request.app.state.hub
