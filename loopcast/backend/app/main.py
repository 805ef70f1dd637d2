"""
Loopcast — Main FastAPI Application

Playlist-to-RTMP streaming server.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from prometheus_client import make_asgi_app

from app.core.config import Settings, get_settings
from app.core.database import create_engine_for, create_session_factory, init_db
from app.core.events import StreamEventHub
from app.services.media.upload_service import UploadService
from app.services.store.stream_store import StreamStore
from app.services.stream.engine import StreamEngine
from app.services.stream.supervisor import ProcessSupervisor

# ── Logging ──────────────────────────────────────────────────────────────


def configure_logging(level: str) -> None:
    logging.basicConfig(level=logging.getLevelName(level.upper()))
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
    )


logger = structlog.get_logger()


# ── Lifespan ─────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown hooks."""
    settings: Settings = app.state.settings
    logger.info("Starting Loopcast", version=settings.app_version)

    Path(settings.upload_dir).mkdir(parents=True, exist_ok=True)
    db_engine = create_engine_for(settings.database_url, echo=settings.debug)
    await init_db(db_engine)

    store = StreamStore(
        create_session_factory(db_engine),
        default_rtmp_port=settings.default_rtmp_port,
        default_web_port=settings.default_web_port,
    )
    hub = StreamEventHub(buffer_size=settings.event_buffer_size)
    supervisor = ProcessSupervisor(
        binary=settings.ffmpeg_binary,
        stop_timeout=settings.encoder_stop_timeout_seconds,
    )
    engine = StreamEngine(store, supervisor, settings, hub=hub)

    app.state.store = store
    app.state.hub = hub
    app.state.engine = engine
    app.state.uploads = UploadService(store, settings)

    await engine.startup()
    logger.info("Loopcast ready", ffmpeg=settings.ffmpeg_binary, upload_dir=settings.upload_dir)

    yield

    # Shutdown
    await engine.shutdown()
    await db_engine.dispose()
    logger.info("Shutting down Loopcast")


# ── App ──────────────────────────────────────────────────────────────────

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title=settings.app_name,
        description="Stream a video playlist to YouTube, Twitch, Facebook or any RTMP server",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Restrict in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Prometheus metrics
    app.mount("/metrics", make_asgi_app())

    # Uploaded files
    app.mount(
        "/uploads",
        StaticFiles(directory=settings.upload_dir, check_dir=False),
        name="uploads",
    )

    # ── Routes ───────────────────────────────────────────────────────────

    from app.api.routes import rtmp_hooks, stream, system, videos, websocket

    app.include_router(videos.router, prefix=settings.api_prefix)
    app.include_router(stream.router, prefix=settings.api_prefix)
    app.include_router(system.router, prefix=settings.api_prefix)
    app.include_router(rtmp_hooks.router, prefix=settings.api_prefix)
    app.include_router(websocket.router)

    @app.get("/")
    async def root():
        return {
            "name": settings.app_name,
            "description": "Playlist-to-RTMP streaming server",
            "version": settings.app_version,
            "platforms": ["youtube", "twitch", "facebook", "custom"],
            "docs": "/docs",
        }

    @app.get("/health")
    async def health():
        engine: StreamEngine = app.state.engine
        return {"status": "healthy", "active_streams": engine.get_active_streams()}

    return app


app = create_app()


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(app, host="0.0.0.0", port=settings.default_web_port)
