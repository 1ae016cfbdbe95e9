"""FastAPI front for yt-dlp: fetch media into a temp workspace and stream it back.

Endpoints:
- GET /video    : single video as MP4
- GET /audio    : single track as MP3
- GET /playlist : whole playlist as a zip archive, built while it streams
- GET /download : picks one of the above from the URL
- GET /process  : single video resized with ffmpeg
- GET /health   : status, uptime and tool versions

Run with:
    uvicorn server:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mediarelay import __version__
from mediarelay.acquisition import AcquisitionInvoker
from mediarelay.config import Settings, get_settings
from mediarelay.jobs import JobRegistry
from mediarelay.models import JOB_PREFIXES
from mediarelay.routes import router
from mediarelay.transcode import Transcoder
from mediarelay.workspace import WorkspaceManager

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("mediarelay")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Sweep crash leftovers on startup; stop and release live jobs on shutdown."""
    app.state.workspaces.sweep()
    yield
    await app.state.registry.shutdown()
    released = app.state.workspaces.release_all()
    if released:
        logger.info("Released workspaces on shutdown count=%d", released)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="mediarelay", version=__version__, lifespan=lifespan)

    # Allow browser frontends on any origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )

    app.state.settings = settings
    app.state.started_at = time.monotonic()
    app.state.workspaces = WorkspaceManager(settings.workspace_root, prefixes=JOB_PREFIXES.values())
    app.state.invoker = AcquisitionInvoker(
        settings.ytdlp_command,
        max_playlist_items=settings.max_playlist_items,
        kill_grace=settings.kill_grace_seconds,
    )
    app.state.transcoder = Transcoder(settings.ffmpeg_command, kill_grace=settings.kill_grace_seconds)
    app.state.registry = JobRegistry(settings.max_concurrent_downloads)
    app.include_router(router)
    logger.info(
        "Configured workspace_root=%s max_concurrent=%d max_playlist_items=%d",
        settings.workspace_root,
        settings.max_concurrent_downloads,
        settings.max_playlist_items,
    )
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("server:app", host=settings.host, port=settings.port, reload=False)
