"""HTTP endpoints."""
from __future__ import annotations

import time
from typing import Any, Dict, Optional

import yt_dlp
from fastapi import APIRouter, Query, Request
from fastapi.responses import Response
from starlette.concurrency import run_in_threadpool

from . import __version__, dispatch
from .errors import JobAborted, MediaRelayError
from .jobs import JobRunner
from .models import Job, JobSpec
from .transcode import ffmpeg_version

router = APIRouter()

# Non-standard "client closed request"; nothing is read by the client anyway.
CLIENT_CLOSED_REQUEST = 499

ENDPOINT_DOCS: Dict[str, Any] = {
    "/video": {
        "description": "Download a single video as MP4.",
        "params": {"url": "Video URL (required)", "quality": "Maximum height, default 720"},
    },
    "/audio": {
        "description": "Download a single audio track as MP3.",
        "params": {"url": "Video or audio URL (required)", "quality": "Bitrate in kbit/s, default 192"},
    },
    "/playlist": {
        "description": "Download a playlist as a zip archive.",
        "params": {
            "url": "Playlist URL (required)",
            "format": "video or audio, default video",
            "quality": "Maximum height (video, default 720) or bitrate (audio, default 192)",
        },
    },
    "/download": {
        "description": "Pick /video, /audio or /playlist from the URL and format.",
        "params": {"url": "Media URL (required)", "format": "video or audio", "quality": "See /video and /audio"},
    },
    "/process": {
        "description": "Download a video and resize it to the requested height.",
        "params": {"url": "Video URL (required)", "quality": "Target height, default 480"},
    },
    "/health": {"description": "Service status and uptime."},
}


async def run_job(request: Request, job_spec: JobSpec) -> Response:
    state = request.app.state
    runner = JobRunner(
        Job.from_spec(job_spec),
        settings=state.settings,
        workspaces=state.workspaces,
        invoker=state.invoker,
        transcoder=state.transcoder,
    )
    await state.registry.admit(runner)
    try:
        paths = await runner.prepare(request.is_disconnected)
    except JobAborted:
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    try:
        return runner.response(paths)
    except Exception as exc:
        error = exc if isinstance(exc, MediaRelayError) else MediaRelayError(f"{type(exc).__name__}: {exc}")
        await runner.fail(error)
        raise error from exc


@router.get("/")
async def root() -> Dict[str, Any]:
    return {"status": "ok", "name": "mediarelay", "version": __version__, "endpoints": ENDPOINT_DOCS}


@router.get("/health")
async def healthcheck(request: Request) -> Dict[str, Any]:
    """Return service readiness, uptime and tool versions."""
    state = request.app.state
    ffmpeg = await run_in_threadpool(ffmpeg_version, state.settings.ffmpeg_command)
    return {
        "status": "ok",
        "uptime_seconds": round(time.monotonic() - state.started_at, 3),
        "yt_dlp": getattr(yt_dlp, "__version__", None),
        "ffmpeg": ffmpeg or "missing",
        "active_jobs": len(state.registry),
        "max_concurrent_downloads": state.settings.max_concurrent_downloads,
        "max_playlist_items": state.settings.max_playlist_items,
    }


@router.get("/video")
async def video(
    request: Request,
    url: Optional[str] = Query(None, description="Video URL to download"),
    quality: Optional[str] = Query(None, description="Maximum height, e.g. 720"),
):
    job_spec = dispatch.video_job(url, quality, request.app.state.settings.allowed_domains)
    return await run_job(request, job_spec)


@router.get("/audio")
async def audio(
    request: Request,
    url: Optional[str] = Query(None, description="URL to extract audio from"),
    quality: Optional[str] = Query(None, description="MP3 bitrate in kbit/s, e.g. 192"),
):
    job_spec = dispatch.audio_job(url, quality, request.app.state.settings.allowed_domains)
    return await run_job(request, job_spec)


@router.get("/playlist")
async def playlist(
    request: Request,
    url: Optional[str] = Query(None, description="Playlist URL"),
    format: Optional[str] = Query(None, description="video or audio"),
    quality: Optional[str] = Query(None, description="Maximum height (video) or bitrate (audio)"),
):
    job_spec = dispatch.playlist_job(url, format, quality, request.app.state.settings.allowed_domains)
    return await run_job(request, job_spec)


@router.get("/download")
async def download(
    request: Request,
    url: Optional[str] = Query(None, description="Video, audio or playlist URL"),
    format: Optional[str] = Query(None, description="video or audio"),
    quality: Optional[str] = Query(None, description="Maximum height (video) or bitrate (audio)"),
):
    job_spec = dispatch.classify(url, format, quality, request.app.state.settings.allowed_domains)
    return await run_job(request, job_spec)


@router.get("/process")
async def process(
    request: Request,
    url: Optional[str] = Query(None, description="Video URL to download and resize"),
    quality: Optional[str] = Query(None, description="Target height, e.g. 480"),
):
    job_spec = dispatch.process_job(url, quality, request.app.state.settings.allowed_domains)
    return await run_job(request, job_spec)
