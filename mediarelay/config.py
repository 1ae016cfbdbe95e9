"""Runtime settings loaded from environment variables."""
from __future__ import annotations

import os
import shlex
import sys
import tempfile
from functools import lru_cache
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name, str(default)) or str(default)
    try:
        value = int(raw)
    except ValueError:
        value = default
    return max(value, minimum)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name, str(default)) or str(default)
    try:
        value = float(raw)
    except ValueError:
        value = default
    return max(value, minimum)


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, "") or ""
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


def _env_command(name: str) -> Optional[List[str]]:
    raw = os.getenv(name)
    if raw and raw.strip():
        return shlex.split(raw)
    return None


def default_ytdlp_command() -> List[str]:
    """Run the yt-dlp package installed alongside the service."""
    return [sys.executable, "-m", "yt_dlp"]


class Settings(BaseModel):
    """Service configuration.

    Every field has a default so tests can build a ``Settings`` directly and
    override only what they need.
    """

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    workspace_root: str = Field(default_factory=lambda: os.path.join(tempfile.gettempdir(), "mediarelay"))
    ytdlp_command: List[str] = Field(default_factory=default_ytdlp_command)
    ffmpeg_command: List[str] = Field(default_factory=lambda: ["ffmpeg"])

    video_timeout: float = 300.0
    audio_timeout: float = 300.0
    playlist_timeout: float = 1800.0
    process_timeout: float = 300.0
    kill_grace_seconds: float = 5.0
    cleanup_grace_seconds: float = 0.0
    disconnect_poll_seconds: float = 0.5

    chunk_size: int = 1024 * 256
    max_concurrent_downloads: int = 3
    max_playlist_items: int = 50
    allowed_domains: List[str] = Field(default_factory=list)

    @classmethod
    def from_env(cls) -> "Settings":
        values: Dict[str, Any] = dict(
            host=os.getenv("HOST", "0.0.0.0") or "0.0.0.0",
            port=_env_int("PORT", 8000),
            log_level=(os.getenv("LOG_LEVEL", "INFO") or "INFO").upper(),
            video_timeout=_env_float("VIDEO_TIMEOUT", 300.0, minimum=1.0),
            audio_timeout=_env_float("AUDIO_TIMEOUT", 300.0, minimum=1.0),
            playlist_timeout=_env_float("PLAYLIST_TIMEOUT", 1800.0, minimum=1.0),
            process_timeout=_env_float("PROCESS_TIMEOUT", 300.0, minimum=1.0),
            kill_grace_seconds=_env_float("KILL_GRACE_SECONDS", 5.0),
            cleanup_grace_seconds=_env_float("CLEANUP_GRACE_SECONDS", 0.0),
            disconnect_poll_seconds=_env_float("DISCONNECT_POLL_SECONDS", 0.5, minimum=0.05),
            chunk_size=_env_int("CHUNK_SIZE", 1024 * 256, minimum=1024),
            max_concurrent_downloads=_env_int("MAX_CONCURRENT_DOWNLOADS", 3),
            max_playlist_items=_env_int("MAX_PLAYLIST_ITEMS", 50),
            allowed_domains=_env_list("ALLOWED_DOMAINS"),
        )
        root = os.getenv("WORKSPACE_ROOT")
        if root:
            values["workspace_root"] = root
        ytdlp_command = _env_command("YTDLP_COMMAND")
        if ytdlp_command:
            values["ytdlp_command"] = ytdlp_command
        ffmpeg_command = _env_command("FFMPEG_BINARY")
        if ffmpeg_command:
            values["ffmpeg_command"] = ffmpeg_command
        return cls(**values)


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings.from_env()
