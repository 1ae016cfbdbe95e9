"""ffmpeg resize used by the ``/process`` endpoint."""
from __future__ import annotations

import asyncio
import logging
import subprocess
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .acquisition import run_command, stderr_tail
from .errors import TranscodeFailed

logger = logging.getLogger(__name__)


def ffmpeg_version(command: Sequence[str] = ("ffmpeg",)) -> Optional[str]:
    """First line of ``ffmpeg -version``, or None when ffmpeg is missing."""
    try:
        proc = subprocess.run([*command, "-version"], capture_output=True, text=True, timeout=2)
    except (FileNotFoundError, subprocess.TimeoutExpired, OSError):
        return None
    if proc.returncode != 0 or not proc.stdout:
        return None
    return proc.stdout.splitlines()[0]


class Transcoder:
    def __init__(self, command: Sequence[str] = ("ffmpeg",), *, kill_grace: float = 5.0):
        self.command = list(command)
        self.kill_grace = kill_grace

    def output_path(self, source: Path, height: str) -> Path:
        return source.with_name(f"{source.stem}-{height}p.mp4")

    def build_command(self, source: Path, output: Path, height: str) -> List[str]:
        return [
            *self.command,
            "-y",
            "-i",
            str(source),
            "-vf",
            f"scale=-2:{height}",
            "-c:v",
            "libx264",
            "-preset",
            "veryfast",
            "-crf",
            "22",
            "-c:a",
            "copy",
            "-movflags",
            "faststart",
            str(output),
        ]

    async def resize(
        self,
        source: Path,
        height: str,
        timeout: float,
        on_started: Optional[Callable[[asyncio.subprocess.Process], None]] = None,
    ) -> Path:
        """Scale ``source`` to ``height`` pixels; ``on_started`` receives the ffmpeg process."""
        output = self.output_path(source, height)
        command = self.build_command(source, output, height)
        try:
            completed = await run_command(
                command,
                timeout,
                grace=self.kill_grace,
                cwd=str(source.parent),
                on_started=on_started,
            )
        except asyncio.TimeoutError:
            raise TranscodeFailed(f"ffmpeg exceeded {timeout:.0f}s on {source.name}") from None
        except FileNotFoundError as exc:
            raise TranscodeFailed("ffmpeg is required for processing") from exc
        except OSError as exc:
            raise TranscodeFailed(f"cannot start ffmpeg: {exc}") from exc

        if completed.returncode != 0:
            tail = stderr_tail(completed.stderr.decode("utf-8", "replace"), lines=6)
            raise TranscodeFailed(f"ffmpeg exited with code {completed.returncode}: {tail or 'no output'}")
        if not output.exists():
            raise TranscodeFailed(f"ffmpeg output not created path={output}")
        logger.info("Resized video source=%s height=%s", source.name, height)
        return output
