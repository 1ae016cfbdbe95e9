"""Runs yt-dlp against a job workspace."""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from .errors import AcquisitionFailed, AcquisitionTimeout
from .models import Job, JobKind, MediaFormat

logger = logging.getLogger(__name__)

SINGLE_TEMPLATE = "%(title)s.%(ext)s"
PLAYLIST_TEMPLATE = "%(playlist_index)s - %(title)s.%(ext)s"
PROCESS_SOURCE_HEIGHT = "1080"
STDERR_TAIL_LINES = 20


@dataclass
class AcquisitionResult:
    returncode: int
    stderr: str
    elapsed: float


@dataclass
class CompletedCommand:
    returncode: int
    stdout: bytes
    stderr: bytes


def stderr_tail(stderr: str, lines: int = STDERR_TAIL_LINES) -> str:
    """Keep only the last few lines to include in logs."""
    return "\n".join(stderr.strip().splitlines()[-lines:])


def _session_kwargs() -> Dict[str, Any]:
    # Own process group so merges/post-processing children die with the tool.
    if sys.platform == "win32":
        return {}
    return {"start_new_session": True}


def _signal_process(process: asyncio.subprocess.Process, sig: int) -> None:
    try:
        if sys.platform == "win32":
            if sig == signal.SIGTERM:
                process.terminate()
            else:
                process.kill()
        else:
            os.killpg(process.pid, sig)
    except (ProcessLookupError, OSError):
        pass  # already gone


async def terminate_process(process: asyncio.subprocess.Process, grace: float) -> None:
    """Terminate ``process`` and wait for it; escalates to SIGKILL after ``grace`` seconds."""
    if process.returncode is not None:
        return
    _signal_process(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
        return
    except asyncio.TimeoutError:
        logger.warning("Process ignored SIGTERM, killing pid=%s", process.pid)
    _signal_process(process, getattr(signal, "SIGKILL", signal.SIGTERM))
    await process.wait()


async def run_command(
    command: Sequence[str],
    timeout: float,
    *,
    grace: float,
    cwd: Optional[str] = None,
    on_started: Optional[Callable[[asyncio.subprocess.Process], None]] = None,
) -> CompletedCommand:
    """Run ``command`` to completion under a wall-clock timeout.

    Raises ``asyncio.TimeoutError`` after terminating the process when the
    timeout expires. Cancellation of the calling task also terminates the
    process before the ``CancelledError`` propagates. ``FileNotFoundError``
    is raised unchanged when the executable does not exist.
    """
    process = await asyncio.create_subprocess_exec(
        *command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        **_session_kwargs(),
    )
    if on_started is not None:
        on_started(process)
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except (asyncio.TimeoutError, asyncio.CancelledError):
        await terminate_process(process, grace)
        raise
    return CompletedCommand(returncode=process.returncode or 0, stdout=stdout or b"", stderr=stderr or b"")


class AcquisitionInvoker:
    """Builds yt-dlp command lines and runs them with a hard timeout."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        max_playlist_items: int = 50,
        kill_grace: float = 5.0,
    ):
        self.command = list(command)
        self.max_playlist_items = max_playlist_items
        self.kill_grace = kill_grace

    def output_template(self, job: Job) -> str:
        template = PLAYLIST_TEMPLATE if job.is_playlist else SINGLE_TEMPLATE
        return os.path.join(str(job.workspace), template)

    def format_args(self, job: Job) -> List[str]:
        if job.format is MediaFormat.AUDIO:
            return [
                "-f",
                "bestaudio/best",
                "-x",
                "--audio-format",
                "mp3",
                "--audio-quality",
                f"{job.quality}K",
            ]
        height = PROCESS_SOURCE_HEIGHT if job.kind is JobKind.PROCESS else job.quality
        return [
            "-f",
            f"bestvideo[height<={height}][ext=mp4]+bestaudio[ext=m4a]/best[height<={height}][ext=mp4]",
            "--merge-output-format",
            "mp4",
        ]

    def build_command(self, job: Job) -> List[str]:
        cmd = list(self.command)
        cmd.extend(self.format_args(job))
        if job.is_playlist:
            cmd.extend(["--yes-playlist", "--playlist-end", str(self.max_playlist_items)])
        else:
            cmd.append("--no-playlist")
        cmd.extend(["--no-progress", "--no-warnings", "-o", self.output_template(job), "--", job.source_url])
        return cmd

    async def run(self, job: Job, timeout: float) -> AcquisitionResult:
        """Fetch ``job.source_url`` into ``job.workspace``.

        The subprocess handle lives on ``job.process`` while it runs so a
        cancelled job can be traced back to its process.
        """
        if job.workspace is None:
            raise AcquisitionFailed(f"job {job.id} has no workspace")
        command = self.build_command(job)
        logger.info("Starting acquisition job_id=%s kind=%s quality=%s url=%s", job.id, job.kind.value, job.quality, job.source_url)
        started = time.monotonic()

        def _track(process: asyncio.subprocess.Process) -> None:
            job.process = process

        try:
            completed = await run_command(
                command,
                timeout,
                grace=self.kill_grace,
                cwd=str(job.workspace),
                on_started=_track,
            )
        except asyncio.TimeoutError:
            raise AcquisitionTimeout(f"job {job.id} exceeded {timeout:.0f}s", timeout=timeout) from None
        except FileNotFoundError as exc:
            raise AcquisitionFailed(f"acquisition tool not found: {exc}") from exc
        except OSError as exc:
            raise AcquisitionFailed(f"cannot start acquisition tool: {exc}") from exc
        finally:
            job.process = None

        elapsed = time.monotonic() - started
        stderr = completed.stderr.decode("utf-8", "replace")
        result = AcquisitionResult(
            returncode=completed.returncode,
            stderr=stderr,
            elapsed=elapsed,
        )
        if result.returncode != 0:
            tail = stderr_tail(stderr)
            raise AcquisitionFailed(
                f"yt-dlp exited with code {result.returncode}: {tail or 'no output'}",
                returncode=result.returncode,
                stderr=tail,
            )
        logger.info("Acquisition finished job_id=%s elapsed_ms=%d", job.id, int(elapsed * 1000))
        return result
