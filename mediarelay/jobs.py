"""
Job lifecycle: fetch, locate, deliver, and release exactly once.

A ``JobRunner`` owns one ``Job`` from workspace allocation to removal.
Every way a job can end (stream finished, error, client gone, shutdown)
funnels into ``JobRunner.close``, which is idempotent, so racing triggers
cannot double-free or skip the workspace.
"""
from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import AsyncGenerator, Awaitable, Callable, Dict, Iterator, List, Optional

from starlette.concurrency import run_in_threadpool

from .acquisition import AcquisitionInvoker, terminate_process
from .config import Settings
from .delivery import (
    ZIP_MEDIA_TYPE,
    JobStreamingResponse,
    archive_filename,
    content_disposition,
    file_headers,
    iter_file,
    iter_zip,
    iterate_chunks,
)
from .errors import BusyError, ClientDisconnected, JobAborted, MediaRelayError
from .locator import locate
from .models import Job, JobKind, JobState
from .transcode import Transcoder
from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)

ADMIT_TIMEOUT = 2.0


class JobRunner:
    def __init__(
        self,
        job: Job,
        *,
        settings: Settings,
        workspaces: WorkspaceManager,
        invoker: AcquisitionInvoker,
        transcoder: Optional[Transcoder] = None,
        registry: Optional["JobRegistry"] = None,
    ):
        self.job = job
        self.settings = settings
        self.workspaces = workspaces
        self.invoker = invoker
        self.transcoder = transcoder
        self.registry = registry
        self._closed = False
        self._delivered = False
        self._stream: Optional[AsyncGenerator[bytes, None]] = None
        self._work: Optional[asyncio.Future] = None

    @property
    def timeout(self) -> float:
        return {
            JobKind.SINGLE_VIDEO: self.settings.video_timeout,
            JobKind.SINGLE_AUDIO: self.settings.audio_timeout,
            JobKind.PLAYLIST: self.settings.playlist_timeout,
            JobKind.PROCESS: self.settings.process_timeout,
        }[self.job.kind]

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def age_ms(self) -> int:
        return int((time.monotonic() - self.job.created_at) * 1000)

    async def prepare(self, is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None) -> List[Path]:
        """Fetch and locate the job's output.

        The work runs as its own task so ``abort`` can cancel it, which
        terminates whichever tool is running. With ``is_disconnected`` the
        work is also raced against the client going away; a disconnect
        raises ``ClientDisconnected``, an abort from elsewhere ``JobAborted``.
        """
        work = self._work = asyncio.ensure_future(self._prepare())
        watcher = None
        if is_disconnected is not None:
            watcher = asyncio.ensure_future(self._watch_disconnect(is_disconnected))
        try:
            await asyncio.wait({work} if watcher is None else {work, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if watcher is not None:
                watcher.cancel()
            if not work.done():
                work.cancel()
                await asyncio.gather(work, return_exceptions=True)
        if not work.cancelled():
            return work.result()
        if watcher is not None and watcher.done() and not watcher.cancelled():
            error = watcher.exception()
            if error is not None:
                logger.error("Disconnect check failed job_id=%s error=%s", self.job.id, error)
                raise error
            raise ClientDisconnected(f"client disconnected during {self.job.id}")
        raise JobAborted(f"job {self.job.id} aborted")

    async def _watch_disconnect(self, is_disconnected: Callable[[], Awaitable[bool]]) -> None:
        while not await is_disconnected():
            await asyncio.sleep(self.settings.disconnect_poll_seconds)
        logger.info("Client disconnected job_id=%s state=%s", self.job.id, self.job.state.value)

    async def _prepare(self) -> List[Path]:
        try:
            self.job.workspace = self.workspaces.allocate(self.job.id)
            self.job.transition(JobState.FETCHING)
            await self.invoker.run(self.job, self.timeout)
            self.job.transition(JobState.LOCATING)
            paths = locate(self.job.workspace, self.job.format.extension, single=not self.job.is_playlist)
            if self.job.kind is JobKind.PROCESS:
                if self.transcoder is None:
                    raise RuntimeError("process job without a transcoder")
                paths = [await self._transcode(paths[0])]
            return paths
        except asyncio.CancelledError:
            await self.abort("cancelled")
            raise
        except MediaRelayError as exc:
            await self.fail(exc)
            raise
        except Exception as exc:
            logger.exception("Unexpected error job_id=%s", self.job.id)
            error = MediaRelayError(f"{type(exc).__name__}: {exc}")
            await self.fail(error)
            raise error from exc

    async def _transcode(self, source: Path) -> Path:
        def _track(process: asyncio.subprocess.Process) -> None:
            self.job.process = process

        try:
            return await self.transcoder.resize(
                source, self.job.quality, self.settings.process_timeout, on_started=_track
            )
        finally:
            self.job.process = None

    def response(self, paths: List[Path]) -> JobStreamingResponse:
        """Build the streaming response; the job is released when it ends."""
        self.job.transition(JobState.DELIVERING)
        chunk_size = self.settings.chunk_size
        chunks: Iterator[bytes]
        if self.job.is_playlist:
            chunks = iter_zip(paths, chunk_size)
            media_type = ZIP_MEDIA_TYPE
            headers = {"Content-Disposition": content_disposition(archive_filename(self.job.format, self.job.quality))}
            logger.info("Streaming archive job_id=%s entries=%d", self.job.id, len(paths))
        else:
            path = paths[0]
            chunks = iter_file(path, chunk_size)
            media_type = self.job.format.media_type
            headers = file_headers(path)
            logger.info("Streaming file job_id=%s name=%s", self.job.id, path.name)
        self._stream = self._body(chunks)
        return JobStreamingResponse(self._stream, on_close=self.finish, media_type=media_type, headers=headers)

    async def _body(self, chunks: Iterator[bytes]) -> AsyncGenerator[bytes, None]:
        source = iterate_chunks(chunks)
        try:
            async for chunk in source:
                yield chunk
        except MediaRelayError as exc:
            logger.error("Stream failed after headers were sent job_id=%s error=%s", self.job.id, exc)
            await self.fail(exc)
            raise
        except OSError as exc:
            logger.error("Stream read failed job_id=%s error=%s", self.job.id, exc)
            await self.fail(MediaRelayError(f"read error: {exc}"))
            raise
        finally:
            await source.aclose()
        self._delivered = True

    async def finish(self) -> None:
        """Response ended; anything short of a full body means the client left."""
        if self._stream is not None:
            await self._stream.aclose()
        if not self.job.state.terminal:
            if self._delivered:
                self.job.transition(JobState.CLEANED)
                logger.info("Job delivered job_id=%s", self.job.id)
            else:
                self.job.transition(JobState.ABORTED)
                logger.info("Job aborted during delivery job_id=%s", self.job.id)
        await self.close()

    async def fail(self, error: BaseException) -> None:
        if not self.job.state.terminal:
            self.job.error = error
            self.job.transition(JobState.FAILED)
            diagnostic = getattr(error, "diagnostic", "") or str(error)
            logger.error("Job failed job_id=%s error=%s detail=%s", self.job.id, type(error).__name__, diagnostic)
        await self.close()

    async def abort(self, reason: str = "client disconnected") -> None:
        """Stop the job from outside: terminate the tool, then release."""
        if not self.job.state.terminal:
            self.job.transition(JobState.ABORTED)
            logger.info("Aborting job job_id=%s reason=%s age_ms=%d", self.job.id, reason, self.age_ms)
        work = self._work
        if work is not None and not work.done() and work is not asyncio.current_task():
            # Cancelling the fetch/transcode terminates its subprocess and waits for it.
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
        process = self.job.process
        if process is not None:
            await terminate_process(process, self.settings.kill_grace_seconds)
        await self.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            if self.settings.cleanup_grace_seconds:
                await asyncio.sleep(self.settings.cleanup_grace_seconds)
            if self.job.workspace is not None:
                await run_in_threadpool(self.workspaces.release, self.job.workspace)
        finally:
            if self.registry is not None:
                self.registry.discard(self)
            logger.debug("Job closed job_id=%s state=%s age_ms=%d", self.job.id, self.job.state.value, self.age_ms)


class JobRegistry:
    """Active jobs and the process-wide download slots."""

    def __init__(self, max_concurrent: int = 3, admit_timeout: float = ADMIT_TIMEOUT):
        self.max_concurrent = max_concurrent
        self.admit_timeout = admit_timeout
        self._slots = asyncio.Semaphore(max_concurrent)
        self._active: Dict[str, JobRunner] = {}

    def __len__(self) -> int:
        return len(self._active)

    def active(self) -> List[JobRunner]:
        return list(self._active.values())

    async def admit(self, runner: JobRunner) -> None:
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=self.admit_timeout)
        except asyncio.TimeoutError:
            raise BusyError(f"no download slot for {runner.job.id}") from None
        runner.registry = self
        self._active[runner.job.id] = runner

    def discard(self, runner: JobRunner) -> None:
        if self._active.pop(runner.job.id, None) is not None:
            self._slots.release()

    async def shutdown(self) -> int:
        runners = self.active()
        for runner in runners:
            await runner.abort("shutdown")
        if runners:
            logger.info("Stopped active jobs count=%d", len(runners))
        return len(runners)
