"""Streaming response bodies: single files and incrementally built zip archives."""
from __future__ import annotations

import io
import os
import re
import zipfile
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterator, Optional, Sequence
from urllib.parse import quote

from starlette.concurrency import run_in_threadpool
from starlette.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from .errors import ArchiveError
from .models import MediaFormat


CHUNK_SIZE = 1024 * 256
ZIP_MEDIA_TYPE = "application/zip"


def sanitize_filename(name: str, fallback: str = "download") -> str:
    """Strip characters that break Content-Disposition headers or paths."""
    safe = re.sub(r'[\\/*?:"<>|]', "", name).replace("\n", " ").replace("\r", " ").strip()
    return safe or fallback


def content_disposition(filename: str) -> str:
    """Attachment header; non-ASCII names also get an RFC 5987 ``filename*``."""
    safe = sanitize_filename(filename)
    ascii_name = safe.encode("ascii", "ignore").decode("ascii").strip()
    if ascii_name == safe:
        return f'attachment; filename="{safe}"'
    ext = os.path.splitext(safe)[1]
    ascii_ext = ext.encode("ascii", "ignore").decode("ascii")
    fallback = ascii_name if ascii_name and ascii_name != ascii_ext else f"download{ascii_ext}"
    return f"attachment; filename=\"{fallback}\"; filename*=utf-8''{quote(safe)}"


def archive_filename(media_format: MediaFormat, quality: str) -> str:
    if media_format is MediaFormat.AUDIO:
        return f"playlist-audio-{quality}k.zip"
    return f"playlist-{quality}p.zip"


def file_headers(path: Path, filename: Optional[str] = None) -> Dict[str, str]:
    return {
        "Content-Disposition": content_disposition(filename or path.name),
        "Content-Length": str(path.stat().st_size),
    }


def iter_file(path: Path, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b""):
            yield chunk


class _ZipSink(io.RawIOBase):
    """Write-only, non-seekable buffer that ``zipfile`` streams into.

    Being unseekable makes ``ZipFile`` emit data descriptors instead of
    seeking back to patch local headers, so bytes can leave as soon as
    they are written.
    """

    def __init__(self) -> None:
        super().__init__()
        self._buffer = bytearray()

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        self._buffer.extend(data)
        return len(data)

    def drain(self) -> bytes:
        data = bytes(self._buffer)
        self._buffer.clear()
        return data


def iter_zip(paths: Sequence[Path], chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Yield a deflate (level 9) zip of ``paths`` as it is being built.

    Entries are stored under their base names. Memory use is bounded by
    ``chunk_size`` plus whatever the compressor holds back.
    """
    sink = _ZipSink()
    try:
        with zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
            for path in paths:
                force_zip64 = os.path.getsize(path) * 1.05 > zipfile.ZIP64_LIMIT
                with open(path, "rb") as source, archive.open(path.name, mode="w", force_zip64=force_zip64) as entry:
                    for chunk in iter(lambda: source.read(chunk_size), b""):
                        entry.write(chunk)
                        data = sink.drain()
                        if data:
                            yield data
                data = sink.drain()
                if data:
                    yield data
    except (OSError, ValueError, RuntimeError, zipfile.LargeZipFile) as exc:
        raise ArchiveError(f"zip construction failed: {exc}") from exc
    tail = sink.drain()
    if tail:
        yield tail


async def iterate_chunks(chunks: Iterator[bytes]) -> AsyncIterator[bytes]:
    """Pull blocking chunks in the threadpool; always closes the source."""
    try:
        while True:
            chunk = await run_in_threadpool(next, chunks, None)
            if chunk is None:
                break
            yield chunk
    finally:
        close = getattr(chunks, "close", None)
        if close is not None:
            close()


class JobStreamingResponse(StreamingResponse):
    """``StreamingResponse`` that runs ``on_close`` however the response ends.

    Normal completion, a failing body and a vanished client all pass through
    the same ``finally``.
    """

    def __init__(self, content, *, on_close: Callable[[], Awaitable[None]], **kwargs):
        super().__init__(content, **kwargs)
        self.on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.on_close()
