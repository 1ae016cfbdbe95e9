"""
Error taxonomy for download jobs.

Each error is an ``HTTPException`` with a fixed, caller-safe ``detail``.
Anything useful for debugging (tool stderr, paths, exit codes) goes into
``diagnostic`` and is only ever logged.
"""
from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, status


class MediaRelayError(HTTPException):
    """Base class for every error a job can end with."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    public_detail = "Internal server error."

    def __init__(self, diagnostic: str = "", detail: Optional[str] = None):
        super().__init__(status_code=type(self).status_code, detail=detail or type(self).public_detail)
        self.diagnostic = diagnostic

    def __str__(self) -> str:
        return self.diagnostic or str(self.detail)


class ValidationError(MediaRelayError):
    """Missing or malformed request parameters."""

    status_code = status.HTTP_400_BAD_REQUEST
    public_detail = "Invalid request."

    def __init__(self, detail: str):
        super().__init__(diagnostic=detail, detail=detail)


class BusyError(MediaRelayError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    public_detail = "Too many concurrent downloads, please wait."


class StorageError(MediaRelayError):
    public_detail = "Could not prepare temporary storage."


class AcquisitionFailed(MediaRelayError):
    """yt-dlp exited with a nonzero status or could not be started."""

    public_detail = "Download failed."

    def __init__(self, diagnostic: str = "", returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(diagnostic=diagnostic)
        self.returncode = returncode
        self.stderr = stderr


class AcquisitionTimeout(MediaRelayError):
    public_detail = "Download timed out."

    def __init__(self, diagnostic: str = "", timeout: float = 0.0):
        super().__init__(diagnostic=diagnostic)
        self.timeout = timeout


class NoOutputProduced(MediaRelayError):
    """The tool exited 0 but wrote nothing with the expected extension."""

    status_code = status.HTTP_404_NOT_FOUND
    public_detail = "No media was produced for this URL."


class AmbiguousOutput(MediaRelayError):
    """A single-item job produced more than one candidate file."""

    public_detail = "Download produced an unexpected set of files."


class ArchiveError(MediaRelayError):
    public_detail = "Could not build the archive."


class TranscodeFailed(MediaRelayError):
    public_detail = "Processing failed."


class JobAborted(Exception):
    """The job was stopped (client gone or shutdown) before it produced output."""


class ClientDisconnected(JobAborted):
    """The caller went away before the job finished."""


class InvalidTransition(RuntimeError):
    """A job was moved between two states that are not connected."""
