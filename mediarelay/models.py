"""Job record and its enums."""
from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional

from .errors import InvalidTransition


class JobKind(str, Enum):
    SINGLE_VIDEO = "single_video"
    SINGLE_AUDIO = "single_audio"
    PLAYLIST = "playlist"
    PROCESS = "process"


class MediaFormat(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"

    @property
    def extension(self) -> str:
        return ".mp4" if self is MediaFormat.VIDEO else ".mp3"

    @property
    def media_type(self) -> str:
        return "video/mp4" if self is MediaFormat.VIDEO else "audio/mpeg"


class JobState(str, Enum):
    CREATED = "created"
    FETCHING = "fetching"
    LOCATING = "locating"
    DELIVERING = "delivering"
    CLEANED = "cleaned"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[JobState] = frozenset({JobState.CLEANED, JobState.FAILED, JobState.ABORTED})

_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.CREATED: frozenset({JobState.FETCHING, JobState.FAILED, JobState.ABORTED}),
    JobState.FETCHING: frozenset({JobState.LOCATING, JobState.FAILED, JobState.ABORTED}),
    JobState.LOCATING: frozenset({JobState.DELIVERING, JobState.FAILED, JobState.ABORTED}),
    JobState.DELIVERING: frozenset({JobState.CLEANED, JobState.FAILED, JobState.ABORTED}),
}

# Workspace directory prefixes, also used by the startup sweep.
JOB_PREFIXES: Dict[JobKind, str] = {
    JobKind.SINGLE_VIDEO: "mr-video-",
    JobKind.SINGLE_AUDIO: "mr-audio-",
    JobKind.PLAYLIST: "mr-playlist-",
    JobKind.PROCESS: "mr-process-",
}


def new_job_id(kind: JobKind) -> str:
    return f"{JOB_PREFIXES[kind]}{int(time.time() * 1000)}-{secrets.token_hex(4)}"


@dataclass
class JobSpec:
    """What the caller asked for, before any resources exist."""

    kind: JobKind
    format: MediaFormat
    quality: str
    source_url: str


@dataclass
class Job:
    kind: JobKind
    format: MediaFormat
    quality: str
    source_url: str
    id: str = ""
    workspace: Optional[Path] = None
    state: JobState = JobState.CREATED
    process: Optional[Any] = None
    error: Optional[BaseException] = None
    created_at: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        if not self.id:
            self.id = new_job_id(self.kind)

    @classmethod
    def from_spec(cls, spec: JobSpec) -> "Job":
        return cls(kind=spec.kind, format=spec.format, quality=spec.quality, source_url=spec.source_url)

    @property
    def is_playlist(self) -> bool:
        return self.kind is JobKind.PLAYLIST

    def transition(self, new_state: JobState) -> None:
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise InvalidTransition(f"job {self.id}: {self.state.value} -> {new_state.value}")
        self.state = new_state
