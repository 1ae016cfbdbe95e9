import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

import server
from mediarelay.acquisition import AcquisitionInvoker
from mediarelay.config import Settings
from mediarelay.jobs import JobRunner
from mediarelay.models import JOB_PREFIXES, Job, JobSpec
from mediarelay.transcode import Transcoder
from mediarelay.workspace import WorkspaceManager

TESTS_DIR = Path(__file__).parent
FAKE_YTDLP = [sys.executable, str(TESTS_DIR / "fake_ytdlp.py")]
FAKE_FFMPEG = [sys.executable, str(TESTS_DIR / "fake_ffmpeg.py")]


@pytest.fixture
def workspace_root(tmp_path):
    return tmp_path / "workspaces"


@pytest.fixture
def settings(workspace_root):
    return Settings(
        workspace_root=str(workspace_root),
        ytdlp_command=FAKE_YTDLP,
        ffmpeg_command=FAKE_FFMPEG,
        video_timeout=20,
        audio_timeout=20,
        playlist_timeout=20,
        process_timeout=20,
        kill_grace_seconds=1,
        disconnect_poll_seconds=0.05,
        chunk_size=1024,
    )


@pytest.fixture
def fake_tool(monkeypatch):
    """Configure what the fake yt-dlp does on its next run."""

    def configure(files=(), exit_code=0, sleep=0, size=4096, pidfile=None, argvfile=None):
        monkeypatch.setenv("FAKE_YTDLP_FILES", "|".join(files))
        monkeypatch.setenv("FAKE_YTDLP_EXIT", str(exit_code))
        monkeypatch.setenv("FAKE_YTDLP_SLEEP", str(sleep))
        monkeypatch.setenv("FAKE_YTDLP_SIZE", str(size))
        if pidfile:
            monkeypatch.setenv("FAKE_YTDLP_PIDFILE", str(pidfile))
        if argvfile:
            monkeypatch.setenv("FAKE_YTDLP_ARGVFILE", str(argvfile))

    configure()
    return configure


@pytest.fixture
def client(settings):
    with TestClient(server.create_app(settings)) as test_client:
        yield test_client


@pytest.fixture
def make_runner(settings):
    workspaces = WorkspaceManager(settings.workspace_root, prefixes=JOB_PREFIXES.values())

    def build(spec: JobSpec) -> JobRunner:
        return JobRunner(
            Job.from_spec(spec),
            settings=settings,
            workspaces=workspaces,
            invoker=AcquisitionInvoker(settings.ytdlp_command, kill_grace=settings.kill_grace_seconds),
            transcoder=Transcoder(settings.ffmpeg_command, kill_grace=settings.kill_grace_seconds),
        )

    return build


@pytest.fixture
def leftovers(workspace_root):
    """Workspace directories still on disk."""

    def listing():
        if not workspace_root.exists():
            return []
        return sorted(workspace_root.iterdir())

    return listing
