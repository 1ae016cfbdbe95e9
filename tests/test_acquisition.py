import asyncio
import os
import sys
import time

import pytest

from mediarelay.acquisition import AcquisitionInvoker
from mediarelay.errors import AcquisitionFailed, AcquisitionTimeout
from mediarelay.models import Job, JobKind, MediaFormat


def make_job(tmp_path, kind=JobKind.SINGLE_VIDEO, media_format=MediaFormat.VIDEO, quality="720"):
    job = Job(kind=kind, format=media_format, quality=quality, source_url="https://www.youtube.com/watch?v=abc")
    job.workspace = tmp_path / job.id
    job.workspace.mkdir()
    return job


def test_video_command(tmp_path):
    job = make_job(tmp_path)
    cmd = AcquisitionInvoker(["yt-dlp"]).build_command(job)

    assert cmd[0] == "yt-dlp"
    assert cmd[cmd.index("-f") + 1] == (
        "bestvideo[height<=720][ext=mp4]+bestaudio[ext=m4a]/best[height<=720][ext=mp4]"
    )
    assert cmd[cmd.index("--merge-output-format") + 1] == "mp4"
    assert "--no-playlist" in cmd
    assert cmd[cmd.index("-o") + 1] == os.path.join(str(job.workspace), "%(title)s.%(ext)s")
    assert cmd[-2:] == ["--", job.source_url]


def test_audio_playlist_command(tmp_path):
    job = make_job(tmp_path, kind=JobKind.PLAYLIST, media_format=MediaFormat.AUDIO, quality="192")
    cmd = AcquisitionInvoker(["yt-dlp"], max_playlist_items=25).build_command(job)

    assert cmd[cmd.index("--audio-format") + 1] == "mp3"
    assert cmd[cmd.index("--audio-quality") + 1] == "192K"
    assert "--yes-playlist" in cmd
    assert cmd[cmd.index("--playlist-end") + 1] == "25"
    assert cmd[cmd.index("-o") + 1].endswith("%(playlist_index)s - %(title)s.%(ext)s")


def test_process_job_fetches_a_larger_source(tmp_path):
    job = make_job(tmp_path, kind=JobKind.PROCESS, quality="360")
    cmd = AcquisitionInvoker(["yt-dlp"]).build_command(job)
    assert "height<=1080" in cmd[cmd.index("-f") + 1]


def test_run_writes_into_workspace(tmp_path, settings, fake_tool):
    fake_tool(files=["title.mp4"])
    job = make_job(tmp_path)

    result = asyncio.run(AcquisitionInvoker(settings.ytdlp_command).run(job, timeout=20))

    assert result.returncode == 0
    assert (job.workspace / "title.mp4").exists()
    assert job.process is None


def test_nonzero_exit_keeps_stderr_for_logs(tmp_path, settings, fake_tool):
    fake_tool(exit_code=2)
    job = make_job(tmp_path)

    with pytest.raises(AcquisitionFailed) as excinfo:
        asyncio.run(AcquisitionInvoker(settings.ytdlp_command).run(job, timeout=20))

    assert excinfo.value.returncode == 2
    assert "Video unavailable" in excinfo.value.stderr
    assert excinfo.value.detail == "Download failed."


def test_timeout_kills_the_tool(tmp_path, settings, fake_tool):
    pidfile = tmp_path / "pid"
    fake_tool(files=["title.mp4"], sleep=30, pidfile=pidfile)
    job = make_job(tmp_path)

    started = time.monotonic()
    with pytest.raises(AcquisitionTimeout):
        asyncio.run(AcquisitionInvoker(settings.ytdlp_command, kill_grace=1).run(job, timeout=1))

    assert time.monotonic() - started < 10
    assert not (job.workspace / "title.mp4").exists()
    if sys.platform != "win32" and pidfile.exists():
        with pytest.raises(ProcessLookupError):
            os.kill(int(pidfile.read_text()), 0)


def test_missing_executable(tmp_path):
    job = make_job(tmp_path)
    with pytest.raises(AcquisitionFailed):
        asyncio.run(AcquisitionInvoker([str(tmp_path / "no-such-yt-dlp")]).run(job, timeout=5))


def test_job_without_workspace(settings):
    job = Job(kind=JobKind.SINGLE_AUDIO, format=MediaFormat.AUDIO, quality="192", source_url="https://x.y/z")
    with pytest.raises(AcquisitionFailed):
        asyncio.run(AcquisitionInvoker(settings.ytdlp_command).run(job, timeout=5))
