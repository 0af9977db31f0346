from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from src.adapters import ffmpeg
from src.adapters.ffmpeg import FfprobeDurationProbe, build_ffprobe_duration_cmd, parse_ffprobe_duration
from src.contracts.errors import FfmpegError


def test_build_ffprobe_duration_cmd() -> None:
    cmd = build_ffprobe_duration_cmd(Path("talk.mp3"))

    assert cmd == [
        "ffprobe",
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "json",
        str(Path("talk.mp3")),
    ]


def test_build_ffprobe_duration_cmd_custom_executable() -> None:
    cmd = build_ffprobe_duration_cmd("talk.mp3", executable="/opt/ffmpeg/bin/ffprobe")
    assert cmd[0] == "/opt/ffmpeg/bin/ffprobe"
    assert cmd[-1] == str(Path("talk.mp3"))


def test_parse_ffprobe_duration() -> None:
    assert parse_ffprobe_duration('{"format": {"duration": "2400.125000"}}') == 2400.125


@pytest.mark.parametrize(
    "stdout",
    ["", "not json", "{}", '{"format": {}}', '{"format": {"duration": "N/A"}}', '{"format": {"duration": "0"}}'],
)
def test_parse_ffprobe_duration_rejects_unusable_output(stdout: str) -> None:
    with pytest.raises(FfmpegError):
        parse_ffprobe_duration(stdout)


def test_probe_runs_ffprobe_and_parses_stdout(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[list[str]] = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout='{"format": {"duration": "61.5"}}', stderr="")

    monkeypatch.setattr(ffmpeg.subprocess, "run", fake_run)

    assert FfprobeDurationProbe().probe(Path("talk.mp3")) == 61.5
    assert calls == [build_ffprobe_duration_cmd(Path("talk.mp3"))]


def test_probe_failure_raises_ffmpeg_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd, **kwargs):
        return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="talk.mp3: Invalid data found")

    monkeypatch.setattr(ffmpeg.subprocess, "run", fake_run)

    with pytest.raises(FfmpegError, match="Invalid data"):
        FfprobeDurationProbe().probe(Path("talk.mp3"))


def test_missing_executable_raises_ffmpeg_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(ffmpeg.subprocess, "run", fake_run)

    with pytest.raises(FfmpegError, match="failed to run ffprobe"):
        FfprobeDurationProbe(executable="no-such-ffprobe").probe(Path("talk.mp3"))


def test_available_uses_path_lookup(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(ffmpeg.shutil, "which", lambda name: None)
    assert FfprobeDurationProbe.available() is False
    monkeypatch.setattr(ffmpeg.shutil, "which", lambda name: f"/usr/bin/{name}")
    assert FfprobeDurationProbe.available() is True
