from __future__ import annotations

import json
import logging
import shutil
import subprocess
from os import PathLike
from pathlib import Path
from typing import Protocol, TypeAlias

from src.contracts.errors import FfmpegError


logger = logging.getLogger(__name__)

StrPath: TypeAlias = str | PathLike[str]


def _path_str(value: StrPath) -> str:
    return str(Path(value))


def build_ffprobe_duration_cmd(input_path: StrPath, *, executable: str = "ffprobe") -> list[str]:
    """Build a deterministic ffprobe command that prints the container duration as JSON."""
    return [
        executable,
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "json",
        _path_str(input_path),
    ]


def parse_ffprobe_duration(stdout: str) -> float:
    try:
        payload = json.loads(stdout)
        duration = float(payload["format"]["duration"])
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
        raise FfmpegError(f"ffprobe returned no usable duration: {stdout[:200]!r}") from exc
    if duration <= 0:
        raise FfmpegError(f"ffprobe reported a non-positive duration: {duration}")
    return duration


class DurationProbe(Protocol):
    def probe(self, path: Path) -> float:
        """Return the audio duration in seconds or raise FfmpegError."""


class FfprobeDurationProbe(DurationProbe):
    def __init__(self, *, executable: str = "ffprobe", timeout_s: float = 60.0) -> None:
        self._executable = executable
        self._timeout_s = timeout_s

    @staticmethod
    def available(executable: str = "ffprobe") -> bool:
        return shutil.which(executable) is not None

    def probe(self, path: Path) -> float:
        cmd = build_ffprobe_duration_cmd(path, executable=self._executable)
        try:
            completed = subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=self._timeout_s)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise FfmpegError(f"failed to run ffprobe: {exc}") from exc
        if completed.returncode != 0:
            raise FfmpegError(f"ffprobe exited with {completed.returncode}: {completed.stderr.strip()[:500]}")
        duration = parse_ffprobe_duration(completed.stdout)
        logger.debug("ffprobe duration for %s: %.2fs", path, duration)
        return duration


__all__ = [
    "DurationProbe",
    "FfprobeDurationProbe",
    "build_ffprobe_duration_cmd",
    "parse_ffprobe_duration",
]
