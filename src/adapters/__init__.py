from __future__ import annotations

from .ffmpeg import DurationProbe, FfprobeDurationProbe, build_ffprobe_duration_cmd, parse_ffprobe_duration
from .openai_transcription import AsyncOpenAIClientLike, OpenAITranscriptionAdapter, QuotaExceededError, map_openai_error
from .staging import (
    FileRangeReader,
    LocalStagingDestination,
    SegmentAudioReader,
    StagedObjectReader,
    StagingDestination,
    TusStagingDestination,
)
from .transcription import TranscriptionProvider

__all__ = [
    "DurationProbe",
    "FfprobeDurationProbe",
    "build_ffprobe_duration_cmd",
    "parse_ffprobe_duration",
    "AsyncOpenAIClientLike",
    "OpenAITranscriptionAdapter",
    "QuotaExceededError",
    "map_openai_error",
    "FileRangeReader",
    "LocalStagingDestination",
    "SegmentAudioReader",
    "StagedObjectReader",
    "StagingDestination",
    "TusStagingDestination",
    "TranscriptionProvider",
]
