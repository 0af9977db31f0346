from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal

from src.utils.time import format_duration, format_timestamp


SegmentStatus = Literal["pending", "in-flight", "done", "failed"]


@dataclass(frozen=True, slots=True)
class AudioSource:
    id: str
    path: Path
    filename: str
    byte_size: int
    mime_hint: str
    sha256: str
    total_duration_estimate_s: float | None = None


@dataclass(slots=True)
class RetryState:
    attempts: int = 0
    last_error: str | None = None

    def reset(self) -> None:
        self.attempts = 0
        self.last_error = None


@dataclass(slots=True)
class UploadSession:
    """
    Resumable transfer state for one staged object.
    ``bytes_acknowledged`` only moves forward and never passes ``total_bytes``.
    """

    id: str
    source_id: str
    object_name: str
    chunk_size_bytes: int
    total_bytes: int
    bytes_acknowledged: int = 0
    upload_url: str | None = None
    retry_state: RetryState = field(default_factory=RetryState)

    @property
    def complete(self) -> bool:
        return self.bytes_acknowledged >= self.total_bytes

    def acknowledge(self, offset: int) -> None:
        if offset < self.bytes_acknowledged:
            raise ValueError(
                f"acknowledged offset regressed from {self.bytes_acknowledged} to {offset}"
            )
        if offset > self.total_bytes:
            raise ValueError(f"acknowledged offset {offset} exceeds total_bytes={self.total_bytes}")
        self.bytes_acknowledged = offset

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UploadSession":
        payload = dict(data)
        payload["retry_state"] = RetryState(**(payload.get("retry_state") or {}))
        return cls(**payload)


@dataclass(slots=True)
class SegmentDescriptor:
    """
    One planned time window. ``start_s``/``end_s`` are the nominal, gap-free
    boundaries; ``window_start_s``/``window_end_s`` is what the processor hears.
    """

    index: int
    start_s: float
    end_s: float
    overlap_with_next_s: float
    window_start_s: float
    window_end_s: float
    byte_range: tuple[int, int] | None = None
    status: SegmentStatus = "pending"

    @property
    def window_duration_s(self) -> float:
        return self.window_end_s - self.window_start_s

    @property
    def overlap_tail_end_s(self) -> float:
        return self.end_s + self.overlap_with_next_s

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["byte_range"] = list(self.byte_range) if self.byte_range is not None else None
        return data


@dataclass(frozen=True, slots=True)
class TranscriptFragment:
    text: str
    start_s: float
    duration_s: float


@dataclass(frozen=True, slots=True)
class SegmentTranscription:
    """Provider output for one request, before it is tagged with a segment index."""

    text: str
    fragments: list[TranscriptFragment]
    duration_s: float | None = None
    language: str | None = None


@dataclass(frozen=True, slots=True)
class SegmentResult:
    segment_index: int
    raw_text: str
    fragments: list[TranscriptFragment]
    duration_s: float | None = None
    language: str | None = None
    attempts: int = 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SegmentResult":
        fragments = [TranscriptFragment(**item) for item in data.get("fragments") or []]
        return cls(
            segment_index=int(data["segment_index"]),
            raw_text=str(data.get("raw_text") or ""),
            fragments=fragments,
            duration_s=data.get("duration_s"),
            language=data.get("language"),
            attempts=int(data.get("attempts") or 1),
        )


@dataclass(frozen=True, slots=True)
class TranscriptLine:
    text: str
    start_s: float
    duration_s: float
    segment_index: int

    @property
    def end_s(self) -> float:
        return self.start_s + self.duration_s

    @property
    def timestamp(self) -> str:
        return format_timestamp(self.start_s)


@dataclass(frozen=True, slots=True)
class SpeakerTimeline:
    speaker_id: str
    lines: list[TranscriptLine]


@dataclass(frozen=True, slots=True)
class TranscriptDocument:
    speakers: list[SpeakerTimeline]
    total_duration_s: float
    word_count: int
    title: str
    date: str
    segment_count: int = 1
    language: str | None = None

    @property
    def duration(self) -> str:
        return format_duration(self.total_duration_s)

    def iter_lines(self) -> list[tuple[str, TranscriptLine]]:
        pairs = [(speaker.speaker_id, line) for speaker in self.speakers for line in speaker.lines]
        return sorted(pairs, key=lambda pair: (pair[1].start_s, pair[1].segment_index))

    def to_text(self) -> str:
        rows = [f"[{line.timestamp}] {speaker_id}: {line.text}" for speaker_id, line in self.iter_lines()]
        return "\n".join(rows)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "date": self.date,
            "duration": self.duration,
            "total_duration_s": self.total_duration_s,
            "word_count": self.word_count,
            "segment_count": self.segment_count,
            "language": self.language,
            "speakers": [
                {
                    "id": speaker.speaker_id,
                    "segments": [
                        {
                            "text": line.text,
                            "timestamp": line.timestamp,
                            "start_s": line.start_s,
                            "duration": line.duration_s,
                        }
                        for line in speaker.lines
                    ],
                }
                for speaker in self.speakers
            ],
        }
