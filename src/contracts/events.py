from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from .artifacts import SegmentResult, TranscriptDocument, TranscriptLine
from .errors import ErrorCategory


EventKind = Literal["progress", "segment-complete", "error", "complete", "cancelled"]
ProgressStage = Literal["validate", "upload", "plan", "transcribe", "stitch", "complete"]

TERMINAL_KINDS: frozenset[str] = frozenset({"error", "complete", "cancelled"})


@dataclass(frozen=True, slots=True)
class ProgressPayload:
    percentage: float
    stage: ProgressStage
    message: str
    bytes_acknowledged: int | None = None
    total_bytes: int | None = None
    completed_segments: int | None = None
    total_segments: int | None = None
    segment_index: int | None = None


@dataclass(frozen=True, slots=True)
class SegmentCompletePayload:
    segment_index: int
    total_segments: int
    result: SegmentResult
    lines: list[TranscriptLine] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ErrorPayload:
    category: ErrorCategory
    message: str
    error_type: str
    step: str | None = None
    segment_index: int | None = None


@dataclass(frozen=True, slots=True)
class CompletePayload:
    document: TranscriptDocument


@dataclass(frozen=True, slots=True)
class CancelledPayload:
    message: str
    step: str | None = None


EventPayload = ProgressPayload | SegmentCompletePayload | ErrorPayload | CompletePayload | CancelledPayload


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    kind: EventKind
    sequence: int
    payload: EventPayload

    @property
    def terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS


__all__ = [
    "CancelledPayload",
    "CompletePayload",
    "ErrorPayload",
    "EventKind",
    "EventPayload",
    "ProgressEvent",
    "ProgressPayload",
    "ProgressStage",
    "SegmentCompletePayload",
    "TERMINAL_KINDS",
]
