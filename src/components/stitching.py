from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import PurePath
from typing import Literal

from src.contracts.artifacts import (
    SegmentDescriptor,
    SegmentResult,
    SpeakerTimeline,
    TranscriptDocument,
    TranscriptLine,
)
from src.contracts.errors import StitchError
from src.utils.time import today_iso


logger = logging.getLogger(__name__)

SpeakerMode = Literal["single", "alternate"]

DEFAULT_OVERLAP_TOLERANCE_S = 0.5
DEFAULT_SPEAKER_SWITCH_GAP_S = 1.5
PRIMARY_SPEAKER = "Speaker_1"
SECONDARY_SPEAKER = "Speaker_2"


def count_words(text: str) -> int:
    return len(text.split())


def build_title(filename: str, segment_count: int) -> str:
    mode = "Segmented Transcription" if segment_count > 1 else "Direct Transcription"
    return f"{PurePath(filename).stem} ({mode})"


def assign_speakers(
    lines: list[TranscriptLine],
    *,
    mode: SpeakerMode = "single",
    switch_gap_s: float = DEFAULT_SPEAKER_SWITCH_GAP_S,
) -> list[SpeakerTimeline]:
    """Placeholder attribution: one speaker, or alternate on every long pause."""
    if mode == "single":
        return [SpeakerTimeline(speaker_id=PRIMARY_SPEAKER, lines=list(lines))]
    if mode != "alternate":
        raise ValueError(f"unsupported speaker mode: {mode}")

    by_speaker: dict[str, list[TranscriptLine]] = {PRIMARY_SPEAKER: [], SECONDARY_SPEAKER: []}
    current = PRIMARY_SPEAKER
    previous: TranscriptLine | None = None
    for line in lines:
        if previous is not None and line.start_s - previous.end_s >= switch_gap_s:
            current = SECONDARY_SPEAKER if current == PRIMARY_SPEAKER else PRIMARY_SPEAKER
        by_speaker[current].append(line)
        previous = line
    return [SpeakerTimeline(speaker_id=speaker, lines=items) for speaker, items in by_speaker.items() if items]


class _LineAccumulator:
    """Applies the overlap rule to one segment at a time, in index order."""

    def __init__(self, plan: list[SegmentDescriptor], *, overlap_tolerance_s: float, strict: bool) -> None:
        if not plan:
            raise StitchError("cannot stitch without a segment plan")
        self._plan = {segment.index: segment for segment in plan}
        if len(self._plan) != len(plan) or sorted(self._plan) != list(range(len(plan))):
            raise StitchError("plan indices must be unique and contiguous from 0")
        self._overlap_tolerance_s = overlap_tolerance_s
        self._strict = strict
        self.lines: list[TranscriptLine] = []
        self.dropped = 0

    @property
    def segment_count(self) -> int:
        return len(self._plan)

    def segment(self, index: int) -> SegmentDescriptor:
        try:
            return self._plan[index]
        except KeyError as exc:
            raise StitchError(f"result for unplanned segment {index}") from exc

    def accept(self, result: SegmentResult) -> list[TranscriptLine]:
        segment = self.segment(result.segment_index)
        previous = self._plan.get(segment.index - 1)
        authoritative_until_s = previous.overlap_tail_end_s if previous is not None else None

        accepted: list[TranscriptLine] = []
        for fragment in sorted(result.fragments, key=lambda item: item.start_s):
            absolute_start_s = segment.window_start_s + fragment.start_s
            if authoritative_until_s is not None and absolute_start_s < authoritative_until_s:
                # First writer wins: the previous segment already covered this audio.
                self.dropped += 1
                continue
            line = TranscriptLine(
                text=fragment.text,
                start_s=absolute_start_s,
                duration_s=fragment.duration_s,
                segment_index=segment.index,
            )
            if not self._fits(line):
                continue
            self.lines.append(line)
            accepted.append(line)
        return accepted

    def _fits(self, line: TranscriptLine) -> bool:
        if not self.lines:
            return True
        last = self.lines[-1]
        problem = None
        if line.start_s <= last.start_s:
            problem = f"starts at {line.start_s:.3f}s, not after {last.start_s:.3f}s"
        elif last.end_s - line.start_s > self._overlap_tolerance_s:
            problem = f"overlaps the previous line by {last.end_s - line.start_s:.3f}s"
        if problem is None:
            return True
        message = f"malformed fragment in segment {line.segment_index}: {problem}"
        if self._strict:
            raise StitchError(message)
        logger.warning("Dropping %s", message)
        self.dropped += 1
        return False


def _build_document(
    accumulator: _LineAccumulator,
    results: list[SegmentResult],
    *,
    filename: str,
    speaker_mode: SpeakerMode,
    speaker_switch_gap_s: float,
    stitched_on: str | None,
) -> TranscriptDocument:
    final_segment = accumulator.segment(accumulator.segment_count - 1)
    total_duration_s = final_segment.end_s
    final_result = next((item for item in results if item.segment_index == final_segment.index), None)
    if final_result is not None and final_result.duration_s:
        total_duration_s = final_segment.window_start_s + final_result.duration_s

    lines = accumulator.lines
    language = next((item.language for item in sorted(results, key=lambda r: r.segment_index) if item.language), None)
    return TranscriptDocument(
        speakers=assign_speakers(lines, mode=speaker_mode, switch_gap_s=speaker_switch_gap_s),
        total_duration_s=total_duration_s,
        word_count=sum(count_words(line.text) for line in lines),
        title=build_title(filename, accumulator.segment_count),
        date=stitched_on or today_iso(),
        segment_count=accumulator.segment_count,
        language=language,
    )


def stitch(
    results: Iterable[SegmentResult],
    plan: list[SegmentDescriptor],
    *,
    filename: str = "recording",
    overlap_tolerance_s: float = DEFAULT_OVERLAP_TOLERANCE_S,
    speaker_mode: SpeakerMode = "single",
    speaker_switch_gap_s: float = DEFAULT_SPEAKER_SWITCH_GAP_S,
    strict: bool = False,
    stitched_on: str | None = None,
) -> TranscriptDocument:
    """
    Merge per-segment results into one absolute-time transcript.

    Fragment offsets are relative to the audio each request actually heard,
    so they are shifted by the segment's request window start. For every
    segment after the first, fragments starting inside the previous
    segment's overlap tail are dropped. Pure; performs no I/O.
    """
    accumulator = _LineAccumulator(plan, overlap_tolerance_s=overlap_tolerance_s, strict=strict)
    ordered = sorted(results, key=lambda item: item.segment_index)
    seen: set[int] = set()
    for result in ordered:
        if result.segment_index in seen:
            message = f"duplicate result for segment {result.segment_index}"
            if strict:
                raise StitchError(message)
            logger.warning("Ignoring %s", message)
            continue
        seen.add(result.segment_index)
        accumulator.accept(result)

    missing = sorted(set(range(accumulator.segment_count)) - seen)
    if missing:
        raise StitchError(f"missing results for segments {missing}")

    if accumulator.dropped:
        logger.info("Stitched %s lines, dropped %s overlapping fragments", len(accumulator.lines), accumulator.dropped)
    return _build_document(
        accumulator,
        ordered,
        filename=filename,
        speaker_mode=speaker_mode,
        speaker_switch_gap_s=speaker_switch_gap_s,
        stitched_on=stitched_on,
    )


class IncrementalStitcher:
    """
    Streaming variant of ``stitch``: results may arrive in any order, lines
    are released strictly in segment-index order as predecessors complete.
    """

    def __init__(
        self,
        plan: list[SegmentDescriptor],
        *,
        filename: str = "recording",
        overlap_tolerance_s: float = DEFAULT_OVERLAP_TOLERANCE_S,
        speaker_mode: SpeakerMode = "single",
        speaker_switch_gap_s: float = DEFAULT_SPEAKER_SWITCH_GAP_S,
        strict: bool = False,
    ) -> None:
        self._accumulator = _LineAccumulator(plan, overlap_tolerance_s=overlap_tolerance_s, strict=strict)
        self._filename = filename
        self._speaker_mode: SpeakerMode = speaker_mode
        self._speaker_switch_gap_s = speaker_switch_gap_s
        self._buffered: dict[int, SegmentResult] = {}
        self._released: list[SegmentResult] = []
        self._next_index = 0

    @property
    def next_index(self) -> int:
        return self._next_index

    @property
    def buffered_indices(self) -> list[int]:
        return sorted(self._buffered)

    def add(self, result: SegmentResult) -> list[TranscriptLine]:
        self._accumulator.segment(result.segment_index)
        if result.segment_index < self._next_index or result.segment_index in self._buffered:
            raise StitchError(f"duplicate result for segment {result.segment_index}")
        self._buffered[result.segment_index] = result

        released: list[TranscriptLine] = []
        while self._next_index in self._buffered:
            ready = self._buffered.pop(self._next_index)
            released.extend(self._accumulator.accept(ready))
            self._released.append(ready)
            self._next_index += 1
        return released

    def finish(self, *, stitched_on: str | None = None) -> TranscriptDocument:
        if self._next_index != self._accumulator.segment_count:
            missing = [index for index in range(self._next_index, self._accumulator.segment_count) if index not in self._buffered]
            raise StitchError(f"missing results for segments {missing}")
        return _build_document(
            self._accumulator,
            self._released,
            filename=self._filename,
            speaker_mode=self._speaker_mode,
            speaker_switch_gap_s=self._speaker_switch_gap_s,
            stitched_on=stitched_on,
        )


__all__ = [
    "DEFAULT_OVERLAP_TOLERANCE_S",
    "DEFAULT_SPEAKER_SWITCH_GAP_S",
    "IncrementalStitcher",
    "SpeakerMode",
    "assign_speakers",
    "build_title",
    "count_words",
    "stitch",
]
