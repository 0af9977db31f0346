from __future__ import annotations

import logging
import math

from src.contracts.artifacts import SegmentDescriptor
from src.contracts.errors import InputValidationError, PlanningError
from src.utils.hashing import sha256_json


logger = logging.getLogger(__name__)

DEFAULT_SEGMENT_DURATION_S = 900.0
DEFAULT_OVERLAP_S = 2.0
DEFAULT_MAX_REQUEST_BYTES = 25 * 1024 * 1024

# Typical bitrates (bytes per second) used when no probe is available.
_TYPICAL_BYTES_PER_SECOND: dict[str, float] = {
    "audio/mpeg": 128_000 / 8,
    "audio/wav": 256_000 / 8,
    "audio/aac": 128_000 / 8,
    "audio/mp4": 128_000 / 8,
    "audio/ogg": 96_000 / 8,
    "audio/webm": 64_000 / 8,
    "audio/flac": 800_000 / 8,
}
_FALLBACK_BYTES_PER_SECOND = 128_000 / 8


def estimate_duration_s(byte_size: int, mime_hint: str | None) -> float:
    if byte_size <= 0:
        raise InputValidationError("byte_size must be > 0")
    bytes_per_second = _TYPICAL_BYTES_PER_SECOND.get(mime_hint or "", _FALLBACK_BYTES_PER_SECOND)
    return byte_size / bytes_per_second


def _validate_plan_inputs(total_duration_s: float, segment_duration_s: float, overlap_s: float) -> None:
    if not math.isfinite(total_duration_s) or total_duration_s <= 0:
        raise InputValidationError("total_duration_s must be a finite value > 0")
    if segment_duration_s <= 0:
        raise InputValidationError("segment_duration_s must be > 0")
    if overlap_s < 0:
        raise InputValidationError("overlap_s must be >= 0")
    if overlap_s * 2 >= segment_duration_s:
        raise InputValidationError("overlap_s must be less than half of segment_duration_s")


def _effective_segment_duration(
    total_duration_s: float,
    segment_duration_s: float,
    overlap_s: float,
    byte_size: int | None,
    max_request_bytes: int,
) -> float:
    """Shrink the target when a full window (plus both overlaps) would not fit one request."""
    if byte_size is None:
        return segment_duration_s
    bytes_per_second = byte_size / total_duration_s
    # Byte ranges round outward by up to one byte at each end.
    max_window_s = (max_request_bytes - 2) / bytes_per_second
    if segment_duration_s + 2 * overlap_s <= max_window_s:
        return segment_duration_s
    fitted = math.floor(max_window_s - 2 * overlap_s)
    if fitted <= 2 * overlap_s:
        raise PlanningError(
            f"cannot fit a {overlap_s}s-overlapped window under {max_request_bytes} bytes "
            f"at {bytes_per_second:.0f} bytes/s"
        )
    logger.info("Segment duration reduced from %ss to %ss to respect the request ceiling", segment_duration_s, fitted)
    return float(fitted)


def _byte_range(window_start_s: float, window_end_s: float, total_duration_s: float, byte_size: int) -> tuple[int, int]:
    start = math.floor(window_start_s / total_duration_s * byte_size)
    end = byte_size if window_end_s >= total_duration_s else math.ceil(window_end_s / total_duration_s * byte_size)
    return max(0, start), min(byte_size, end)


def _single_segment(total_duration_s: float, byte_size: int | None) -> list[SegmentDescriptor]:
    return [
        SegmentDescriptor(
            index=0,
            start_s=0.0,
            end_s=total_duration_s,
            overlap_with_next_s=0.0,
            window_start_s=0.0,
            window_end_s=total_duration_s,
            byte_range=(0, byte_size) if byte_size is not None else None,
        )
    ]


def plan_segments(
    total_duration_s: float,
    *,
    byte_size: int | None = None,
    segment_duration_s: float = DEFAULT_SEGMENT_DURATION_S,
    overlap_s: float = DEFAULT_OVERLAP_S,
    max_request_bytes: int = DEFAULT_MAX_REQUEST_BYTES,
) -> list[SegmentDescriptor]:
    """
    Plan contiguous time windows covering ``[0, total_duration_s)``.

    A file that fits one request gets one segment. With a known
    ``byte_size`` only the size decides, so a short file over the ceiling
    is still split into windows that fit. Otherwise every segment but the
    last extends ``overlap_s`` past its nominal end, and every segment but
    the first starts ``overlap_s`` early; a trailing sliver shorter than
    the overlap merges into its predecessor. Pure: identical inputs always
    give an identical plan.
    """
    _validate_plan_inputs(total_duration_s, segment_duration_s, overlap_s)
    if byte_size is not None and byte_size <= 0:
        raise InputValidationError("byte_size must be > 0 when provided")

    if byte_size is not None:
        if byte_size <= max_request_bytes:
            return _single_segment(total_duration_s, byte_size)
    elif total_duration_s <= segment_duration_s:
        return _single_segment(total_duration_s, byte_size)

    target_s = _effective_segment_duration(total_duration_s, segment_duration_s, overlap_s, byte_size, max_request_bytes)
    count = math.ceil(total_duration_s / target_s)
    last_length_s = total_duration_s - (count - 1) * target_s
    if count > 1 and last_length_s < max(overlap_s, 1e-9):
        count -= 1
    if count == 1:
        return _single_segment(total_duration_s, byte_size)

    plan: list[SegmentDescriptor] = []
    for index in range(count):
        is_last = index == count - 1
        start_s = index * target_s
        end_s = total_duration_s if is_last else (index + 1) * target_s
        overlap_with_next_s = 0.0 if is_last else float(overlap_s)
        window_start_s = start_s - overlap_s if index > 0 else 0.0
        window_end_s = min(total_duration_s, end_s + overlap_with_next_s)
        plan.append(
            SegmentDescriptor(
                index=index,
                start_s=float(start_s),
                end_s=float(end_s),
                overlap_with_next_s=overlap_with_next_s,
                window_start_s=float(window_start_s),
                window_end_s=float(window_end_s),
                byte_range=(
                    _byte_range(window_start_s, window_end_s, total_duration_s, byte_size)
                    if byte_size is not None
                    else None
                ),
            )
        )
    return plan


def validate_plan(plan: list[SegmentDescriptor]) -> None:
    if not plan:
        raise PlanningError("plan must contain at least one segment")
    for position, segment in enumerate(plan):
        if segment.index != position:
            raise PlanningError(f"segment indices must be contiguous from 0; got {segment.index} at {position}")
        if segment.end_s <= segment.start_s:
            raise PlanningError(f"segment {segment.index} has an empty window")
        if position > 0 and not math.isclose(plan[position - 1].end_s, segment.start_s):
            raise PlanningError(f"segment {segment.index} does not start where segment {position - 1} ends")
    if plan[-1].overlap_with_next_s != 0:
        raise PlanningError("final segment must not overlap a successor")


def plan_hash(plan: list[SegmentDescriptor]) -> str:
    return sha256_json(
        [
            {
                "index": segment.index,
                "start_s": segment.start_s,
                "end_s": segment.end_s,
                "window_start_s": segment.window_start_s,
                "window_end_s": segment.window_end_s,
                "byte_range": list(segment.byte_range) if segment.byte_range is not None else None,
            }
            for segment in plan
        ]
    )


__all__ = [
    "DEFAULT_MAX_REQUEST_BYTES",
    "DEFAULT_OVERLAP_S",
    "DEFAULT_SEGMENT_DURATION_S",
    "estimate_duration_s",
    "plan_hash",
    "plan_segments",
    "validate_plan",
]
