from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from src.contracts.artifacts import SegmentResult, TranscriptDocument, TranscriptLine, UploadSession
from src.contracts.errors import error_category
from src.contracts.events import (
    CancelledPayload,
    CompletePayload,
    ErrorPayload,
    EventKind,
    EventPayload,
    ProgressEvent,
    ProgressPayload,
    ProgressStage,
    SegmentCompletePayload,
)


logger = logging.getLogger(__name__)

TRANSPORT_WEIGHT = (0.0, 30.0)
TRANSCRIPTION_WEIGHT = (30.0, 90.0)
FINALIZE_WEIGHT = (90.0, 100.0)
_PRE_COMPLETE_CEILING = 99.0


class EventChannel:
    """
    Ordered event channel for one job.

    The job coordinator is the only writer (``publish`` and ``close``).
    Any number of readers may iterate; each sees every event in publish
    order, late subscribers included. Iteration ends after a terminal event
    or when the channel is closed.
    """

    def __init__(self) -> None:
        self._history: list[ProgressEvent] = []
        # None in a queue marks the end of the stream.
        self._subscribers: list[asyncio.Queue[ProgressEvent | None]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            raise RuntimeError("cannot publish to a closed event channel")
        self._history.append(event)
        for queue in self._subscribers:
            queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for queue in self._subscribers:
            queue.put_nowait(None)

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
        for event in self._history:
            queue.put_nowait(event)
        if self._closed:
            queue.put_nowait(None)
        self._subscribers.append(queue)
        return self._drain(queue)

    async def _drain(self, queue: asyncio.Queue[ProgressEvent | None]) -> AsyncIterator[ProgressEvent]:
        try:
            while True:
                item = await queue.get()
                if item is None:
                    return
                yield item
                if item.terminal:
                    return
        finally:
            self._subscribers.remove(queue)


def _blend(band: tuple[float, float], fraction: float) -> float:
    low, high = band
    fraction = min(1.0, max(0.0, fraction))
    return low + (high - low) * fraction


class ProgressAggregator:
    """
    Turns stage callbacks into ProgressEvents with a monotonic percentage.

    Transport fills 0-30%, transcription 30-90% by completed segments,
    finalization 90-100%. 100% is reported only by ``complete``. After the
    single terminal event every further call is rejected.
    """

    def __init__(self, channel: EventChannel | None = None) -> None:
        self._channel = channel
        self._sequence = 0
        self._percentage = 0.0
        self._terminal: ProgressEvent | None = None
        self._total_segments = 0
        self._completed_segments = 0
        self.history: list[ProgressEvent] = []

    @property
    def percentage(self) -> float:
        return self._percentage

    @property
    def terminal_event(self) -> ProgressEvent | None:
        return self._terminal

    def stage(self, stage: ProgressStage, message: str) -> ProgressEvent:
        return self._progress(self._percentage, stage=stage, message=message)

    def upload_progress(self, session: UploadSession) -> ProgressEvent:
        fraction = session.bytes_acknowledged / session.total_bytes if session.total_bytes else 1.0
        return self._progress(
            _blend(TRANSPORT_WEIGHT, fraction),
            stage="upload",
            message=f"Uploaded {session.bytes_acknowledged} of {session.total_bytes} bytes",
            bytes_acknowledged=session.bytes_acknowledged,
            total_bytes=session.total_bytes,
        )

    def upload_finished(self, message: str = "Upload not required") -> ProgressEvent:
        return self._progress(TRANSPORT_WEIGHT[1], stage="upload", message=message)

    def plan_ready(self, total_segments: int) -> ProgressEvent:
        self._total_segments = total_segments
        self._completed_segments = 0
        label = "segment" if total_segments == 1 else "segments"
        return self._progress(
            TRANSCRIPTION_WEIGHT[0],
            stage="plan",
            message=f"Planned {total_segments} {label}",
            completed_segments=0,
            total_segments=total_segments,
        )

    def segment_admitted(self, segment_index: int) -> ProgressEvent:
        return self._progress(
            self._percentage,
            stage="transcribe",
            message=f"Transcribing segment {segment_index + 1} of {self._total_segments}",
            completed_segments=self._completed_segments,
            total_segments=self._total_segments,
            segment_index=segment_index,
        )

    def segment_completed(self, result: SegmentResult, lines: list[TranscriptLine] | None = None) -> list[ProgressEvent]:
        self._completed_segments += 1
        fraction = self._completed_segments / self._total_segments if self._total_segments else 1.0
        completed = self._emit(
            "segment-complete",
            SegmentCompletePayload(
                segment_index=result.segment_index,
                total_segments=self._total_segments,
                result=result,
                lines=list(lines or []),
            ),
        )
        progress = self._progress(
            _blend(TRANSCRIPTION_WEIGHT, fraction),
            stage="transcribe",
            message=f"Completed {self._completed_segments} of {self._total_segments} segments",
            completed_segments=self._completed_segments,
            total_segments=self._total_segments,
            segment_index=result.segment_index,
        )
        return [completed, progress]

    def finalizing(self, message: str = "Stitching transcript") -> ProgressEvent:
        return self._progress(FINALIZE_WEIGHT[0], stage="stitch", message=message)

    def complete(self, document: TranscriptDocument) -> ProgressEvent:
        self._percentage = 100.0
        event = self._emit("complete", CompletePayload(document=document))
        self._finish(event)
        return event

    def fail(self, exc: BaseException, *, step: str | None = None, segment_index: int | None = None) -> ProgressEvent:
        event = self._emit(
            "error",
            ErrorPayload(
                category=error_category(exc),
                message=str(exc),
                error_type=type(exc).__name__,
                step=step if step is not None else getattr(exc, "step", None),
                segment_index=segment_index if segment_index is not None else getattr(exc, "segment_index", None),
            ),
        )
        self._finish(event)
        return event

    def cancel(self, message: str = "Job cancelled", *, step: str | None = None) -> ProgressEvent:
        event = self._emit("cancelled", CancelledPayload(message=message, step=step))
        self._finish(event)
        return event

    def _progress(self, percentage: float, *, stage: ProgressStage, message: str, **details: int | None) -> ProgressEvent:
        self._percentage = min(_PRE_COMPLETE_CEILING, max(self._percentage, percentage))
        payload = ProgressPayload(percentage=round(self._percentage, 2), stage=stage, message=message, **details)
        return self._emit("progress", payload)

    def _emit(self, kind: EventKind, payload: EventPayload) -> ProgressEvent:
        if self._terminal is not None:
            raise RuntimeError(f"job already ended with a '{self._terminal.kind}' event")
        self._sequence += 1
        event = ProgressEvent(kind=kind, sequence=self._sequence, payload=payload)
        self.history.append(event)
        if self._channel is not None:
            self._channel.publish(event)
        logger.debug("Event %s #%s: %s", kind, self._sequence, payload)
        return event

    def _finish(self, event: ProgressEvent) -> None:
        self._terminal = event
        if self._channel is not None:
            self._channel.close()


__all__ = [
    "EventChannel",
    "FINALIZE_WEIGHT",
    "ProgressAggregator",
    "TRANSCRIPTION_WEIGHT",
    "TRANSPORT_WEIGHT",
]
