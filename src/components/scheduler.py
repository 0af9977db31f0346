from __future__ import annotations

import asyncio
import logging
from collections import deque
from pathlib import PurePath
from typing import AsyncIterator, Awaitable, Callable, Iterable

from src.adapters.staging import SegmentAudioReader
from src.adapters.transcription import TranscriptionProvider
from src.contracts.artifacts import SegmentDescriptor, SegmentResult, SegmentTranscription
from src.contracts.errors import (
    ComponentError,
    InputValidationError,
    JobCancelledError,
    PlanningError,
    ProviderRetryExhaustedError,
    SegmentFailedError,
    TransientServerError,
    is_retryable,
)
from src.utils.retry import RetryPolicy


logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT_SEGMENTS = 3
DEFAULT_ADMISSION_DELAY_S = 1.0
MIN_CALL_TIMEOUT_S = 180.0
CALL_TIMEOUT_PER_AUDIO_SECOND = 0.4

SleepFn = Callable[[float], Awaitable[None]]
AdmissionCallback = Callable[[SegmentDescriptor], None]


def call_timeout_for(segment: SegmentDescriptor) -> float:
    return max(MIN_CALL_TIMEOUT_S, CALL_TIMEOUT_PER_AUDIO_SECOND * segment.window_duration_s)


def _any_failed(tasks: Iterable[asyncio.Task[SegmentResult]]) -> bool:
    return any(task.done() and not task.cancelled() and task.exception() is not None for task in tasks)


class TranscriptionScheduler:
    """
    Bounded-concurrency fan-out of segment transcription calls.

    The coordinator (``run``) owns the pending queue and the in-flight set;
    worker tasks only return a result or raise. Admission is strictly by
    segment index, completion order is whatever the network gives back.
    The first segment to exhaust its retries stops further admissions,
    in-flight calls are allowed to finish and their results are dropped.
    """

    def __init__(
        self,
        provider: TranscriptionProvider,
        reader: SegmentAudioReader,
        *,
        source_filename: str = "audio.mp3",
        mime_type: str = "audio/mpeg",
        retry_policy: RetryPolicy | None = None,
        admission_delay_s: float = DEFAULT_ADMISSION_DELAY_S,
        call_timeout_s: float | None = None,
        sleep: SleepFn = asyncio.sleep,
        cancel_event: asyncio.Event | None = None,
        on_admitted: AdmissionCallback | None = None,
    ) -> None:
        if admission_delay_s < 0:
            raise ValueError("admission_delay_s must be >= 0")
        if call_timeout_s is not None and call_timeout_s <= 0:
            raise ValueError("call_timeout_s must be > 0")
        self._provider = provider
        self._reader = reader
        self._source = PurePath(source_filename)
        self._mime_type = mime_type
        self._retry_policy = retry_policy or RetryPolicy()
        self._admission_delay_s = admission_delay_s
        self._call_timeout_s = call_timeout_s
        self._sleep = sleep
        self._cancel_event = cancel_event
        self._on_admitted = on_admitted

    async def run(
        self,
        segments: Iterable[SegmentDescriptor],
        max_concurrent: int = DEFAULT_MAX_CONCURRENT_SEGMENTS,
    ) -> AsyncIterator[SegmentResult]:
        if max_concurrent < 1:
            raise InputValidationError("max_concurrent must be >= 1")
        pending = deque(sorted(segments, key=lambda segment: segment.index))
        in_flight: dict[asyncio.Task[SegmentResult], SegmentDescriptor] = {}
        failure: tuple[SegmentDescriptor, BaseException] | None = None
        admitted = 0

        try:
            while in_flight or (pending and failure is None):
                while pending and failure is None and len(in_flight) < max_concurrent:
                    if admitted and self._admission_delay_s > 0:
                        await self._sleep(self._admission_delay_s)
                        if _any_failed(in_flight):
                            break
                    self._check_cancelled()
                    segment = pending.popleft()
                    segment.status = "in-flight"
                    task = asyncio.create_task(self._transcribe(segment), name=f"transcribe-segment-{segment.index}")
                    in_flight[task] = segment
                    admitted += 1
                    logger.info("Admitted segment %s (%s in flight)", segment.index, len(in_flight))
                    if self._on_admitted is not None:
                        self._on_admitted(segment)

                done = await self._wait_any(set(in_flight))
                for task in sorted(done, key=lambda item: in_flight[item].index):
                    segment = in_flight.pop(task)
                    exc = task.exception()
                    if exc is not None:
                        segment.status = "failed"
                        logger.error("Segment %s failed: %s", segment.index, exc)
                        if failure is None:
                            failure = (segment, exc)
                        continue
                    segment.status = "done"
                    if failure is not None:
                        logger.info("Discarding result of segment %s after job failure", segment.index)
                        continue
                    yield task.result()
        finally:
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

        if failure is not None:
            segment, exc = failure
            skipped = [item.index for item in pending]
            if skipped:
                logger.warning("Segments %s were never submitted after segment %s failed", skipped, segment.index)
            raise SegmentFailedError(
                f"segment {segment.index} failed: {exc}",
                segment_index=segment.index,
            ) from exc

    async def _wait_any(self, tasks: set[asyncio.Task[SegmentResult]]) -> set[asyncio.Task[SegmentResult]]:
        if self._cancel_event is None:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            return done

        cancel_waiter = asyncio.create_task(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait(tasks | {cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_waiter.cancel()
        self._check_cancelled()
        return {task for task in done if task is not cancel_waiter}

    async def _transcribe(self, segment: SegmentDescriptor) -> SegmentResult:
        audio = await self._read_audio(segment)
        attempts = self._retry_policy.max_attempts
        attempt = 0
        while True:
            attempt += 1
            self._check_cancelled()
            try:
                transcription = await self._call_once(segment, audio)
            except ComponentError as exc:
                if not is_retryable(exc):
                    raise
                if attempt >= attempts:
                    raise ProviderRetryExhaustedError(
                        f"segment {segment.index} failed after {attempts} attempts: {exc}"
                    ) from exc
                delay = self._retry_policy.delay_for(attempt, retry_after_s=getattr(exc, "retry_after_s", None))
                logger.warning(
                    "Segment %s attempt %s/%s failed (%s); retrying in %.1fs",
                    segment.index,
                    attempt,
                    attempts,
                    exc,
                    delay,
                )
                await self._sleep(delay)
                continue

            logger.info("Segment %s transcribed on attempt %s", segment.index, attempt)
            return SegmentResult(
                segment_index=segment.index,
                raw_text=transcription.text,
                fragments=list(transcription.fragments),
                duration_s=transcription.duration_s,
                language=transcription.language,
                attempts=attempt,
            )

    async def _call_once(self, segment: SegmentDescriptor, audio: bytes) -> SegmentTranscription:
        timeout_s = self._call_timeout_s if self._call_timeout_s is not None else call_timeout_for(segment)
        try:
            return await asyncio.wait_for(
                self._provider.transcribe_segment(
                    audio,
                    filename=self._segment_filename(segment),
                    mime_type=self._mime_type,
                ),
                timeout=timeout_s,
            )
        except TimeoutError as exc:
            raise TransientServerError(f"segment {segment.index} timed out after {timeout_s:.0f}s") from exc

    async def _read_audio(self, segment: SegmentDescriptor) -> bytes:
        if segment.byte_range is None:
            raise PlanningError(f"segment {segment.index} has no byte range")
        start, end = segment.byte_range
        audio = await self._reader.read_range(start, end)
        if len(audio) != end - start:
            raise PlanningError(f"segment {segment.index} expected {end - start} bytes, read {len(audio)}")
        return audio

    def _segment_filename(self, segment: SegmentDescriptor) -> str:
        return f"{self._source.stem}_segment_{segment.index:04d}{self._source.suffix}"

    def _check_cancelled(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise JobCancelledError("transcription cancelled")


__all__ = [
    "DEFAULT_ADMISSION_DELAY_S",
    "DEFAULT_MAX_CONCURRENT_SEGMENTS",
    "TranscriptionScheduler",
    "call_timeout_for",
]
