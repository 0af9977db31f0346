from __future__ import annotations

import asyncio
from collections import defaultdict
import unittest

from src.components.scheduler import TranscriptionScheduler, call_timeout_for
from src.contracts.artifacts import SegmentDescriptor, SegmentTranscription, TranscriptFragment
from src.contracts.errors import (
    InvalidCredentialError,
    JobCancelledError,
    ProviderRetryExhaustedError,
    RateLimitedError,
    SegmentFailedError,
    TransientServerError,
    error_category,
)
from src.utils.retry import RetryPolicy


def _index_of(filename: str) -> int:
    return int(filename.rsplit("_", 1)[1].split(".")[0])


def _segments(count: int) -> list[SegmentDescriptor]:
    return [
        SegmentDescriptor(
            index=i,
            start_s=i * 60.0,
            end_s=(i + 1) * 60.0,
            overlap_with_next_s=0.0,
            window_start_s=i * 60.0,
            window_end_s=(i + 1) * 60.0,
            byte_range=(i * 10, (i + 1) * 10),
        )
        for i in range(count)
    ]


class _BytesReader:
    def __init__(self, data: bytes) -> None:
        self.data = data

    async def read_range(self, start: int, end: int) -> bytes:
        return self.data[start:end]


class _GatedProvider:
    """Each segment call blocks until its gate is opened, unless ``auto`` is set."""

    def __init__(self, *, auto: bool = False) -> None:
        self.auto = auto
        self.started: list[int] = []
        self.gates: defaultdict[int, asyncio.Event] = defaultdict(asyncio.Event)
        self.failures: dict[int, list[Exception]] = {}

    async def transcribe_segment(self, audio: bytes, *, filename: str, mime_type: str) -> SegmentTranscription:
        index = _index_of(filename)
        self.started.append(index)
        pending_failures = self.failures.get(index)
        if pending_failures:
            raise pending_failures.pop(0)
        if not self.auto:
            await self.gates[index].wait()
        text = f"segment {index}"
        return SegmentTranscription(text=text, fragments=[TranscriptFragment(text, 0.0, 1.0)], duration_s=60.0)


async def _wait_until(predicate, *, turns: int = 500) -> None:
    for _ in range(turns):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition was not reached")


class TranscriptionSchedulerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.sleeps: list[float] = []
        self.reader = _BytesReader(bytes(range(100)))

    async def _sleep(self, delay: float) -> None:
        self.sleeps.append(delay)

    def _scheduler(self, provider, **kwargs) -> TranscriptionScheduler:
        kwargs.setdefault("admission_delay_s", 0.0)
        kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=3, jitter_ratio=0.0))
        return TranscriptionScheduler(provider, self.reader, sleep=self._sleep, **kwargs)

    async def _collect(self, scheduler: TranscriptionScheduler, segments, max_concurrent: int, out: list[int]) -> None:
        async for result in scheduler.run(segments, max_concurrent):
            out.append(result.segment_index)

    async def test_admits_in_index_order_within_the_concurrency_limit(self) -> None:
        provider = _GatedProvider()
        segments = _segments(5)
        results: list[int] = []
        task = asyncio.create_task(self._collect(self._scheduler(provider), segments, 3, results))

        await _wait_until(lambda: len(provider.started) == 3)
        await asyncio.sleep(0)
        self.assertEqual(provider.started, [0, 1, 2])
        self.assertEqual([s.status for s in segments], ["in-flight"] * 3 + ["pending"] * 2)

        provider.gates[1].set()
        await _wait_until(lambda: len(provider.started) == 4)
        self.assertEqual(provider.started[3], 3)
        self.assertEqual(results, [1])

        for index in (0, 2, 3, 4):
            provider.gates[index].set()
        await task

        self.assertEqual(sorted(results), [0, 1, 2, 3, 4])
        self.assertEqual(provider.started, [0, 1, 2, 3, 4])
        self.assertTrue(all(s.status == "done" for s in segments))

    async def test_results_are_yielded_in_completion_order(self) -> None:
        provider = _GatedProvider()
        results: list[int] = []
        task = asyncio.create_task(self._collect(self._scheduler(provider), _segments(3), 3, results))

        await _wait_until(lambda: len(provider.started) == 3)
        for index in (2, 1, 0):
            provider.gates[index].set()
            await _wait_until(lambda: index in results)
        await task

        self.assertEqual(results, [2, 1, 0])

    async def test_first_exhausted_segment_stops_further_admissions(self) -> None:
        provider = _GatedProvider()
        provider.failures[1] = [InvalidCredentialError("invalid api key")]
        results: list[int] = []
        task = asyncio.create_task(self._collect(self._scheduler(provider), _segments(5), 2, results))

        await _wait_until(lambda: provider.started == [0, 1])
        for _ in range(20):
            await asyncio.sleep(0)
        provider.gates[0].set()

        with self.assertRaises(SegmentFailedError) as ctx:
            await task

        self.assertEqual(ctx.exception.segment_index, 1)
        self.assertEqual(error_category(ctx.exception), "credentials")
        self.assertEqual(provider.started, [0, 1])
        self.assertEqual(results, [])
        self.assertEqual(self.sleeps, [])

    async def test_failure_during_admission_delay_stops_the_next_admission(self) -> None:
        provider = _GatedProvider(auto=True)
        provider.failures[0] = [InvalidCredentialError("invalid api key")]
        segments = _segments(5)
        delays: list[float] = []

        async def yielding_sleep(delay: float) -> None:
            delays.append(delay)
            for _ in range(10):
                await asyncio.sleep(0)

        scheduler = TranscriptionScheduler(
            provider,
            self.reader,
            admission_delay_s=1.0,
            retry_policy=RetryPolicy(max_attempts=3, jitter_ratio=0.0),
            sleep=yielding_sleep,
        )

        with self.assertRaises(SegmentFailedError) as ctx:
            await self._collect(scheduler, segments, 3, [])

        self.assertEqual(ctx.exception.segment_index, 0)
        self.assertEqual(provider.started, [0])
        self.assertEqual(delays, [1.0])
        self.assertEqual([s.status for s in segments], ["failed"] + ["pending"] * 4)

    async def test_retryable_failures_back_off_and_honor_retry_after(self) -> None:
        provider = _GatedProvider(auto=True)
        provider.failures[0] = [TransientServerError("HTTP 503"), RateLimitedError("slow down", retry_after_s=7)]
        scheduler = self._scheduler(provider)

        results = [result async for result in scheduler.run(_segments(1), 1)]

        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].attempts, 3)
        self.assertEqual(results[0].raw_text, "segment 0")
        self.assertEqual(self.sleeps, [1.0, 7.0])

    async def test_exhausted_retries_fail_the_segment(self) -> None:
        provider = _GatedProvider(auto=True)
        provider.failures[0] = [TransientServerError("HTTP 502") for _ in range(3)]

        with self.assertRaises(SegmentFailedError) as ctx:
            async for _ in self._scheduler(provider).run(_segments(2), 1):
                pass

        self.assertIsInstance(ctx.exception.__cause__, ProviderRetryExhaustedError)
        self.assertEqual(error_category(ctx.exception), "service-unavailable")
        self.assertEqual(provider.started, [0, 0, 0])

    async def test_call_timeout_is_a_transient_failure(self) -> None:
        provider = _GatedProvider()
        scheduler = self._scheduler(provider, call_timeout_s=0.01, retry_policy=RetryPolicy(max_attempts=1))

        with self.assertRaises(SegmentFailedError) as ctx:
            async for _ in scheduler.run(_segments(1), 1):
                pass

        cause = ctx.exception.__cause__
        self.assertIsInstance(cause, ProviderRetryExhaustedError)
        self.assertIsInstance(cause.__cause__, TransientServerError)

    async def test_cancellation_stops_the_run_and_cancels_in_flight_calls(self) -> None:
        provider = _GatedProvider()
        cancel_event = asyncio.Event()
        results: list[int] = []
        scheduler = self._scheduler(provider, cancel_event=cancel_event)
        task = asyncio.create_task(self._collect(scheduler, _segments(4), 2, results))

        await _wait_until(lambda: len(provider.started) == 2)
        cancel_event.set()

        with self.assertRaises(JobCancelledError):
            await task
        self.assertEqual(provider.started, [0, 1])
        self.assertEqual(results, [])

    async def test_admission_delay_and_callback(self) -> None:
        provider = _GatedProvider(auto=True)
        admitted: list[int] = []
        scheduler = self._scheduler(provider, admission_delay_s=1.0, on_admitted=lambda s: admitted.append(s.index))

        results = [result.segment_index async for result in scheduler.run(_segments(3), 3)]

        self.assertEqual(sorted(results), [0, 1, 2])
        self.assertEqual(admitted, [0, 1, 2])
        self.assertEqual(self.sleeps, [1.0, 1.0])


def test_call_timeout_scales_with_window_length() -> None:
    short, long = _segments(1)[0], _segments(1)[0]
    long.window_end_s = 3600.0
    assert call_timeout_for(short) == 180.0
    assert call_timeout_for(long) == 1440.0


if __name__ == "__main__":
    unittest.main()
