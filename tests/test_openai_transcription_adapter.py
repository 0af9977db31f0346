from __future__ import annotations

import unittest

import httpx
import openai

from src.adapters.openai_transcription import OpenAITranscriptionAdapter, QuotaExceededError, map_openai_error
from src.contracts.errors import (
    InvalidCredentialError,
    PayloadTooLargeError,
    RateLimitedError,
    TransientServerError,
    UnsupportedFormatError,
    error_category,
    is_retryable,
)


_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/audio/transcriptions")


def _status_error(cls: type[openai.APIStatusError], status: int, *, body: object = None, headers: dict[str, str] | None = None):
    response = httpx.Response(status, request=_REQUEST, headers=headers or {})
    return cls(f"HTTP {status}", response=response, body=body)


class _Obj:
    def __init__(self, **kwargs) -> None:
        for key, value in kwargs.items():
            setattr(self, key, value)


class _FakeTranscriptionsAPI:
    def __init__(self, responses: list[object]) -> None:
        self._responses = list(responses)
        self.calls: list[dict[str, object]] = []

    async def create(self, **kwargs):
        filename, audio, mime_type = kwargs["file"]
        self.calls.append(
            {
                "filename": filename,
                "bytes": len(audio),
                "mime_type": mime_type,
                "model": kwargs.get("model"),
                "response_format": kwargs.get("response_format"),
                "timestamp_granularities": kwargs.get("timestamp_granularities"),
                "language": kwargs.get("language"),
            }
        )
        next_item = self._responses.pop(0)
        if isinstance(next_item, Exception):
            raise next_item
        return next_item


class _FakeAudioAPI:
    def __init__(self, transcriptions: _FakeTranscriptionsAPI) -> None:
        self.transcriptions = transcriptions


class _FakeClient:
    def __init__(self, responses: list[object]) -> None:
        self.audio = _FakeAudioAPI(_FakeTranscriptionsAPI(responses))


class OpenAITranscriptionAdapterTests(unittest.IsolatedAsyncioTestCase):
    async def test_normalizes_verbose_json_segments(self) -> None:
        client = _FakeClient(
            [
                _Obj(
                    text="hello world",
                    language="en",
                    duration=12.5,
                    segments=[
                        {"text": " hello ", "start": 0.0, "end": 0.6},
                        _Obj(text="world", start=0.7, end=1.2),
                        {"text": "", "start": 1.3, "end": 1.4},
                        {"text": "untimed", "start": None, "end": None},
                    ],
                )
            ]
        )
        adapter = OpenAITranscriptionAdapter(client, model="whisper-1", language="en")

        result = await adapter.transcribe_segment(b"\xff\xfb" * 10, filename="talk_segment_0001.mp3", mime_type="audio/mpeg")

        self.assertEqual(result.text, "hello world")
        self.assertEqual(result.language, "en")
        self.assertEqual(result.duration_s, 12.5)
        self.assertEqual([f.text for f in result.fragments], ["hello", "world"])
        self.assertAlmostEqual(result.fragments[1].duration_s, 0.5)
        call = client.audio.transcriptions.calls[0]
        self.assertEqual(call["filename"], "talk_segment_0001.mp3")
        self.assertEqual(call["bytes"], 20)
        self.assertEqual(call["response_format"], "verbose_json")
        self.assertEqual(call["timestamp_granularities"], ["segment"])
        self.assertEqual(call["language"], "en")

    async def test_response_without_segments_becomes_single_fragment(self) -> None:
        client = _FakeClient([{"text": "just text", "duration": 4.0}])
        adapter = OpenAITranscriptionAdapter(client)

        result = await adapter.transcribe_segment(b"abc", filename="a.mp3", mime_type="audio/mpeg")

        self.assertEqual(len(result.fragments), 1)
        self.assertEqual(result.fragments[0].start_s, 0.0)
        self.assertEqual(result.fragments[0].duration_s, 4.0)

    async def test_silent_audio_gives_an_empty_transcription(self) -> None:
        adapter = OpenAITranscriptionAdapter(_FakeClient([{"text": "", "segments": [], "duration": 900.0}]))

        result = await adapter.transcribe_segment(b"abc", filename="a.mp3", mime_type="audio/mpeg")

        self.assertEqual(result.text, "")
        self.assertEqual(result.fragments, [])
        self.assertEqual(result.duration_s, 900.0)

    async def test_sdk_errors_are_mapped_with_cause(self) -> None:
        adapter = OpenAITranscriptionAdapter(_FakeClient([_status_error(openai.AuthenticationError, 401)]))
        with self.assertRaises(InvalidCredentialError) as ctx:
            await adapter.transcribe_segment(b"abc", filename="a.mp3", mime_type="audio/mpeg")
        self.assertIsInstance(ctx.exception.__cause__, openai.AuthenticationError)
        self.assertFalse(is_retryable(ctx.exception))
        self.assertEqual(error_category(ctx.exception), "credentials")


class MapOpenAIErrorTests(unittest.TestCase):
    def test_status_codes_map_onto_taxonomy(self) -> None:
        self.assertIsInstance(map_openai_error(_status_error(openai.PermissionDeniedError, 403)), InvalidCredentialError)
        self.assertIsInstance(map_openai_error(_status_error(openai.APIStatusError, 413)), PayloadTooLargeError)
        self.assertIsInstance(map_openai_error(_status_error(openai.BadRequestError, 400)), UnsupportedFormatError)
        self.assertIsInstance(map_openai_error(_status_error(openai.UnprocessableEntityError, 422)), UnsupportedFormatError)
        self.assertIsInstance(map_openai_error(_status_error(openai.InternalServerError, 503)), TransientServerError)
        self.assertIsInstance(map_openai_error(_status_error(openai.APIStatusError, 408)), TransientServerError)

    def test_rate_limit_honours_retry_after(self) -> None:
        mapped = map_openai_error(_status_error(openai.RateLimitError, 429, headers={"retry-after": "7"}))
        self.assertIsInstance(mapped, RateLimitedError)
        self.assertEqual(mapped.retry_after_s, 7.0)
        self.assertTrue(is_retryable(mapped))
        self.assertEqual(mapped.category, "quota")

    def test_insufficient_quota_is_not_retryable(self) -> None:
        body = {"error": {"code": "insufficient_quota", "message": "You exceeded your current quota"}}
        mapped = map_openai_error(_status_error(openai.RateLimitError, 429, body=body))
        self.assertIsInstance(mapped, QuotaExceededError)
        self.assertFalse(is_retryable(mapped))
        self.assertIn("exceeded your current quota", str(mapped))

    def test_connection_failures_are_transient(self) -> None:
        timeout = map_openai_error(openai.APITimeoutError(request=_REQUEST))
        connection = map_openai_error(openai.APIConnectionError(request=_REQUEST))
        self.assertIsInstance(timeout, TransientServerError)
        self.assertEqual(connection.category, "network")
        self.assertTrue(is_retryable(connection))


if __name__ == "__main__":
    unittest.main()
