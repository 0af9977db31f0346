from __future__ import annotations

import logging
from typing import Any, Protocol

import openai

from src.adapters.transcription import TranscriptionProvider
from src.contracts.artifacts import SegmentTranscription, TranscriptFragment
from src.contracts.errors import (
    InvalidCredentialError,
    PayloadTooLargeError,
    ProviderError,
    ProviderResponseError,
    RateLimitedError,
    TransientServerError,
    UnsupportedFormatError,
)
from src.utils.retry import parse_retry_after


logger = logging.getLogger(__name__)

DEFAULT_TRANSCRIPTION_MODEL = "whisper-1"


class _OpenAITranscriptionsAPI(Protocol):
    async def create(self, **kwargs: Any) -> Any: ...


class _OpenAIAudioAPI(Protocol):
    transcriptions: _OpenAITranscriptionsAPI


class AsyncOpenAIClientLike(Protocol):
    audio: _OpenAIAudioAPI


class QuotaExceededError(RateLimitedError):
    """429 caused by exhausted billing quota rather than throttling; retrying cannot help."""

    retryable = False


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    if hasattr(obj, name):
        return getattr(obj, name)
    model_dump = getattr(obj, "model_dump", None)
    if callable(model_dump):
        dumped = model_dump()
        if isinstance(dumped, dict):
            return dumped.get(name, default)
    return default


def _float_or_none(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _coerce_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _normalize_fragments(raw_segments: Any) -> list[TranscriptFragment]:
    if raw_segments in (None, ""):
        return []
    if not isinstance(raw_segments, list):
        raise ProviderResponseError("OpenAI transcription 'segments' must be a list when provided")

    fragments: list[TranscriptFragment] = []
    for raw in raw_segments:
        text = _coerce_text(_field(raw, "text"))
        start_s = _float_or_none(_field(raw, "start"))
        end_s = _float_or_none(_field(raw, "end"))
        if not text:
            continue
        if start_s is None:
            logger.warning("Dropping untimed transcription segment: %.40s", text)
            continue
        duration_s = max(0.0, end_s - start_s) if end_s is not None else 0.0
        fragments.append(TranscriptFragment(text=text, start_s=start_s, duration_s=duration_s))
    return fragments


def _error_message(exc: openai.APIStatusError) -> str:
    body = exc.body
    if isinstance(body, dict):
        nested = body.get("error", body)
        if isinstance(nested, dict) and nested.get("message"):
            return str(nested["message"])
    return str(exc.message or exc)


def _error_code(exc: openai.APIStatusError) -> str | None:
    code = getattr(exc, "code", None)
    if code:
        return str(code)
    body = exc.body
    if isinstance(body, dict):
        nested = body.get("error", body)
        if isinstance(nested, dict) and nested.get("code"):
            return str(nested["code"])
    return None


def map_openai_error(exc: Exception) -> ProviderError:
    """Translate an ``openai`` SDK exception into the provider taxonomy."""
    if isinstance(exc, openai.APITimeoutError):
        return TransientServerError(f"OpenAI request timed out: {exc}")
    if isinstance(exc, openai.APIConnectionError):
        return TransientServerError(f"Unable to reach OpenAI: {exc}", category="network")
    if not isinstance(exc, openai.APIStatusError):
        return ProviderError(f"OpenAI transcription failed: {exc}")

    status = exc.status_code
    message = _error_message(exc)
    if status in (401, 403):
        return InvalidCredentialError(f"Invalid OpenAI API key or insufficient permissions: {message}")
    if status == 429:
        if _error_code(exc) == "insufficient_quota":
            return QuotaExceededError(f"OpenAI quota exceeded: {message}")
        retry_after = parse_retry_after(exc.response.headers.get("retry-after"))
        return RateLimitedError(f"OpenAI rate limit reached: {message}", retry_after_s=retry_after)
    if status == 413:
        return PayloadTooLargeError(f"Audio payload too large for OpenAI: {message}")
    if 400 <= status < 500 and status not in (408, 409):
        return UnsupportedFormatError(f"OpenAI rejected the audio request (HTTP {status}): {message}")
    return TransientServerError(f"OpenAI service error (HTTP {status}): {message}")


class OpenAITranscriptionAdapter(TranscriptionProvider):
    """OpenAI-only provider adapter that normalizes responses into SegmentTranscription."""

    def __init__(
        self,
        client: AsyncOpenAIClientLike,
        *,
        model: str = DEFAULT_TRANSCRIPTION_MODEL,
        language: str | None = None,
        prompt: str | None = None,
        include_segment_timestamps: bool = True,
    ) -> None:
        if not model:
            raise ValueError("model is required")
        self._client = client
        self._model = model
        self._language = language
        self._prompt = prompt
        self._include_segment_timestamps = include_segment_timestamps

    @property
    def model(self) -> str:
        return self._model

    async def transcribe_segment(self, audio: bytes, *, filename: str, mime_type: str) -> SegmentTranscription:
        if not audio:
            raise ProviderResponseError(f"refusing to send empty audio for {filename}")

        request_kwargs: dict[str, Any] = {
            "model": self._model,
            "response_format": "verbose_json",
        }
        if self._language:
            request_kwargs["language"] = self._language
        if self._prompt:
            request_kwargs["prompt"] = self._prompt
        if self._include_segment_timestamps:
            request_kwargs["timestamp_granularities"] = ["segment"]

        try:
            response = await self._client.audio.transcriptions.create(
                file=(filename, audio, mime_type),
                **request_kwargs,
            )
        except openai.OpenAIError as exc:
            raise map_openai_error(exc) from exc

        fragments = _normalize_fragments(_field(response, "segments"))
        text = _coerce_text(_field(response, "text"))
        duration_s = _float_or_none(_field(response, "duration"))
        if not text and fragments:
            text = " ".join(fragment.text for fragment in fragments).strip()
        if not text:
            logger.info("No speech recognised in %s", filename)
        elif not fragments:
            fragments = [TranscriptFragment(text=text, start_s=0.0, duration_s=duration_s or 0.0)]

        return SegmentTranscription(
            text=text,
            fragments=fragments,
            duration_s=duration_s,
            language=_coerce_text(_field(response, "language")) or None,
        )


__all__ = [
    "AsyncOpenAIClientLike",
    "DEFAULT_TRANSCRIPTION_MODEL",
    "OpenAITranscriptionAdapter",
    "QuotaExceededError",
    "map_openai_error",
]
