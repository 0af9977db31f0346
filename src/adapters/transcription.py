from __future__ import annotations

from typing import Protocol

from src.contracts.artifacts import SegmentTranscription


class TranscriptionProvider(Protocol):
    """Provider adapter boundary for one speech-to-text request."""

    async def transcribe_segment(self, audio: bytes, *, filename: str, mime_type: str) -> SegmentTranscription:
        """Transcribe one request's audio; fragment times are relative to its first byte.

        Implementations raise the provider taxonomy from ``src.contracts.errors``
        (credential, rate-limit, payload-too-large, unsupported-format, transient).
        """


__all__ = ["TranscriptionProvider"]
