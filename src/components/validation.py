from __future__ import annotations

import logging
from pathlib import Path

from src.contracts.artifacts import AudioSource
from src.contracts.errors import InputValidationError
from src.utils.hashing import sha256_file


logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_BYTES = 500 * 1024 * 1024
DEFAULT_MAX_DURATION_S = 180 * 60.0
_HEADER_BYTES = 64

# (signature, offset, mime); first match wins.
_AUDIO_SIGNATURES: tuple[tuple[bytes, int, str], ...] = (
    (b"ID3", 0, "audio/mpeg"),
    (b"\xff\xfb", 0, "audio/mpeg"),
    (b"\xff\xf3", 0, "audio/mpeg"),
    (b"\xff\xf2", 0, "audio/mpeg"),
    (b"RIFF", 0, "audio/wav"),
    (b"\xff\xf1", 0, "audio/aac"),
    (b"\xff\xf9", 0, "audio/aac"),
    (b"ftyp", 4, "audio/mp4"),
    (b"OggS", 0, "audio/ogg"),
    (b"fLaC", 0, "audio/flac"),
    (b"\x1a\x45\xdf\xa3", 0, "audio/webm"),
)

_EXTENSION_TO_MIME: dict[str, str] = {
    ".mp3": "audio/mpeg",
    ".mpga": "audio/mpeg",
    ".wav": "audio/wav",
    ".aac": "audio/aac",
    ".m4a": "audio/mp4",
    ".mp4": "audio/mp4",
    ".ogg": "audio/ogg",
    ".oga": "audio/ogg",
    ".webm": "audio/webm",
    ".flac": "audio/flac",
}

SUPPORTED_MIME_TYPES: frozenset[str] = frozenset(_EXTENSION_TO_MIME.values())


def sniff_mime_type(header: bytes) -> str | None:
    for signature, offset, mime_type in _AUDIO_SIGNATURES:
        if header[offset:offset + len(signature)] == signature:
            return mime_type
    return None


def detect_mime_type(path: Path) -> str | None:
    """Content sniffing first, file extension second."""
    path = Path(path)
    with path.open("rb") as fh:
        header = fh.read(_HEADER_BYTES)
    sniffed = sniff_mime_type(header)
    by_extension = _EXTENSION_TO_MIME.get(path.suffix.lower())
    if sniffed is not None:
        if by_extension is not None and by_extension != sniffed:
            logger.warning("Extension %s does not match detected type %s for %s", path.suffix, sniffed, path.name)
        return sniffed
    return by_extension


def accept_source(
    path: Path,
    *,
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
    duration_s: float | None = None,
    max_duration_s: float | None = DEFAULT_MAX_DURATION_S,
) -> AudioSource:
    path = Path(path)
    if not path.exists():
        raise InputValidationError(f"input not found: {path}")
    if not path.is_file():
        raise InputValidationError(f"input is not a file: {path}")

    byte_size = path.stat().st_size
    if byte_size == 0:
        raise InputValidationError(f"input is empty: {path}")
    if byte_size > max_file_bytes:
        raise InputValidationError(
            f"input is {byte_size / 1024 / 1024:.0f}MB, above the {max_file_bytes / 1024 / 1024:.0f}MB limit",
            category="format",
        )
    if duration_s is not None and max_duration_s is not None and duration_s > max_duration_s:
        raise InputValidationError(
            f"recording is {duration_s / 60:.0f} minutes, above the {max_duration_s / 60:.0f} minute limit",
            category="format",
        )

    mime_type = detect_mime_type(path)
    if mime_type is None or mime_type not in SUPPORTED_MIME_TYPES:
        raise InputValidationError(
            f"unsupported audio format: {path.suffix or 'unknown'}; use MP3, WAV, M4A, AAC, OGG, WebM or FLAC",
            category="format",
        )

    digest = sha256_file(path)
    logger.info("Accepted %s (%s, %s bytes)", path.name, mime_type, byte_size)
    return AudioSource(
        id=digest[:16],
        path=path,
        filename=path.name,
        byte_size=byte_size,
        mime_hint=mime_type,
        sha256=digest,
        total_duration_estimate_s=duration_s,
    )


__all__ = [
    "DEFAULT_MAX_DURATION_S",
    "DEFAULT_MAX_FILE_BYTES",
    "SUPPORTED_MIME_TYPES",
    "accept_source",
    "detect_mime_type",
    "sniff_mime_type",
]
