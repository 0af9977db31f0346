from __future__ import annotations

from pathlib import Path

import pytest

from src.components.validation import accept_source, detect_mime_type, sniff_mime_type
from src.contracts.errors import InputValidationError
from src.utils.hashing import sha256_file


@pytest.mark.parametrize(
    ("header", "expected"),
    [
        (b"ID3\x04\x00" + bytes(20), "audio/mpeg"),
        (b"\xff\xfb\x90\x00" + bytes(20), "audio/mpeg"),
        (b"RIFF\x24\x00\x00\x00WAVE", "audio/wav"),
        (b"\x00\x00\x00\x20ftypM4A ", "audio/mp4"),
        (b"OggS\x00\x02", "audio/ogg"),
        (b"fLaC\x00\x00", "audio/flac"),
        (b"\x1a\x45\xdf\xa3\x01", "audio/webm"),
        (b"\xff\xf1\x50\x80", "audio/aac"),
        (b"%PDF-1.7", None),
    ],
)
def test_sniff_mime_type(header: bytes, expected: str | None) -> None:
    assert sniff_mime_type(header) == expected


def test_content_wins_over_extension(tmp_path: Path) -> None:
    path = tmp_path / "actually-wav.mp3"
    path.write_bytes(b"RIFF\x24\x00\x00\x00WAVE" + bytes(100))
    assert detect_mime_type(path) == "audio/wav"


def test_extension_is_used_when_content_is_unknown(tmp_path: Path) -> None:
    path = tmp_path / "raw.M4A"
    path.write_bytes(bytes(100))
    assert detect_mime_type(path) == "audio/mp4"


def test_accept_source_builds_audio_source(tmp_path: Path) -> None:
    path = tmp_path / "interview.mp3"
    path.write_bytes(b"ID3" + bytes(2048))

    source = accept_source(path, duration_s=95.0)

    digest = sha256_file(path)
    assert source.sha256 == digest
    assert source.id == digest[:16]
    assert source.filename == "interview.mp3"
    assert source.byte_size == 2051
    assert source.mime_hint == "audio/mpeg"
    assert source.total_duration_estimate_s == 95.0


def test_missing_and_empty_inputs_are_invalid(tmp_path: Path) -> None:
    with pytest.raises(InputValidationError) as missing:
        accept_source(tmp_path / "missing.mp3")
    assert missing.value.category == "invalid-input"

    with pytest.raises(InputValidationError):
        accept_source(tmp_path)

    empty = tmp_path / "empty.mp3"
    empty.write_bytes(b"")
    with pytest.raises(InputValidationError, match="empty"):
        accept_source(empty)


def test_limits_and_unsupported_formats_are_format_errors(tmp_path: Path) -> None:
    path = tmp_path / "talk.mp3"
    path.write_bytes(b"ID3" + bytes(4096))

    with pytest.raises(InputValidationError, match="limit") as too_big:
        accept_source(path, max_file_bytes=1024)
    assert too_big.value.category == "format"

    with pytest.raises(InputValidationError, match="minute limit") as too_long:
        accept_source(path, duration_s=181 * 60.0)
    assert too_long.value.category == "format"

    document = tmp_path / "notes.txt"
    document.write_bytes(b"meeting notes")
    with pytest.raises(InputValidationError, match="unsupported audio format") as unsupported:
        accept_source(document)
    assert unsupported.value.category == "format"
