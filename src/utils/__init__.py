"""Utility package for workflow helpers."""

from __future__ import annotations

from .hashing import sha256_file, sha256_json, sha256_text
from .retry import RetryPolicy
from .time import format_duration, format_timestamp, now_unix_s, today_iso

__all__ = [
    "sha256_file",
    "sha256_text",
    "sha256_json",
    "now_unix_s",
    "today_iso",
    "format_duration",
    "format_timestamp",
    "RetryPolicy",
]
