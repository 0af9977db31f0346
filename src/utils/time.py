from __future__ import annotations

import time
from datetime import date


def now_unix_s() -> float:
    return time.time()


def today_iso() -> str:
    return date.today().isoformat()


def _split_hms(seconds: float) -> tuple[int, int, int]:
    total = max(0, int(seconds))
    return total // 3600, (total % 3600) // 60, total % 60


def format_timestamp(seconds: float) -> str:
    """MM:SS below one hour, HH:MM:SS above."""
    hours, minutes, secs = _split_hms(seconds)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def format_duration(seconds: float) -> str:
    hours, minutes, secs = _split_hms(seconds)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


__all__ = ["format_duration", "format_timestamp", "now_unix_s", "today_iso"]
