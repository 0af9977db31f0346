from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff with proportional jitter for per-call retries."""

    max_attempts: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    jitter_ratio: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_s < 0 or self.max_delay_s < 0:
            raise ValueError("retry delays must be >= 0")
        if self.jitter_ratio < 0:
            raise ValueError("jitter_ratio must be >= 0")

    def delay_for(self, attempt: int, *, retry_after_s: float | None = None) -> float:
        """Delay before attempt ``attempt + 1``; ``attempt`` is 1-based."""
        if retry_after_s is not None and retry_after_s > 0:
            return min(float(retry_after_s), self.max_delay_s)
        exponential = min(self.base_delay_s * (2 ** max(0, attempt - 1)), self.max_delay_s)
        return exponential + exponential * self.jitter_ratio * random.random()


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


__all__ = ["RetryPolicy", "parse_retry_after"]
