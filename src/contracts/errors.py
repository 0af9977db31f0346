from __future__ import annotations

from typing import Literal


ErrorCategory = Literal[
    "credentials",
    "quota",
    "network",
    "format",
    "service-unavailable",
    "invalid-input",
    "internal",
]


class PipelineError(Exception):
    """Raised by the pipeline entrypoint for user-facing failures."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = "internal",
        step: str | None = None,
        segment_index: int | None = None,
    ) -> None:
        super().__init__(message)
        self.category: ErrorCategory = category
        self.step = step
        self.segment_index = segment_index


class ContractError(PipelineError):
    """Raised when manifest/contracts are invalid."""


class ComponentError(Exception):
    """Base exception for component-level failures."""

    category: ErrorCategory = "internal"
    retryable: bool = False


class InputValidationError(ComponentError):
    """Raised when an input path or config is invalid."""

    category: ErrorCategory = "invalid-input"

    def __init__(self, message: str, *, category: ErrorCategory | None = None) -> None:
        super().__init__(message)
        if category is not None:
            self.category = category


class PlanningError(ComponentError):
    """Raised when a segment plan cannot be produced or is inconsistent."""


class StitchError(ComponentError):
    """Raised in strict mode when segment results are malformed or out of order."""


class FfmpegError(ComponentError):
    """Raised when ffmpeg/ffprobe operations fail."""


class TransportError(ComponentError):
    """Base class for staging-store transport failures."""

    category: ErrorCategory = "network"


class TransportNetworkError(TransportError):
    """Destination unreachable or transiently failing; the current chunk may be retried."""

    retryable = True


class TransportRejectedError(TransportError):
    """Destination refused the data (quota, permissions); never retried."""

    category: ErrorCategory = "quota"


class UploadSessionExpiredError(TransportError):
    """The staging object targeted by an upload session no longer exists."""


class TransportRetryExhaustedError(TransportError):
    """Raised when the retry delays for a chunk are used up."""


class TranscriptionError(ComponentError):
    """Raised when transcription provider calls fail."""


class ProviderError(TranscriptionError):
    """Base class for provider/API failures."""

    category: ErrorCategory = "service-unavailable"


class InvalidCredentialError(ProviderError):
    """The provider rejected the API credential."""

    category: ErrorCategory = "credentials"


class RateLimitedError(ProviderError):
    """The provider throttled the call or the account quota is exhausted."""

    category: ErrorCategory = "quota"
    retryable = True

    def __init__(self, message: str, *, retry_after_s: float | None = None) -> None:
        super().__init__(message)
        self.retry_after_s = retry_after_s


class PayloadTooLargeError(ProviderError):
    """The request exceeded the provider's size ceiling; indicates a planning bug."""

    category: ErrorCategory = "format"


class UnsupportedFormatError(ProviderError):
    """The provider could not read the audio container/codec."""

    category: ErrorCategory = "format"


class TransientServerError(ProviderError):
    """5xx responses, timeouts and dropped connections."""

    retryable = True

    def __init__(self, message: str, *, category: ErrorCategory = "service-unavailable") -> None:
        super().__init__(message)
        self.category = category


class ProviderResponseError(ProviderError):
    """Raised when a provider returns an unexpected response shape."""


class ProviderRetryExhaustedError(ProviderError):
    """Raised when scheduler-managed provider retries are exhausted."""


class SegmentFailedError(TranscriptionError):
    """A segment could not be transcribed; the job fails fast."""

    def __init__(self, message: str, *, segment_index: int) -> None:
        super().__init__(message)
        self.segment_index = segment_index


class JobCancelledError(Exception):
    """The job-scoped cancellation signal was observed. Not a failure."""


def error_category(exc: BaseException) -> ErrorCategory:
    """Resolve the most specific category along the ``__cause__`` chain."""
    seen: set[int] = set()
    current: BaseException | None = exc
    resolved: ErrorCategory = "internal"
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        category = getattr(current, "category", None)
        if isinstance(category, str) and category != "internal":
            resolved = category  # type: ignore[assignment]
        current = current.__cause__
    return resolved


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))
