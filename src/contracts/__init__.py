from .artifacts import (
    AudioSource,
    RetryState,
    SegmentDescriptor,
    SegmentResult,
    SegmentTranscription,
    SpeakerTimeline,
    TranscriptDocument,
    TranscriptFragment,
    TranscriptLine,
    UploadSession,
)
from .errors import (
    ComponentError,
    ContractError,
    ErrorCategory,
    FfmpegError,
    InputValidationError,
    InvalidCredentialError,
    JobCancelledError,
    PayloadTooLargeError,
    PipelineError,
    PlanningError,
    ProviderError,
    ProviderResponseError,
    ProviderRetryExhaustedError,
    RateLimitedError,
    SegmentFailedError,
    StitchError,
    TranscriptionError,
    TransientServerError,
    TransportError,
    TransportNetworkError,
    TransportRejectedError,
    TransportRetryExhaustedError,
    UnsupportedFormatError,
    UploadSessionExpiredError,
    error_category,
    is_retryable,
)
from .events import (
    CancelledPayload,
    CompletePayload,
    ErrorPayload,
    ProgressEvent,
    ProgressPayload,
    SegmentCompletePayload,
)
from .manifest import ArtifactRefs, Manifest, StepRecord, should_skip_step

__all__ = [
    "AudioSource",
    "UploadSession",
    "RetryState",
    "SegmentDescriptor",
    "SegmentResult",
    "SegmentTranscription",
    "TranscriptFragment",
    "TranscriptLine",
    "SpeakerTimeline",
    "TranscriptDocument",
    "ProgressEvent",
    "ProgressPayload",
    "SegmentCompletePayload",
    "ErrorPayload",
    "CompletePayload",
    "CancelledPayload",
    "ArtifactRefs",
    "Manifest",
    "StepRecord",
    "should_skip_step",
    "ErrorCategory",
    "PipelineError",
    "ContractError",
    "ComponentError",
    "InputValidationError",
    "PlanningError",
    "StitchError",
    "FfmpegError",
    "TransportError",
    "TransportNetworkError",
    "TransportRejectedError",
    "TransportRetryExhaustedError",
    "UploadSessionExpiredError",
    "TranscriptionError",
    "ProviderError",
    "InvalidCredentialError",
    "RateLimitedError",
    "PayloadTooLargeError",
    "UnsupportedFormatError",
    "TransientServerError",
    "ProviderResponseError",
    "ProviderRetryExhaustedError",
    "SegmentFailedError",
    "JobCancelledError",
    "error_category",
    "is_retryable",
]
