class VideoGenError(RuntimeError):
    pass


class InsufficientCreditsError(VideoGenError):
    def __init__(self, required: int, available: int) -> None:
        super().__init__(f"insufficient_credits: required={required} available={available}")
        self.required = required
        self.available = available


class ReservationNotFoundError(VideoGenError):
    pass


class JobNotFoundError(VideoGenError):
    pass


class JobStateError(VideoGenError):
    pass


class RetryLimitExceeded(JobStateError):
    pass


class UnknownProviderError(VideoGenError):
    pass


class Unauthorized(VideoGenError):
    pass


class PurchaseRejectedError(VideoGenError):
    pass


class ProviderError(VideoGenError):
    pass


class SubmissionError(ProviderError):
    pass


class ProviderTransientError(ProviderError):
    pass


class ProviderTerminalFailure(ProviderError):
    pass


class TimeoutExceeded(ProviderError):
    pass


class ArtifactPersistError(VideoGenError):
    pass


def failure_code(exc: BaseException) -> str:
    if isinstance(exc, SubmissionError):
        return "SUBMISSION_ERROR"
    if isinstance(exc, ProviderTerminalFailure):
        return "PROVIDER_FAILED"
    if isinstance(exc, TimeoutExceeded):
        return "TIMEOUT"
    if isinstance(exc, ArtifactPersistError):
        return "ARTIFACT_PERSIST_ERROR"
    if isinstance(exc, ProviderError):
        return "PROVIDER_ERROR"
    return "UNKNOWN_ERROR"
