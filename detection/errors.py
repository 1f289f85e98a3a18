"""Error taxonomy for question detection."""


class DetectionError(Exception):
    """Base class for detection errors."""


class BackendError(DetectionError):
    """A strategy backend call failed; the strategy contributes nothing."""


class BackendUnavailable(BackendError):
    """Network or service failure while calling a backend."""


class BackendTimeout(BackendError):
    """Backend did not answer within the caller-imposed timeout."""


class MalformedResponse(BackendError):
    """Backend answered with a structure that could not be parsed."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class BufferOverflow(DetectionError):
    """Utterance hit the duration/length ceiling and was force-finalized."""


class ExtractionFailure(DetectionError):
    """Ground truth extraction failed; fatal to the evaluation run only."""
