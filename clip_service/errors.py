from __future__ import annotations


class ClipServiceError(Exception):
    """Base class for every failure raised by the clip pipeline."""


class ValidationError(ClipServiceError):
    """Uploaded media or its per-item metadata was rejected at intake."""


class QueueUnavailableError(ClipServiceError):
    """The job broker could not accept a new job."""


class RenderError(ClipServiceError):
    pass


class EncoderError(RenderError):
    """The encoder exited nonzero; ``message`` is its diagnostic output untouched."""

    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.returncode = returncode


class RenderTimeoutError(RenderError, TimeoutError):
    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"FFmpeg process timed out after {timeout_seconds:g} seconds")
        self.timeout_seconds = timeout_seconds


class OutputMissingError(RenderError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Output file was not created: {path}")
        self.path = path


class WebhookDeliveryError(ClipServiceError):
    pass


class CleanupError(ClipServiceError):
    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"failed to delete {path}: {reason}")
        self.path = path


class JobNotFoundError(ClipServiceError):
    """The job id is unknown, expired, or its result was already retrieved."""
