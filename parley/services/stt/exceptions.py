"""Custom exceptions for STT services."""


class STTServiceError(Exception):
    """Base exception for STT service errors."""

    pass


class STTConnectionError(STTServiceError):
    """Raised when unable to reach the transcription backend."""

    pass


class STTResponseError(STTServiceError):
    """Raised when the backend returns an unusable response."""

    pass
