"""Custom exceptions for TTS services."""


class TTSServiceError(Exception):
    """Base exception for TTS service errors."""

    pass


class TTSSynthesisError(TTSServiceError):
    """Raised when the backend accepted the request but produced no usable audio."""

    pass


class TTSConnectionError(TTSServiceError):
    """Raised when unable to reach or authenticate with the TTS backend."""

    pass


class TTSResamplingError(TTSServiceError):
    """Raised when audio resampling fails."""

    pass
