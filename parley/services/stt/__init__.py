"""Speech-to-Text backends.

- DeepgramService: Deepgram live (streaming) or pre-recorded (batch)
- HTTPTranscriptionService: self-hosted ASR server over HTTP (batch)
"""

from parley.services.stt.deepgram import DeepgramService
from parley.services.stt.exceptions import (
    STTConnectionError,
    STTResponseError,
    STTServiceError,
)
from parley.services.stt.http import HTTPTranscriptionService
from parley.services.stt.protocol import (
    STTService,
    TranscriptChunk,
    TranscriptionMode,
    TranscriptMetadata,
)

__all__ = [
    # Services
    "DeepgramService",
    "HTTPTranscriptionService",
    # Protocol
    "STTService",
    "TranscriptionMode",
    # Data types
    "TranscriptChunk",
    "TranscriptMetadata",
    # Exceptions
    "STTServiceError",
    "STTConnectionError",
    "STTResponseError",
]
