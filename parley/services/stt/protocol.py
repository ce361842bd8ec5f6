"""STT (Speech-to-Text) service protocol and data types."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol


class TranscriptionMode(str, Enum):
    """How a backend returns results."""

    STREAMING = "streaming"  # Interim results, then finals
    BATCH = "batch"  # One final result per request


@dataclass(frozen=True, slots=True)
class TranscriptChunk:
    """A chunk of transcribed speech from a backend.

    Streaming backends return interim results that may change, followed by
    a final result for each segment. An utterance may span several final
    segments.
    """

    text: str
    is_final: bool
    confidence: float = 0.0
    start_time: float = 0.0  # seconds from utterance start
    end_time: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class TranscriptMetadata:
    """Metadata collected during a transcription request."""

    model: str = ""
    total_audio_seconds: float = 0.0
    total_segments: int = 0
    avg_confidence: float = 0.0
    first_word_ms: float | None = None


class STTService(Protocol):
    """Protocol for STT (Speech-to-Text) backends."""

    mode: TranscriptionMode

    def transcribe_stream(
        self,
        audio: bytes,
        *,
        sample_rate: int = 16000,
        encoding: str = "linear16",
        language: str = "en",
    ) -> AsyncGenerator[TranscriptChunk, None]:
        """Transcribe one utterance of raw audio.

        Args:
            audio: Complete utterance as raw PCM bytes
            sample_rate: Audio sample rate in Hz
            encoding: Audio encoding (linear16)
            language: Primary language code

        Yields:
            TranscriptChunk objects for each interim/final result
        """
        ...

    async def close(self) -> None:
        """Close any open connections and clean up resources."""
        ...

    async def health_check(self) -> bool:
        """Check if the service is operational."""
        ...
