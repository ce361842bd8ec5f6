"""TTS (Text-to-Speech) service protocol and data types."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol


@dataclass(frozen=True, slots=True)
class SpeechChunk:
    """A chunk of synthesized audio as the backend produced it.

    Raw 16-bit mono PCM at the backend's native rate; the TTS adapter
    resamples and re-chunks it for the client.
    """

    audio_bytes: bytes
    sample_rate: int
    is_final: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class SynthesisMetadata:
    """Metadata collected during/after synthesis."""

    model: str = ""
    voice: str = ""
    input_chars: int = 0
    output_bytes: int = 0
    first_chunk_ms: float | None = None  # Latency to first audio
    total_synthesis_ms: float | None = None
    source_sample_rate: int = 0


class TTSService(Protocol):
    """Protocol for TTS (Text-to-Speech) backends."""

    async def synthesize_stream(
        self,
        text: str,
    ) -> tuple[AsyncGenerator[SpeechChunk, None], SynthesisMetadata]:
        """Synthesize text to streaming audio.

        Returns:
            Tuple of (audio chunk generator, metadata object).
            Metadata is populated as the generator is consumed.
        """
        ...

    async def close(self) -> None:
        """Close any open connections and clean up resources."""
        ...

    async def health_check(self) -> bool:
        """Check if the service is operational."""
        ...
