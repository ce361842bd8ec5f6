"""ElevenLabs TTS service implementation for high-naturalness speech."""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncGenerator, Iterator
from typing import Any

from elevenlabs import ElevenLabs

from parley.config import Settings, get_settings
from parley.logging_config import get_logger
from parley.services.tts.exceptions import (
    TTSConnectionError,
    TTSServiceError,
    TTSSynthesisError,
)
from parley.services.tts.protocol import SpeechChunk, SynthesisMetadata

logger: Any = get_logger(__name__)

ELEVENLABS_SOURCE_SAMPLE_RATE = 22050
ELEVENLABS_OUTPUT_FORMAT = f"pcm_{ELEVENLABS_SOURCE_SAMPLE_RATE}"  # Raw 16-bit PCM, no decoding


class ElevenLabsTTSService:
    """ElevenLabs TTS service with streaming chunk output.

    The SDK client is synchronous; each chunk of its response iterator is
    pulled in a worker thread so slow responses never block the event loop
    or other sessions.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        voice_id: str | None = None,
        model_id: str | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._voice_id = voice_id or self._settings.elevenlabs_voice_id
        self._model_id = model_id or self._settings.elevenlabs_model_id
        self._client: ElevenLabs | None = None

    @property
    def client(self) -> ElevenLabs:
        if self._client is None:
            if not self._settings.elevenlabs_api_key:
                raise TTSConnectionError("ElevenLabs API key is not configured")
            self._client = ElevenLabs(
                api_key=self._settings.elevenlabs_api_key.get_secret_value()
            )
        return self._client

    async def synthesize_stream(
        self,
        text: str,
    ) -> tuple[AsyncGenerator[SpeechChunk, None], SynthesisMetadata]:
        """Synthesize text and return streaming PCM chunks."""
        metadata = SynthesisMetadata(
            model=self._model_id,
            voice=self._voice_id,
            input_chars=len(text),
            source_sample_rate=ELEVENLABS_SOURCE_SAMPLE_RATE,
        )
        return self._synthesize_stream_impl(text, metadata), metadata

    async def _synthesize_stream_impl(
        self,
        text: str,
        metadata: SynthesisMetadata,
    ) -> AsyncGenerator[SpeechChunk, None]:
        start_time = time.perf_counter()

        try:
            audio_iter = await asyncio.to_thread(self._open_stream, text)
            while True:
                data = await asyncio.to_thread(next, audio_iter, None)
                if data is None:
                    break
                if not data:
                    continue

                if metadata.first_chunk_ms is None:
                    metadata.first_chunk_ms = (time.perf_counter() - start_time) * 1000
                metadata.output_bytes += len(data)

                yield SpeechChunk(audio_bytes=data, sample_rate=ELEVENLABS_SOURCE_SAMPLE_RATE)

        except TTSServiceError:
            raise
        except Exception as e:
            logger.error(f"ElevenLabs synthesis error: {e}")
            raise TTSConnectionError(f"ElevenLabs connection failed: {e}") from e

        if metadata.output_bytes == 0:
            raise TTSSynthesisError("No audio received from ElevenLabs")
        metadata.total_synthesis_ms = (time.perf_counter() - start_time) * 1000

    def _open_stream(self, text: str) -> Iterator[bytes]:
        return iter(
            self.client.text_to_speech.convert(
                text=text,
                voice_id=self._voice_id,
                model_id=self._model_id,
                output_format=ELEVENLABS_OUTPUT_FORMAT,
            )
        )

    async def close(self) -> None:
        self._client = None

    async def health_check(self) -> bool:
        return bool(self._settings.elevenlabs_api_key)
