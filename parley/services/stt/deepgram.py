"""Deepgram STT service: live WebSocket streaming or pre-recorded batch."""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncGenerator
from typing import TYPE_CHECKING, Any

from parley.audio import pcm_to_wav
from parley.config import Settings, get_settings
from parley.logging_config import get_logger
from parley.services.stt.exceptions import STTConnectionError, STTServiceError
from parley.services.stt.protocol import (
    TranscriptChunk,
    TranscriptionMode,
    TranscriptMetadata,
)

if TYPE_CHECKING:
    from deepgram import DeepgramClient

logger: Any = get_logger(__name__)

# 20ms frames at 16kHz linear16, the cadence Deepgram expects from live clients
LIVE_FRAME_BYTES = 640


class DeepgramService:
    """Deepgram STT backend.

    In streaming mode the utterance is replayed over a live connection and
    interim results are surfaced as they arrive; in batch mode it is sent
    as a single pre-recorded request.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        mode: TranscriptionMode = TranscriptionMode.STREAMING,
        model: str | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.mode = mode
        self._model = model or self._settings.deepgram_model
        self._client: DeepgramClient | None = None

    @property
    def client(self) -> DeepgramClient:
        """Lazy initialization of Deepgram client."""
        if self._client is None:
            if not self._settings.deepgram_api_key:
                raise STTConnectionError("Deepgram API key is not configured")
            from deepgram import DeepgramClient

            self._client = DeepgramClient(
                api_key=self._settings.deepgram_api_key.get_secret_value(),
            )
        return self._client

    def transcribe_stream(
        self,
        audio: bytes,
        *,
        sample_rate: int = 16000,
        encoding: str = "linear16",
        language: str = "en",
    ) -> AsyncGenerator[TranscriptChunk, None]:
        if self.mode == TranscriptionMode.BATCH:
            return self._transcribe_batch(audio, sample_rate=sample_rate, language=language)
        return self._transcribe_live(
            audio, sample_rate=sample_rate, encoding=encoding, language=language
        )

    async def _transcribe_live(
        self,
        audio: bytes,
        *,
        sample_rate: int,
        encoding: str,
        language: str,
    ) -> AsyncGenerator[TranscriptChunk, None]:
        """Replay an utterance over a Deepgram live connection."""
        from deepgram import LiveOptions, LiveTranscriptionEvents

        loop = asyncio.get_running_loop()
        transcript_queue: asyncio.Queue[TranscriptChunk | Exception | None] = asyncio.Queue()
        metadata = TranscriptMetadata(model=self._model)
        start_time = time.perf_counter()

        def on_message(self_live: Any, result: Any, **kwargs: Any) -> None:
            """Handle incoming transcription results (SDK thread)."""
            alternatives = result.channel.alternatives
            if not alternatives or not alternatives[0].transcript:
                return

            alternative = alternatives[0]
            if metadata.first_word_ms is None:
                metadata.first_word_ms = (time.perf_counter() - start_time) * 1000

            words = getattr(alternative, "words", None) or []
            chunk = TranscriptChunk(
                text=alternative.transcript,
                is_final=bool(result.is_final),
                confidence=getattr(alternative, "confidence", 0.0) or 0.0,
                start_time=words[0].start if words else 0.0,
                end_time=words[-1].end if words else 0.0,
            )
            if chunk.is_final:
                metadata.total_segments += 1
            loop.call_soon_threadsafe(transcript_queue.put_nowait, chunk)

        def on_error(self_live: Any, error: Any, **kwargs: Any) -> None:
            logger.error(f"Deepgram WebSocket error: {error}")
            loop.call_soon_threadsafe(
                transcript_queue.put_nowait, STTServiceError(f"Deepgram error: {error}")
            )

        def on_close(self_live: Any, close: Any, **kwargs: Any) -> None:
            logger.debug("Deepgram WebSocket closed")
            loop.call_soon_threadsafe(transcript_queue.put_nowait, None)

        options = LiveOptions(
            model=self._model,
            language=language,
            smart_format=True,
            punctuate=True,
            interim_results=True,
            encoding=encoding,
            sample_rate=sample_rate,
            channels=1,
        )

        live = self.client.listen.live.v("1")
        live.on(LiveTranscriptionEvents.Transcript, on_message)
        live.on(LiveTranscriptionEvents.Error, on_error)
        live.on(LiveTranscriptionEvents.Close, on_close)

        if not await asyncio.to_thread(live.start, options):
            raise STTConnectionError("Failed to connect to Deepgram")

        try:
            for offset in range(0, len(audio), LIVE_FRAME_BYTES):
                await asyncio.to_thread(live.send, audio[offset : offset + LIVE_FRAME_BYTES])
            metadata.total_audio_seconds = len(audio) / (sample_rate * 2)

            # Flush remaining results; Deepgram closes the socket when done
            await asyncio.to_thread(live.finish)

            while True:
                item = await transcript_queue.get()
                if item is None:
                    break
                if isinstance(item, Exception):
                    raise item
                yield item

        finally:
            try:  # noqa: SIM105
                await asyncio.to_thread(live.finish)
            except Exception as e:
                logger.debug(f"Deepgram finish on cleanup failed: {e}")

    async def _transcribe_batch(
        self,
        audio: bytes,
        *,
        sample_rate: int,
        language: str,
    ) -> AsyncGenerator[TranscriptChunk, None]:
        """Transcribe an utterance with a single pre-recorded request."""
        from deepgram import PrerecordedOptions

        options = PrerecordedOptions(
            model=self._model,
            language=language,
            smart_format=True,
            punctuate=True,
        )

        try:
            response = await asyncio.to_thread(
                self.client.listen.prerecorded.v("1").transcribe_file,
                {"buffer": pcm_to_wav(audio, sample_rate), "mimetype": "audio/wav"},
                options,
            )
        except STTServiceError:
            raise
        except Exception as e:
            logger.error(f"Deepgram batch transcription error: {e}")
            raise STTConnectionError(f"Deepgram request failed: {e}") from e

        text = ""
        confidence = 0.0
        channels = response.results.channels if response.results else []
        if channels and channels[0].alternatives:
            text = channels[0].alternatives[0].transcript
            confidence = channels[0].alternatives[0].confidence

        yield TranscriptChunk(text=text, is_final=True, confidence=confidence)

    async def close(self) -> None:
        """Close the Deepgram client."""
        self._client = None

    async def health_check(self) -> bool:
        """Check if Deepgram is configured."""
        try:
            _ = self.client
            return True
        except Exception as e:
            logger.error(f"Deepgram health check failed: {e}")
            return False
