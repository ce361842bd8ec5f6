"""TTS adapter: reply text in, numbered bounded audio chunks out."""

from __future__ import annotations

import asyncio
import uuid
import wave
from collections.abc import AsyncGenerator, Iterator
from contextlib import aclosing
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from parley.audio import SAMPLE_WIDTH
from parley.config import Settings
from parley.core.exceptions import BackendTimeoutError, SynthesisFailedError
from parley.core.timeouts import TIMEOUT_RETRIES, next_before
from parley.logging_config import get_logger, truncate_for_log
from parley.observability.metrics import record_backend_timeout
from parley.services.tts.exceptions import TTSServiceError
from parley.services.tts.protocol import TTSService
from parley.services.tts.resampler import AudioResampler

logger: Any = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ReplyChunk:
    """One outbound frame of reply audio.

    ``seq`` starts at 0 for every reply and has no gaps; the last chunk
    of a reply has ``final`` set.
    """

    reply_id: str
    seq: int
    payload: bytes
    final: bool = False


def new_reply_id() -> str:
    return uuid.uuid4().hex[:12]


def load_fallback_audio(path: str | Path) -> bytes:
    """Read the pre-recorded fallback notice (WAV or raw 16-bit PCM)."""
    path = Path(path)
    if path.suffix.lower() == ".wav":
        with wave.open(str(path), "rb") as wav:
            if wav.getsampwidth() != SAMPLE_WIDTH or wav.getnchannels() != 1:
                raise ValueError(f"Fallback audio must be 16-bit mono: {path}")
            return wav.readframes(wav.getnframes())
    return path.read_bytes()


class TTSAdapter:
    """Streams synthesized replies as bounded, numbered chunks.

    Each ``synthesize`` call is independent and restartable: numbering
    starts again at 0. Payloads never exceed ``max_chunk_bytes`` and always
    hold whole samples. Before the first chunk leaves, a timed-out backend
    is retried once; after that any failure is a SynthesisFailedError.
    """

    def __init__(
        self,
        backend: TTSService,
        *,
        output_sample_rate: int = 16000,
        max_chunk_bytes: int = 4096,
        timeout: float = 5.0,
        retries: int = TIMEOUT_RETRIES,
        fallback_audio: bytes | None = None,
    ) -> None:
        if max_chunk_bytes < SAMPLE_WIDTH:
            raise ValueError(f"max_chunk_bytes must be at least {SAMPLE_WIDTH}")
        self._backend = backend
        self._output_rate = output_sample_rate
        self._chunk_bytes = max_chunk_bytes - max_chunk_bytes % SAMPLE_WIDTH
        self._timeout = timeout
        self._retries = retries
        self._fallback = fallback_audio

    @classmethod
    def from_settings(cls, backend: TTSService, settings: Settings) -> TTSAdapter:
        fallback = None
        if settings.fallback_audio_path:
            fallback = load_fallback_audio(settings.fallback_audio_path)
            logger.info(
                f"Loaded fallback audio ({len(fallback)} bytes) "
                f"from {settings.fallback_audio_path}"
            )
        return cls(
            backend,
            output_sample_rate=settings.output_sample_rate,
            max_chunk_bytes=settings.tts_max_chunk_bytes,
            timeout=settings.tts_timeout_seconds,
            fallback_audio=fallback,
        )

    @property
    def has_fallback(self) -> bool:
        return bool(self._fallback)

    @property
    def max_chunk_bytes(self) -> int:
        return self._chunk_bytes

    async def synthesize(
        self,
        text: str,
        *,
        reply_id: str | None = None,
        session_id: str | None = None,
    ) -> AsyncGenerator[ReplyChunk, None]:
        """Synthesize ``text``.

        Raises:
            SynthesisFailedError: On backend error, a repeated timeout, or any
                failure once audio has been emitted.
        """
        reply_id = reply_id or new_reply_id()

        if not text.strip():
            yield ReplyChunk(reply_id=reply_id, seq=0, payload=b"", final=True)
            return

        for attempt in range(self._retries + 1):
            seq = 0
            pending: bytes | None = None
            try:
                # One piece is held back so the last one can be marked final
                async with aclosing(self._pieces(text, session_id)) as pieces:
                    async for piece in pieces:
                        if pending is not None:
                            yield ReplyChunk(reply_id=reply_id, seq=seq, payload=pending)
                            seq += 1
                        pending = piece
                yield ReplyChunk(reply_id=reply_id, seq=seq, payload=pending or b"", final=True)
                logger.debug(
                    f"Synthesized reply {reply_id} in {seq + 1} chunks: {truncate_for_log(text)}"
                )
                return

            except BackendTimeoutError as e:
                record_backend_timeout("tts")
                if seq == 0 and attempt < self._retries:
                    logger.warning(
                        f"TTS timed out before first chunk of {reply_id}, "
                        f"retrying ({attempt + 1}/{self._retries})"
                    )
                    continue
                raise SynthesisFailedError(
                    f"Synthesis timed out after {seq} chunks", session_id=session_id
                ) from e

            except TTSServiceError as e:
                logger.error(f"TTS backend error for reply {reply_id}: {e}")
                raise SynthesisFailedError(
                    f"Synthesis backend failed: {e}", session_id=session_id
                ) from e

    async def _pieces(self, text: str, session_id: str | None) -> AsyncGenerator[bytes, None]:
        """Backend audio at the output rate, cut into sample-aligned pieces.

        Opening the stream and receiving its first chunk share one deadline;
        every later chunk gets a fresh one.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout
        try:
            stream, metadata = await asyncio.wait_for(
                self._backend.synthesize_stream(text), timeout=self._timeout
            )
        except TimeoutError as e:
            raise BackendTimeoutError(
                f"tts backend did not open a stream within {self._timeout}s",
                stage="tts",
                timeout=self._timeout,
                session_id=session_id,
            ) from e

        resampler: AudioResampler | None = None
        buffer = bytearray()

        try:
            while True:
                try:
                    chunk = await next_before(stream, deadline, stage="tts", session_id=session_id)
                except StopAsyncIteration:
                    break
                deadline = loop.time() + self._timeout

                audio = chunk.audio_bytes
                if chunk.sample_rate != self._output_rate:
                    if resampler is None:
                        resampler = AudioResampler(chunk.sample_rate, self._output_rate)
                    audio = resampler.process(audio)
                buffer.extend(audio)

                while len(buffer) >= self._chunk_bytes:
                    yield bytes(buffer[: self._chunk_bytes])
                    del buffer[: self._chunk_bytes]
        finally:
            await stream.aclose()

        if resampler is not None:
            buffer.extend(resampler.process(b"", last=True))

        while len(buffer) >= self._chunk_bytes:
            yield bytes(buffer[: self._chunk_bytes])
            del buffer[: self._chunk_bytes]

        usable = len(buffer) - len(buffer) % SAMPLE_WIDTH
        if usable:
            yield bytes(buffer[:usable])

        if metadata.first_chunk_ms is not None:
            logger.debug(f"TTS backend first chunk after {metadata.first_chunk_ms:.0f}ms")

    def fallback_chunks(self, reply_id: str | None = None) -> Iterator[ReplyChunk]:
        """The pre-recorded fallback notice, chunked like any reply."""
        if not self._fallback:
            return
        reply_id = reply_id or new_reply_id()
        audio = self._fallback[: len(self._fallback) - len(self._fallback) % SAMPLE_WIDTH]
        pieces = [
            audio[offset : offset + self._chunk_bytes]
            for offset in range(0, len(audio), self._chunk_bytes)
        ] or [b""]
        for seq, piece in enumerate(pieces):
            yield ReplyChunk(
                reply_id=reply_id, seq=seq, payload=piece, final=seq == len(pieces) - 1
            )

    async def close(self) -> None:
        await self._backend.close()
