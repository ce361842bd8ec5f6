"""ASR adapter: one backend-agnostic transcription call per utterance."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any

from parley.config import Settings
from parley.core.exceptions import BackendTimeoutError, TranscriptionFailedError
from parley.core.ingest import AudioWindow
from parley.core.timeouts import TIMEOUT_RETRIES, next_before
from parley.logging_config import get_logger, truncate_for_log
from parley.observability.metrics import record_backend_timeout
from parley.services.stt.exceptions import STTServiceError
from parley.services.stt.protocol import STTService, TranscriptionMode

logger: Any = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class Transcript:
    """Recognized text for one utterance, partial or final."""

    session_id: str
    utterance_id: int
    text: str
    confidence: float = 0.0
    is_final: bool = False


class ASRAdapter:
    """Normalizes streaming and batch backends behind one call.

    ``transcribe`` yields zero or more partial transcripts followed by
    exactly one final transcript. A timed-out attempt is retried once with
    the same audio; after that, or on any backend error, the call raises
    TranscriptionFailedError.
    """

    def __init__(
        self,
        backend: STTService,
        *,
        timeout: float = 5.0,
        sample_rate: int = 16000,
        encoding: str = "linear16",
        language: str = "en",
        retries: int = TIMEOUT_RETRIES,
    ) -> None:
        self._backend = backend
        self._timeout = timeout
        self._sample_rate = sample_rate
        self._encoding = encoding
        self._language = language
        self._retries = retries

    @classmethod
    def from_settings(cls, backend: STTService, settings: Settings) -> ASRAdapter:
        return cls(
            backend,
            timeout=settings.asr_timeout_seconds,
            sample_rate=settings.input_sample_rate,
            encoding=settings.input_encoding,
            language=settings.asr_language,
        )

    @property
    def mode(self) -> TranscriptionMode:
        return self._backend.mode

    async def transcribe(
        self,
        session_id: str,
        window: AudioWindow,
    ) -> AsyncGenerator[Transcript, None]:
        """Transcribe one utterance window.

        Raises:
            TranscriptionFailedError: After a repeated timeout or a backend error.
        """
        for attempt in range(self._retries + 1):
            try:
                async with aclosing(self._attempt(session_id, window)) as transcripts:
                    async for transcript in transcripts:
                        yield transcript
                return

            except BackendTimeoutError as e:
                record_backend_timeout("asr")
                if attempt < self._retries:
                    logger.warning(
                        f"ASR timed out for {session_id} utterance {window.utterance_id}, "
                        f"retrying ({attempt + 1}/{self._retries})"
                    )
                    continue
                raise TranscriptionFailedError(
                    f"Transcription timed out after {attempt + 1} attempts",
                    session_id=session_id,
                ) from e

            except STTServiceError as e:
                logger.error(f"ASR backend error for {session_id}: {e}")
                raise TranscriptionFailedError(
                    f"Transcription backend failed: {e}", session_id=session_id
                ) from e

    async def _attempt(
        self,
        session_id: str,
        window: AudioWindow,
    ) -> AsyncGenerator[Transcript, None]:
        deadline = asyncio.get_running_loop().time() + self._timeout
        stream = self._backend.transcribe_stream(
            window.audio,
            sample_rate=self._sample_rate,
            encoding=self._encoding,
            language=self._language,
        )

        finals: list[str] = []
        confidences: list[float] = []
        trailing = ""

        try:
            while True:
                try:
                    chunk = await next_before(
                        stream, deadline, stage="asr", session_id=session_id
                    )
                except StopAsyncIteration:
                    break

                text = chunk.text.strip()
                if chunk.is_final:
                    if text:
                        finals.append(text)
                        confidences.append(chunk.confidence)
                    trailing = ""
                    continue

                trailing = text
                yield Transcript(
                    session_id=session_id,
                    utterance_id=window.utterance_id,
                    text=" ".join([*finals, trailing]).strip(),
                    confidence=chunk.confidence,
                    is_final=False,
                )
        finally:
            await stream.aclose()

        # Backend ended on an interim result; keep it rather than lose speech
        if trailing:
            finals.append(trailing)

        final = Transcript(
            session_id=session_id,
            utterance_id=window.utterance_id,
            text=" ".join(finals),
            confidence=sum(confidences) / len(confidences) if confidences else 0.0,
            is_final=True,
        )
        logger.debug(f"Final transcript for {session_id}: {truncate_for_log(final.text)}")
        yield final

    async def close(self) -> None:
        await self._backend.close()
