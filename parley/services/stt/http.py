"""HTTP transcription backend for self-hosted ASR servers (e.g. a Whisper shim).

Contract: POST a WAV body to the endpoint, receive
``{"text": str, "confidence": float}``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

import httpx

from parley.audio import pcm_to_wav
from parley.config import Settings, get_settings
from parley.logging_config import get_logger
from parley.services.stt.exceptions import (
    STTConnectionError,
    STTResponseError,
    STTServiceError,
)
from parley.services.stt.protocol import TranscriptChunk, TranscriptionMode

logger: Any = get_logger(__name__)


class HTTPTranscriptionService:
    """One-shot transcription over HTTP."""

    mode = TranscriptionMode.BATCH

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        endpoint: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._endpoint = endpoint or self._settings.asr_endpoint
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Shared connection pool, created on first use."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                # The adapter enforces the real deadline; this only bounds sockets
                timeout=httpx.Timeout(self._settings.asr_timeout_seconds * 2),
                transport=self._transport,
            )
        return self._client

    async def transcribe_stream(
        self,
        audio: bytes,
        *,
        sample_rate: int = 16000,
        encoding: str = "linear16",
        language: str = "en",
    ) -> AsyncGenerator[TranscriptChunk, None]:
        try:
            response = await self.client.post(
                self._endpoint,
                content=pcm_to_wav(audio, sample_rate),
                headers={"Content-Type": "audio/wav"},
                params={"language": language},
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"ASR endpoint returned {e.response.status_code}")
            raise STTServiceError(f"ASR endpoint error: {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error(f"ASR endpoint unreachable: {e}")
            raise STTConnectionError(f"Failed to reach ASR endpoint: {e}") from e
        except ValueError as e:
            raise STTResponseError(f"Invalid JSON from ASR endpoint: {e}") from e

        if not isinstance(payload, dict) or not isinstance(payload.get("text"), str):
            raise STTResponseError("ASR response missing 'text'")

        yield TranscriptChunk(
            text=payload["text"].strip(),
            is_final=True,
            confidence=float(payload.get("confidence", 0.0)),
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def health_check(self) -> bool:
        return bool(self._endpoint)
