"""HTTP synthesis backend for self-hosted TTS servers (Piper, Coqui shims).

Contract: POST ``{"text": ...}`` to the endpoint and receive a streamed
raw 16-bit mono PCM body. The sample rate comes from an ``X-Sample-Rate``
response header when present, otherwise from settings.
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from typing import Any

import httpx

from parley.config import Settings, get_settings
from parley.logging_config import get_logger
from parley.services.tts.exceptions import (
    TTSConnectionError,
    TTSServiceError,
    TTSSynthesisError,
)
from parley.services.tts.protocol import SpeechChunk, SynthesisMetadata

logger: Any = get_logger(__name__)


class HTTPSpeechService:
    """Streaming synthesis over HTTP."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        endpoint: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._endpoint = endpoint or self._settings.tts_endpoint
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Shared connection pool, created on first use."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.tts_timeout_seconds * 2),
                transport=self._transport,
            )
        return self._client

    async def synthesize_stream(
        self,
        text: str,
    ) -> tuple[AsyncGenerator[SpeechChunk, None], SynthesisMetadata]:
        metadata = SynthesisMetadata(
            model="http",
            input_chars=len(text),
            source_sample_rate=self._settings.tts_source_sample_rate,
        )
        return self._stream(text, metadata), metadata

    async def _stream(
        self,
        text: str,
        metadata: SynthesisMetadata,
    ) -> AsyncGenerator[SpeechChunk, None]:
        start_time = time.perf_counter()

        try:
            async with self.client.stream("POST", self._endpoint, json={"text": text}) as response:
                response.raise_for_status()
                rate_header = response.headers.get("x-sample-rate")
                if rate_header and rate_header.isdigit():
                    metadata.source_sample_rate = int(rate_header)

                async for data in response.aiter_bytes():
                    if not data:
                        continue
                    if metadata.first_chunk_ms is None:
                        metadata.first_chunk_ms = (time.perf_counter() - start_time) * 1000
                    metadata.output_bytes += len(data)
                    yield SpeechChunk(audio_bytes=data, sample_rate=metadata.source_sample_rate)

        except httpx.HTTPStatusError as e:
            logger.error(f"TTS endpoint returned {e.response.status_code}")
            raise TTSServiceError(f"TTS endpoint error: {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error(f"TTS endpoint unreachable: {e}")
            raise TTSConnectionError(f"Failed to reach TTS endpoint: {e}") from e

        if metadata.output_bytes == 0:
            raise TTSSynthesisError("TTS endpoint returned no audio")
        metadata.total_synthesis_ms = (time.perf_counter() - start_time) * 1000

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def health_check(self) -> bool:
        return bool(self._endpoint)
