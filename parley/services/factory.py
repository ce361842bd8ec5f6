"""Backend construction from settings.

Backends are process-wide: each owns its connection pool and is shared by
every session.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from parley.config import Settings, get_settings
from parley.logging_config import get_logger
from parley.services.llm import GroqService, HTTPChatService, LLMService
from parley.services.stt import (
    DeepgramService,
    HTTPTranscriptionService,
    STTService,
    TranscriptionMode,
)
from parley.services.tts import ElevenLabsTTSService, HTTPSpeechService, TTSService

logger: Any = get_logger(__name__)


@dataclass
class Backends:
    """The three pluggable backends."""

    stt: STTService
    llm: LLMService
    tts: TTSService

    async def health(self) -> dict[str, bool]:
        return {
            "asr": await self.stt.health_check(),
            "llm": await self.llm.health_check(),
            "tts": await self.tts.health_check(),
        }

    async def close(self) -> None:
        await self.stt.close()
        await self.llm.close()
        await self.tts.close()


def build_stt(settings: Settings) -> STTService:
    if settings.asr_provider == "deepgram":
        return DeepgramService(settings, mode=TranscriptionMode.STREAMING)
    return HTTPTranscriptionService(settings)


def build_llm(settings: Settings) -> LLMService:
    if settings.llm_provider == "groq":
        return GroqService(settings)
    return HTTPChatService(settings)


def build_tts(settings: Settings) -> TTSService:
    if settings.tts_provider == "elevenlabs":
        return ElevenLabsTTSService(settings)
    return HTTPSpeechService(settings)


def build_backends(settings: Settings | None = None) -> Backends:
    """Instantiate the configured backends. No network calls happen here."""
    settings = settings or get_settings()
    backends = Backends(
        stt=build_stt(settings),
        llm=build_llm(settings),
        tts=build_tts(settings),
    )
    logger.info(
        f"Backends: asr={settings.asr_provider} llm={settings.llm_provider} "
        f"tts={settings.tts_provider}"
    )
    return backends
