"""Text-to-Speech services.

- ElevenLabsTTSService: hosted TTS, raw PCM output
- HTTPSpeechService: self-hosted TTS server streaming raw PCM
"""

from parley.services.tts.elevenlabs import ElevenLabsTTSService
from parley.services.tts.exceptions import (
    TTSConnectionError,
    TTSResamplingError,
    TTSServiceError,
    TTSSynthesisError,
)
from parley.services.tts.http import HTTPSpeechService
from parley.services.tts.protocol import SpeechChunk, SynthesisMetadata, TTSService
from parley.services.tts.resampler import AudioResampler

__all__ = [
    # Services
    "ElevenLabsTTSService",
    "HTTPSpeechService",
    # Protocol
    "TTSService",
    # Data types
    "SpeechChunk",
    "SynthesisMetadata",
    # Utilities
    "AudioResampler",
    # Exceptions
    "TTSServiceError",
    "TTSSynthesisError",
    "TTSConnectionError",
    "TTSResamplingError",
]
