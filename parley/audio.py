"""PCM helpers shared by the adapters."""

from __future__ import annotations

import io
import wave

import numpy as np

SAMPLE_WIDTH = 2  # 16-bit PCM


def compute_audio_energy(audio_bytes: bytes) -> float:
    """RMS energy of 16-bit PCM (0.0 to 32767.0)."""
    usable = len(audio_bytes) - len(audio_bytes) % SAMPLE_WIDTH
    if usable <= 0:
        return 0.0
    samples = np.frombuffer(audio_bytes[:usable], dtype=np.int16).astype(np.float64)
    return float(np.sqrt(np.mean(samples * samples)))


def is_speech(audio_bytes: bytes, threshold: float = 500.0) -> bool:
    """Simple energy-based voice activity detection."""
    return compute_audio_energy(audio_bytes) > threshold


def pcm_to_wav(audio: bytes, sample_rate: int, channels: int = 1) -> bytes:
    """Wrap raw 16-bit PCM in a WAV container for file-based backends."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(channels)
        wav.setsampwidth(SAMPLE_WIDTH)
        wav.setframerate(sample_rate)
        wav.writeframes(audio)
    return buffer.getvalue()
