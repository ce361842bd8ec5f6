"""Audio resampling utilities using soxr."""

from __future__ import annotations

import asyncio
from typing import Any

import numpy as np
import soxr

from parley.logging_config import get_logger
from parley.services.tts.exceptions import TTSResamplingError

logger: Any = get_logger(__name__)


class AudioResampler:
    """High-quality audio resampler using soxr.

    Converts synthesis backend output (22.05kHz, 24kHz, 44.1kHz) to the
    client's playback rate. ``resample`` handles whole buffers; ``process``
    handles a stream chunk by chunk, keeping filter state between calls so
    chunk boundaries do not click.
    """

    def __init__(
        self,
        source_rate: int,
        target_rate: int,
        quality: str = "HQ",  # VHQ, HQ, MQ, LQ, QQ
    ) -> None:
        self._source_rate = source_rate
        self._target_rate = target_rate
        self._quality = quality
        self._stream: soxr.ResampleStream | None = None
        self._carry = b""  # Odd trailing byte from the previous chunk

    @property
    def source_rate(self) -> int:
        return self._source_rate

    @property
    def target_rate(self) -> int:
        return self._target_rate

    @property
    def ratio(self) -> float:
        """Resampling ratio (target/source)."""
        return self._target_rate / self._source_rate

    @property
    def needs_resampling(self) -> bool:
        """Check if resampling is actually needed."""
        return self._source_rate != self._target_rate

    async def resample(self, audio_data: bytes) -> bytes:
        """Resample a complete buffer of 16-bit mono PCM."""
        if not self.needs_resampling or not audio_data:
            return audio_data

        try:
            # Run resampling in thread pool (CPU-bound)
            return await asyncio.to_thread(self._resample_sync, audio_data)
        except Exception as e:
            logger.error(f"Resampling failed: {e}")
            raise TTSResamplingError(f"Failed to resample audio: {e}") from e

    def _resample_sync(self, audio_data: bytes) -> bytes:
        usable = len(audio_data) - len(audio_data) % 2
        audio_array = np.frombuffer(audio_data[:usable], dtype=np.int16)
        resampled = soxr.resample(
            audio_array,
            self._source_rate,
            self._target_rate,
            quality=self._quality,
        )
        return resampled.astype(np.int16).tobytes()

    def process(self, audio_data: bytes, *, last: bool = False) -> bytes:
        """Resample the next chunk of a stream.

        Pass ``last=True`` once at the end to flush the filter tail.
        """
        if not self.needs_resampling:
            return audio_data

        data = self._carry + audio_data
        usable = len(data) - len(data) % 2
        self._carry = data[usable:]

        if self._stream is None:
            self._stream = soxr.ResampleStream(
                self._source_rate,
                self._target_rate,
                1,
                dtype="int16",
                quality=self._quality,
            )

        try:
            samples = np.frombuffer(data[:usable], dtype=np.int16)
            out = self._stream.resample_chunk(samples, last=last)
        except Exception as e:
            logger.error(f"Stream resampling failed: {e}")
            raise TTSResamplingError(f"Failed to resample audio: {e}") from e

        if last:
            self._stream = None
            self._carry = b""
        return np.asarray(out, dtype=np.int16).tobytes()
