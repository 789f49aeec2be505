"""
Playback of synthesized agent replies.

Audio arrives base64-encoded. Container formats soundfile understands
(WAV/FLAC/OGG) are decoded as such; anything else is treated as raw 16-bit
mono PCM at the configured rate. Blocks are written from a worker thread so
the event loop keeps running, and stop() interrupts between blocks.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import io
import threading
import time
from typing import Any, Callable, Tuple

import numpy as np
import soundfile as sf

from logging_setup import get_logger, Component
from .errors import DeviceError, ValidationError

logger = get_logger(Component.TTS)


def _default_output_stream(**kwargs: Any):
    import sounddevice as sd

    return sd.OutputStream(**kwargs)


def decode_audio(audio_b64: str, default_rate: int) -> Tuple[np.ndarray, int]:
    """Decode base64 audio into (frames x channels float32, sample_rate)."""
    try:
        raw = base64.b64decode(audio_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("Synthesized audio is not valid base64", {"original_error": str(e)}) from e
    if not raw:
        raise ValidationError("Synthesized audio is empty")

    try:
        data, rate = sf.read(io.BytesIO(raw), dtype="float32", always_2d=True)
    except (RuntimeError, TypeError):
        # Not a container soundfile recognises
        usable = len(raw) - (len(raw) % 2)
        pcm = np.frombuffer(raw[:usable], dtype="<i2").astype(np.float32) / 32768.0
        data, rate = pcm[:, np.newaxis], default_rate
    return data, int(rate)


class AudioPlayer:
    """Plays one reply at a time; stop() interrupts."""

    def __init__(
        self,
        sample_rate: int = 16000,
        *,
        output_factory: Callable[..., Any] = _default_output_stream,
    ):
        self.sample_rate = sample_rate
        self._output_factory = output_factory
        self._interrupt = threading.Event()
        self._playing = False

    @property
    def is_playing(self) -> bool:
        return self._playing

    async def play(self, audio_b64: str) -> bool:
        """Play to completion. Returns False when interrupted by stop()."""
        data, rate = decode_audio(audio_b64, self.sample_rate)
        self._interrupt.clear()
        self._playing = True
        start_ts = time.perf_counter()
        try:
            completed = await asyncio.to_thread(self._play_blocking, data, rate)
        except Exception as e:
            logger.error("Playback failed", error=str(e), error_type=type(e).__name__)
            raise DeviceError("Failed to play synthesized audio", {"original_error": str(e)}) from e
        finally:
            self._playing = False
        logger.debug(
            "Playback finished",
            completed=completed,
            duration_s=round(data.shape[0] / rate, 3) if rate else 0,
            latency_ms=int((time.perf_counter() - start_ts) * 1000),
        )
        return completed

    def stop(self) -> None:
        self._interrupt.set()

    def _play_blocking(self, data: np.ndarray, rate: int) -> bool:
        block = max(1024, rate // 10)
        with self._output_factory(samplerate=rate, channels=data.shape[1], dtype="float32") as stream:
            cursor = 0
            while cursor < data.shape[0]:
                if self._interrupt.is_set():
                    stream.abort()
                    return False
                end = min(cursor + block, data.shape[0])
                stream.write(data[cursor:end])
                cursor = end
        return True
