"""
Microphone capture session.

One CaptureSession owns the input stream for the lifetime of a conversation.
It is passed by reference to the voice activity monitor (which reads the
trailing level window) and the streaming transcriber (which receives fixed
duration AudioChunks). Audio frames arrive on the PortAudio thread and are
handed to the event loop with call_soon_threadsafe; everything downstream runs
on the loop.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

import numpy as np

from logging_setup import get_logger, Component
from .config import CaptureConfig
from .errors import DeviceError, classify_error

logger = get_logger(Component.CAPTURE)

ChunkReader = Callable[["AudioChunk"], None]


@dataclass(frozen=True)
class AudioChunk:
    """Timestamped block of 16-bit mono PCM."""

    data: bytes
    timestamp: float
    frames: int
    sample_rate: int

    @property
    def duration_s(self) -> float:
        return self.frames / self.sample_rate if self.sample_rate else 0.0

    def __len__(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class InputDevice:
    device_id: str
    label: str
    channels: int
    default_sample_rate: float


def _default_stream_factory(**kwargs: Any):
    import sounddevice as sd

    return sd.InputStream(**kwargs)


def _default_device_query() -> List[dict]:
    import sounddevice as sd

    return [dict(d, index=i) for i, d in enumerate(sd.query_devices())]


def list_input_devices(query: Optional[Callable[[], List[dict]]] = None) -> List[InputDevice]:
    """Enumerate capture-capable devices."""
    query = query or _default_device_query
    try:
        devices = query()
    except Exception as e:
        raise DeviceError("Failed to enumerate audio devices", {"original_error": str(e)}) from e

    inputs = []
    for d in devices:
        if d.get("max_input_channels", 0) < 1:
            continue
        index = d.get("index", len(inputs))
        inputs.append(InputDevice(
            device_id=str(index),
            label=d.get("name") or f"Microphone {index}",
            channels=int(d.get("max_input_channels", 1)),
            default_sample_rate=float(d.get("default_samplerate", 0.0)),
        ))
    return inputs


class CaptureSession:
    """Owns the microphone stream; fans chunks out to registered readers."""

    def __init__(
        self,
        config: CaptureConfig,
        *,
        stream_factory: Callable[..., Any] = _default_stream_factory,
        device_query: Callable[[], List[dict]] = _default_device_query,
        now: Callable[[], float] = time.time,
    ):
        self.config = config
        self.device_id: Optional[str] = config.device
        self._stream_factory = stream_factory
        self._device_query = device_query
        self._now = now

        self._stream: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._readers: List[ChunkReader] = []

        self._chunk_frames = max(1, int(config.sample_rate * config.chunk_s))
        self._pending: List[np.ndarray] = []
        self._pending_frames = 0
        self._level_window = np.zeros(0, dtype=np.float32)

        self.consecutive_empty_chunks = 0
        self.chunks_emitted = 0

    # --- lifecycle ---

    @property
    def is_active(self) -> bool:
        return self._stream is not None

    @property
    def constraints(self) -> dict:
        """Requested stream constraints (informational for hosts that honor them)."""
        return {
            "device": self.device_id,
            "channels": self.config.channels,
            "sample_rate": self.config.sample_rate,
            "echo_cancellation": self.config.echo_cancellation,
            "noise_suppression": self.config.noise_suppression,
            "auto_gain_control": self.config.auto_gain_control,
        }

    async def acquire(self) -> None:
        """Open and start the input stream. Idempotent."""
        if self._stream is not None:
            return
        self._loop = asyncio.get_running_loop()
        device = int(self.device_id) if self.device_id and self.device_id.isdigit() else self.device_id
        logger.info("Acquiring capture stream", **self.constraints)
        try:
            stream = self._stream_factory(
                samplerate=self.config.sample_rate,
                channels=self.config.channels,
                dtype="float32",
                blocksize=0,
                device=device,
                callback=self._callback,
            )
            stream.start()
        except Exception as e:
            err = classify_error(e)
            if not isinstance(err, DeviceError):
                err = DeviceError("Failed to initialize audio device", {"original_error": str(e)})
            logger.error("Capture stream unavailable", error=str(e), error_type=type(e).__name__)
            if err is e:
                raise
            raise err from e
        self._stream = stream
        self._reset_buffers()

    def release(self) -> None:
        """Stop and close the input stream. Safe to call repeatedly."""
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.warning("Error closing capture stream", error=str(e), error_type=type(e).__name__)
        self._reset_buffers()
        logger.info("Capture stream released")

    async def change_device(self, device_id: Optional[str]) -> None:
        """Switch input device; re-acquires when the stream was live."""
        was_active = self.is_active
        self.release()
        self.device_id = device_id
        if was_active:
            await self.acquire()

    def list_devices(self) -> List[InputDevice]:
        return list_input_devices(self._device_query)

    # --- readers ---

    def add_reader(self, reader: ChunkReader) -> Callable[[], None]:
        self._readers.append(reader)

        def _remove() -> None:
            if reader in self._readers:
                self._readers.remove(reader)

        return _remove

    def level_window(self) -> np.ndarray:
        """Most recent samples (float32, -1..1) for level analysis."""
        return self._level_window

    # --- frame intake ---

    def _callback(self, indata, frames, time_info, status) -> None:
        # PortAudio thread: copy and hop onto the loop
        if status:
            logger.debug("Capture stream status", status=str(status))
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self.feed_block, np.array(indata, dtype=np.float32, copy=True))

    def feed_block(self, block: np.ndarray) -> None:
        """Accept one block of float32 samples (frames x channels or mono)."""
        samples = np.asarray(block, dtype=np.float32)
        if samples.ndim > 1:
            samples = samples[:, 0]
        if samples.size == 0:
            self.consecutive_empty_chunks += 1
            logger.debug("Empty capture block", consecutive_empty_chunks=self.consecutive_empty_chunks)
            return
        self.consecutive_empty_chunks = 0

        window = self.config.analysis_window
        self._level_window = np.concatenate((self._level_window, samples))[-window:]

        self._pending.append(samples)
        self._pending_frames += samples.size
        while self._pending_frames >= self._chunk_frames:
            joined = np.concatenate(self._pending)
            head, tail = joined[:self._chunk_frames], joined[self._chunk_frames:]
            self._pending = [tail] if tail.size else []
            self._pending_frames = tail.size
            self._emit(head)

    def flush(self) -> None:
        """Emit whatever partial chunk is buffered (before a final transcript)."""
        if not self._pending_frames:
            return
        joined = np.concatenate(self._pending)
        self._pending = []
        self._pending_frames = 0
        self._emit(joined)

    def _emit(self, samples: np.ndarray) -> None:
        pcm = (np.clip(samples, -1.0, 1.0) * 32767).astype("<i2").tobytes()
        chunk = AudioChunk(
            data=pcm,
            timestamp=self._now(),
            frames=samples.size,
            sample_rate=self.config.sample_rate,
        )
        self.chunks_emitted += 1
        for reader in list(self._readers):
            try:
                reader(chunk)
            except Exception as e:
                logger.error("Chunk reader failed", error=str(e), error_type=type(e).__name__)

    def _reset_buffers(self) -> None:
        self._pending = []
        self._pending_frames = 0
        self._level_window = np.zeros(0, dtype=np.float32)
        self.consecutive_empty_chunks = 0
