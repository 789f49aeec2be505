"""
Sliding-window streaming transcription.

Captured chunks accumulate for the length of one utterance. A time-based tick
(one per chunk duration) sends the trailing window to the remote transcriber
for preview text; on stop, the whole utterance is transcribed once more for
the authoritative final transcript.
"""

from __future__ import annotations

import asyncio
import base64
import io
import math
import re
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Protocol, Sequence

import numpy as np
import soundfile as sf

from logging_setup import get_logger, Component
from observability.events import Component as EventComponent, EventEmitter, Severity, pii_fields
from .bus import EventBus, TranscriptPreview
from .capture import AudioChunk
from .config import TranscriberConfig
from .errors import NetworkError, VoiceLoopError, classify_error

logger = get_logger(Component.STT)

_WHITESPACE = re.compile(r"\s+")


class TranscriptionClient(Protocol):
    def transcribe(self, audio_b64: str) -> Awaitable[Dict[str, Any]]: ...


class ChunkSource(Protocol):
    def add_reader(self, reader: Callable[[AudioChunk], None]) -> Callable[[], None]: ...


def clean_transcription_text(text: Optional[str]) -> str:
    """Drop control/non-printable characters, collapse whitespace, trim."""
    if not text:
        return ""
    kept = "".join(ch for ch in text if ch.isprintable() or ch.isspace())
    return _WHITESPACE.sub(" ", kept).strip()


def encode_wav_base64(chunks: Sequence[AudioChunk], sample_rate: int) -> str:
    """Concatenate PCM16 chunks into a base64 WAV payload."""
    pcm = b"".join(c.data for c in chunks)
    samples = np.frombuffer(pcm, dtype="<i2")
    buf = io.BytesIO()
    sf.write(buf, samples, sample_rate, format="WAV", subtype="PCM_16")
    return base64.b64encode(buf.getvalue()).decode("ascii")


@dataclass(frozen=True)
class TranscriptionWindow:
    """Trailing span of chunks [start, end) computed from the total chunk count."""

    chunks: tuple
    start: int
    end: int

    @property
    def payload_bytes(self) -> int:
        return sum(len(c) for c in self.chunks)

    @classmethod
    def trailing(cls, chunks: Sequence[AudioChunk], max_chunks: int) -> "TranscriptionWindow":
        end = len(chunks)
        start = max(0, end - max_chunks)
        return cls(chunks=tuple(chunks[start:end]), start=start, end=end)


class StreamingTranscriber:
    """
    Preview + final transcription for one utterance at a time.

    At most one window call is in flight; a tick that finds one pending is
    skipped. The last-processed marker advances when a window call finishes,
    whether it succeeded, failed or timed out, so a failed or hung window
    never blocks later ones.
    """

    def __init__(
        self,
        config: TranscriberConfig,
        client: TranscriptionClient,
        *,
        sample_rate: int = 16000,
        chunk_s: float = 1.0,
        bus: Optional[EventBus] = None,
        now: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.config = config
        self._client = client
        self.sample_rate = sample_rate
        self._bus = bus
        self._now = now
        self._sleep = sleep
        self._events = EventEmitter(EventComponent.STT)

        self.window_chunks = max(1, math.ceil(config.window_s / chunk_s)) if chunk_s > 0 else 1
        self.session_id: Optional[str] = None
        self.turn_id: Optional[str] = None

        self._chunks: List[AudioChunk] = []
        self._snapshots: Deque[str] = deque(maxlen=max(1, config.preview_buffer_size))
        self.last_processed_chunk = 0
        self.windows_sent = 0
        self.windows_failed = 0

        self._active = False
        self._tick_task: Optional[asyncio.Task] = None
        self._pending: Optional[asyncio.Task] = None
        self._remove_reader: Optional[Callable[[], None]] = None

    # --- state ---

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def chunk_count(self) -> int:
        return len(self._chunks)

    @property
    def preview(self) -> str:
        """Newest buffered snapshot; recency wins over agreement."""
        return self._snapshots[-1] if self._snapshots else ""

    @property
    def has_pending_call(self) -> bool:
        return self._pending is not None and not self._pending.done()

    # --- lifecycle ---

    def start(self, source: ChunkSource) -> None:
        """Begin a new utterance. No-op when already active."""
        if self._active:
            return
        self.reset()
        self._active = True
        self._remove_reader = source.add_reader(self.add_chunk)
        self._tick_task = asyncio.get_running_loop().create_task(self._tick_loop())
        logger.debug("Transcriber started", window_chunks=self.window_chunks)

    def stop(self) -> None:
        """Halt ticks and abandon any in-flight window call. Chunks are kept for finalize()."""
        self._active = False
        if self._remove_reader is not None:
            self._remove_reader()
            self._remove_reader = None
        tick, self._tick_task = self._tick_task, None
        if tick is not None and not tick.done() and tick is not _current_task():
            tick.cancel()
        pending, self._pending = self._pending, None
        if pending is not None and not pending.done():
            pending.cancel()

    def reset(self) -> None:
        self._chunks = []
        self._snapshots.clear()
        self.last_processed_chunk = 0

    def add_chunk(self, chunk: AudioChunk) -> None:
        if not self._active or not len(chunk):
            return
        self._chunks.append(chunk)

    # --- preview windows ---

    async def _tick_loop(self) -> None:
        try:
            while self._active:
                await self._sleep(self.config.process_interval_s)
                if not self._active:
                    break
                self.tick()
        except asyncio.CancelledError:
            pass

    def tick(self) -> Optional[asyncio.Task]:
        """Issue one window call if there is new audio and nothing is pending."""
        if not self._active:
            return None
        total = len(self._chunks)
        if total <= self.last_processed_chunk:
            return None
        if self.has_pending_call:
            logger.debug("Window skipped: call pending", chunk_count=total)
            return None
        window = TranscriptionWindow.trailing(self._chunks, self.window_chunks)
        if window.payload_bytes < self.config.min_payload_bytes:
            logger.debug("Window skipped: payload too small", payload_bytes=window.payload_bytes)
            return None
        self._pending = asyncio.get_running_loop().create_task(self._run_window(window))
        return self._pending

    async def _run_window(self, window: TranscriptionWindow) -> None:
        start_ts = time.perf_counter()
        self.windows_sent += 1
        try:
            payload = encode_wav_base64(window.chunks, self.sample_rate)
            result = await asyncio.wait_for(
                self._client.transcribe(payload),
                timeout=self.config.window_timeout_s,
            )
            text = clean_transcription_text((result or {}).get("text"))
            latency_ms = int((time.perf_counter() - start_ts) * 1000)
            self._events.emit(
                "stt.window",
                self.session_id,
                correlation_id=self.turn_id,
                window_start=window.start,
                window_end=window.end,
                latency_ms=latency_ms,
                empty=not text,
            )
            if text and self._active:
                self._snapshots.append(text)
                logger.debug_pii("Preview transcript", text=text)
                if self._bus is not None:
                    self._bus.publish(TranscriptPreview(text=self.preview))
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            self.windows_failed += 1
            logger.warning(
                "Window transcription timed out",
                timeout_s=self.config.window_timeout_s,
                window_start=window.start,
                window_end=window.end,
            )
        except Exception as e:
            self.windows_failed += 1
            logger.warning(
                "Window transcription failed",
                error=str(e),
                error_type=type(e).__name__,
                window_start=window.start,
                window_end=window.end,
            )
        finally:
            self.last_processed_chunk = max(self.last_processed_chunk, window.end)

    # --- final transcript ---

    async def finalize(self) -> str:
        """
        Stop and transcribe the entire utterance.

        Returns "" when nothing was captured. Failures raise NetworkError
        (or the already-classified VoiceLoopError) since they block the turn.
        """
        self.stop()
        chunks = list(self._chunks)
        if not chunks:
            logger.info("No audio captured for final transcript")
            return ""

        start_ts = time.perf_counter()
        try:
            result = await self._client.transcribe(encode_wav_base64(chunks, self.sample_rate))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            err = classify_error(e)
            if type(err) is VoiceLoopError:
                err = NetworkError(f"Final transcription failed: {e}", err.details)
            logger.error("Final transcription failed", error=str(e), error_type=type(e).__name__)
            self._events.emit(
                "stt.final",
                self.session_id,
                severity=Severity.ERROR,
                correlation_id=self.turn_id,
                error_type=type(e).__name__,
            )
            if err is e:
                raise
            raise err from e

        text = clean_transcription_text((result or {}).get("text"))
        latency_ms = int((time.perf_counter() - start_ts) * 1000)
        self._events.emit(
            "stt.final",
            self.session_id,
            correlation_id=self.turn_id,
            pii=pii_fields("text"),
            chunk_count=len(chunks),
            latency_ms=latency_ms,
            text=text,
        )
        logger.info_pii("Final transcript", text=text)
        return text


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
