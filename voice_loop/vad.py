"""
Streaming energy-based voice activity monitor.

Polls the capture session's trailing level window on a fixed cadence, tracks
how long the input has stayed below the silence threshold, reports a smoothed
silence duration and fires a one-shot "silence detected" signal.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

import numpy as np

from logging_setup import get_logger, Component
from .bus import EventBus, SilenceDetected, SilenceProgress
from .config import SilenceConfig
from .errors import DeviceError

logger = get_logger(Component.VAD)

# Floor for an all-zero window; log10(0) is -inf
_MIN_DB = -120.0


class LevelSource(Protocol):
    @property
    def is_active(self) -> bool: ...

    def level_window(self) -> np.ndarray: ...


def rms_dbfs(samples: np.ndarray) -> float:
    """RMS level of float samples in dBFS."""
    if samples is None or len(samples) == 0:
        return _MIN_DB
    rms = float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))
    if rms <= 0.0:
        return _MIN_DB
    return max(_MIN_DB, 20.0 * math.log10(rms))


@dataclass
class SilenceState:
    threshold_db: float
    smoothed_silence_seconds: float = 0.0
    last_sound_timestamp: Optional[float] = None
    silence_started_at: Optional[float] = None
    sound_started_at: Optional[float] = None

    def reset(self) -> None:
        self.smoothed_silence_seconds = 0.0
        self.silence_started_at = None


class VoiceActivityMonitor:
    """
    Reports silence progress and fires SilenceDetected at most once per start().

    Stopping is synchronous: the poll loop checks the active flag before every
    step, so a poll scheduled before stop() becomes a no-op.
    """

    def __init__(
        self,
        config: SilenceConfig,
        source: Optional[LevelSource],
        *,
        bus: Optional[EventBus] = None,
        now: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.config = config
        self._source = source
        self._bus = bus
        self._now = now
        self._sleep = sleep

        self.state = SilenceState(threshold_db=config.threshold_db)
        self._active = False
        self._fired = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def has_fired(self) -> bool:
        return self._fired

    @property
    def progress_fraction(self) -> float:
        if self.config.max_silence_s <= 0:
            return 0.0
        return min(1.0, self.state.smoothed_silence_seconds / self.config.max_silence_s)

    def start(self) -> None:
        """Begin polling. No-op when already active."""
        if self._active:
            return
        if self._source is None or not self._source.is_active:
            raise DeviceError("No input stream available for voice activity monitoring")
        self.state = SilenceState(threshold_db=self.config.threshold_db)
        self._fired = False
        self._active = True
        self._task = asyncio.get_running_loop().create_task(self._poll_loop())
        logger.debug(
            "Voice activity monitor started",
            threshold_db=self.config.threshold_db,
            max_silence_s=self.config.max_silence_s,
        )

    def stop(self) -> None:
        """Stop polling. Safe to call repeatedly."""
        self._active = False
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()
        self.state.reset()
        self.state.last_sound_timestamp = None
        self.state.sound_started_at = None

    def cleanup(self) -> None:
        """Stop and drop the reference to the analysed stream."""
        self.stop()
        self._source = None

    async def _poll_loop(self) -> None:
        try:
            while self._active:
                self.process(self._source.level_window())
                if not self._active:
                    break
                await self._sleep(self.config.poll_interval_s)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Voice activity polling failed", error=str(e), error_type=type(e).__name__)
            self._active = False

    def process(self, samples: np.ndarray) -> None:
        """Analyse one window of samples at the current time."""
        if not self._active or self._fired:
            return

        db = rms_dbfs(samples)
        now = self._now()
        st = self.state

        if db < self.config.threshold_db:
            st.sound_started_at = None
            if st.silence_started_at is None:
                st.silence_started_at = now
            raw = now - st.silence_started_at
            if raw < self.config.min_silence_s:
                return

            factor = self.config.smoothing_factor
            if st.smoothed_silence_seconds == 0.0:
                st.smoothed_silence_seconds = raw
            else:
                st.smoothed_silence_seconds += (raw - st.smoothed_silence_seconds) * factor

            if st.smoothed_silence_seconds >= self.config.max_silence_s:
                self._report(self.config.max_silence_s)
                self._fire(st.smoothed_silence_seconds)
                return
            self._report(st.smoothed_silence_seconds)
        else:
            st.last_sound_timestamp = now
            if st.sound_started_at is None:
                st.sound_started_at = now
            if now - st.sound_started_at >= self.config.sound_debounce_s:
                had_progress = st.silence_started_at is not None or st.smoothed_silence_seconds > 0
                st.reset()
                if had_progress:
                    self._report(0.0)

    def _report(self, seconds: float) -> None:
        if self._bus is None:
            return
        fraction = seconds / self.config.max_silence_s if self.config.max_silence_s > 0 else 0.0
        self._bus.publish(SilenceProgress(seconds=seconds, fraction=min(1.0, fraction)))

    def _fire(self, seconds: float) -> None:
        self._fired = True
        self._active = False
        logger.info("Silence detected", smoothed_silence_s=round(seconds, 3))
        if self._bus is not None:
            self._bus.publish(SilenceDetected(seconds=seconds))


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
