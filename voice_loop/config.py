"""
Voice loop configuration.

Loads tunable thresholds and remote endpoints from environment variables.
Every numeric threshold (silence dB, durations, retry ceilings) is a tunable
constant, so components receive their sub-config at construction instead of
hard-coding values.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def _clean_env(key: str) -> Optional[str]:
    """
    Read an environment variable, stripping trailing comments and whitespace.

    "3.0  # seconds" -> "3.0"
    """
    value = os.environ.get(key)
    if not value:
        return None
    if "#" in value:
        value = value.split("#")[0]
    value = value.strip()
    return value or None


def _parse_int_env(key: str, default: int) -> int:
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _parse_float_env(key: str, default: float) -> float:
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _parse_bool_env(key: str, default: bool) -> bool:
    value = _clean_env(key)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class SilenceConfig:
    """Voice activity thresholds (seconds unless noted)."""

    threshold_db: float = -65.0
    max_silence_s: float = 3.0
    min_silence_s: float = 0.5
    sound_debounce_s: float = 0.3
    smoothing_factor: float = 0.15
    # One poll per display frame
    poll_interval_s: float = 1 / 60


@dataclass(frozen=True)
class CaptureConfig:
    """Microphone stream constraints."""

    sample_rate: int = 16000
    channels: int = 1
    chunk_s: float = 1.0
    # Trailing samples kept for level analysis
    analysis_window: int = 2048
    device: Optional[str] = None
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True


@dataclass(frozen=True)
class TranscriberConfig:
    """Sliding-window transcription settings."""

    process_interval_s: float = 1.0
    window_s: float = 60.0
    min_payload_bytes: int = 1024
    # Bounds one preview call so a hung window never blocks the next
    window_timeout_s: float = 10.0
    preview_buffer_size: int = 20


@dataclass(frozen=True)
class ChannelConfig:
    """Push-event stream reconnection policy."""

    max_reconnect_attempts: int = 3
    reconnect_delay_s: float = 5.0
    reconnect_max_delay_s: float = 5.0


@dataclass(frozen=True)
class TurnConfig:
    """Turn-loop timing."""

    auto_resume: bool = True
    resume_delay_s: float = 0.5
    preview_fade_s: float = 0.3


@dataclass
class VoiceLoopConfig:
    """Voice loop configuration."""

    # Remote conversational agent
    api_url: str
    api_token: Optional[str] = None
    events_url: Optional[str] = None
    http_timeout_s: float = 10.0

    silence: SilenceConfig = field(default_factory=SilenceConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    transcriber: TranscriberConfig = field(default_factory=TranscriberConfig)
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    turn: TurnConfig = field(default_factory=TurnConfig)

    log_level: str = "INFO"
    # Replace transcript and reply text in logs by its length
    log_redact_pii: bool = True
    http_host: str = "127.0.0.1"
    http_port: int = 8000

    def __post_init__(self):
        self.api_url = self.api_url.rstrip("/")
        if not self.events_url:
            self.events_url = f"{self.api_url}/events"

    @classmethod
    def from_env(cls) -> "VoiceLoopConfig":
        """Load configuration from environment variables."""
        chunk_s = _parse_float_env("VOICE_LOOP_CHUNK_S", 1.0)
        return cls(
            api_url=os.environ["VOICE_LOOP_API_URL"],
            api_token=os.environ.get("VOICE_LOOP_API_TOKEN"),
            events_url=os.environ.get("VOICE_LOOP_EVENTS_URL"),
            http_timeout_s=_parse_float_env("VOICE_LOOP_HTTP_TIMEOUT_S", 10.0),
            silence=SilenceConfig(
                threshold_db=_parse_float_env("VOICE_LOOP_SILENCE_THRESHOLD_DB", -65.0),
                max_silence_s=_parse_float_env("VOICE_LOOP_MAX_SILENCE_S", 3.0),
                min_silence_s=_parse_float_env("VOICE_LOOP_MIN_SILENCE_S", 0.5),
                sound_debounce_s=_parse_float_env("VOICE_LOOP_SOUND_DEBOUNCE_S", 0.3),
                smoothing_factor=_parse_float_env("VOICE_LOOP_SMOOTHING_FACTOR", 0.15),
                poll_interval_s=_parse_float_env("VOICE_LOOP_POLL_INTERVAL_S", 1 / 60),
            ),
            capture=CaptureConfig(
                sample_rate=_parse_int_env("VOICE_LOOP_SAMPLE_RATE", 16000),
                chunk_s=chunk_s,
                device=os.environ.get("VOICE_LOOP_INPUT_DEVICE") or None,
            ),
            transcriber=TranscriberConfig(
                # Ticks stay aligned to the chunk duration
                process_interval_s=chunk_s,
                window_s=_parse_float_env("VOICE_LOOP_WINDOW_S", 60.0),
                min_payload_bytes=_parse_int_env("VOICE_LOOP_MIN_PAYLOAD_BYTES", 1024),
                window_timeout_s=_parse_float_env("VOICE_LOOP_WINDOW_TIMEOUT_S", 10.0),
                preview_buffer_size=_parse_int_env("VOICE_LOOP_PREVIEW_BUFFER", 20),
            ),
            channel=ChannelConfig(
                max_reconnect_attempts=_parse_int_env("VOICE_LOOP_MAX_RECONNECTS", 3),
                reconnect_delay_s=_parse_float_env("VOICE_LOOP_RECONNECT_DELAY_S", 5.0),
                reconnect_max_delay_s=_parse_float_env("VOICE_LOOP_RECONNECT_MAX_DELAY_S", 5.0),
            ),
            turn=TurnConfig(
                auto_resume=_parse_bool_env("VOICE_LOOP_AUTO_RESUME", True),
                resume_delay_s=_parse_float_env("VOICE_LOOP_RESUME_DELAY_S", 0.5),
                preview_fade_s=_parse_float_env("VOICE_LOOP_PREVIEW_FADE_S", 0.3),
            ),
            log_level=os.environ.get("VOICE_LOOP_LOG_LEVEL", "INFO"),
            log_redact_pii=_parse_bool_env("VOICE_LOOP_LOG_REDACT_PII", True),
            http_host=os.environ.get("VOICE_LOOP_HTTP_HOST", "127.0.0.1"),
            http_port=_parse_int_env("VOICE_LOOP_HTTP_PORT", 8000),
        )


def load_local_env(root: Optional[Path] = None) -> None:
    """Best-effort load of .env_local / .env.local; never overrides existing vars."""
    root = root or Path(__file__).parent.parent
    for name in (".env_local", ".env.local"):
        p = root / name
        if p.exists():
            load_dotenv(p, override=False)


def get_config() -> VoiceLoopConfig:
    """Get or create global config instance."""
    global _config
    if _config is None:
        load_local_env()
        _config = VoiceLoopConfig.from_env()
    return _config


# Global config instance (lazy loaded)
_config: Optional[VoiceLoopConfig] = None
