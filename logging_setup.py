"""
Structured logging for the voice turn loop.

One JSON object per line. Each record names its component and, once bound,
the conversation session and the turn it belongs to, so a single utterance
can be traced from capture through transcription, submission and playback.

Transcripts and agent replies are PII: they go through the *_pii helpers,
land under a separate "pii" key and can be redacted at the formatter.
"""

import json
import logging
import os
import re
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Severity(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Component(str, Enum):
    """Log tag per loop component."""
    VOICE_LOOP = "voice_loop"
    CAPTURE = "capture"
    VAD = "vad"
    STT = "stt"
    CHANNEL = "channel"
    CONVERSATION = "conversation"
    ORCHESTRATOR = "orchestrator"
    TTS = "tts"
    STATUS_API = "status_api"


# Bound context keys; written by the formatter itself
_CONTEXT_KEYS = ("component", "session_id", "turn_id")

# Standard LogRecord attributes never copied into the payload
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime", "taskName"}

_LATENCY = re.compile(r'("latency_ms"\s*:\s*)(\d+)')
_ORANGE = "\033[38;5;208m"
_RESET = "\033[0m"


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


def _use_color() -> bool:
    if _env_flag("NO_COLOR"):
        return False
    if _env_flag("FORCE_COLOR"):
        return True
    try:
        return sys.stdout.isatty()
    except (AttributeError, OSError):
        return False


class JSONFormatter(logging.Formatter):
    """
    Renders a record as {timestamp, severity, component, message, ...}.

    session_id and turn_id appear when bound. Extra keyword fields follow.
    With redact_pii, every value under "pii" is replaced by its length so
    logs show that text was captured without carrying it.
    """

    def __init__(self, redact_pii: bool = False):
        super().__init__()
        self.redact_pii = redact_pii

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "severity": record.levelname.lower(),
            "component": getattr(record, "component", "unknown"),
            "message": record.getMessage(),
        }
        for key in ("session_id", "turn_id"):
            value = getattr(record, key, None)
            if value:
                entry[key] = value

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key in _CONTEXT_KEYS:
                continue
            entry[key] = self._redacted(value) if key == "pii" else value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        line = json.dumps(entry, ensure_ascii=False, default=str)
        if entry.get("latency_ms") is not None:
            unit = rf"\1{_ORANGE}\2 ms{_RESET}" if _use_color() else r"\1\2 ms"
            line = _LATENCY.sub(unit, line)
        return line

    def _redacted(self, pii: Any) -> Any:
        if not self.redact_pii or not isinstance(pii, dict):
            return pii
        return {k: f"[redacted:{len(str(v))}]" for k, v in pii.items()}


class StructuredLogger:
    """
    Component logger carrying session and turn context.

    Keyword arguments become JSON fields:

        log = get_logger(Component.ORCHESTRATOR, session_id="conv-1").with_turn("turn_3")
        log.info("Finalizing turn", reason="silence")
        log.info_pii("Final transcript", text="hello")
    """

    def __init__(
        self,
        component: str | Component,
        session_id: Optional[str] = None,
        turn_id: Optional[str] = None,
        logger_name: Optional[str] = None,
    ):
        self.component = component.value if isinstance(component, Component) else component
        self.session_id = session_id
        self.turn_id = turn_id
        self.logger = logging.getLogger(logger_name or f"voice_loop.{self.component}")

    def _log(self, level: int, message: str, pii: Optional[Dict[str, Any]] = None, **fields):
        if not self.logger.isEnabledFor(level):
            return
        exc_info = fields.pop("exc_info", None)
        extra: Dict[str, Any] = {"component": self.component, **fields}
        if self.session_id:
            extra["session_id"] = self.session_id
        if self.turn_id:
            extra["turn_id"] = self.turn_id
        if pii:
            extra["pii"] = pii
        # stacklevel points %(funcName)s at the caller of debug()/info()/...
        self.logger.log(level, message, exc_info=exc_info, extra=extra, stacklevel=3)

    def debug(self, message: str, **fields):
        self._log(logging.DEBUG, message, **fields)

    def info(self, message: str, **fields):
        self._log(logging.INFO, message, **fields)

    def warning(self, message: str, **fields):
        self._log(logging.WARNING, message, **fields)

    def error(self, message: str, **fields):
        self._log(logging.ERROR, message, **fields)

    def critical(self, message: str, **fields):
        self._log(logging.CRITICAL, message, **fields)

    def exception(self, message: str, **fields):
        fields.setdefault("exc_info", True)
        self._log(logging.ERROR, message, **fields)

    def debug_pii(self, message: str, **pii_fields):
        """Every keyword is PII (e.g. a preview transcript)."""
        self._log(logging.DEBUG, message, pii=pii_fields)

    def info_pii(self, message: str, **pii_fields):
        self._log(logging.INFO, message, pii=pii_fields)

    def with_session(self, session_id: str) -> "StructuredLogger":
        """Same component, bound to a conversation session."""
        return StructuredLogger(self.component, session_id=session_id, logger_name=self.logger.name)

    def with_turn(self, turn_id: Optional[str]) -> "StructuredLogger":
        """Same component and session, bound to one turn."""
        return StructuredLogger(
            self.component,
            session_id=self.session_id,
            turn_id=turn_id,
            logger_name=self.logger.name,
        )


def setup_logging(level: str = "INFO", use_json: bool = True, redact_pii: bool = False) -> None:
    """
    Install a single stdout handler on the root logger. Call once at startup.

    Text mode is for local runs: "<time> LEVEL component [session] message".
    """
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if use_json:
        handler.setFormatter(JSONFormatter(redact_pii=redact_pii))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(component)s [%(session_id)s] %(message)s",
            defaults={"component": "unknown", "session_id": "-"},
        ))
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def get_logger(component: str | Component, session_id: Optional[str] = None) -> StructuredLogger:
    return StructuredLogger(component, session_id=session_id)
