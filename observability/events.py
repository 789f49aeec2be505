"""
Structured event emission (shared).

Every turn-loop component reports lifecycle facts (state changes, silence
detection, transcription windows, reconnects, playback) through one event
envelope. Events go to stdout as JSON lines and into the in-memory event store
that backs the status API.
"""

from __future__ import annotations

import json
import os
import re
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .event_store import event_store


class Component(str, Enum):
    """Event-producing components."""

    VOICE_LOOP = "voice_loop"
    VAD = "vad"
    STT = "stt"
    CHANNEL = "channel"
    CONVERSATION = "conversation"
    ORCHESTRATOR = "orchestrator"
    TTS = "tts"
    STATUS_API = "status_api"


class Severity(str, Enum):
    """Event severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


DEFAULT_PII = {"contains_pii": False, "fields": [], "handling": "none"}


def pii_fields(*fields: str) -> Optional[Dict[str, Any]]:
    """PII marker for events that carry transcript or reply text."""
    if not fields:
        return None
    return {"contains_pii": True, "fields": list(fields), "handling": "none"}


class EventEmitter:
    """Emits structured JSON events."""

    ORANGE = '\033[38;5;208m'
    RESET = '\033[0m'

    def __init__(self, component: Component, *, echo: bool = True):
        self.component = component
        self.echo = echo

    def emit(
        self,
        event_type: str,
        session_id: Optional[str],
        severity: Severity = Severity.INFO,
        correlation_id: Optional[str] = None,
        pii: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        session_id = session_id or "unbound"
        event = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "session_id": session_id,
            "component": self.component.value,
            "event_type": event_type,
            "severity": severity.value,
            "correlation_id": correlation_id or session_id,
            "pii": pii or DEFAULT_PII,
        }
        event.update(kwargs)

        if self.echo:
            json_output = json.dumps(event, ensure_ascii=False, default=str)
            if kwargs.get("latency_ms") is not None:
                no_color = os.environ.get('NO_COLOR', '').lower() in ('1', 'true', 'yes')
                pattern = r'("latency_ms"\s*:\s*)(\d+)'
                if no_color:
                    replacement = r'\1\2 ms'
                else:
                    replacement = rf'\1{self.ORANGE}\2 ms{self.RESET}'
                json_output = re.sub(pattern, replacement, json_output)

            sys.stdout.write(json_output)
            sys.stdout.write("\n")
            sys.stdout.flush()

        # Store the uncolored dict for the status API
        event_store.store(event)
        return event
