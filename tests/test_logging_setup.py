"""
Tests for logging_setup module.

Verifies:
- JSON structured logging format
- Component and severity tagging
- Session ID correlation
- PII-aware logging helpers
- Log level configuration
"""
import json
import logging
from io import StringIO
from datetime import datetime

import pytest

from logging_setup import (
    setup_logging,
    get_logger,
    Component,
    JSONFormatter,
)


@pytest.fixture
def capture_logs():
    """Capture log output to a string buffer."""
    buffer = StringIO()
    handler = logging.StreamHandler(buffer)
    handler.setFormatter(JSONFormatter())

    logger = logging.getLogger()
    logger.handlers = []
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)

    yield buffer

    logger.handlers = []


def _single_entry(buffer: StringIO) -> dict:
    return json.loads(buffer.getvalue().strip())


def test_json_formatter_basic(capture_logs):
    logger = get_logger(Component.ORCHESTRATOR)
    logger.info("Listening", turn_id="turn_1")

    log_entry = _single_entry(capture_logs)

    assert log_entry["severity"] == "info"
    assert log_entry["component"] == "orchestrator"
    assert log_entry["message"] == "Listening"
    assert log_entry["turn_id"] == "turn_1"
    assert "timestamp" in log_entry


def test_json_formatter_timestamp_format(capture_logs):
    logger = get_logger(Component.VAD)
    logger.info("Timestamp test")

    timestamp = _single_entry(capture_logs)["timestamp"]
    assert datetime.fromisoformat(timestamp.replace("Z", "+00:00")) is not None


def test_session_id_correlation(capture_logs):
    logger = get_logger(Component.CHANNEL, session_id="sess_123")
    logger.info("Subscribed")

    assert _single_entry(capture_logs)["session_id"] == "sess_123"


def test_session_id_absent_when_not_provided(capture_logs):
    logger = get_logger(Component.STT)
    logger.info("No session")

    assert "session_id" not in _single_entry(capture_logs)


def test_with_session_creates_new_logger(capture_logs):
    base_logger = get_logger(Component.CHANNEL)
    session_logger = base_logger.with_session("sess_456")

    session_logger.info("With session")

    log_entry = _single_entry(capture_logs)
    assert log_entry["session_id"] == "sess_456"
    assert log_entry["component"] == "channel"
    assert base_logger.session_id is None


def test_transcript_logged_as_pii(capture_logs):
    logger = get_logger(Component.STT, session_id="sess_789")
    logger.info_pii("Final transcript", text="hello there")

    log_entry = _single_entry(capture_logs)

    assert log_entry["pii"]["text"] == "hello there"
    assert "text" not in log_entry
    assert log_entry["message"] == "Final transcript"


def test_with_turn_binds_session_and_turn(capture_logs):
    logger = get_logger(Component.ORCHESTRATOR, session_id="conv-1").with_turn("turn_2_1000")
    logger.info("Finalizing turn", reason="silence")

    log_entry = _single_entry(capture_logs)

    assert log_entry["session_id"] == "conv-1"
    assert log_entry["turn_id"] == "turn_2_1000"
    assert log_entry["reason"] == "silence"


def test_pii_redaction(capture_logs):
    handler = logging.getLogger().handlers[0]
    handler.setFormatter(JSONFormatter(redact_pii=True))

    get_logger(Component.STT).info_pii("Final transcript", text="hello there")

    log_entry = _single_entry(capture_logs)
    assert log_entry["pii"] == {"text": "[redacted:11]"}
    assert "hello there" not in capture_logs.getvalue()


def test_disabled_level_is_dropped(capture_logs):
    logging.getLogger().setLevel(logging.INFO)

    get_logger(Component.VAD).debug("Polling")

    assert capture_logs.getvalue() == ""


def test_debug_pii_method(capture_logs):
    logger = get_logger(Component.STT)
    logger.debug_pii("Preview transcript", text="hel")

    log_entry = _single_entry(capture_logs)

    assert log_entry["severity"] == "debug"
    assert log_entry["pii"]["text"] == "hel"


def test_severity_levels(capture_logs):
    logger = get_logger(Component.VOICE_LOOP)

    logger.debug("Debug message")
    logger.info("Info message")
    logger.warning("Warning message")
    logger.error("Error message")
    logger.critical("Critical message")

    lines = [line for line in capture_logs.getvalue().strip().split("\n") if line]
    severities = [json.loads(line)["severity"] for line in lines]
    assert severities == ["debug", "info", "warning", "error", "critical"]


def test_component_enum():
    assert Component.VOICE_LOOP.value == "voice_loop"
    assert Component.CAPTURE.value == "capture"
    assert Component.VAD.value == "vad"
    assert Component.STT.value == "stt"
    assert Component.CHANNEL.value == "channel"
    assert Component.TTS.value == "tts"


def test_component_string_fallback(capture_logs):
    logger = get_logger("custom_component")
    logger.info("Test")

    assert _single_entry(capture_logs)["component"] == "custom_component"


def test_latency_gets_unit_suffix(capture_logs, monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    logger = get_logger(Component.STT)
    logger.info("Remote call completed", latency_ms=42)

    assert '"latency_ms": 42 ms' in capture_logs.getvalue()


def test_exception_logging(capture_logs):
    logger = get_logger(Component.ORCHESTRATOR)

    try:
        raise ValueError("Test exception")
    except ValueError:
        logger.exception("Turn task failed")

    log_entry = _single_entry(capture_logs)
    assert "ValueError: Test exception" in log_entry["exception"]


def test_setup_logging_json():
    setup_logging(level="DEBUG", use_json=True)

    root_logger = logging.getLogger()
    assert root_logger.level == logging.DEBUG
    assert len(root_logger.handlers) == 1
    assert isinstance(root_logger.handlers[0].formatter, JSONFormatter)


def test_setup_logging_text():
    setup_logging(level="INFO", use_json=False)

    root_logger = logging.getLogger()
    assert root_logger.level == logging.INFO
    assert len(root_logger.handlers) == 1
    assert not isinstance(root_logger.handlers[0].formatter, JSONFormatter)
