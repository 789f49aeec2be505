"""
Error taxonomy for the voice turn loop.

Per-window transcription failures recover locally; everything else is raised
as one of the classes below so the orchestrator can surface a single
user-visible message and route through the continuation check.
"""
import asyncio
from typing import Any, Dict, Optional

import aiohttp


class ErrorCodes:
    """Stable error codes."""

    DEVICE_ERROR = "DEVICE_ERROR"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    NETWORK_ERROR = "NETWORK_ERROR"
    CREDENTIAL_EXPIRED = "CREDENTIAL_EXPIRED"
    INITIALIZATION_ERROR = "INITIALIZATION_ERROR"
    CONNECTION_FAILED = "CONNECTION_FAILED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


_USER_MESSAGES = {
    ErrorCodes.DEVICE_ERROR: "Error accessing audio device",
    ErrorCodes.PERMISSION_DENIED: "Microphone access was denied",
    ErrorCodes.NETWORK_ERROR: "Network connection error occurred",
    ErrorCodes.CREDENTIAL_EXPIRED: "Your session expired. Please try again.",
    ErrorCodes.INITIALIZATION_ERROR: "Failed to initialize audio recording",
    ErrorCodes.CONNECTION_FAILED: "Failed to maintain connection to the conversation",
    ErrorCodes.VALIDATION_ERROR: "Sorry, I didn't catch that.",
}


class VoiceLoopError(Exception):
    """Base class for all turn-loop failures."""

    code = ErrorCodes.UNKNOWN_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def user_message(self) -> str:
        return get_user_message(self.code)


class DeviceError(VoiceLoopError):
    """Capture device missing, busy or failing."""

    code = ErrorCodes.DEVICE_ERROR


class PermissionDeniedError(DeviceError):
    code = ErrorCodes.PERMISSION_DENIED


class NetworkError(VoiceLoopError):
    """A remote call (session, transcription, send, synthesis) failed."""

    code = ErrorCodes.NETWORK_ERROR


class CredentialExpiredError(NetworkError):
    code = ErrorCodes.CREDENTIAL_EXPIRED


class InitializationError(VoiceLoopError):
    """A prerequisite (capture, transcriber, channel) is not ready."""

    code = ErrorCodes.INITIALIZATION_ERROR


class ChannelConnectionError(VoiceLoopError):
    """Push-event stream reconnect ceiling exhausted."""

    code = ErrorCodes.CONNECTION_FAILED


class ValidationError(VoiceLoopError):
    """Empty or invalid transcript."""

    code = ErrorCodes.VALIDATION_ERROR


def get_user_message(code: str) -> str:
    return _USER_MESSAGES.get(code, "An unknown error occurred")


def retry_delay(attempt: int, base_s: float = 1.0, cap_s: float = 5.0) -> float:
    """
    Capped exponential backoff: base * 2**(attempt-1), never above cap.

    attempt is 1-based.
    """
    attempt = max(1, attempt)
    return min(base_s * (2 ** (attempt - 1)), cap_s)


def classify_error(error: BaseException) -> VoiceLoopError:
    """
    Map an arbitrary exception onto the taxonomy.

    VoiceLoopErrors pass through unchanged; anything else is wrapped with
    the original kept in details["original_error"].
    """
    if isinstance(error, VoiceLoopError):
        return error

    details = {"original_error": str(error), "error_type": type(error).__name__}

    if isinstance(error, aiohttp.ClientResponseError):
        details["status"] = error.status
        if error.status == 401:
            return CredentialExpiredError(str(error), details)
        return NetworkError(str(error), details)

    if isinstance(error, (aiohttp.ClientError, asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return NetworkError(str(error) or type(error).__name__, details)

    if isinstance(error, PermissionError):
        return PermissionDeniedError(str(error), details)

    error_str = str(error).lower()
    if "permission" in error_str or "not allowed" in error_str:
        return PermissionDeniedError(str(error), details)
    if "device" in error_str or "portaudio" in error_str:
        return DeviceError(str(error), details)
    if "network" in error_str or "timeout" in error_str or "connection" in error_str:
        return NetworkError(str(error), details)

    return VoiceLoopError(str(error) or type(error).__name__, details)
