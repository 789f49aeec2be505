"""
Conversation channel: remote session, message submission and the
reconnectable push-event stream.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from logging_setup import get_logger, Component
from observability.events import Component as EventComponent, EventEmitter, Severity
from .bus import ConnectionFailed, ConnectionStatusChanged, EventBus, RemoteEvent
from .config import ChannelConfig
from .errors import (
    ChannelConnectionError,
    CredentialExpiredError,
    InitializationError,
    classify_error,
    retry_delay,
)
from .remote import AgentApiClient, SentMessage, SseMessage

logger = get_logger(Component.CHANNEL)

CredentialProvider = Callable[[], Awaitable[Optional[str]]]

# Envelope type -> short kind consumed by ConversationState
EVENT_KINDS = {
    "CONVERSATION_MESSAGE": "message",
    "CONVERSATION_ROUTING_RESULT": "routing",
    "CONVERSATION_PARTICIPANT_CHANGED": "participant",
    "CONVERSATION_TYPING_STARTED_INDICATOR": "typing_started",
    "CONVERSATION_TYPING_STOPPED_INDICATOR": "typing_stopped",
    "CONVERSATION_DELIVERY_ACKNOWLEDGEMENT": "delivery",
    "CONVERSATION_READ_ACKNOWLEDGEMENT": "read",
    "CONVERSATION_CLOSE_CONVERSATION": "close",
}


class ChannelStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass
class ChannelConnection:
    status: ChannelStatus = ChannelStatus.DISCONNECTED
    retry_count: int = 0
    credential_handle: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class PushEvent:
    """Decoded envelope {type, sessionId, payload, timestamp}."""

    type: str
    session_id: Optional[str]
    payload: Dict[str, Any]
    timestamp: str

    @property
    def kind(self) -> str:
        return EVENT_KINDS.get(self.type, self.type.lower())

    @classmethod
    def from_sse(cls, msg: SseMessage) -> "PushEvent":
        data = json.loads(msg.data)
        if not isinstance(data, dict):
            raise ValueError("push event is not an object")
        # Bare entry bodies (no envelope) carry the payload at the top level
        payload = data["payload"] if "payload" in data else data
        if not isinstance(payload, dict):
            raise ValueError("push event payload is not an object")
        event_type = data.get("type") or (msg.event if msg.event != "message" else "")
        if not event_type:
            raise ValueError("push event has no type")
        session_id = data.get("sessionId") or data.get("conversationId") or payload.get("conversationId")
        return cls(
            type=str(event_type),
            session_id=str(session_id) if session_id else None,
            payload=payload,
            timestamp=str(data.get("timestamp") or ""),
        )


class ConversationChannel:
    """
    Owns one remote conversation session and its push-event subscription.

    Stream failures are retried up to max_reconnect_attempts times; the next
    failure publishes a single ConnectionFailed and the channel stays down
    until reconnect() or initialize() is called again.
    """

    def __init__(
        self,
        config: ChannelConfig,
        client: AgentApiClient,
        *,
        bus: EventBus,
        credential_provider: CredentialProvider,
        on_credential_expired: Optional[CredentialProvider] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.config = config
        self._client = client
        self._bus = bus
        self._credential_provider = credential_provider
        self._on_credential_expired = on_credential_expired
        self._sleep = sleep
        self._events = EventEmitter(EventComponent.CHANNEL)

        self.connection = ChannelConnection()
        self.session_id: Optional[str] = None
        self.last_message_id: Optional[str] = None
        self.failed = False

        self._consumer: Optional[asyncio.Task] = None
        self._log = logger

    @property
    def is_ready(self) -> bool:
        return self.session_id is not None and not self.failed

    @property
    def status(self) -> ChannelStatus:
        return self.connection.status

    # --- session ---

    async def initialize(self) -> str:
        """Obtain a credential, create the remote session and subscribe. Returns the session id."""
        self.close()
        try:
            credential = await self._credential_provider()
            info = await self._client.create_session(credential)
        except Exception as e:
            err = classify_error(e)
            logger.error("Session creation failed", error=str(e), error_type=type(e).__name__)
            if err is e:
                raise
            raise err from e

        self.session_id = info.session_id
        self.last_message_id = info.message_id
        self.connection.credential_handle = info.credential
        self.failed = False
        self._log = logger.with_session(info.session_id)
        self._log.info("Conversation session created")
        self.subscribe()
        return info.session_id

    def subscribe(self) -> None:
        """(Re)start the push-event consumer, tearing down any previous one first."""
        if self.session_id is None:
            raise InitializationError("Cannot subscribe without a session")
        self._cleanup_subscription()
        self.connection.retry_count = 0
        self.failed = False
        self._consumer = asyncio.get_running_loop().create_task(self._consume())

    def reconnect(self) -> None:
        """Explicit re-initialization of the stream after a terminal failure."""
        self.subscribe()

    def close(self) -> None:
        self._cleanup_subscription()
        self._set_status(ChannelStatus.DISCONNECTED)

    def _cleanup_subscription(self) -> None:
        consumer, self._consumer = self._consumer, None
        if consumer is not None and not consumer.done():
            consumer.cancel()

    # --- sending ---

    async def send_message(self, text: str) -> SentMessage:
        """Submit an utterance, chained to the last known message id."""
        if self.session_id is None:
            raise InitializationError("Conversation session is not initialized")
        try:
            try:
                sent = await self._client.send_message(
                    self.session_id, text, self.last_message_id, self.connection.credential_handle
                )
            except CredentialExpiredError:
                if self._on_credential_expired is None:
                    raise
                await self._refresh_credential()
                sent = await self._client.send_message(
                    self.session_id, text, self.last_message_id, self.connection.credential_handle
                )
        except Exception as e:
            err = classify_error(e)
            self._log.error("Message send failed", error=str(e), error_type=type(e).__name__)
            if err is e:
                raise
            raise err from e

        if sent.message_id:
            self.last_message_id = sent.message_id
        self._log.debug("Message sent", message_id=sent.message_id)
        return sent

    async def _refresh_credential(self) -> None:
        self._log.warning("Credential expired; requesting refresh")
        self.connection.credential_handle = await self._on_credential_expired()

    # --- push stream ---

    async def _consume(self) -> None:
        while True:
            self._set_status(
                ChannelStatus.CONNECTING if self.connection.retry_count == 0 else ChannelStatus.RECONNECTING
            )
            try:
                async for msg in self._client.stream_events(
                    self.session_id, self.connection.credential_handle, on_open=self._on_open
                ):
                    self._dispatch(msg)
                raise ChannelConnectionError("Push-event stream closed by server")
            except asyncio.CancelledError:
                raise
            except CredentialExpiredError as e:
                self._log.warning("Push-event stream rejected credential", error=str(e))
                if self._on_credential_expired is not None:
                    try:
                        await self._refresh_credential()
                    except Exception as refresh_error:
                        self._log.error(
                            "Credential refresh failed",
                            error=str(refresh_error),
                            error_type=type(refresh_error).__name__,
                        )
            except Exception as e:
                self._log.warning("Push-event stream error", error=str(e), error_type=type(e).__name__)

            self.connection.retry_count += 1
            attempt = self.connection.retry_count
            if attempt > self.config.max_reconnect_attempts:
                self._fail()
                return

            delay = retry_delay(
                attempt,
                base_s=self.config.reconnect_delay_s,
                cap_s=self.config.reconnect_max_delay_s,
            )
            self._set_status(ChannelStatus.RECONNECTING)
            self._events.emit(
                "channel.reconnect_scheduled",
                self.session_id,
                severity=Severity.WARN,
                attempt=attempt,
                max_attempts=self.config.max_reconnect_attempts,
                delay_s=delay,
            )
            await self._sleep(delay)

    def _on_open(self) -> None:
        self.connection.retry_count = 0
        self._set_status(ChannelStatus.CONNECTED)

    def _fail(self) -> None:
        self.failed = True
        self._set_status(ChannelStatus.DISCONNECTED)
        attempts = self.config.max_reconnect_attempts
        self._log.error("Push-event stream reconnect ceiling reached", attempts=attempts)
        self._events.emit("channel.connection_failed", self.session_id, severity=Severity.ERROR, attempts=attempts)
        self._bus.publish(ConnectionFailed(
            message="connection_failed",
            details={"attempts": attempts, "session_id": self.session_id},
        ))

    def _dispatch(self, msg: SseMessage) -> None:
        try:
            event = PushEvent.from_sse(msg)
        except (ValueError, TypeError) as e:
            self._log.warning("Malformed push event ignored", error=str(e), sse_event=msg.event)
            return
        if event.session_id is not None and event.session_id != self.session_id:
            self._log.debug("Push event for another session discarded", event_session_id=event.session_id)
            return
        self._bus.publish(RemoteEvent(
            kind=event.kind,
            session_id=self.session_id,
            payload=event.payload,
            timestamp=event.timestamp,
        ))

    def _set_status(self, status: ChannelStatus) -> None:
        previous = self.connection.status
        if previous == status:
            return
        self.connection.status = status
        self._events.emit(
            "channel.status_changed",
            self.session_id,
            previous=previous.value,
            status=status.value,
            retry_count=self.connection.retry_count,
        )
        self._bus.publish(ConnectionStatusChanged(status=status.value, retry_count=self.connection.retry_count))
