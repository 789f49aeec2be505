"""
HTTP client for the remote conversational agent.

Covers the opaque remote operations the turn loop depends on:
- create_session / send_message (conversation)
- transcribe (speech-to-text)
- synthesize (text-to-speech)
- stream_events (server-sent push-event stream scoped to a session)

Audio travels base64-encoded in JSON bodies. One pooled aiohttp session is
reused across calls; aclose() releases it.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Optional

import aiohttp

from logging_setup import get_logger, Component
from .errors import CredentialExpiredError, NetworkError

logger = get_logger(Component.VOICE_LOOP)

# Server heartbeats arrive well inside this window
STREAM_HEARTBEAT_TIMEOUT_S = 90.0


@dataclass(frozen=True)
class SessionInfo:
    session_id: str
    credential: Optional[str]
    message_id: Optional[str] = None


@dataclass(frozen=True)
class SentMessage:
    message_id: Optional[str]
    text: str


@dataclass(frozen=True)
class SseMessage:
    event: str
    data: str
    id: Optional[str] = None


class SseDecoder:
    """Incremental text/event-stream decoder; feed one line at a time."""

    def __init__(self):
        self._event: Optional[str] = None
        self._data: list[str] = []
        self._id: Optional[str] = None
        self.last_event_id: Optional[str] = None

    def feed(self, line: str) -> Optional[SseMessage]:
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            # comment / heartbeat
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            self._id = value
        return None

    def _dispatch(self) -> Optional[SseMessage]:
        if not self._data:
            self._event = None
            return None
        msg = SseMessage(event=self._event or "message", data="\n".join(self._data), id=self._id)
        if self._id is not None:
            self.last_event_id = self._id
        self._event = None
        self._data = []
        self._id = None
        return msg


class StaticCredentialProvider:
    """Credential source for a fixed bearer token (acquisition/refresh live elsewhere)."""

    def __init__(self, token: Optional[str]):
        self._token = token

    async def __call__(self) -> Optional[str]:
        return self._token


class AgentApiClient:
    """aiohttp client for the conversation, transcription and synthesis endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        events_url: Optional[str] = None,
        timeout_s: float = 10.0,
        pool_size: int = 10,
    ):
        self.base_url = base_url.rstrip("/")
        self.events_url = events_url or f"{self.base_url}/events"
        self._timeout_s = timeout_s
        self._pool_size = pool_size
        self._http_session: Optional[aiohttp.ClientSession] = None

    def _get_or_create_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            connector = aiohttp.TCPConnector(
                limit=self._pool_size,
                limit_per_host=self._pool_size,
                ttl_dns_cache=300,
            )
            self._http_session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self._timeout_s),
            )
            logger.debug("HTTP connection pool created", pool_size=self._pool_size)
        return self._http_session

    async def aclose(self) -> None:
        """Close the pooled session. Safe to call multiple times."""
        if self._http_session is not None:
            try:
                await self._http_session.close()
            except Exception as e:
                logger.warning("Error closing HTTP session", error=str(e), error_type=type(e).__name__)
            finally:
                self._http_session = None

    @staticmethod
    def _headers(credential: Optional[str]) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if credential:
            headers["Authorization"] = f"Bearer {credential}"
        return headers

    async def _post(
        self,
        operation: str,
        path: str,
        payload: Dict[str, Any],
        credential: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        start_ts = time.perf_counter()
        session = self._get_or_create_session()
        try:
            async with session.post(url, json=payload, headers=self._headers(credential)) as resp:
                latency_ms = int((time.perf_counter() - start_ts) * 1000)
                if resp.status == 401:
                    raise CredentialExpiredError(
                        f"{operation}: credential rejected",
                        {"status": resp.status, "operation": operation},
                    )
                if not 200 <= resp.status < 300:
                    body = await resp.text()
                    logger.error(
                        "Remote call failed",
                        operation=operation,
                        status=resp.status,
                        latency_ms=latency_ms,
                    )
                    raise NetworkError(
                        f"{operation} failed: {resp.status}",
                        {"status": resp.status, "operation": operation, "body": body[:200]},
                    )
                data = await resp.json(content_type=None)
                logger.debug("Remote call completed", operation=operation, latency_ms=latency_ms)
                return data if isinstance(data, dict) else {}
        except (CredentialExpiredError, NetworkError):
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(
                "Remote call exception",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
                latency_ms=int((time.perf_counter() - start_ts) * 1000),
            )
            raise NetworkError(
                f"{operation} failed: {e or type(e).__name__}",
                {"operation": operation, "error_type": type(e).__name__},
            ) from e

    # --- conversation ---

    async def create_session(self, credential: Optional[str]) -> SessionInfo:
        data = await self._post(
            "create_session",
            "/conversation",
            {"clientType": "voice_loop", "clientVersion": "1.0.0"},
            credential,
        )
        session_id = data.get("sessionId") or data.get("conversationId")
        if not session_id:
            raise NetworkError("create_session: response carried no session id", {"operation": "create_session"})
        return SessionInfo(
            session_id=str(session_id),
            credential=data.get("credential") or credential,
            message_id=data.get("messageId"),
        )

    async def send_message(
        self,
        session_id: str,
        text: str,
        reply_to_id: Optional[str],
        credential: Optional[str],
    ) -> SentMessage:
        data = await self._post(
            "send_message",
            f"/conversation/{session_id}/message",
            {"text": text, "replyToMessageId": reply_to_id},
            credential,
        )
        return SentMessage(message_id=data.get("messageId"), text=data.get("text", text))

    # --- speech ---

    async def transcribe(self, audio_b64: str) -> Dict[str, Any]:
        """Returns {"text": ...}."""
        return await self._post("transcribe", "/transcribe", {"audioBase64": audio_b64})

    async def synthesize(self, text: str) -> Dict[str, Any]:
        """Returns {"audioBase64": ...}."""
        return await self._post("synthesize", "/synthesize", {"input": text})

    # --- push events ---

    async def stream_events(
        self,
        session_id: str,
        credential: Optional[str],
        on_open: Optional[Callable[[], None]] = None,
    ) -> AsyncIterator[SseMessage]:
        """
        Yield server-sent events for a session until the server closes the stream.

        on_open runs once the server has accepted the subscription.

        Transport failures raise NetworkError; the caller owns reconnection.
        """
        session = self._get_or_create_session()
        headers = self._headers(credential)
        headers["Accept"] = "text/event-stream"
        decoder = SseDecoder()
        timeout = aiohttp.ClientTimeout(total=None, sock_read=STREAM_HEARTBEAT_TIMEOUT_S)
        try:
            async with session.get(
                self.events_url,
                params={"sessionId": session_id},
                headers=headers,
                timeout=timeout,
            ) as resp:
                if resp.status == 401:
                    raise CredentialExpiredError(
                        "stream_events: credential rejected",
                        {"status": resp.status, "operation": "stream_events"},
                    )
                if resp.status != 200:
                    raise NetworkError(
                        f"stream_events failed: {resp.status}",
                        {"status": resp.status, "operation": "stream_events"},
                    )
                if on_open is not None:
                    on_open()
                async for raw in resp.content:
                    msg = decoder.feed(raw.decode("utf-8", errors="replace"))
                    if msg is not None:
                        yield msg
        except (CredentialExpiredError, NetworkError):
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(
                f"stream_events failed: {e or type(e).__name__}",
                {"operation": "stream_events", "error_type": type(e).__name__},
            ) from e
