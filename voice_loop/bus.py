"""
Typed publish/subscribe bus shared by the turn-loop components.

Payloads are small frozen dataclasses; the payload class is the tag. Handlers
are called synchronously in subscription order. A handler that returns a
coroutine gets it scheduled on the running loop, so publishers never block on
subscribers.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Type, TypeVar

from logging_setup import get_logger, Component

logger = get_logger(Component.VOICE_LOOP)

E = TypeVar("E")


@dataclass(frozen=True)
class SilenceProgress:
    """Smoothed silence so far; fraction is relative to the trigger threshold."""

    seconds: float
    fraction: float


@dataclass(frozen=True)
class SilenceDetected:
    seconds: float


@dataclass(frozen=True)
class TranscriptPreview:
    text: str


@dataclass(frozen=True)
class RemoteEvent:
    """A push-stream envelope that passed session filtering."""

    kind: str
    session_id: str
    payload: Dict[str, Any]
    timestamp: str


@dataclass(frozen=True)
class ConnectionStatusChanged:
    status: str
    retry_count: int


@dataclass(frozen=True)
class ConnectionFailed:
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AgentReplyReady:
    entry_id: int
    text: str


@dataclass(frozen=True)
class ConversationClosed:
    session_id: str


@dataclass(frozen=True)
class TurnStateChanged:
    previous: str
    current: str
    turn_id: Optional[str] = None


@dataclass(frozen=True)
class ErrorRaised:
    code: str
    message: str
    stage: str


@dataclass(frozen=True)
class ConversationChanged:
    entry_count: int
    entries: Tuple[Any, ...] = ()


class EventBus:
    """Typed event bus keyed by payload class."""

    def __init__(self):
        self._handlers: Dict[type, List[Callable[[Any], Any]]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, event_type: Type[E], handler: Callable[[E], Any]) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""
        self._handlers[event_type].append(handler)

        def _unsubscribe() -> None:
            handlers = self._handlers.get(event_type)
            if handlers and handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def publish(self, event: Any) -> None:
        for handler in list(self._handlers.get(type(event), ())):
            try:
                result = handler(event)
            except Exception as e:
                logger.error(
                    "Event handler failed",
                    event_type=type(event).__name__,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue
            if inspect.isawaitable(result):
                self._schedule(result, type(event).__name__)

    def _schedule(self, awaitable: Any, event_name: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Async handler dropped: no running loop", event_type=event_name)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = loop.create_task(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Async event handler failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )

    def handler_count(self, event_type: type) -> int:
        return len(self._handlers.get(event_type, ()))

    async def drain(self) -> None:
        """Wait for scheduled async handlers (used on shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
