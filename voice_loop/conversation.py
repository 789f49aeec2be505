"""
Conversation ledger.

ConversationState is the only writer of conversation entries. Remote push
events, local previews and system notices all go through its operations;
subscribers get one coalesced notification per loop iteration.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from logging_setup import get_logger, Component
from .bus import AgentReplyReady, ConversationChanged, ConversationClosed, EventBus, RemoteEvent

logger = get_logger(Component.CONVERSATION)

Subscriber = Callable[[Tuple["ConversationEntry", ...]], None]


class EntryRole(str, Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"
    PREVIEW = "preview"


class ParticipantRole(str, Enum):
    END_USER = "EndUser"
    AGENT = "Agent"
    CHATBOT = "Chatbot"
    SYSTEM = "System"


class RoutingFailure(str, Enum):
    NO_ERROR = "NoError"
    SUBMISSION_ERROR = "SubmissionError"
    ROUTING_ERROR = "RoutingError"
    UNKNOWN_ERROR = "UnknownError"


_ROLE_MAP = {
    ParticipantRole.END_USER.value: EntryRole.USER,
    ParticipantRole.AGENT.value: EntryRole.AGENT,
    ParticipantRole.CHATBOT.value: EntryRole.AGENT,
    ParticipantRole.SYSTEM.value: EntryRole.SYSTEM,
}

_PUNCT = re.compile(r"[^\w\s]")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_text(text: str) -> str:
    """Comparison key for preview/final matching."""
    return " ".join(_PUNCT.sub("", text or "").casefold().split())


@dataclass
class ConversationEntry:
    id: int
    text: str
    role: EntryRole
    display_name: str
    created_at: str = field(default_factory=_now_iso)
    fade_in: bool = False
    fade_out: bool = False
    is_final: bool = True
    message_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        return data


@dataclass(frozen=True)
class ParsedMessage:
    text: str
    role: EntryRole
    display_name: str
    message_id: Optional[str] = None


def _entry_payload(payload: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Split a push payload into (conversationEntry, decoded entryPayload)."""
    entry = payload.get("conversationEntry") or {}
    raw = entry.get("entryPayload", {})
    if isinstance(raw, str):
        raw = json.loads(raw) if raw else {}
    return entry, raw if isinstance(raw, dict) else {}


def parse_message(payload: Dict[str, Any]) -> Optional[ParsedMessage]:
    """
    Extract text, role and sender from a message payload.

    Accepts either the full entry form (conversationEntry with a JSON
    entryPayload) or a flat {text, role, displayName, messageId} body.
    Static content text wins over plain text.
    """
    entry, body = _entry_payload(payload)
    if entry:
        abstract = body.get("abstractMessage") or {}
        static = abstract.get("staticContent") or {}
        text = static.get("text") or body.get("text") or abstract.get("text") or ""
        sender_role = (entry.get("sender") or {}).get("role", "")
        display_name = entry.get("senderDisplayName") or sender_role
        message_id = entry.get("identifier") or abstract.get("id")
    else:
        text = payload.get("text") or ""
        sender_role = payload.get("role", "")
        display_name = payload.get("displayName") or sender_role
        message_id = payload.get("messageId")

    role = _ROLE_MAP.get(sender_role)
    if role is None:
        try:
            role = EntryRole(str(sender_role).lower())
        except ValueError:
            return None
    if role is EntryRole.PREVIEW:
        return None
    return ParsedMessage(text=text.strip(), role=role, display_name=display_name, message_id=message_id)


class ConversationState:
    """Ordered, subscribable ledger of conversation entries."""

    def __init__(
        self,
        *,
        bus: Optional[EventBus] = None,
        fade_s: float = 0.3,
        sleep: Callable[[float], Any] = asyncio.sleep,
        local_display_name: str = "You",
    ):
        self._bus = bus
        self.fade_s = fade_s
        self._sleep = sleep
        self.local_display_name = local_display_name

        self._entries: List[ConversationEntry] = []
        self._ids = itertools.count()
        self._subscribers: List[Subscriber] = []
        self._notify_pending = False
        self._fade_tasks: Set[asyncio.Task] = set()

        self.agent_typing = False
        self.participants: Dict[str, str] = {}
        self.conversation_closed = False

    # --- reads ---

    @property
    def entries(self) -> Tuple[ConversationEntry, ...]:
        """Arrival order."""
        return tuple(self._entries)

    def recent_first(self) -> Tuple[ConversationEntry, ...]:
        """Most-recent-first view; storage order is untouched."""
        return tuple(reversed(self._entries))

    @property
    def open_preview(self) -> Optional[ConversationEntry]:
        for entry in self._entries:
            if entry.role is EntryRole.PREVIEW and not entry.fade_out:
                return entry
        return None

    def __len__(self) -> int:
        return len(self._entries)

    # --- subscribers ---

    def add_subscriber(self, handler: Subscriber) -> Callable[[], None]:
        self._subscribers.append(handler)

        def _remove() -> None:
            self.remove_subscriber(handler)

        return _remove

    def remove_subscriber(self, handler: Subscriber) -> None:
        if handler in self._subscribers:
            self._subscribers.remove(handler)

    def _schedule_notify(self) -> None:
        if self._notify_pending:
            return
        self._notify_pending = True
        try:
            asyncio.get_running_loop().call_soon(self._flush_notify)
        except RuntimeError:
            self._flush_notify()

    def _flush_notify(self) -> None:
        self._notify_pending = False
        snapshot = self.entries
        for handler in list(self._subscribers):
            try:
                handler(snapshot)
            except Exception as e:
                logger.error("Conversation subscriber failed", error=str(e), error_type=type(e).__name__)
        if self._bus is not None:
            self._bus.publish(ConversationChanged(entry_count=len(snapshot), entries=snapshot))

    # --- writes ---

    def add_message(
        self,
        text: str,
        role: Union[EntryRole, str],
        display_name: Optional[str] = None,
        fade_in: bool = False,
        message_id: Optional[str] = None,
    ) -> ConversationEntry:
        """Append a final entry. A preview with matching text is dropped in its favour."""
        role = EntryRole(role)
        if role is EntryRole.PREVIEW:
            raise ValueError("previews go through upsert_preview()")

        text = (text or "").strip()
        if message_id is not None:
            for existing in self._entries:
                if existing.message_id == message_id:
                    return existing
            if role is EntryRole.USER:
                # Echo of a locally added utterance whose send is still unacknowledged
                local = self._unacknowledged_user_entry(text)
                if local is not None:
                    local.message_id = message_id
                    return local

        if role is EntryRole.USER:
            self._drop_matching_previews(text)

        entry = ConversationEntry(
            id=next(self._ids),
            text=text,
            role=role,
            display_name=display_name or self._default_name(role),
            fade_in=fade_in,
            message_id=message_id,
        )
        self._entries.append(entry)
        logger.debug("Entry added", entry_id=entry.id, role=role.value)
        self._schedule_notify()
        return entry

    def claim_message_id(self, entry: ConversationEntry, message_id: str) -> ConversationEntry:
        """
        Attach the remote id to a locally added entry.

        When the remote echo already landed as its own entry, the later of
        the two is removed so the utterance appears once.
        """
        for existing in self._entries:
            if existing is not entry and existing.message_id == message_id:
                keep, drop = (entry, existing) if entry.id < existing.id else (existing, entry)
                keep.message_id = message_id
                self._remove_entry(drop)
                return keep
        entry.message_id = message_id
        return entry

    def _unacknowledged_user_entry(self, text: str) -> Optional[ConversationEntry]:
        key = normalize_text(text)
        for entry in reversed(self._entries):
            if entry.role is EntryRole.USER and entry.message_id is None and normalize_text(entry.text) == key:
                return entry
        return None

    def upsert_preview(self, text: str) -> Optional[ConversationEntry]:
        """Create or update the single open preview for the local speaker."""
        text = (text or "").strip()
        if not text:
            return None
        preview = self.open_preview
        if preview is None:
            preview = ConversationEntry(
                id=next(self._ids),
                text=text,
                role=EntryRole.PREVIEW,
                display_name=f"{self.local_display_name} (speaking...)",
                is_final=False,
            )
            self._entries.append(preview)
        elif preview.text == text:
            return preview
        else:
            preview.text = text
        self._schedule_notify()
        return preview

    def resolve_preview(self) -> Optional[ConversationEntry]:
        """Fade out and later remove the open preview. No-op without one."""
        preview = self.open_preview
        if preview is None:
            return None
        preview.fade_out = True
        self._schedule_notify()
        if self.fade_s <= 0:
            self._remove_entry(preview)
            return preview
        try:
            task = asyncio.get_running_loop().create_task(self._remove_after_fade(preview))
        except RuntimeError:
            self._remove_entry(preview)
            return preview
        self._fade_tasks.add(task)
        task.add_done_callback(self._fade_tasks.discard)
        return preview

    def discard_preview(self) -> None:
        """Drop any preview immediately (stale preview at turn start)."""
        stale = [e for e in self._entries if e.role is EntryRole.PREVIEW]
        for entry in stale:
            self._entries.remove(entry)
        if stale:
            self._schedule_notify()

    async def _remove_after_fade(self, preview: ConversationEntry) -> None:
        await self._sleep(self.fade_s)
        self._remove_entry(preview)

    def _remove_entry(self, entry: ConversationEntry) -> None:
        if entry in self._entries:
            self._entries.remove(entry)
            self._schedule_notify()

    def _drop_matching_previews(self, text: str) -> None:
        key = normalize_text(text)
        for entry in [e for e in self._entries if e.role is EntryRole.PREVIEW]:
            if normalize_text(entry.text) == key:
                self._entries.remove(entry)
                logger.debug("Preview superseded by final message", entry_id=entry.id)

    def clear(self) -> None:
        for task in list(self._fade_tasks):
            task.cancel()
        self._fade_tasks.clear()
        self._entries = []
        self.agent_typing = False
        self.participants = {}
        self.conversation_closed = False
        self._schedule_notify()

    def _default_name(self, role: EntryRole) -> str:
        if role is EntryRole.USER:
            return self.local_display_name
        if role is EntryRole.AGENT:
            return "Agent"
        return "System"

    # --- remote events ---

    def handle_remote_event(self, event: Union[RemoteEvent, Dict[str, Any]]) -> Optional[ConversationEntry]:
        """Classify a push event and apply it. Unknown kinds are logged and ignored."""
        if isinstance(event, RemoteEvent):
            kind, payload = event.kind, event.payload
        else:
            kind, payload = event.get("kind") or event.get("type", ""), event.get("payload") or {}

        handler = self._handlers().get(kind)
        if handler is None:
            logger.warning("Unsupported remote event ignored", kind=kind)
            return None
        try:
            return handler(payload)
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning("Malformed remote event ignored", kind=kind, error=str(e), error_type=type(e).__name__)
            return None

    def _handlers(self) -> Dict[str, Callable[[Dict[str, Any]], Optional[ConversationEntry]]]:
        return {
            "message": self._on_message,
            "routing": self._on_routing,
            "participant": self._on_participant,
            "typing_started": self._on_typing_started,
            "typing_stopped": self._on_typing_stopped,
            "delivery": self._on_ack,
            "read": self._on_ack,
            "close": self._on_close,
        }

    def _on_message(self, payload: Dict[str, Any]) -> Optional[ConversationEntry]:
        parsed = parse_message(payload)
        if parsed is None or not parsed.text:
            logger.debug("Message without usable text ignored")
            return None
        entry = self.add_message(
            parsed.text,
            parsed.role,
            parsed.display_name or None,
            fade_in=True,
            message_id=parsed.message_id,
        )
        if parsed.role is EntryRole.AGENT:
            self.agent_typing = False
            logger.info_pii("Agent reply received", text=entry.text)
            if self._bus is not None:
                self._bus.publish(AgentReplyReady(entry_id=entry.id, text=entry.text))
        return entry

    def _on_routing(self, payload: Dict[str, Any]) -> Optional[ConversationEntry]:
        _, body = _entry_payload(payload)
        routing_type = body.get("routingType") or payload.get("routingType")
        failure = body.get("failureType") or payload.get("failureType") or RoutingFailure.NO_ERROR.value
        if failure == RoutingFailure.NO_ERROR.value:
            logger.info("Routing succeeded", routing_type=routing_type)
            return None
        logger.warning("Routing failed", routing_type=routing_type, failure_type=failure)
        return self.add_message("Unable to connect you to an agent.", EntryRole.SYSTEM)

    def _on_participant(self, payload: Dict[str, Any]) -> None:
        _, body = _entry_payload(payload)
        for change in body.get("entries") or payload.get("entries") or []:
            participant = change.get("participant") or {}
            key = participant.get("subject") or change.get("displayName") or participant.get("role")
            if not key:
                continue
            if str(change.get("operation", "")).lower() == "remove":
                self.participants.pop(key, None)
            else:
                self.participants[key] = participant.get("role") or ""
        self._schedule_notify()
        return None

    def _on_typing_started(self, payload: Dict[str, Any]) -> None:
        self.agent_typing = True
        self._schedule_notify()

    def _on_typing_stopped(self, payload: Dict[str, Any]) -> None:
        self.agent_typing = False
        self._schedule_notify()

    def _on_ack(self, payload: Dict[str, Any]) -> None:
        # Acknowledgements carry no ledger change
        return None

    def _on_close(self, payload: Dict[str, Any]) -> Optional[ConversationEntry]:
        self.conversation_closed = True
        self.agent_typing = False
        entry = self.add_message("The conversation has ended.", EntryRole.SYSTEM)
        if self._bus is not None:
            self._bus.publish(ConversationClosed(session_id=str(payload.get("conversationId") or "")))
        return entry
