"""
Bounded in-memory store for structured loop events.

Backs the status API: events can be filtered by session, type, component,
severity, turn (correlation id) and time, and one turn can be read back as a
timeline.
"""

from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

_ENVELOPE_KEYS = frozenset({"ts", "session_id", "component", "event_type", "severity", "correlation_id", "pii"})
_NO_PII = {"contains_pii": False, "fields": [], "handling": "none"}


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return datetime.now(timezone.utc)


@dataclass
class StoredEvent:
    ts: datetime
    session_id: str
    component: str
    event_type: str
    severity: str
    correlation_id: str
    pii: Dict[str, Any] = field(default_factory=lambda: dict(_NO_PII))
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, event: Dict[str, Any]) -> "StoredEvent":
        session_id = event.get("session_id") or ""
        return cls(
            ts=_parse_ts(event.get("ts")),
            session_id=session_id,
            component=event.get("component", "unknown"),
            event_type=event.get("event_type", "unknown"),
            severity=event.get("severity", "info"),
            correlation_id=event.get("correlation_id") or session_id,
            pii=event.get("pii") or dict(_NO_PII),
            payload={k: v for k, v in event.items() if k not in _ENVELOPE_KEYS},
        )

    def matches(
        self,
        session_id: Optional[str],
        event_type: Optional[str],
        component: Optional[str],
        severity: Optional[str],
        correlation_id: Optional[str],
        since: Optional[datetime],
    ) -> bool:
        return (
            (not session_id or self.session_id == session_id)
            and (not event_type or self.event_type == event_type)
            and (not component or self.component == component)
            and (not severity or self.severity == severity)
            and (not correlation_id or self.correlation_id == correlation_id)
            and (since is None or self.ts >= since)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ts": self.ts.isoformat(),
            "session_id": self.session_id,
            "component": self.component,
            "event_type": self.event_type,
            "severity": self.severity,
            "correlation_id": self.correlation_id,
            "pii": self.pii,
            **self.payload,
        }


class EventStore:
    """Oldest events are evicted first once max_events is reached."""

    def __init__(self, max_events: int = 10000):
        self._max_events = max_events
        self._events: Deque[StoredEvent] = deque(maxlen=max_events)

    def store(self, event: Dict[str, Any]) -> None:
        self._events.append(StoredEvent.from_dict(event))

    def query(
        self,
        session_id: Optional[str] = None,
        event_type: Optional[str] = None,
        component: Optional[str] = None,
        correlation_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        severity: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Matching events, oldest first. Every filter is optional."""
        results: List[Dict[str, Any]] = []
        for event in self._events:
            if not event.matches(session_id, event_type, component, severity, correlation_id, since):
                continue
            results.append(event.to_dict())
            if limit and len(results) >= limit:
                break
        return results

    def turn_timeline(self, turn_id: str) -> List[Dict[str, Any]]:
        """
        Events of one turn as {offset_ms, component, event_type, severity}.

        Offsets are relative to the turn's first event, which makes the
        capture -> transcript -> submit -> reply latency readable at a glance.
        """
        events = [e for e in self._events if e.correlation_id == turn_id]
        if not events:
            return []
        origin = events[0].ts
        return [
            {
                "offset_ms": int((e.ts - origin).total_seconds() * 1000),
                "component": e.component,
                "event_type": e.event_type,
                "severity": e.severity,
            }
            for e in events
        ]

    def clear(self) -> None:
        self._events.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_events": len(self._events),
            "max_events": self._max_events,
            "by_event_type": dict(Counter(e.event_type for e in self._events)),
            "oldest_event_ts": self._events[0].ts.isoformat() if self._events else None,
            "newest_event_ts": self._events[-1].ts.isoformat() if self._events else None,
        }


event_store = EventStore()
