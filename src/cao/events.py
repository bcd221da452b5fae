"""Progress events published while a session runs."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

LOGGER = logging.getLogger(__name__)
TELEMETRY_LOGGER = logging.getLogger("cao.telemetry")


class EventType(str, Enum):
    SESSION_CREATED = "session_created"
    LLM_STREAMING = "llm_streaming"
    LLM_COMPLETE = "llm_complete"
    OPERATION_START = "operation_start"
    OPERATION_COMPLETE = "operation_complete"
    ITERATION_COMPLETE = "iteration_complete"
    ERROR = "error"


def _serialise_event_value(value: Any) -> Any:
    """Convert event payload values into JSON-friendly representations."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple, set)):
        return [_serialise_event_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _serialise_event_value(child) for key, child in value.items()}
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return _serialise_event_value(to_dict())
    return str(value)


@dataclass(slots=True)
class AgentEvent:
    """Single event with its session, iteration and payload."""

    type: EventType
    session_id: str
    iteration: int = 0
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.type.value,
            "session_id": self.session_id,
            "iteration": self.iteration,
        }
        for key, value in self.payload.items():
            data.setdefault(key, _serialise_event_value(value))
        return data

    def to_sse(self) -> str:
        """Render as a server-sent-events frame."""
        return f"data: {json.dumps(self.to_dict(), ensure_ascii=False)}\n\n"


Subscriber = Callable[[AgentEvent], None]


class EventEmitter:
    """Fan events out to plain callables.

    Subscribers run synchronously in registration order. A subscriber that
    raises is logged and skipped so delivery never interrupts the loop.
    """

    def __init__(self, subscribers: Optional[List[Subscriber]] = None, *, telemetry: bool = True) -> None:
        self._subscribers: List[Subscriber] = list(subscribers or [])
        self._telemetry = telemetry

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register ``subscriber`` and return a callable that removes it."""
        self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return _unsubscribe

    def emit(
        self,
        event_type: EventType,
        session_id: str,
        *,
        iteration: int = 0,
        **payload: Any,
    ) -> AgentEvent:
        event = AgentEvent(
            type=EventType(event_type),
            session_id=session_id,
            iteration=iteration,
            payload=payload,
        )
        if self._telemetry and event.type is not EventType.LLM_STREAMING:
            _emit_telemetry(event)
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:  # noqa: BLE001 - a broken listener must not stop the session
                LOGGER.exception("Event subscriber %r failed for %s", subscriber, event.type.value)
        return event


class RecordingEmitter(EventEmitter):
    """Emitter that keeps every event in memory."""

    def __init__(self) -> None:
        super().__init__(telemetry=False)
        self.events: List[AgentEvent] = []
        self.subscribe(self.events.append)

    def types(self) -> List[str]:
        return [event.type.value for event in self.events]


def _emit_telemetry(event: AgentEvent) -> None:
    payload = {"event": event.type.value, "timestamp": event.timestamp.isoformat()}
    payload.update(event.to_dict())
    payload.pop("type", None)
    try:
        message = json.dumps(payload, separators=(",", ":"), ensure_ascii=True)
    except (TypeError, ValueError):
        fallback = {key: _serialise_event_value(value) for key, value in payload.items()}
        message = json.dumps(fallback, separators=(",", ":"), ensure_ascii=True)
    TELEMETRY_LOGGER.info(message)


__all__ = ["AgentEvent", "EventEmitter", "EventType", "RecordingEmitter", "Subscriber"]
