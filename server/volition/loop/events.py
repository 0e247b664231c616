from __future__ import annotations

import logging
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque

LOGGER = logging.getLogger("volition.loop.events")


class EventType(str, Enum):
    TICK_START = "TICK_START"
    TICK_SKIPPED = "TICK_SKIPPED"
    TICK_END = "TICK_END"
    THINK_MODE_SELECTED = "THINK_MODE_SELECTED"
    GOAL_FORMED = "GOAL_FORMED"
    GOAL_EXECUTED = "GOAL_EXECUTED"
    GOAL_EXPIRED = "GOAL_EXPIRED"
    AUTONOMY_BUDGET_EXHAUSTED = "AUTONOMY_BUDGET_EXHAUSTED"
    SPEECH_SUPPRESSED = "SPEECH_SUPPRESSED"
    MODEL_ERROR = "MODEL_ERROR"
    COGNITIVE_VIOLATION = "COGNITIVE_VIOLATION"
    INTENT_EXECUTED = "INTENT_EXECUTED"
    INTENT_BLOCKED = "INTENT_BLOCKED"
    INTENT_NOT_EXECUTED = "INTENT_NOT_EXECUTED"
    TOOL_INTENT = "TOOL_INTENT"
    TOOL_THROTTLED = "TOOL_THROTTLED"
    TOOL_RESULT = "TOOL_RESULT"
    TOOL_ERROR = "TOOL_ERROR"
    TOOL_TIMEOUT = "TOOL_TIMEOUT"


@dataclass(frozen=True)
class LoopEvent:
    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    trace_id: str | None = None
    ts: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "trace_id": self.trace_id,
            "ts": self.ts,
            "payload": self.payload,
        }


EventListener = Callable[[LoopEvent], None]


class EventBus:
    """Fire-and-forget telemetry fan-out with a bounded replay buffer."""

    def __init__(self, history_limit: int = 500) -> None:
        self.history: Deque[LoopEvent] = deque(maxlen=max(1, history_limit))
        self._listeners: list[EventListener] = []

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: LoopEvent) -> LoopEvent:
        self.history.append(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                LOGGER.warning("event listener failed type=%s error=%r", event.type.value, exc)
        return event

    def emit(self, event_type: EventType, payload: dict[str, Any] | None = None, trace_id: str | None = None) -> LoopEvent:
        return self.publish(LoopEvent(type=event_type, payload=dict(payload or {}), trace_id=trace_id))

    def of_type(self, event_type: EventType) -> list[LoopEvent]:
        return [event for event in self.history if event.type == event_type]

    def recent(self, limit: int = 200) -> list[LoopEvent]:
        if limit <= 0:
            return []
        return list(self.history)[-limit:]

    def clear(self) -> None:
        self.history.clear()


def _noop(*_args: Any, **_kwargs: Any) -> None:
    return None


@dataclass
class LoopCallbacks:
    """Sinks the host wires into a tick.

    ``on_message(role, text, type, image=None, sources=None)`` receives every
    user-visible line in emission order. ``on_soma_update`` and
    ``on_limbic_update`` receive updater functions, not snapshots.
    """

    on_message: Callable[..., None] = _noop
    on_thought: Callable[[str], None] = _noop
    on_soma_update: Callable[[Callable[[Any], Any]], None] = _noop
    on_limbic_update: Callable[[Callable[[Any], Any]], None] = _noop
