"""Tool execution runtime.

Identical requests coalesce onto one in-flight backend call. Each waiter
gets a soft-timeout notice if the call runs long, and exactly one terminal
notice (result or error) when it settles. Slow calls are never cancelled.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from collections.abc import Awaitable, Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from volition.loop import templates
from volition.loop.events import EventBus, EventType

LOGGER = logging.getLogger("volition.tools.runtime")

_WHITESPACE_RE = re.compile(r"\s+")
_WRAPPERS = {'"': '"', "'": "'", "`": "`", "<": ">", "[": "]", "(": ")"}


@dataclass(frozen=True)
class SearchResult:
    synthesis: str
    sources: list[dict[str, str]] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.synthesis.strip()


@dataclass(frozen=True)
class ImageResult:
    image_b64: str | None
    caption: str = ""

    def is_empty(self) -> bool:
        return not self.image_b64


@dataclass(frozen=True)
class FileResult:
    path: str
    content: str
    truncated: bool = False

    def is_empty(self) -> bool:
        return not self.content


@dataclass(frozen=True)
class ToolFiller:
    text: str
    retry_after_sec: float

    def is_empty(self) -> bool:
        return False


class ToolBackend(Protocol):
    def __call__(self, arg: str, reason: str) -> Awaitable[Any]: ...


def normalize_arg(raw: str) -> str:
    text = (raw or "").strip()
    while len(text) >= 2 and _WRAPPERS.get(text[0]) == text[-1]:
        text = text[1:-1].strip()
    return _WHITESPACE_RE.sub(" ", text)


def dedup_key(tool: str, raw: str) -> str:
    return f"{tool.upper()}:{normalize_arg(raw).lower()}"


def _is_empty(result: Any) -> bool:
    if result is None:
        return True
    if isinstance(result, str):
        return not result.strip()
    is_empty = getattr(result, "is_empty", None)
    return bool(is_empty()) if callable(is_empty) else False


@dataclass(frozen=True)
class ToolEvent:
    type: EventType
    tool: str
    query: str
    intent_id: str
    key: str
    result: Any = None
    error: str | None = None
    late: bool = False
    throttled: bool = False

    @property
    def terminal(self) -> bool:
        return self.type in {EventType.TOOL_RESULT, EventType.TOOL_ERROR}

    @property
    def ok(self) -> bool:
        return self.type == EventType.TOOL_RESULT and not self.throttled


ToolListener = Callable[[ToolEvent], None]


class ToolTicket:
    """One waiter's view of a (possibly shared) tool call."""

    def __init__(
        self,
        *,
        intent_id: str,
        tool: str,
        query: str,
        key: str,
        trace_id: str | None = None,
        deduplicated: bool = False,
        throttled: bool = False,
        binge_count: int = 0,
        listener: ToolListener | None = None,
    ) -> None:
        loop = asyncio.get_running_loop()
        self.intent_id = intent_id
        self.tool = tool
        self.query = query
        self.key = key
        self.trace_id = trace_id
        self.deduplicated = deduplicated
        self.throttled = throttled
        self.binge_count = binge_count
        self.listener = listener
        self.events: list[ToolEvent] = []
        self._first: asyncio.Future[ToolEvent] = loop.create_future()
        self._terminal: asyncio.Future[ToolEvent] = loop.create_future()

    def deliver(self, event: ToolEvent) -> None:
        self.events.append(event)
        if not self._first.done():
            self._first.set_result(event)
        if event.terminal and not self._terminal.done():
            self._terminal.set_result(event)
        if self.listener is not None:
            try:
                self.listener(event)
            except Exception as exc:
                LOGGER.warning("tool listener failed intent=%s type=%s error=%r", self.intent_id, event.type.value, exc)

    def attach(self, listener: ToolListener) -> None:
        """Set the listener, replaying anything delivered before it was attached."""
        self.listener = None
        for event in list(self.events):
            try:
                listener(event)
            except Exception as exc:
                LOGGER.warning("tool listener failed intent=%s type=%s error=%r", self.intent_id, event.type.value, exc)
        self.listener = listener

    async def first_notice(self) -> ToolEvent:
        return await asyncio.shield(self._first)

    async def settled(self) -> ToolEvent:
        return await asyncio.shield(self._terminal)


@dataclass
class InFlightOperation:
    key: str
    tool: str
    arg: str
    started_at: float
    task: asyncio.Task | None = None
    waiters: dict[str, ToolTicket] = field(default_factory=dict)
    timeout_notified: set[str] = field(default_factory=set)
    settled: bool = False


class InFlightRegistry:
    def __init__(self) -> None:
        self._ops: dict[str, InFlightOperation] = {}

    def get(self, key: str) -> InFlightOperation | None:
        return self._ops.get(key)

    def register(self, op: InFlightOperation) -> None:
        self._ops[op.key] = op

    def remove(self, key: str, op: InFlightOperation | None = None) -> None:
        current = self._ops.get(key)
        if current is not None and (op is None or current is op):
            del self._ops[key]

    def __len__(self) -> int:
        return len(self._ops)

    def __iter__(self) -> Iterator[InFlightOperation]:
        return iter(list(self._ops.values()))


class BingeCooldown:
    """Escalating refractory window: each accepted call lengthens the next wait."""

    def __init__(self, base_window_sec: float = 60.0) -> None:
        self.base_window_sec = base_window_sec
        self.binge_count = 0
        self.last_accepted_at: float | None = None

    def _refresh(self, now: float) -> None:
        if self.last_accepted_at is not None and now - self.last_accepted_at > self.base_window_sec * 10:
            self.binge_count = 0

    def remaining(self, now: float) -> float:
        if self.last_accepted_at is None:
            return 0.0
        self._refresh(now)
        required = self.base_window_sec * (self.binge_count + 1)
        return max(0.0, required - (now - self.last_accepted_at))

    def record(self, now: float) -> int:
        self._refresh(now)
        self.binge_count += 1
        self.last_accepted_at = now
        return self.binge_count


class ToolRuntime:
    def __init__(
        self,
        backends: Mapping[str, ToolBackend],
        *,
        bus: EventBus | None = None,
        timeout_sec: float = 20.0,
        cooldowns: Mapping[str, BingeCooldown] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backends = {name.upper(): backend for name, backend in backends.items()}
        self.bus = bus or EventBus()
        self.timeout_sec = timeout_sec
        self.cooldowns = {name.upper(): cooldown for name, cooldown in (cooldowns or {}).items()}
        self.registry = InFlightRegistry()
        self._clock = clock

    def _emit(self, event: ToolEvent, trace_id: str | None, **extra: Any) -> None:
        payload = {
            "intent_id": event.intent_id,
            "tool": event.tool,
            "query": event.query,
            "key": event.key,
            "late": event.late,
        }
        if event.error is not None:
            payload["error"] = event.error
        payload.update(extra)
        self.bus.emit(event.type, payload, trace_id=trace_id)

    async def invoke(
        self,
        tool: str,
        arg: str,
        *,
        intent_id: str | None = None,
        reason: str = "",
        trace_id: str | None = None,
        listener: ToolListener | None = None,
    ) -> ToolTicket:
        tool = tool.upper()
        query = normalize_arg(arg)
        key = dedup_key(tool, arg)
        intent_id = intent_id or uuid.uuid4().hex
        now = self._clock()

        backend = self.backends.get(tool)
        if backend is None:
            ticket = ToolTicket(intent_id=intent_id, tool=tool, query=query, key=key, trace_id=trace_id, listener=listener)
            event = ToolEvent(EventType.TOOL_ERROR, tool, query, intent_id, key, error=f"{tool} has no backend")
            self._emit(event, trace_id)
            ticket.deliver(event)
            return ticket

        cooldown = self.cooldowns.get(tool)
        if cooldown is not None:
            remaining = cooldown.remaining(now)
            if remaining > 0:
                ticket = ToolTicket(
                    intent_id=intent_id,
                    tool=tool,
                    query=query,
                    key=key,
                    trace_id=trace_id,
                    throttled=True,
                    binge_count=cooldown.binge_count,
                    listener=listener,
                )
                filler = ToolFiller(text=templates.refractory_filler(remaining), retry_after_sec=remaining)
                self.bus.emit(
                    EventType.TOOL_THROTTLED,
                    {"intent_id": intent_id, "tool": tool, "query": query, "retry_after_sec": round(remaining, 3)},
                    trace_id=trace_id,
                )
                LOGGER.info("tool throttled tool=%s remaining=%.1fs binge=%s", tool, remaining, cooldown.binge_count)
                ticket.deliver(ToolEvent(EventType.TOOL_RESULT, tool, query, intent_id, key, result=filler, throttled=True))
                return ticket

        op = self.registry.get(key)
        deduplicated = op is not None and not op.settled
        binge_count = cooldown.binge_count if cooldown is not None else 0
        if not deduplicated:
            if cooldown is not None:
                # ticket keeps the binge count from before this call
                cooldown.record(now)
            op = InFlightOperation(key=key, tool=tool, arg=query, started_at=now)
            self.registry.register(op)

        ticket = ToolTicket(
            intent_id=intent_id,
            tool=tool,
            query=query,
            key=key,
            trace_id=trace_id,
            deduplicated=deduplicated,
            binge_count=binge_count,
            listener=listener,
        )
        op.waiters[intent_id] = ticket
        self.bus.emit(
            EventType.TOOL_INTENT,
            {"intent_id": intent_id, "tool": tool, "query": query, "key": key, "reason": reason, "deduplicated": deduplicated},
            trace_id=trace_id,
        )

        if not deduplicated:
            op.task = asyncio.create_task(self._call(backend, query, reason))
            op.task.add_done_callback(lambda task, op=op: self._settle(op, task))

        delay = max(0.0, op.started_at + self.timeout_sec - self._clock())
        asyncio.get_running_loop().call_later(delay, self._check_timeout, op, intent_id)
        return ticket

    async def _call(self, backend: ToolBackend, arg: str, reason: str) -> Any:
        return await backend(arg, reason)

    def _check_timeout(self, op: InFlightOperation, intent_id: str) -> bool:
        if op.settled or intent_id not in op.waiters or intent_id in op.timeout_notified:
            return False
        op.timeout_notified.add(intent_id)
        ticket = op.waiters[intent_id]
        event = ToolEvent(EventType.TOOL_TIMEOUT, op.tool, op.arg, intent_id, op.key)
        LOGGER.info("tool soft timeout tool=%s key=%s intent=%s", op.tool, op.key, intent_id)
        self._emit(event, ticket.trace_id, timeout_sec=self.timeout_sec)
        ticket.deliver(event)
        return True

    def check_timeouts(self) -> int:
        """Notify every overdue waiter that has not been told yet; returns how many were notified."""
        now = self._clock()
        notified = 0
        for op in self.registry:
            if now - op.started_at < self.timeout_sec:
                continue
            for intent_id in list(op.waiters):
                if self._check_timeout(op, intent_id):
                    notified += 1
        return notified

    def _settle(self, op: InFlightOperation, task: asyncio.Task) -> None:
        result: Any = None
        error: str | None = None
        try:
            if task.cancelled():
                error = "cancelled"
            elif task.exception() is not None:
                exc = task.exception()
                error = str(exc) or type(exc).__name__
            else:
                result = task.result()
                if _is_empty(result):
                    error = "Empty result"
        finally:
            op.settled = True
            self.registry.remove(op.key, op)

        if error is not None:
            LOGGER.warning("tool failed tool=%s key=%s error=%s", op.tool, op.key, error)

        for intent_id, ticket in list(op.waiters.items()):
            if error is not None:
                event = ToolEvent(EventType.TOOL_ERROR, op.tool, op.arg, intent_id, op.key, error=error)
            else:
                event = ToolEvent(
                    EventType.TOOL_RESULT,
                    op.tool,
                    op.arg,
                    intent_id,
                    op.key,
                    result=result,
                    late=intent_id in op.timeout_notified,
                )
            self._emit(event, ticket.trace_id)
            ticket.deliver(event)
