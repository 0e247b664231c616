from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Deque

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from volition.agents.context import AutonomyBackoff, AutonomyBudget, LoopContext, SomaState
from volition.config import LoopConfig
from volition.db.models import AgentSwitchIn, AutonomyIn, SessionCreateIn, TickIn
from volition.loop.decider import CortexDecider
from volition.loop.engine import TickEngine
from volition.loop.events import EventBus, LoopCallbacks, LoopEvent
from volition.loop.gate import reset_full_state
from volition.loop.modes import AutonomyBudgetTracker
from volition.tools.backends import ImageBackend, ResearchBackend
from volition.tools.runtime import BingeCooldown, ToolRuntime
from volition.tools.workspace import WorkspaceBackend

LOGGER = logging.getLogger("volition.main")


def _load_env_from_repo_root() -> None:
    # server/volition/main.py -> repo root is 2 levels up from "server"
    env_path = Path(__file__).resolve().parents[2] / ".env"
    if not env_path.exists():
        return

    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue

        value = value.strip()
        if value and value[0] == value[-1] and value[0] in {'"', "'"}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


_load_env_from_repo_root()


class WsHub:
    def __init__(self) -> None:
        self._clients: set[WebSocket] = set()
        self._lock = asyncio.Lock()

    @property
    def has_clients(self) -> bool:
        return bool(self._clients)

    async def add(self, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._clients.add(ws)

    async def remove(self, ws: WebSocket) -> None:
        async with self._lock:
            self._clients.discard(ws)

    async def send(self, ws: WebSocket, message: dict) -> None:
        await ws.send_text(json.dumps(message, ensure_ascii=False))

    async def broadcast(self, message: dict) -> None:
        async with self._lock:
            clients = list(self._clients)
        if not clients:
            return

        serialized = json.dumps(message, ensure_ascii=False, default=str)
        stale: list[WebSocket] = []
        for ws in clients:
            try:
                await ws.send_text(serialized)
            except Exception:
                stale.append(ws)
        if stale:
            async with self._lock:
                for ws in stale:
                    self._clients.discard(ws)


@dataclass
class Session:
    id: str
    ctx: LoopContext
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    messages: Deque[dict] = field(default_factory=lambda: deque(maxlen=500))
    ticks: int = 0

    def to_payload(self) -> dict:
        return {"session_id": self.id, "ticks": self.ticks, "state": self.ctx.to_payload()}


def build_engine(config: LoopConfig, bus: EventBus) -> TickEngine:
    decider = CortexDecider.from_env()
    runtime = ToolRuntime(
        {
            "SEARCH": ResearchBackend(decider.client),
            "VISUALIZE": ImageBackend(decider.client),
            "READ_FILE": WorkspaceBackend(Path(config.runtime.workspace_root), config.runtime.workspace_max_chars),
        },
        bus=bus,
        timeout_sec=config.runtime.timeout_sec,
        cooldowns={"VISUALIZE": BingeCooldown(config.runtime.visual_base_cooldown_sec)},
    )
    return TickEngine(model=decider, runtime=runtime, bus=bus, config=config)


TICK_INTERVAL_SEC = float(os.getenv("TICK_INTERVAL_SEC", "2.0"))
BUDGET_WINDOW_SEC = float(os.getenv("BUDGET_WINDOW_SEC", "60.0"))

config = LoopConfig.from_env()
bus = EventBus(history_limit=int(os.getenv("EVENT_HISTORY_LIMIT", "1000")))
engine = build_engine(config, bus)
sessions: dict[str, Session] = {}
hub = WsHub()
_pending_broadcasts: set[asyncio.Task] = set()

app = FastAPI(title="Volition Loop Server", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _schedule_broadcast(message: dict) -> None:
    if not hub.has_clients:
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return
    task = loop.create_task(hub.broadcast(message))
    _pending_broadcasts.add(task)
    task.add_done_callback(_pending_broadcasts.discard)


def _on_bus_event(event: LoopEvent) -> None:
    _schedule_broadcast({"type": "event", "payload": event.to_payload()})


bus.subscribe(_on_bus_event)


def _session_or_404(session_id: str) -> Session:
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="session not found")
    return session


def _session_callbacks(session: Session, sink: list[dict] | None = None) -> LoopCallbacks:
    def on_message(
        role: str,
        text: str,
        message_type: str,
        image: str | None = None,
        sources: list[dict] | None = None,
    ) -> None:
        message: dict[str, Any] = {"role": role, "text": text, "type": message_type, "ts": time.time()}
        if image is not None:
            message["image"] = image
        if sources:
            message["sources"] = sources
        session.messages.append(message)
        if sink is not None:
            sink.append(message)
        _schedule_broadcast({"type": "message", "session_id": session.id, "payload": message})

    def on_thought(text: str) -> None:
        on_message("assistant", text, "thought")

    return LoopCallbacks(on_message=on_message, on_thought=on_thought)


async def run_session_tick(session: Session, user_input: str | None) -> list[dict]:
    emitted: list[dict] = []
    async with session.lock:
        await engine.run_single_step(session.ctx, user_input, _session_callbacks(session, emitted))
        session.ticks += 1
    await hub.broadcast({"type": "session_state", "payload": session.to_payload()})
    return emitted


async def tick_loop() -> None:
    while True:
        await asyncio.sleep(max(0.1, TICK_INTERVAL_SEC))
        started_at = time.perf_counter()
        for session in list(sessions.values()):
            ctx = session.ctx
            if session.lock.locked():
                continue
            if not ctx.autonomous_mode and ctx.goal_state.active_goal is None:
                continue
            try:
                await run_session_tick(session, None)
            except Exception as exc:
                LOGGER.warning("autonomous tick failed session=%s error=%r", session.id, exc)

        tick_ms = (time.perf_counter() - started_at) * 1000.0
        avg = getattr(app.state, "avg_tick_ms", 0.0)
        app.state.avg_tick_ms = tick_ms if avg <= 0.0 else (avg * 0.88) + (tick_ms * 0.12)
        app.state.last_tick_ms = tick_ms


async def budget_reset_loop() -> None:
    while True:
        await asyncio.sleep(max(1.0, BUDGET_WINDOW_SEC))
        for session in list(sessions.values()):
            AutonomyBudgetTracker(session.ctx.budget).reset()


@app.on_event("startup")
async def startup() -> None:
    app.state.last_tick_ms = 0.0
    app.state.avg_tick_ms = 0.0
    app.state.tick_task = asyncio.create_task(tick_loop())
    app.state.budget_task = asyncio.create_task(budget_reset_loop())


@app.on_event("shutdown")
async def shutdown() -> None:
    for name in ("tick_task", "budget_task"):
        task = getattr(app.state, name, None)
        if task:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


@app.get("/api/health")
async def health() -> dict:
    return {
        "status": "ok",
        "model_enabled": getattr(engine.model, "enabled", False),
        "sessions": len(sessions),
        "in_flight_tools": len(engine.runtime.registry),
    }


@app.post("/api/sessions")
async def create_session(payload: SessionCreateIn) -> dict:
    ctx = LoopContext(
        agent_id=payload.agent_id,
        autonomous_mode=payload.autonomous_mode,
        budget=AutonomyBudget(count=0, limit=payload.autonomous_limit_per_minute),
        gate_state=reset_full_state(),
        silence_start=time.time(),
    )
    if payload.energy is not None:
        ctx.soma = SomaState(energy=payload.energy)
    session = Session(id=uuid.uuid4().hex[:12], ctx=ctx)
    sessions[session.id] = session
    return session.to_payload()


@app.get("/api/sessions")
async def list_sessions() -> list[dict]:
    return [session.to_payload() for session in sessions.values()]


@app.get("/api/sessions/{session_id}")
async def get_session(session_id: str) -> dict:
    return _session_or_404(session_id).to_payload()


@app.post("/api/sessions/{session_id}/tick")
async def tick_session(session_id: str, payload: TickIn) -> dict:
    session = _session_or_404(session_id)
    emitted = await run_session_tick(session, payload.input)
    return {"messages": emitted, **session.to_payload()}


@app.post("/api/sessions/{session_id}/agent")
async def switch_agent(session_id: str, payload: AgentSwitchIn) -> dict:
    session = _session_or_404(session_id)
    async with session.lock:
        ctx = session.ctx
        ctx.agent_id = payload.agent_id
        ctx.gate_state = reset_full_state()
        ctx.goal_state.active_goal = None
        AutonomyBudgetTracker(ctx.budget).reset()
        ctx.autonomy_backoff = AutonomyBackoff()
    return session.to_payload()


@app.post("/api/sessions/{session_id}/autonomy")
async def set_autonomy(session_id: str, payload: AutonomyIn) -> dict:
    session = _session_or_404(session_id)
    session.ctx.autonomous_mode = payload.enabled
    if payload.limit_per_minute is not None:
        session.ctx.budget.limit = payload.limit_per_minute
    return session.to_payload()


@app.get("/api/sessions/{session_id}/messages")
async def session_messages(session_id: str, limit: int = Query(default=100, ge=1, le=500)) -> list[dict]:
    session = _session_or_404(session_id)
    return list(session.messages)[-limit:]


@app.get("/api/events")
async def events(
    limit: int = Query(default=200, ge=1, le=1000),
    event_type: str | None = Query(default=None, alias="type"),
) -> list[dict]:
    items = bus.recent(limit if event_type is None else len(bus.history))
    if event_type is not None:
        items = [event for event in items if event.type.value == event_type.upper()][-limit:]
    return [event.to_payload() for event in items]


@app.websocket("/ws/stream")
async def ws_stream(ws: WebSocket) -> None:
    await hub.add(ws)
    try:
        await hub.send(ws, {"type": "sessions", "payload": [session.to_payload() for session in sessions.values()]})
        for event in bus.recent(10):
            await hub.send(ws, {"type": "event", "payload": event.to_payload()})

        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await hub.remove(ws)


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
