"""
Shared fixtures for loop tests.
Model calls are scripted and time is driven by a manual clock, so no test
touches a real provider.
"""
from __future__ import annotations

import os

import pytest
from fastapi.testclient import TestClient

from volition.agents.context import LoopContext
from volition.config import LoopConfig
from volition.loop.decider import Decision, MoodShift, ToolIntent
from volition.loop.engine import TickEngine
from volition.loop.events import EventBus, LoopCallbacks
from volition.tools.runtime import ToolRuntime

T0 = 1_000_000.0


@pytest.fixture(scope="session", autouse=True)
def _isolate_env():
    """Keep the provider disabled and the tool timeout at its test value."""
    os.environ["LLM_ENABLED"] = "0"
    os.environ["TOOL_TIMEOUT_SEC"] = "10"
    os.environ["TICK_INTERVAL_SEC"] = "3600"
    yield


class ScriptedModel:
    def __init__(self, *decisions) -> None:
        self.decisions = list(decisions)
        self.calls = []

    async def generate(self, prompt):
        self.calls.append(prompt)
        if not self.decisions:
            raise RuntimeError("no scripted decision left")
        item = self.decisions.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class ManualClock:
    def __init__(self, now: float = T0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Recorder:
    def __init__(self) -> None:
        self.messages: list[tuple] = []
        self.thoughts: list[str] = []
        self.extras: list[dict] = []
        self.soma_updates = 0
        self.limbic_updates = 0
        self.limbic_fns: list = []

    def on_message(self, role, text, message_type, image=None, sources=None) -> None:
        self.messages.append((role, text, message_type))
        self.extras.append({"image": image, "sources": sources})

    def on_soma_update(self, fn) -> None:
        self.soma_updates += 1

    def on_limbic_update(self, fn) -> None:
        self.limbic_updates += 1
        self.limbic_fns.append(fn)

    def callbacks(self) -> LoopCallbacks:
        return LoopCallbacks(
            on_message=self.on_message,
            on_thought=self.thoughts.append,
            on_soma_update=self.on_soma_update,
            on_limbic_update=self.on_limbic_update,
        )

    def types(self) -> list[str]:
        return [message_type for _role, _text, message_type in self.messages]


def decision(thought="", speech="", tool=None, query="", **mood) -> Decision:
    intent = ToolIntent(tool=tool, query=query) if tool else None
    return Decision(internal_thought=thought, speech_content=speech, mood_shift=MoodShift(**mood), tool_intent=intent)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def make_ctx(clock):
    def _make(**overrides) -> LoopContext:
        values = {"agent_id": "agent-1", "silence_start": clock.now}
        values.update(overrides)
        return LoopContext(**values)

    return _make


@pytest.fixture
def make_engine(bus, clock):
    def _make(*decisions, backends=None, timeout_sec=10.0, cooldowns=None, config=None):
        model = ScriptedModel(*decisions)
        runtime = ToolRuntime(backends or {}, bus=bus, timeout_sec=timeout_sec, cooldowns=cooldowns)
        engine = TickEngine(model=model, runtime=runtime, bus=bus, config=config or LoopConfig(), clock=clock)
        return engine, model

    return _make


@pytest.fixture(scope="session")
def api(_isolate_env):
    from volition import main

    return main, TestClient(main.app)
