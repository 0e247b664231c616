"""Tick engine: branch selection, emission order, budget, goals and tool hand-off."""
from __future__ import annotations

import asyncio

import pytest
from conftest import decision

from volition.agents.context import AutonomyBackoff, AutonomyBudget, Goal, GoalState, LimbicState, SomaState
from volition.loop.events import EventType
from volition.loop.modes import AutonomyBudgetTracker, ThinkMode
from volition.loop.templates import FALLBACK_SPEECH
from volition.tools.runtime import BingeCooldown, ImageResult, SearchResult


def test_reactive_tick_emits_thought_before_speech(make_engine, make_ctx, recorder, bus, clock):
    engine, model = make_engine(decision(thought="T", speech="S"))
    ctx = make_ctx(silence_start=clock.now - 30.0, consecutive_agent_speeches=2)

    asyncio.run(engine.run_single_step(ctx, "hi", recorder.callbacks()))

    assert recorder.messages == [("assistant", "T", "thought"), ("assistant", "S", "speech")]
    assert ctx.silence_start == clock.now
    assert ctx.last_speak_timestamp == clock.now
    assert ctx.goal_state.last_user_interaction_at == clock.now
    assert ctx.consecutive_agent_speeches == 0
    assert ctx.ticks_since_last_reward == 0
    assert [turn.role for turn in ctx.conversation] == ["user", "assistant"]
    assert model.calls[0].mode == ThinkMode.REACTIVE
    assert model.calls[0].user_input == "hi"

    types = [event.type for event in bus.history]
    assert types[0] == EventType.TICK_START
    assert types[1] == EventType.THINK_MODE_SELECTED
    assert types[-1] == EventType.TICK_END
    assert bus.of_type(EventType.THINK_MODE_SELECTED)[0].payload["mode"] == "reactive"


def test_missing_agent_skips_tick(make_engine, make_ctx, recorder, bus):
    engine, model = make_engine(decision(speech="never"))
    ctx = make_ctx(agent_id=None)
    before = ctx.to_payload()

    asyncio.run(engine.run_single_step(ctx, "hello", recorder.callbacks()))

    assert model.calls == []
    assert recorder.messages == []
    assert ctx.to_payload() == before
    assert [event.type for event in bus.history] == [EventType.TICK_START, EventType.TICK_SKIPPED, EventType.TICK_END]
    end = bus.of_type(EventType.TICK_END)[0]
    assert end.payload["skipped"] is True
    assert end.payload["reason"] == "NO_AGENT_ID"


def test_exhausted_budget_prevents_model_call(make_engine, make_ctx, recorder, bus):
    engine, model = make_engine(decision(speech="unprompted"))
    ctx = make_ctx(autonomous_mode=True, budget=AutonomyBudget(count=2, limit=2))

    asyncio.run(engine.run_single_step(ctx, None, recorder.callbacks()))

    assert model.calls == []
    assert recorder.messages == []
    assert len(bus.of_type(EventType.AUTONOMY_BUDGET_EXHAUSTED)) == 1


def test_autonomous_ticks_consume_budget(make_engine, make_ctx, recorder):
    engine, model = make_engine(decision(speech="one"), decision(speech="two"), decision(speech="three"))
    ctx = make_ctx(autonomous_mode=True, budget=AutonomyBudget(count=0, limit=2))

    async def scenario():
        for _ in range(3):
            await engine.run_single_step(ctx, None, recorder.callbacks())

    asyncio.run(scenario())

    assert len(model.calls) == 2
    assert all(call.mode == ThinkMode.AUTONOMOUS for call in model.calls)
    assert ctx.budget.count == 2
    assert ctx.consecutive_agent_speeches == 2
    assert [text for _role, text, kind in recorder.messages if kind == "speech"] == ["one", "two"]


def test_reactive_ignores_exhausted_budget(make_engine, make_ctx, recorder):
    engine, model = make_engine(decision(speech="answer"))
    ctx = make_ctx(autonomous_mode=True, budget=AutonomyBudget(count=5, limit=2))

    asyncio.run(engine.run_single_step(ctx, "question?", recorder.callbacks()))

    assert len(model.calls) == 1
    assert ctx.budget.count == 5


def test_autonomy_waits_for_silence_window(make_engine, make_ctx, recorder, clock):
    engine, model = make_engine(decision(speech="too soon"))
    ctx = make_ctx(autonomous_mode=True, goal_state=GoalState(last_user_interaction_at=clock.now - 1.0))

    asyncio.run(engine.run_single_step(ctx, None, recorder.callbacks()))

    assert model.calls == []


def test_model_failure_falls_back(make_engine, make_ctx, recorder, bus):
    engine, _model = make_engine(RuntimeError("provider down"))
    ctx = make_ctx()

    asyncio.run(engine.run_single_step(ctx, "hi", recorder.callbacks()))

    assert recorder.messages[-1] == ("assistant", FALLBACK_SPEECH, "speech")
    assert len(bus.of_type(EventType.MODEL_ERROR)) == 1
    assert ctx.meta.stress > 20.0


def test_violation_is_scrubbed_before_emission(make_engine, make_ctx, recorder, bus):
    engine, _model = make_engine(decision(thought="plan: [SEARCH: secret]", speech="ok"))
    ctx = make_ctx()

    asyncio.run(engine.run_single_step(ctx, "hi", recorder.callbacks()))

    assert recorder.messages[0] == ("assistant", "plan: [INTENT_REMOVED]", "thought")
    assert len(bus.of_type(EventType.COGNITIVE_VIOLATION)) == 1


def test_approved_search_delivers_intel_after_speech(make_engine, make_ctx, recorder, bus):
    async def search(arg, reason):
        return SearchResult(synthesis=f"facts on {arg}", sources=[{"title": "src", "url": "https://example.org"}])

    engine, _model = make_engine(
        decision(thought="need data", speech="Checking.", tool="SEARCH", query="tides"),
        backends={"SEARCH": search},
    )
    ctx = make_ctx()

    asyncio.run(engine.run_single_step(ctx, "what about tides?", recorder.callbacks()))

    assert recorder.types() == ["thought", "speech", "intel"]
    assert recorder.messages[1][1] == "Checking. [SEARCH: tides]"
    assert recorder.messages[2][1] == "facts on tides"
    assert recorder.extras[2]["sources"][0]["url"] == "https://example.org"
    assert len(bus.of_type(EventType.INTENT_EXECUTED)) == 1
    assert ctx.soma.energy == pytest.approx(100.0 - 5.0 - 0.1)
    assert ctx.conversation[-1].type == "intel"


def test_slow_tool_times_out_then_arrives_late(make_engine, make_ctx, recorder, bus):
    async def slow(arg, reason):
        await asyncio.sleep(0.2)
        return SearchResult(synthesis="late facts")

    engine, _model = make_engine(
        decision(speech="Looking.", tool="SEARCH", query="slow"),
        backends={"SEARCH": slow},
        timeout_sec=0.05,
    )
    ctx = make_ctx()

    async def scenario():
        await engine.run_single_step(ctx, "go", recorder.callbacks())
        after_tick = list(recorder.types())
        await asyncio.sleep(0.4)
        return after_tick

    after_tick = asyncio.run(scenario())

    assert after_tick == ["speech", "thought"]
    assert "still working" in recorder.messages[1][1]
    assert recorder.types() == ["speech", "thought", "thought", "intel"]
    assert "arrived after TIMEOUT" in recorder.messages[2][1]
    assert len(bus.of_type(EventType.TOOL_TIMEOUT)) == 1
    late = bus.of_type(EventType.TOOL_RESULT)
    assert len(late) == 1 and late[0].payload["late"] is True


def test_low_energy_blocks_visualize(make_engine, make_ctx, recorder, bus):
    calls = []

    async def draw(arg, reason):
        calls.append(arg)

    engine, _model = make_engine(
        decision(speech="Picture this.", tool="VISUALIZE", query="a fox"),
        backends={"VISUALIZE": draw},
    )
    ctx = make_ctx(soma=SomaState(energy=22.0))

    asyncio.run(engine.run_single_step(ctx, "draw a fox", recorder.callbacks()))

    assert calls == []
    assert recorder.messages[-1] == ("assistant", "Picture this.", "speech")
    blocked = bus.of_type(EventType.INTENT_BLOCKED)
    assert len(blocked) == 1 and blocked[0].payload["tool"] == "VISUALIZE"


def test_silence_forms_and_executes_goal(make_engine, make_ctx, recorder, bus, clock):
    engine, model = make_engine(decision(thought="goal step", speech="Here is an idea."))
    ctx = make_ctx(autonomous_mode=True, silence_start=clock.now - 120.0)

    asyncio.run(engine.run_single_step(ctx, None, recorder.callbacks()))

    formed = bus.of_type(EventType.GOAL_FORMED)
    assert len(formed) == 1
    assert formed[0].payload["silence_ms"] == 120000
    assert formed[0].payload["min_silence_ms"] == 60000
    assert model.calls[0].mode == ThinkMode.GOAL_DRIVEN
    assert model.calls[0].goal.source == "curiosity"
    assert len(bus.of_type(EventType.GOAL_EXECUTED)) == 1
    assert ctx.goal_state.active_goal is None
    assert ctx.goal_state.last_goal_formed_at == clock.now
    assert recorder.thoughts and recorder.thoughts[0].startswith("Pursuing goal")
    assert ctx.budget.count == 1


def test_expired_goal_is_dropped(make_engine, make_ctx, recorder, bus, clock):
    engine, model = make_engine()
    stale = Goal(id="goal-1", description="old", priority=0.6, source="curiosity", created_at=clock.now - 3600.0)
    ctx = make_ctx(goal_state=GoalState(active_goal=stale, last_goal_formed_at=clock.now - 3600.0))

    asyncio.run(engine.run_single_step(ctx, None, recorder.callbacks()))

    assert len(bus.of_type(EventType.GOAL_EXPIRED)) == 1
    assert ctx.goal_state.active_goal is None
    assert model.calls == []


def test_idle_tick_only_settles_body(make_engine, make_ctx, recorder, bus):
    engine, model = make_engine()
    ctx = make_ctx()

    asyncio.run(engine.run_single_step(ctx, None, recorder.callbacks()))

    assert model.calls == []
    assert recorder.messages == []
    assert ctx.soma.energy == pytest.approx(99.9)
    assert bus.of_type(EventType.TICK_END)[0].payload["mode"] == "idle"


def test_repeated_unanswered_speech_is_suppressed(make_engine, make_ctx, recorder, bus):
    engine, _model = make_engine(decision(thought="again", speech="Hello? Anyone?"))
    ctx = make_ctx(autonomous_mode=True, consecutive_agent_speeches=4)

    asyncio.run(engine.run_single_step(ctx, None, recorder.callbacks()))

    assert "speech" not in recorder.types()
    assert len(bus.of_type(EventType.SPEECH_SUPPRESSED)) == 1
    assert ctx.budget.count == 0


def test_first_image_pays_full_visual_reward(make_engine, make_ctx, recorder):
    async def draw(arg, reason):
        return ImageResult(image_b64="aGk=", caption=arg)

    engine, _model = make_engine(
        decision(speech="Picture this.", tool="VISUALIZE", query="a fox"),
        backends={"VISUALIZE": draw},
        cooldowns={"VISUALIZE": BingeCooldown(60.0)},
    )
    ctx = make_ctx()

    asyncio.run(engine.run_single_step(ctx, "draw a fox", recorder.callbacks()))

    assert recorder.types() == ["speech", "visual"]
    sample = LimbicState(curiosity=0.9, satisfaction=0.5)
    visual = [fn(sample) for fn in recorder.limbic_fns if fn(sample).curiosity == pytest.approx(0.4)]
    assert len(visual) == 1
    assert visual[0].satisfaction == pytest.approx(0.7)


def test_failing_model_backs_off_autonomy(make_engine, make_ctx, recorder, bus, clock):
    engine, model = make_engine()
    ctx = make_ctx(autonomous_mode=True, budget=AutonomyBudget(count=0, limit=2))

    async def scenario():
        for _ in range(6):
            await engine.run_single_step(ctx, None, recorder.callbacks())
            clock.advance(2.0)

    asyncio.run(scenario())

    assert len(model.calls) == 1
    assert ctx.budget.count == 0
    assert ctx.autonomy_backoff.consecutive_failures == 1
    autonomy = bus.of_type(EventType.TICK_END)[-1].payload["autonomy"]
    assert autonomy["attempt"] is False
    assert autonomy["cooldown_sec"] == 50.0
    assert autonomy["consecutive_failures"] == 1

    clock.advance(38.0)
    asyncio.run(engine.run_single_step(ctx, None, recorder.callbacks()))

    assert len(model.calls) == 2
    assert ctx.autonomy_backoff.consecutive_failures == 2
    assert len(bus.of_type(EventType.MODEL_ERROR)) == 2


def test_autonomous_speech_clears_backoff(make_engine, make_ctx, recorder, clock):
    engine, model = make_engine(decision(speech="back again"))
    waiting = make_ctx(
        autonomous_mode=True,
        autonomy_backoff=AutonomyBackoff(last_attempt_at=clock.now - 30.0, consecutive_failures=1),
    )
    asyncio.run(engine.run_single_step(waiting, None, recorder.callbacks()))
    assert model.calls == []

    ready = make_ctx(
        autonomous_mode=True,
        autonomy_backoff=AutonomyBackoff(last_attempt_at=clock.now - 60.0, consecutive_failures=1),
    )
    asyncio.run(engine.run_single_step(ready, None, recorder.callbacks()))

    assert len(model.calls) == 1
    assert ready.autonomy_backoff == AutonomyBackoff(last_attempt_at=clock.now, consecutive_failures=0)


def test_budget_exhaustion_is_reported_once_per_window(make_engine, make_ctx, recorder, bus):
    engine, model = make_engine()
    ctx = make_ctx(autonomous_mode=True, budget=AutonomyBudget(count=2, limit=2))

    async def scenario():
        for _ in range(3):
            await engine.run_single_step(ctx, None, recorder.callbacks())

    asyncio.run(scenario())
    assert len(bus.of_type(EventType.AUTONOMY_BUDGET_EXHAUSTED)) == 1

    AutonomyBudgetTracker(ctx.budget).reset()
    ctx.budget.count = 2
    asyncio.run(scenario())

    assert len(bus.of_type(EventType.AUTONOMY_BUDGET_EXHAUSTED)) == 2
    assert model.calls == []


def test_goal_silence_is_measured_from_last_user_message(make_engine, make_ctx, recorder, bus, clock):
    engine, _model = make_engine(decision(speech="An idea."))
    ctx = make_ctx(
        autonomous_mode=True,
        silence_start=clock.now - 120.0,
        goal_state=GoalState(last_user_interaction_at=clock.now - 90.0),
    )

    asyncio.run(engine.run_single_step(ctx, None, recorder.callbacks()))

    formed = bus.of_type(EventType.GOAL_FORMED)
    assert len(formed) == 1
    assert formed[0].payload["silence_ms"] == 90000
