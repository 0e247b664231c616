from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from volition.agents.context import ConversationTurn, Goal, LimbicState, LoopContext, SomaState
from volition.config import LoopConfig
from volition.loop import templates
from volition.loop.decider import Decision, ModelGateway, PromptState, ToolIntent, fallback_decision
from volition.loop.events import EventBus, EventType, LoopCallbacks
from volition.loop.gate import GateDecision, GateTelemetry, detect_implicit_intent, process, reset_turn_state
from volition.loop.goals import GoalFormer, HeuristicGoalFormer, goal_cooldown_elapsed, record_goal_formed
from volition.loop.homeostasis import (
    apply_action_feedback,
    apply_cognitive_load,
    apply_energy_cost,
    apply_speech_response,
    apply_visual_emotional_cost,
    limbic_homeostasis,
    metabolic_step,
    needs_rest,
    neuro_homeostasis,
    update,
)
from volition.loop.modes import (
    AutonomyBudgetTracker,
    ThinkMode,
    backoff_cooldown,
    backoff_remaining,
    record_attempt,
    select,
)
from volition.tools.runtime import FileResult, ImageResult, SearchResult, ToolEvent, ToolRuntime, ToolTicket

LOGGER = logging.getLogger("volition.loop.engine")


@dataclass
class _TickScope:
    ctx: LoopContext
    callbacks: LoopCallbacks
    trace_id: str
    tick: int
    now: float
    mode: ThinkMode | None = None
    telemetry: GateTelemetry | None = None
    autonomy: dict | None = None


class TickEngine:
    def __init__(
        self,
        *,
        model: ModelGateway,
        runtime: ToolRuntime,
        goal_former: GoalFormer | None = None,
        bus: EventBus | None = None,
        config: LoopConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or LoopConfig()
        self.model = model
        self.runtime = runtime
        self.bus = bus or runtime.bus
        self.goal_former = goal_former or HeuristicGoalFormer(min_silence_sec=self.config.goal_min_silence_sec)
        self.tick_count = 0
        self._clock = clock

    async def run_single_step(
        self,
        ctx: LoopContext,
        user_input: str | None = None,
        callbacks: LoopCallbacks | None = None,
    ) -> LoopContext:
        callbacks = callbacks or LoopCallbacks()
        self.tick_count += 1
        scope = _TickScope(ctx=ctx, callbacks=callbacks, trace_id=uuid.uuid4().hex, tick=self.tick_count, now=self._clock())
        started = time.perf_counter()
        self.bus.emit(EventType.TICK_START, {"tick": scope.tick, "agent_id": ctx.agent_id}, scope.trace_id)

        if not ctx.agent_id:
            self.bus.emit(EventType.TICK_SKIPPED, {"tick": scope.tick, "reason": "NO_AGENT_ID"}, scope.trace_id)
            self.bus.emit(
                EventType.TICK_END,
                {
                    "tick": scope.tick,
                    "skipped": True,
                    "reason": "NO_AGENT_ID",
                    "duration_ms": round((time.perf_counter() - started) * 1000.0, 3),
                },
                scope.trace_id,
            )
            return ctx

        try:
            ctx.gate_state = reset_turn_state(ctx.gate_state)
            has_goal = ctx.goal_state.active_goal is not None
            scope.mode = select(user_input, ctx.autonomous_mode, has_goal)
            self.bus.emit(
                EventType.THINK_MODE_SELECTED,
                {"tick": scope.tick, "mode": scope.mode.value, "has_goal": has_goal, "autonomous_mode": ctx.autonomous_mode},
                scope.trace_id,
            )
            self._update_limbic(ctx, callbacks, limbic_homeostasis)

            if scope.mode == ThinkMode.REACTIVE:
                await self._reactive(scope, (user_input or "").strip())
            elif scope.mode == ThinkMode.GOAL_DRIVEN:
                await self._goal_driven(scope)
            elif scope.mode == ThinkMode.AUTONOMOUS:
                await self._autonomous(scope)

            self._settle_body(scope)
        finally:
            duration_ms = (time.perf_counter() - started) * 1000.0
            self.bus.emit(
                EventType.TICK_END,
                {
                    "tick": scope.tick,
                    "skipped": False,
                    "mode": scope.mode.value if scope.mode else None,
                    "duration_ms": round(duration_ms, 3),
                    "telemetry": scope.telemetry.to_payload() if scope.telemetry else None,
                    "autonomy": scope.autonomy,
                },
                scope.trace_id,
            )
            LOGGER.debug("tick=%s agent=%s mode=%s duration_ms=%.1f", scope.tick, ctx.agent_id, scope.mode, duration_ms)
        return ctx

    async def _reactive(self, scope: _TickScope, text: str) -> None:
        ctx = scope.ctx
        ctx.append_turn(ConversationTurn(role="user", text=text, type="speech", ts=scope.now), self.config.conversation_limit)
        ctx.goal_state.last_user_interaction_at = scope.now
        self._update_limbic(ctx, scope.callbacks, apply_speech_response)

        decision, _ok = await self._request_decision(PromptState.from_context(ctx, ThinkMode.REACTIVE, user_input=text), scope)
        await self._deliver(scope, decision, unsolicited=False)

        ctx.silence_start = scope.now
        ctx.consecutive_agent_speeches = 0
        ctx.ticks_since_last_reward = 0

    async def _goal_driven(self, scope: _TickScope) -> None:
        ctx = scope.ctx
        goal = ctx.goal_state.active_goal
        if goal is None:
            await self._autonomous(scope)
            return

        if scope.now - goal.created_at > self.config.goal_ttl_sec:
            ctx.goal_state.active_goal = None
            self.bus.emit(EventType.GOAL_EXPIRED, {"goal_id": goal.id, "source": goal.source}, scope.trace_id)
            LOGGER.info("goal expired id=%s", goal.id)
            await self._autonomous(scope)
            return

        if not self._goal_eligible(ctx, scope.now):
            await self._autonomous(scope)
            return
        await self._pursue_goal(scope, goal)

    def _goal_eligible(self, ctx: LoopContext, now: float) -> bool:
        if ctx.soma.is_sleeping or needs_rest(ctx.meta):
            return False
        return now - ctx.goal_state.last_user_interaction_at >= self.config.silence_window_sec

    async def _autonomous(self, scope: _TickScope) -> None:
        ctx = scope.ctx
        if not ctx.autonomous_mode:
            return
        if ctx.soma.is_sleeping or needs_rest(ctx.meta):
            LOGGER.debug("autonomy skipped: agent=%s is resting", ctx.agent_id)
            return

        tracker = self._budget_tracker(scope)
        if not tracker.check_budget(ctx.budget.limit):
            return
        if scope.now - ctx.goal_state.last_user_interaction_at < self.config.silence_window_sec:
            return
        if not self._backoff_allows(scope):
            return

        if ctx.goal_state.active_goal is None and goal_cooldown_elapsed(
            ctx.goal_state, scope.now, self.config.goal_cooldown_sec
        ):
            goal = await self._form_goal(scope)
            if goal is not None:
                spoke = await self._pursue_goal(scope, goal)
                ctx.autonomy_backoff = record_attempt(ctx.autonomy_backoff, scope.now, spoke)
                return

        decision, ok = await self._request_decision(PromptState.from_context(ctx, ThinkMode.AUTONOMOUS), scope)
        spoke = await self._deliver(scope, decision, unsolicited=True)
        ctx.autonomy_backoff = record_attempt(ctx.autonomy_backoff, scope.now, ok and spoke)
        if not (ok and spoke):
            LOGGER.info(
                "autonomous attempt produced no speech agent=%s failures=%s",
                ctx.agent_id,
                ctx.autonomy_backoff.consecutive_failures,
            )

    def _backoff_allows(self, scope: _TickScope) -> bool:
        backoff = scope.ctx.autonomy_backoff
        limits = {
            "base_sec": self.config.autonomy_backoff_base_sec,
            "max_sec": self.config.autonomy_backoff_max_sec,
        }
        remaining = backoff_remaining(backoff, scope.now, **limits)
        scope.autonomy = {
            "attempt": remaining <= 0,
            "cooldown_sec": backoff_cooldown(backoff, **limits),
            "remaining_sec": round(remaining, 3),
            "consecutive_failures": backoff.consecutive_failures,
        }
        return remaining <= 0

    async def _form_goal(self, scope: _TickScope) -> Goal | None:
        ctx = scope.ctx
        try:
            goal = await self.goal_former.form_goal(ctx, scope.now)
        except Exception as exc:
            LOGGER.warning("goal formation failed agent=%s error=%r", ctx.agent_id, exc)
            return None
        if goal is None:
            return None

        record_goal_formed(ctx.goal_state, goal, scope.now)
        silence_anchor = ctx.goal_state.last_user_interaction_at or ctx.silence_start
        self.bus.emit(
            EventType.GOAL_FORMED,
            {
                "goal": goal.to_payload(),
                "silence_ms": int((scope.now - silence_anchor) * 1000),
                "min_silence_ms": int(self.config.goal_min_silence_sec * 1000),
            },
            scope.trace_id,
        )
        LOGGER.info("goal formed id=%s source=%s priority=%.2f", goal.id, goal.source, goal.priority)
        return goal

    async def _pursue_goal(self, scope: _TickScope, goal: Goal) -> bool:
        ctx = scope.ctx
        if not self._budget_tracker(scope).check_budget(ctx.budget.limit):
            return False

        scope.callbacks.on_thought(templates.render("goal_thought", description=goal.description))
        decision, ok = await self._request_decision(PromptState.from_context(ctx, ThinkMode.GOAL_DRIVEN, goal=goal), scope)
        spoke = await self._deliver(scope, decision, unsolicited=True)

        ctx.goal_state.active_goal = None
        self.bus.emit(
            EventType.GOAL_EXECUTED,
            {"goal_id": goal.id, "source": goal.source, "spoke": spoke},
            scope.trace_id,
        )
        return ok and spoke

    def _budget_tracker(self, scope: _TickScope) -> AutonomyBudgetTracker:
        def exhausted(count: int, limit: int) -> None:
            LOGGER.warning("autonomy budget exhausted agent=%s count=%s limit=%s", scope.ctx.agent_id, count, limit)
            self.bus.emit(EventType.AUTONOMY_BUDGET_EXHAUSTED, {"count": count, "limit": limit}, scope.trace_id)

        return AutonomyBudgetTracker(scope.ctx.budget, on_exhausted=exhausted)

    async def _request_decision(self, prompt: PromptState, scope: _TickScope) -> tuple[Decision, bool]:
        """Model decision for this tick, and whether it came from the model rather than the fallback."""
        try:
            decision = await self.model.generate(prompt)
        except Exception as exc:
            LOGGER.warning("model call failed mode=%s error=%r", prompt.mode.value, exc)
            self.bus.emit(EventType.MODEL_ERROR, {"mode": prompt.mode.value, "error": str(exc)}, scope.trace_id)
            decision = None

        if isinstance(decision, Decision):
            return decision, True
        fallback = fallback_decision()
        if prompt.mode != ThinkMode.REACTIVE:
            # Nobody asked; apologising unprompted would be noise.
            fallback = fallback.model_copy(update={"speech_content": ""})
        return fallback, False

    async def _deliver(self, scope: _TickScope, decision: Decision, *, unsolicited: bool) -> bool:
        ctx = scope.ctx
        callbacks = scope.callbacks
        gate = process(decision, ctx.soma, ctx.gate_state, self.config.gate, now=scope.now)
        ctx.gate_state = gate.state
        scope.telemetry = gate.telemetry
        self._publish_gate_telemetry(scope, decision, gate)
        output = gate.modified_output

        ticket: ToolTicket | None = None
        if gate.telemetry.intent_executed and output.tool_intent is not None:
            ticket = await self._dispatch_tool(scope, output.tool_intent)

        speech = output.speech_content.strip()
        if unsolicited and speech and ctx.consecutive_agent_speeches >= self.config.narcissism_threshold:
            self.bus.emit(
                EventType.SPEECH_SUPPRESSED,
                {"consecutive_agent_speeches": ctx.consecutive_agent_speeches},
                scope.trace_id,
            )
            callbacks.on_thought(templates.render("speech_suppressed", speech=speech))
            speech = ""

        thought = output.internal_thought.strip()
        if thought:
            callbacks.on_message("assistant", thought, "thought")
            ctx.append_thought(thought, self.config.thought_history_limit)
        if speech:
            callbacks.on_message("assistant", speech, "speech")
            ctx.append_turn(
                ConversationTurn(role="assistant", text=speech, type="speech", ts=scope.now),
                self.config.conversation_limit,
            )
            ctx.silence_start = scope.now
            ctx.last_speak_timestamp = scope.now
            if unsolicited:
                ctx.consecutive_agent_speeches += 1
                ctx.ticks_since_last_reward += 1
                AutonomyBudgetTracker(ctx.budget).consume()

        if ticket is not None:
            ticket.attach(lambda event: self._on_tool_event(ctx, callbacks, event))
            await ticket.first_notice()

        ctx.meta = update(ctx.meta, output.mood_shift.as_delta(), self.config.homeostasis)
        return bool(speech)

    def _publish_gate_telemetry(self, scope: _TickScope, decision: Decision, gate: GateDecision) -> None:
        telemetry = gate.telemetry
        intent = gate.modified_output.tool_intent
        if telemetry.violation:
            self.bus.emit(EventType.COGNITIVE_VIOLATION, {"violation": telemetry.violation}, scope.trace_id)
        if telemetry.intent_executed and intent is not None:
            self.bus.emit(EventType.INTENT_EXECUTED, {"tool": intent.tool, "query": intent.query}, scope.trace_id)
        elif telemetry.blocked_reason and intent is not None:
            self.bus.emit(
                EventType.INTENT_BLOCKED,
                {"tool": intent.tool, "query": intent.query, "reason": telemetry.blocked_reason},
                scope.trace_id,
            )
        elif not telemetry.intent_detected and detect_implicit_intent(decision.internal_thought):
            self.bus.emit(
                EventType.INTENT_NOT_EXECUTED,
                {"thought_prefix": decision.internal_thought[:120]},
                scope.trace_id,
            )

    async def _dispatch_tool(self, scope: _TickScope, intent: ToolIntent) -> ToolTicket:
        ctx = scope.ctx
        ticket = await self.runtime.invoke(
            intent.tool or "",
            intent.query,
            reason=intent.reason,
            trace_id=scope.trace_id,
        )
        if ticket.throttled or ticket.deduplicated:
            return ticket

        cost = self.config.tool_energy_costs.get(ticket.tool, 0.0)
        self._update_soma(ctx, scope.callbacks, lambda soma: apply_energy_cost(soma, cost))
        if ticket.tool == "VISUALIZE":
            load = self.config.visual_cognitive_load
            binge = ticket.binge_count
            self._update_soma(ctx, scope.callbacks, lambda soma: apply_cognitive_load(soma, load))
            self._update_limbic(ctx, scope.callbacks, lambda limbic: apply_visual_emotional_cost(limbic, binge))
        return ticket

    def _on_tool_event(self, ctx: LoopContext, callbacks: LoopCallbacks, event: ToolEvent) -> None:
        if event.type == EventType.TOOL_TIMEOUT:
            callbacks.on_message("assistant", templates.render("tool_pending", tool=event.tool, query=event.query), "thought")
            return
        if event.type == EventType.TOOL_ERROR:
            callbacks.on_message(
                "assistant",
                templates.render("tool_unavailable", tool=event.tool, error=event.error or "unknown error"),
                "thought",
            )
            self._update_limbic(ctx, callbacks, lambda limbic: apply_action_feedback(limbic, False, event.tool))
            return
        if event.throttled:
            callbacks.on_message("assistant", event.result.text, "thought")
            return

        if event.late:
            callbacks.on_message("assistant", templates.render("tool_late", tool=event.tool, query=event.query), "thought")

        result = event.result
        if isinstance(result, SearchResult):
            text, message_type = result.synthesis, "intel"
            callbacks.on_message("assistant", text, message_type, sources=result.sources)
        elif isinstance(result, ImageResult):
            text, message_type = result.caption, "visual"
            callbacks.on_message("assistant", text, message_type, image=result.image_b64)
        elif isinstance(result, FileResult):
            text, message_type = result.content, "tool_result"
            callbacks.on_message("assistant", text, message_type)
        else:
            text, message_type = str(result), "tool_result"
            callbacks.on_message("assistant", text, message_type)

        ctx.append_turn(
            ConversationTurn(role="assistant", text=text, type=message_type, ts=self._clock()),
            self.config.conversation_limit,
        )
        self._update_limbic(ctx, callbacks, lambda limbic: apply_action_feedback(limbic, True, event.tool))

    def _settle_body(self, scope: _TickScope) -> None:
        ctx = scope.ctx
        was_sleeping = ctx.soma.is_sleeping
        self._update_soma(ctx, scope.callbacks, lambda soma: metabolic_step(soma).state)
        if ctx.soma.is_sleeping != was_sleeping:
            LOGGER.info("agent=%s %s", ctx.agent_id, "fell asleep" if ctx.soma.is_sleeping else "woke up")
        ctx.neuro = neuro_homeostasis(ctx.neuro, ctx.ticks_since_last_reward)
        ctx.clamp()

    def _update_soma(self, ctx: LoopContext, callbacks: LoopCallbacks, fn: Callable[[SomaState], SomaState]) -> None:
        ctx.soma = fn(ctx.soma)
        callbacks.on_soma_update(fn)

    def _update_limbic(self, ctx: LoopContext, callbacks: LoopCallbacks, fn: Callable[[LimbicState], LimbicState]) -> None:
        ctx.limbic = fn(ctx.limbic)
        callbacks.on_limbic_update(fn)
