from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from volition.agents.context import Goal, GoalState, LoopContext
from volition.loop import templates

LOGGER = logging.getLogger("volition.loop.goals")

HOUR_SEC = 3600.0
MAX_GOALS_PER_HOUR = 5
LAST_GOALS_KEPT = 3


class GoalFormer(Protocol):
    async def form_goal(self, ctx: LoopContext, now: float) -> Goal | None: ...


def goals_in_last_hour(state: GoalState, now: float) -> list[float]:
    return [ts for ts in state.goals_formed_timestamps if now - ts < HOUR_SEC]


def goal_cooldown_elapsed(state: GoalState, now: float, cooldown_sec: float) -> bool:
    return state.last_goal_formed_at is None or now - state.last_goal_formed_at >= cooldown_sec


def record_goal_formed(state: GoalState, goal: Goal, now: float) -> None:
    state.active_goal = goal
    state.last_goal_formed_at = now
    state.goals_formed_timestamps = goals_in_last_hour(state, now) + [now]
    state.last_goals = (state.last_goals + [goal])[-LAST_GOALS_KEPT:]


def _last_user_topic(ctx: LoopContext, limit: int = 80) -> str | None:
    for turn in reversed(ctx.conversation):
        if turn.role == "user" and turn.text.strip():
            return turn.text.strip()[:limit]
    return None


@dataclass
class HeuristicGoalFormer:
    """Forms a goal out of prolonged silence when body and affect allow it."""

    min_silence_sec: float = 60.0
    min_energy: float = 30.0
    max_frustration: float = 0.8
    max_fear: float = 0.9

    async def form_goal(self, ctx: LoopContext, now: float) -> Goal | None:
        silence_sec = now - ctx.silence_start
        if silence_sec <= self.min_silence_sec:
            return None
        if ctx.soma.energy <= self.min_energy:
            return None
        if ctx.limbic.frustration >= self.max_frustration or ctx.limbic.fear >= self.max_fear:
            return None
        if len(goals_in_last_hour(ctx.goal_state, now)) >= MAX_GOALS_PER_HOUR:
            LOGGER.info("goal formation skipped: hourly cap reached")
            return None

        topic = _last_user_topic(ctx)
        if ctx.limbic.fear > 0.6 or ctx.limbic.frustration > 0.6:
            source, priority = "empathy", 0.9
            description = templates.render("goal_empathy", topic=topic or "the last exchange")
        elif topic:
            source, priority = "curiosity", 0.6
            description = templates.render("goal_curiosity", topic=topic)
        else:
            source, priority = "curiosity", 0.6
            description = templates.render("goal_idle")

        return Goal(
            id=f"goal-{int(now * 1000)}",
            description=description,
            priority=priority,
            source=source,
            created_at=now,
        )
