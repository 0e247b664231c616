from __future__ import annotations

from collections.abc import Callable
from enum import Enum

from volition.agents.context import AutonomyBackoff, AutonomyBudget


class ThinkMode(str, Enum):
    REACTIVE = "reactive"
    GOAL_DRIVEN = "goal_driven"
    AUTONOMOUS = "autonomous"
    IDLE = "idle"


def select(user_input: str | None, autonomy_enabled: bool, has_active_goal: bool) -> ThinkMode:
    if user_input is not None and user_input.strip():
        return ThinkMode.REACTIVE
    if has_active_goal:
        return ThinkMode.GOAL_DRIVEN
    if autonomy_enabled:
        return ThinkMode.AUTONOMOUS
    return ThinkMode.IDLE


class AutonomyBudgetTracker:
    """Counts unsolicited utterances against a per-minute allowance.

    The tracker owns no clock. Whoever hosts the loop resets it once per
    window (see ``volition.main.budget_reset_loop``). Exhaustion is reported
    once per window.
    """

    def __init__(self, budget: AutonomyBudget, on_exhausted: Callable[[int, int], None] | None = None) -> None:
        self.budget = budget
        self._on_exhausted = on_exhausted

    def check_budget(self, limit: int | None = None) -> bool:
        effective_limit = self.budget.limit if limit is None else limit
        if self.budget.count < effective_limit:
            return True
        if self._on_exhausted is not None and not self.budget.exhausted_reported:
            self.budget.exhausted_reported = True
            self._on_exhausted(self.budget.count, effective_limit)
        return False

    def consume(self) -> None:
        self.budget.count += 1

    def peek_count(self) -> int:
        return self.budget.count

    def reset(self) -> None:
        self.budget.count = 0
        self.budget.exhausted_reported = False


def backoff_cooldown(
    backoff: AutonomyBackoff,
    base_sec: float = 25.0,
    max_sec: float = 300.0,
    cap_after: int = 3,
) -> float:
    """Wait before the next unsolicited attempt: 0 after a success, then base * 2^n, capped."""
    failures = backoff.consecutive_failures
    if failures <= 0:
        return 0.0
    if failures >= cap_after:
        return max_sec
    return min(max_sec, base_sec * (2**failures))


def backoff_remaining(backoff: AutonomyBackoff, now: float, **limits: float) -> float:
    if backoff.last_attempt_at is None:
        return 0.0
    return max(0.0, backoff_cooldown(backoff, **limits) - (now - backoff.last_attempt_at))


def record_attempt(backoff: AutonomyBackoff, now: float, success: bool) -> AutonomyBackoff:
    failures = 0 if success else backoff.consecutive_failures + 1
    return AutonomyBackoff(last_attempt_at=now, consecutive_failures=failures)
