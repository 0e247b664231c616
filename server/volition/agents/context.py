from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Literal

MessageType = Literal["thought", "speech", "intel", "visual", "tool_result", "action"]


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, float(value)))


@dataclass(frozen=True)
class SomaState:
    energy: float = 100.0
    cognitive_load: float = 0.0
    is_sleeping: bool = False

    def clamped(self) -> "SomaState":
        return replace(
            self,
            energy=_clamp(self.energy, 0.0, 100.0),
            cognitive_load=_clamp(self.cognitive_load, 0.0, 100.0),
        )

    def to_payload(self) -> dict:
        return {
            "energy": round(self.energy, 3),
            "cognitive_load": round(self.cognitive_load, 3),
            "is_sleeping": self.is_sleeping,
        }


@dataclass(frozen=True)
class MetaStates:
    energy: float = 70.0
    confidence: float = 60.0
    stress: float = 20.0

    def clamped(self) -> "MetaStates":
        return MetaStates(
            energy=_clamp(self.energy, 0.0, 100.0),
            confidence=_clamp(self.confidence, 0.0, 100.0),
            stress=_clamp(self.stress, 0.0, 100.0),
        )

    def to_payload(self) -> dict:
        return {
            "energy": round(self.energy, 3),
            "confidence": round(self.confidence, 3),
            "stress": round(self.stress, 3),
        }


META_STATES_BASELINE = MetaStates()


@dataclass(frozen=True)
class MetaStatesDelta:
    energy_delta: float = 0.0
    confidence_delta: float = 0.0
    stress_delta: float = 0.0


@dataclass(frozen=True)
class LimbicState:
    fear: float = 0.0
    curiosity: float = 0.5
    frustration: float = 0.0
    satisfaction: float = 0.5

    def clamped(self) -> "LimbicState":
        return LimbicState(
            fear=_clamp(self.fear, 0.0, 1.0),
            curiosity=_clamp(self.curiosity, 0.0, 1.0),
            frustration=_clamp(self.frustration, 0.0, 1.0),
            satisfaction=_clamp(self.satisfaction, 0.0, 1.0),
        )

    def to_payload(self) -> dict:
        return {
            "fear": round(self.fear, 4),
            "curiosity": round(self.curiosity, 4),
            "frustration": round(self.frustration, 4),
            "satisfaction": round(self.satisfaction, 4),
        }


@dataclass(frozen=True)
class NeuroState:
    dopamine: float = 55.0
    serotonin: float = 60.0
    norepinephrine: float = 50.0

    def clamped(self) -> "NeuroState":
        return NeuroState(
            dopamine=_clamp(self.dopamine, 0.0, 100.0),
            serotonin=_clamp(self.serotonin, 0.0, 100.0),
            norepinephrine=_clamp(self.norepinephrine, 0.0, 100.0),
        )

    def to_payload(self) -> dict:
        return {
            "dopamine": round(self.dopamine, 3),
            "serotonin": round(self.serotonin, 3),
            "norepinephrine": round(self.norepinephrine, 3),
        }


@dataclass(frozen=True)
class TraitVector:
    arousal: float = 0.5
    verbosity: float = 0.5
    conscientiousness: float = 0.5
    social_awareness: float = 0.5
    curiosity: float = 0.5

    def clamped(self) -> "TraitVector":
        return TraitVector(
            arousal=_clamp(self.arousal, 0.0, 1.0),
            verbosity=_clamp(self.verbosity, 0.0, 1.0),
            conscientiousness=_clamp(self.conscientiousness, 0.0, 1.0),
            social_awareness=_clamp(self.social_awareness, 0.0, 1.0),
            curiosity=_clamp(self.curiosity, 0.0, 1.0),
        )

    def to_payload(self) -> dict:
        return {
            "arousal": self.arousal,
            "verbosity": self.verbosity,
            "conscientiousness": self.conscientiousness,
            "social_awareness": self.social_awareness,
            "curiosity": self.curiosity,
        }


@dataclass
class Goal:
    id: str
    description: str
    priority: float
    source: Literal["curiosity", "empathy", "survival", "user"]
    created_at: float
    progress: float = 0.0

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "priority": self.priority,
            "source": self.source,
            "created_at": self.created_at,
            "progress": self.progress,
        }


@dataclass
class GoalState:
    active_goal: Goal | None = None
    last_user_interaction_at: float = 0.0
    last_goal_formed_at: float | None = None
    goals_formed_timestamps: list[float] = field(default_factory=list)
    last_goals: list[Goal] = field(default_factory=list)


@dataclass
class ConversationTurn:
    role: Literal["user", "assistant"]
    text: str
    type: MessageType = "speech"
    ts: float = 0.0

    def to_payload(self) -> dict:
        return {"role": self.role, "text": self.text, "type": self.type, "ts": self.ts}


@dataclass
class AutonomyBudget:
    count: int = 0
    limit: int = 3
    exhausted_reported: bool = False


@dataclass(frozen=True)
class AutonomyBackoff:
    """Last unsolicited attempt and how many attempts in a row produced no speech."""

    last_attempt_at: float | None = None
    consecutive_failures: int = 0

    def to_payload(self) -> dict:
        return {"last_attempt_at": self.last_attempt_at, "consecutive_failures": self.consecutive_failures}


@dataclass(frozen=True)
class GateState:
    """Decision gate memory: tools used in the current turn plus last-use times per tool."""

    tools_used_this_turn: frozenset[str] = frozenset()
    last_tool_use: Mapping[str, float] = field(default_factory=dict)


@dataclass
class LoopContext:
    agent_id: str | None = None
    soma: SomaState = field(default_factory=SomaState)
    meta: MetaStates = field(default_factory=MetaStates)
    limbic: LimbicState = field(default_factory=LimbicState)
    neuro: NeuroState = field(default_factory=NeuroState)
    conversation: list[ConversationTurn] = field(default_factory=list)
    thought_history: list[str] = field(default_factory=list)
    autonomous_mode: bool = False
    budget: AutonomyBudget = field(default_factory=AutonomyBudget)
    goal_state: GoalState = field(default_factory=GoalState)
    trait_vector: TraitVector = field(default_factory=TraitVector)
    ticks_since_last_reward: int = 0
    consecutive_agent_speeches: int = 0
    silence_start: float = 0.0
    last_speak_timestamp: float = 0.0
    gate_state: GateState = field(default_factory=GateState)
    autonomy_backoff: AutonomyBackoff = field(default_factory=AutonomyBackoff)

    def clamp(self) -> None:
        self.soma = self.soma.clamped()
        self.meta = self.meta.clamped()
        self.limbic = self.limbic.clamped()
        self.neuro = self.neuro.clamped()
        self.trait_vector = self.trait_vector.clamped()
        self.ticks_since_last_reward = max(0, self.ticks_since_last_reward)
        self.consecutive_agent_speeches = max(0, self.consecutive_agent_speeches)
        self.budget.count = max(0, self.budget.count)

    def append_turn(self, turn: ConversationTurn, limit: int) -> None:
        self.conversation.append(turn)
        if len(self.conversation) > limit:
            del self.conversation[: len(self.conversation) - limit]

    def append_thought(self, thought: str, limit: int) -> None:
        self.thought_history.append(thought)
        if len(self.thought_history) > limit:
            del self.thought_history[: len(self.thought_history) - limit]

    def to_payload(self) -> dict:
        active_goal = self.goal_state.active_goal
        return {
            "agent_id": self.agent_id,
            "soma": self.soma.to_payload(),
            "meta": self.meta.to_payload(),
            "limbic": self.limbic.to_payload(),
            "neuro": self.neuro.to_payload(),
            "traits": self.trait_vector.to_payload(),
            "autonomous_mode": self.autonomous_mode,
            "budget": {"count": self.budget.count, "limit": self.budget.limit},
            "autonomy_backoff": self.autonomy_backoff.to_payload(),
            "active_goal": active_goal.to_payload() if active_goal else None,
            "ticks_since_last_reward": self.ticks_since_last_reward,
            "consecutive_agent_speeches": self.consecutive_agent_speeches,
            "silence_start": self.silence_start,
            "last_speak_timestamp": self.last_speak_timestamp,
            "conversation": [turn.to_payload() for turn in self.conversation[-20:]],
        }
