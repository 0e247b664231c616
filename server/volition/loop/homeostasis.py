"""Resource model: meta-state smoothing, behaviour interpretation and body/affect drift.

Every function here is pure: it takes a frozen state and returns a new one.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Literal

from volition.agents.context import (
    META_STATES_BASELINE,
    LimbicState,
    MetaStates,
    MetaStatesDelta,
    NeuroState,
    SomaState,
)
from volition.config import HomeostasisConfig

BehaviorMode = Literal["rest", "auditor", "creative", "cautious"]

SLEEP_THRESHOLD = 20.0
WAKE_THRESHOLD = 95.0
SLEEP_REGEN_PER_TICK = 7.0
AWAKE_DRAIN_PER_TICK = 0.1

LIMBIC_DECAY = 0.995
LIMBIC_BASELINE = LimbicState(fear=0.0, curiosity=0.0, frustration=0.0, satisfaction=0.5)

DOPAMINE_FLOOR = 45.0
DOPAMINE_DECAY_PER_TICK = 4.0
NEURO_BASELINE = NeuroState()


@dataclass(frozen=True)
class BehaviorInterpretation:
    mode: BehaviorMode
    reasoning: str


@dataclass(frozen=True)
class MetabolicResult:
    state: SomaState
    should_sleep: bool = False
    should_wake: bool = False


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _toward(value: float, target: float, rate: float) -> float:
    return value + (target - value) * rate


def update(
    current: MetaStates,
    deltas: MetaStatesDelta,
    config: HomeostasisConfig = HomeostasisConfig(),
) -> MetaStates:
    """Smooth the deltas in, pull toward baseline, clamp to [0, 100]."""
    energy = current.energy + deltas.energy_delta * config.smoothing
    confidence = current.confidence + deltas.confidence_delta * config.smoothing
    stress = current.stress + deltas.stress_delta * config.smoothing

    energy = _toward(energy, META_STATES_BASELINE.energy, config.rate)
    confidence = _toward(confidence, META_STATES_BASELINE.confidence, config.rate)
    stress = _toward(stress, META_STATES_BASELINE.stress, config.rate)

    return MetaStates(
        energy=_clamp(energy, 0.0, 100.0),
        confidence=_clamp(confidence, 0.0, 100.0),
        stress=_clamp(stress, 0.0, 100.0),
    )


def interpret(state: MetaStates) -> BehaviorInterpretation:
    if state.energy < 20:
        return BehaviorInterpretation("rest", "Low energy - minimal responses")
    if state.stress > 60 and state.confidence < 40:
        return BehaviorInterpretation("auditor", "High stress and low confidence - verify before acting")
    if state.confidence > 70 and state.stress < 30:
        return BehaviorInterpretation("creative", "High confidence and low stress - explore freely")
    return BehaviorInterpretation("cautious", "Balanced state - proceed carefully")


def needs_rest(state: MetaStates) -> bool:
    return state.energy < 20 or state.stress > 80


def metabolic_step(soma: SomaState, action_cost: float = 0.0) -> MetabolicResult:
    if soma.is_sleeping:
        energy = min(100.0, soma.energy + SLEEP_REGEN_PER_TICK)
        if energy >= WAKE_THRESHOLD:
            return MetabolicResult(replace(soma, energy=energy, is_sleeping=False), should_wake=True)
        return MetabolicResult(replace(soma, energy=energy))

    if soma.energy < SLEEP_THRESHOLD:
        return MetabolicResult(replace(soma, is_sleeping=True), should_sleep=True)

    energy = max(0.0, soma.energy - AWAKE_DRAIN_PER_TICK - max(0.0, action_cost))
    return MetabolicResult(replace(soma, energy=energy))


def apply_energy_cost(soma: SomaState, cost: float) -> SomaState:
    return replace(soma, energy=_clamp(soma.energy - cost, 0.0, 100.0))


def apply_cognitive_load(soma: SomaState, load: float) -> SomaState:
    return replace(soma, cognitive_load=_clamp(soma.cognitive_load + load, 0.0, 100.0))


def limbic_homeostasis(limbic: LimbicState) -> LimbicState:
    def settle(value: float, baseline: float) -> float:
        return baseline + (value - baseline) * LIMBIC_DECAY

    return LimbicState(
        fear=settle(limbic.fear, LIMBIC_BASELINE.fear),
        curiosity=settle(limbic.curiosity, LIMBIC_BASELINE.curiosity),
        frustration=settle(limbic.frustration, LIMBIC_BASELINE.frustration),
        satisfaction=settle(limbic.satisfaction, LIMBIC_BASELINE.satisfaction),
    ).clamped()


def apply_speech_response(limbic: LimbicState) -> LimbicState:
    return replace(
        limbic,
        satisfaction=_clamp(limbic.satisfaction + 0.1, 0.0, 1.0),
        curiosity=_clamp(limbic.curiosity - 0.2, 0.0, 1.0),
    )


def apply_visual_emotional_cost(limbic: LimbicState, binge_count: int) -> LimbicState:
    return replace(
        limbic,
        satisfaction=_clamp(limbic.satisfaction + 0.2 / (max(0, binge_count) + 1), 0.0, 1.0),
        curiosity=max(0.1, limbic.curiosity - 0.5),
    )


def apply_action_feedback(limbic: LimbicState, success: bool, tool: str) -> LimbicState:
    """Only a file read is rewarding on success; any failed tool frustrates."""
    if success:
        if tool.upper() != "READ_FILE":
            return limbic
        return replace(
            limbic,
            curiosity=max(0.1, limbic.curiosity - 0.15),
            satisfaction=_clamp(limbic.satisfaction + 0.1, 0.0, 1.0),
        )
    return replace(limbic, frustration=_clamp(limbic.frustration + 0.1, 0.0, 1.0))


def neuro_homeostasis(neuro: NeuroState, ticks_since_reward: int) -> NeuroState:
    # Two rewardless ticks in a row start draining dopamine toward its floor.
    if ticks_since_reward >= 2:
        dopamine = neuro.dopamine
        if dopamine > DOPAMINE_FLOOR:
            dopamine = max(DOPAMINE_FLOOR, dopamine - DOPAMINE_DECAY_PER_TICK)
    else:
        dopamine = _toward(neuro.dopamine, NEURO_BASELINE.dopamine, 0.05)
    return NeuroState(
        dopamine=dopamine,
        serotonin=_toward(neuro.serotonin, NEURO_BASELINE.serotonin, 0.05),
        norepinephrine=_toward(neuro.norepinephrine, NEURO_BASELINE.norepinephrine, 0.05),
    ).clamped()
