"""Resource model: bounds, interpretation boundaries, body and affect drift."""
from __future__ import annotations

import pytest

from volition.agents.context import LimbicState, MetaStates, MetaStatesDelta, NeuroState, SomaState
from volition.loop import homeostasis


def test_update_smooths_then_pulls_toward_baseline():
    state = homeostasis.update(MetaStates(), MetaStatesDelta(energy_delta=10.0))
    # 70 + 10 * 0.3 = 73, then 5% of the way back to 70
    assert state.energy == pytest.approx(72.85)
    assert state.confidence == pytest.approx(60.0)
    assert state.stress == pytest.approx(20.0)


@pytest.mark.parametrize("start", [0.0, 100.0])
@pytest.mark.parametrize("delta", [-100.0, 100.0])
def test_update_stays_in_bounds(start, delta):
    state = homeostasis.update(
        MetaStates(energy=start, confidence=start, stress=start),
        MetaStatesDelta(energy_delta=delta, confidence_delta=delta, stress_delta=delta),
    )
    for value in (state.energy, state.confidence, state.stress):
        assert 0.0 <= value <= 100.0


def test_interpret_boundary_is_strict():
    assert homeostasis.interpret(MetaStates(energy=50, confidence=40, stress=60)).mode == "cautious"


def test_interpret_priority_order():
    assert homeostasis.interpret(MetaStates(energy=19.9, confidence=10, stress=90)).mode == "rest"
    assert homeostasis.interpret(MetaStates(energy=50, confidence=39, stress=61)).mode == "auditor"
    assert homeostasis.interpret(MetaStates(energy=50, confidence=71, stress=29)).mode == "creative"
    assert homeostasis.interpret(MetaStates(energy=19.9)).reasoning == "Low energy - minimal responses"


def test_needs_rest():
    assert homeostasis.needs_rest(MetaStates(energy=19))
    assert homeostasis.needs_rest(MetaStates(stress=81))
    assert not homeostasis.needs_rest(MetaStates(energy=20, stress=80))


def test_metabolic_sleep_cycle():
    tired = homeostasis.metabolic_step(SomaState(energy=15.0))
    assert tired.should_sleep and tired.state.is_sleeping

    resting = homeostasis.metabolic_step(SomaState(energy=50.0, is_sleeping=True))
    assert resting.state.energy == pytest.approx(57.0)
    assert resting.state.is_sleeping

    waking = homeostasis.metabolic_step(SomaState(energy=90.0, is_sleeping=True))
    assert waking.should_wake
    assert not waking.state.is_sleeping

    awake = homeostasis.metabolic_step(SomaState(energy=50.0), action_cost=2.0)
    assert awake.state.energy == pytest.approx(47.9)


def test_energy_and_load_are_capped():
    assert homeostasis.apply_energy_cost(SomaState(energy=3.0), 15.0).energy == 0.0
    assert homeostasis.apply_cognitive_load(SomaState(cognitive_load=95.0), 15.0).cognitive_load == 100.0


def test_limbic_drifts_toward_baseline():
    settled = homeostasis.limbic_homeostasis(LimbicState(fear=1.0, curiosity=1.0, frustration=1.0, satisfaction=0.0))
    assert settled.fear < 1.0
    assert settled.satisfaction > 0.0


def test_visual_cost_keeps_curiosity_floor():
    first = homeostasis.apply_visual_emotional_cost(LimbicState(curiosity=0.3, satisfaction=0.5), binge_count=0)
    assert first.curiosity == pytest.approx(0.1)
    assert first.satisfaction == pytest.approx(0.7)

    second = homeostasis.apply_visual_emotional_cost(LimbicState(curiosity=0.3, satisfaction=0.5), binge_count=1)
    assert second.satisfaction == pytest.approx(0.6)


def test_action_feedback():
    success = homeostasis.apply_action_feedback(LimbicState(curiosity=0.5, satisfaction=0.5), success=True, tool="READ_FILE")
    assert success.curiosity == pytest.approx(0.35)
    assert success.satisfaction == pytest.approx(0.6)
    failure = homeostasis.apply_action_feedback(LimbicState(frustration=0.95), success=False, tool="SEARCH")
    assert failure.frustration == 1.0


def test_only_file_reads_reward_success():
    before = LimbicState(curiosity=0.5, satisfaction=0.5)
    assert homeostasis.apply_action_feedback(before, success=True, tool="SEARCH") == before
    assert homeostasis.apply_action_feedback(before, success=True, tool="VISUALIZE") == before


def test_dopamine_drains_to_floor_without_reward():
    neuro = NeuroState(dopamine=50.0)
    neuro = homeostasis.neuro_homeostasis(neuro, ticks_since_reward=3)
    assert neuro.dopamine == pytest.approx(46.0)
    neuro = homeostasis.neuro_homeostasis(neuro, ticks_since_reward=4)
    assert neuro.dopamine == pytest.approx(45.0)
    neuro = homeostasis.neuro_homeostasis(neuro, ticks_since_reward=5)
    assert neuro.dopamine == pytest.approx(45.0)
