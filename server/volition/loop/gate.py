"""Decision gate: sanitises model output and enforces tool policy.

The gate never fails a decision outright. It strips tool tags that leaked
into the private thought, then either approves the tool intent (recording
the use and announcing it in speech) or blocks it with a reason.
"""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, replace

from volition.agents.context import GateState, SomaState
from volition.config import GatePolicy
from volition.loop import templates
from volition.loop.decider import Decision

LOGGER = logging.getLogger("volition.loop.gate")

DEFAULT_POLICY = GatePolicy()

TOOL_TAG_RE = re.compile(r"\[(SEARCH|VISUALIZE|READ_FILE):\s*[^\]]+\]", re.IGNORECASE)
IMPLICIT_INTENT_RE = re.compile(
    r"\b(?:i\s+(?:should|will|need\s+to|want\s+to|could)|let\s+me)\s+"
    r"(?:search|look\s+up|google|check|visuali[sz]e|draw|picture|read|open)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class GateTelemetry:
    violation: str | None = None
    intent_detected: bool = False
    intent_executed: bool = False
    blocked_reason: str | None = None

    def to_payload(self) -> dict:
        return {
            "violation": self.violation,
            "intent_detected": self.intent_detected,
            "intent_executed": self.intent_executed,
            "blocked_reason": self.blocked_reason,
        }


@dataclass(frozen=True)
class GateDecision:
    approved: bool
    modified_output: Decision
    telemetry: GateTelemetry
    state: GateState


def call_tag(tool: str, query: str) -> str:
    return f"[{tool}: {query}]"


def reset_turn_state(state: GateState) -> GateState:
    return replace(state, tools_used_this_turn=frozenset())


def reset_full_state() -> GateState:
    return GateState()


def detect_implicit_intent(thought: str) -> bool:
    return bool(thought) and IMPLICIT_INTENT_RE.search(thought) is not None


def _policy_block(tool: str, soma: SomaState, state: GateState, policy: GatePolicy, now: float) -> str | None:
    floor = policy.min_energy_for(tool)
    if soma.energy < floor:
        return f"Energy too low for {tool} ({soma.energy:.0f} < {floor:.0f})"

    last_used = state.last_tool_use.get(tool)
    if last_used is not None:
        elapsed = now - last_used
        if elapsed < policy.tool_cooldown_sec:
            return f"{tool} cooldown active ({policy.tool_cooldown_sec - elapsed:.1f}s remaining)"

    if len(state.tools_used_this_turn) >= policy.max_tools_per_turn:
        return f"Max tools per turn reached ({policy.max_tools_per_turn})"
    return None


def process(
    decision: Decision,
    soma: SomaState,
    state: GateState,
    policy: GatePolicy = DEFAULT_POLICY,
    now: float | None = None,
) -> GateDecision:
    now = time.time() if now is None else now
    output = decision
    violation: str | None = None

    match = TOOL_TAG_RE.search(output.internal_thought)
    if match is not None:
        violation = f'Tool tag "{match.group(0)}" found in internal_thought. This is a cognitive violation.'
        LOGGER.warning("gate violation: %s", violation)
        output = output.model_copy(
            update={"internal_thought": TOOL_TAG_RE.sub(templates.INTENT_REMOVED, output.internal_thought)}
        )

    intent = output.tool_intent
    if intent is None or intent.tool is None:
        return GateDecision(
            approved=True,
            modified_output=output,
            telemetry=GateTelemetry(violation=violation),
            state=state,
        )

    blocked_reason = _policy_block(intent.tool, soma, state, policy, now)
    if blocked_reason is not None:
        LOGGER.info("gate blocked %s %r: %s", intent.tool, intent.query, blocked_reason)
        return GateDecision(
            approved=True,
            modified_output=output,
            telemetry=GateTelemetry(
                violation=violation,
                intent_detected=True,
                intent_executed=False,
                blocked_reason=blocked_reason,
            ),
            state=state,
        )

    new_state = GateState(
        tools_used_this_turn=state.tools_used_this_turn | {intent.tool},
        last_tool_use={**state.last_tool_use, intent.tool: now},
    )
    tag = call_tag(intent.tool, intent.query)
    speech = output.speech_content
    if tag not in speech:
        speech = f"{speech.rstrip()} {tag}" if speech.strip() else f"{templates.redirect_phrase(intent.tool)} {tag}"
        output = output.model_copy(update={"speech_content": speech})

    return GateDecision(
        approved=True,
        modified_output=output,
        telemetry=GateTelemetry(violation=violation, intent_detected=True, intent_executed=True),
        state=new_state,
    )
