from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

from volition.agents.context import ConversationTurn, Goal, LoopContext, MetaStatesDelta
from volition.llm.client import LLMClient
from volition.loop import templates
from volition.loop.homeostasis import interpret
from volition.loop.modes import ThinkMode

ToolName = Literal["SEARCH", "VISUALIZE", "READ_FILE"]
KNOWN_TOOLS: tuple[str, ...] = ("SEARCH", "VISUALIZE", "READ_FILE")


class DecisionError(RuntimeError):
    """Raised when the model gives nothing usable for a tick."""


class MoodShift(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    energy_delta: float = Field(default=0.0, ge=-100.0, le=100.0, validation_alias=AliasChoices("energy_delta", "energy"))
    confidence_delta: float = Field(
        default=0.0, ge=-100.0, le=100.0, validation_alias=AliasChoices("confidence_delta", "confidence")
    )
    stress_delta: float = Field(default=0.0, ge=-100.0, le=100.0, validation_alias=AliasChoices("stress_delta", "stress"))

    def as_delta(self) -> MetaStatesDelta:
        return MetaStatesDelta(
            energy_delta=self.energy_delta,
            confidence_delta=self.confidence_delta,
            stress_delta=self.stress_delta,
        )


class ToolIntent(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    tool: ToolName | None = None
    query: str = Field(default="", max_length=1000)
    reason: str = Field(default="", max_length=500)

    @model_validator(mode="after")
    def validate_shape(self) -> "ToolIntent":
        if self.tool is not None and not self.query.strip():
            raise ValueError("query is required when a tool is named")
        return self


class Decision(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    internal_thought: str = Field(default="", max_length=4000, validation_alias=AliasChoices("internal_thought", "thought"))
    speech_content: str = Field(default="", max_length=4000, validation_alias=AliasChoices("speech_content", "speech"))
    mood_shift: MoodShift = Field(default_factory=MoodShift)
    tool_intent: ToolIntent | None = None


def fallback_decision() -> Decision:
    return Decision(
        internal_thought=templates.FALLBACK_THOUGHT,
        speech_content=templates.FALLBACK_SPEECH,
        mood_shift=MoodShift(confidence_delta=-10.0, stress_delta=10.0),
    )


@dataclass
class PromptState:
    """What the model sees for one tick; built by the engine, read-only to the gateway."""

    mode: ThinkMode
    user_input: str | None = None
    goal: Goal | None = None
    snapshot: dict[str, Any] = field(default_factory=dict)
    recent_turns: list[ConversationTurn] = field(default_factory=list)
    recent_thoughts: list[str] = field(default_factory=list)

    @classmethod
    def from_context(
        cls,
        ctx: LoopContext,
        mode: ThinkMode,
        *,
        user_input: str | None = None,
        goal: Goal | None = None,
        recent_limit: int = 12,
    ) -> "PromptState":
        behaviour = interpret(ctx.meta)
        snapshot = {
            "agent_id": ctx.agent_id,
            "soma": ctx.soma.to_payload(),
            "meta": ctx.meta.to_payload(),
            "behavior_mode": behaviour.mode,
            "behavior_reasoning": behaviour.reasoning,
            "limbic": ctx.limbic.to_payload(),
            "neuro": ctx.neuro.to_payload(),
            "traits": ctx.trait_vector.to_payload(),
            "consecutive_agent_speeches": ctx.consecutive_agent_speeches,
        }
        return cls(
            mode=mode,
            user_input=user_input,
            goal=goal,
            snapshot=snapshot,
            recent_turns=list(ctx.conversation[-recent_limit:]),
            recent_thoughts=list(ctx.thought_history[-5:]),
        )


class ModelGateway(Protocol):
    async def generate(self, prompt: PromptState) -> Decision: ...


@dataclass
class CortexDecider:
    client: LLMClient
    temperature: float = 0.6
    strict_schema_validation: bool = False

    @classmethod
    def from_env(cls) -> "CortexDecider":
        client = LLMClient.from_env()

        try:
            temperature = float(os.getenv("LLM_TEMPERATURE", "0.6"))
        except ValueError:
            temperature = 0.6
        temperature = max(0.0, min(temperature, 1.0))

        strict_schema_raw = os.getenv("LLM_STRICT_SCHEMA_VALIDATION", "0")
        return cls(
            client=client,
            temperature=temperature,
            strict_schema_validation=strict_schema_raw.strip().lower() in {"1", "true", "yes", "on"},
        )

    @property
    def enabled(self) -> bool:
        return self.client.enabled

    def _debug(self, message: str) -> None:
        if self.client.debug:
            logging.getLogger("volition.loop.decider").warning(message)

    async def generate(self, prompt: PromptState) -> Decision:
        if not self.enabled:
            raise DecisionError("model client is disabled")

        response_obj = await self.client.request_json_object(
            system_prompt=self._system_prompt(prompt.mode),
            user_payload=self._user_payload(prompt),
            temperature=self.temperature,
            json_schema=Decision.model_json_schema(by_alias=False),
            minimum_output_tokens=400,
        )
        if not response_obj:
            raise DecisionError("empty or non-JSON model response")

        decision = self.parse(response_obj)
        if decision is None:
            raise DecisionError("model response failed validation")
        return decision

    def parse(self, response_obj: Mapping[str, Any]) -> Decision | None:
        try:
            return Decision.model_validate(response_obj)
        except ValidationError as exc:
            self._debug(f"decision schema validation failed: {exc.errors()}")
        if self.strict_schema_validation:
            return None

        normalized = self._normalize_candidate(response_obj)
        if normalized is None:
            self._debug("decision relaxed parse found no candidate")
            return None
        try:
            return Decision.model_validate(normalized)
        except ValidationError as exc:
            self._debug(f"decision relaxed parse rejected: {exc.errors()} payload={normalized!r}")
            return None

    def _normalize_candidate(self, payload: Mapping[str, Any], depth: int = 0) -> dict[str, Any] | None:
        if depth > 3:
            return None
        for key in ("decision", "response", "result", "data", "output"):
            nested = payload.get(key)
            if isinstance(nested, Mapping):
                found = self._normalize_candidate(nested, depth + 1)
                if found is not None:
                    return found

        thought = self._first_text(payload, ("internal_thought", "thought", "thinking", "reasoning"))
        speech = self._first_text(payload, ("speech_content", "speech", "say", "text", "message", "reply"))
        if thought is None and speech is None:
            return None

        normalized: dict[str, Any] = {
            "internal_thought": (thought or "")[:4000],
            "speech_content": (speech or "")[:4000],
            "mood_shift": self._normalize_mood(payload.get("mood_shift") or payload.get("mood")),
        }
        tool_intent = self._normalize_tool_intent(payload.get("tool_intent") or payload.get("tool"))
        if tool_intent is not None:
            normalized["tool_intent"] = tool_intent
        return normalized

    def _first_text(self, payload: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
        for key in keys:
            value = payload.get(key)
            if isinstance(value, str):
                return value.strip()
        return None

    def _normalize_mood(self, raw: Any) -> dict[str, float]:
        mood = {"energy_delta": 0.0, "confidence_delta": 0.0, "stress_delta": 0.0}
        if not isinstance(raw, Mapping):
            return mood
        for short, full in (("energy", "energy_delta"), ("confidence", "confidence_delta"), ("stress", "stress_delta")):
            value = raw.get(full, raw.get(short))
            try:
                mood[full] = max(-100.0, min(float(value), 100.0))
            except (TypeError, ValueError):
                continue
        return mood

    def _normalize_tool_intent(self, raw: Any) -> dict[str, Any] | None:
        if not isinstance(raw, Mapping):
            return None
        tool = raw.get("tool") or raw.get("name")
        query = raw.get("query") or raw.get("arg") or raw.get("argument") or ""
        if not isinstance(tool, str) or not isinstance(query, str):
            return None
        tool = tool.strip().upper()
        if tool not in KNOWN_TOOLS or not query.strip():
            return None
        reason = raw.get("reason")
        return {
            "tool": tool,
            "query": query.strip()[:1000],
            "reason": reason.strip()[:500] if isinstance(reason, str) else "",
        }

    def _system_prompt(self, mode: ThinkMode) -> str:
        mode_hint = {
            ThinkMode.REACTIVE: "Answer the user's latest message.",
            ThinkMode.GOAL_DRIVEN: "Pursue the given goal with one short, useful utterance.",
            ThinkMode.AUTONOMOUS: "Nobody asked you anything. Speak only if you have something worth saying; otherwise leave speech_content empty.",
            ThinkMode.IDLE: "Stay quiet.",
        }[mode]
        return (
            "You are the cortex of a conversational agent. "
            f"{mode_hint} "
            "Return JSON only with keys internal_thought, speech_content, mood_shift, tool_intent. "
            "internal_thought is private reasoning and must never contain tool tags such as [SEARCH: ...]. "
            "mood_shift holds energy_delta, confidence_delta, stress_delta in [-100, 100]. "
            "tool_intent is null or {tool: SEARCH|VISUALIZE|READ_FILE, query, reason}. "
            "Request at most one tool. Let body, affect and traits colour tone and length."
        )

    def _user_payload(self, prompt: PromptState) -> dict[str, Any]:
        return {
            "mode": prompt.mode.value,
            "user_input": prompt.user_input,
            "goal": prompt.goal.to_payload() if prompt.goal else None,
            "state": prompt.snapshot,
            "recent_conversation": [turn.to_payload() for turn in prompt.recent_turns],
            "recent_thoughts": prompt.recent_thoughts,
        }
