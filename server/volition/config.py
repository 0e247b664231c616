from __future__ import annotations

import os
from dataclasses import dataclass, field


def _clamp_int(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _clamp_float(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _env_int(name: str, default: int, low: int, high: int) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        value = default
    return _clamp_int(value, low, high)


def _env_float(name: str, default: float, low: float, high: float) -> float:
    try:
        value = float(os.getenv(name, str(default)))
    except ValueError:
        value = default
    return _clamp_float(value, low, high)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


@dataclass(frozen=True)
class HomeostasisConfig:
    smoothing: float = 0.3
    rate: float = 0.05

    @classmethod
    def from_env(cls) -> "HomeostasisConfig":
        return cls(
            smoothing=_env_float("HOMEOSTASIS_SMOOTHING", 0.3, 0.0, 1.0),
            rate=_env_float("HOMEOSTASIS_RATE", 0.05, 0.0, 1.0),
        )


@dataclass(frozen=True)
class GatePolicy:
    min_energy_search: float = 10.0
    min_energy_visualize: float = 25.0
    min_energy_read_file: float = 5.0
    tool_cooldown_sec: float = 5.0
    max_tools_per_turn: int = 1

    @classmethod
    def from_env(cls) -> "GatePolicy":
        return cls(
            min_energy_search=_env_float("GATE_MIN_ENERGY_SEARCH", 10.0, 0.0, 100.0),
            min_energy_visualize=_env_float("GATE_MIN_ENERGY_VISUALIZE", 25.0, 0.0, 100.0),
            min_energy_read_file=_env_float("GATE_MIN_ENERGY_READ_FILE", 5.0, 0.0, 100.0),
            tool_cooldown_sec=_env_float("GATE_TOOL_COOLDOWN_SEC", 5.0, 0.0, 600.0),
            max_tools_per_turn=_env_int("GATE_MAX_TOOLS_PER_TURN", 1, 0, 8),
        )

    def min_energy_for(self, tool: str) -> float:
        floors = {
            "SEARCH": self.min_energy_search,
            "VISUALIZE": self.min_energy_visualize,
            "READ_FILE": self.min_energy_read_file,
        }
        return floors.get(tool, 0.0)


@dataclass(frozen=True)
class RuntimeConfig:
    timeout_sec: float = 20.0
    visual_base_cooldown_sec: float = 60.0
    workspace_root: str = "."
    workspace_max_chars: int = 20000

    @classmethod
    def from_env(cls) -> "RuntimeConfig":
        return cls(
            timeout_sec=_env_float("TOOL_TIMEOUT_SEC", 20.0, 0.05, 600.0),
            visual_base_cooldown_sec=_env_float("VISUAL_BASE_COOLDOWN_SEC", 60.0, 0.0, 3600.0),
            workspace_root=_env_str("WORKSPACE_ROOT", "."),
            workspace_max_chars=_env_int("WORKSPACE_MAX_CHARS", 20000, 256, 1_000_000),
        )


@dataclass(frozen=True)
class LoopConfig:
    homeostasis: HomeostasisConfig = field(default_factory=HomeostasisConfig)
    gate: GatePolicy = field(default_factory=GatePolicy)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    silence_window_sec: float = 5.0
    goal_cooldown_sec: float = 300.0
    goal_min_silence_sec: float = 60.0
    goal_ttl_sec: float = 600.0
    conversation_limit: int = 200
    thought_history_limit: int = 50
    narcissism_threshold: int = 4
    tool_energy_costs: dict[str, float] = field(
        default_factory=lambda: {"SEARCH": 5.0, "VISUALIZE": 15.0, "READ_FILE": 1.0}
    )
    visual_cognitive_load: float = 15.0
    autonomy_backoff_base_sec: float = 25.0
    autonomy_backoff_max_sec: float = 300.0

    @classmethod
    def from_env(cls) -> "LoopConfig":
        return cls(
            homeostasis=HomeostasisConfig.from_env(),
            gate=GatePolicy.from_env(),
            runtime=RuntimeConfig.from_env(),
            silence_window_sec=_env_float("SILENCE_WINDOW_SEC", 5.0, 0.0, 600.0),
            goal_cooldown_sec=_env_float("GOAL_COOLDOWN_SEC", 300.0, 0.0, 86400.0),
            goal_min_silence_sec=_env_float("GOAL_MIN_SILENCE_SEC", 60.0, 0.0, 86400.0),
            goal_ttl_sec=_env_float("GOAL_TTL_SEC", 600.0, 1.0, 86400.0),
            conversation_limit=_env_int("CONVERSATION_LIMIT", 200, 10, 5000),
            thought_history_limit=_env_int("THOUGHT_HISTORY_LIMIT", 50, 5, 1000),
            narcissism_threshold=_env_int("NARCISSISM_THRESHOLD", 4, 1, 50),
            autonomy_backoff_base_sec=_env_float("AUTONOMY_BACKOFF_BASE_SEC", 25.0, 0.0, 3600.0),
            autonomy_backoff_max_sec=_env_float("AUTONOMY_BACKOFF_MAX_SEC", 300.0, 0.0, 86400.0),
        )
