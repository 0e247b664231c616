from __future__ import annotations

from random import choice

FALLBACK_THOUGHT = "Parse error - using fallback"
FALLBACK_SPEECH = "I encountered an issue processing that. Could you rephrase?"

INTENT_REMOVED = "[INTENT_REMOVED]"

REDIRECT_PHRASES: dict[str, list[str]] = {
    "SEARCH": ["Let me look that up.", "I'll search for that.", "Checking..."],
    "VISUALIZE": ["Let me visualize this.", "I'll create an image.", "Generating visual..."],
    "READ_FILE": ["Let me open that file.", "Reading it now."],
}

REFRACTORY_DISTRACTIONS = [
    "System Alert: Sudden spike in entropy detected. Analyze logic structure instead.",
    "Data Stream Update: Reviewing recent memory coherence.",
    "Focus Shift: Analyzing linguistic patterns in user input.",
]

TEMPLATES: dict[str, str] = {
    "refractory": "[VISUAL CORTEX REFRACTORY PERIOD ACTIVE - {remaining}s REMAINING] {distraction}",
    "tool_pending": "{tool} is still working on '{query}'. I will share it when it lands.",
    "tool_late": "{tool} result arrived after TIMEOUT (attached): '{query}'",
    "tool_unavailable": "{tool} module is unavailable: {error}",
    "goal_thought": "Pursuing goal: {description}",
    "speech_suppressed": "[SPEECH_SUPPRESSED] {speech}",
    "goal_curiosity": "Explore something new related to: {topic}",
    "goal_empathy": "Check in on the user and ease the tension around: {topic}",
    "goal_idle": "Reflect on the conversation so far and offer one useful insight",
}


def render(template_key: str, **kwargs) -> str:
    return TEMPLATES[template_key].format(**kwargs)


def redirect_phrase(tool: str) -> str:
    return choice(REDIRECT_PHRASES.get(tool, ["Working on it."]))


def refractory_filler(remaining_sec: float) -> str:
    return render(
        "refractory",
        remaining=int(max(0.0, remaining_sec) + 0.999),
        distraction=choice(REFRACTORY_DISTRACTIONS),
    )
