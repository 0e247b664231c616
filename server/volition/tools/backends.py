from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from volition.llm.client import LLMClient
from volition.tools.runtime import ImageResult, SearchResult

LOGGER = logging.getLogger("volition.tools.backends")

_RESEARCH_PROMPT = (
    "You are a research assistant. Answer the query with a compact, factual synthesis "
    "(at most 6 sentences) and list the sources you relied on. "
    "Return JSON only: {\"synthesis\": str, \"sources\": [{\"title\": str, \"url\": str}]}."
)

_RESEARCH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "synthesis": {"type": "string"},
        "sources": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {"title": {"type": "string"}, "url": {"type": "string"}},
            },
        },
    },
}


def _clean_sources(raw: Any, limit: int = 8) -> list[dict[str, str]]:
    if not isinstance(raw, list):
        return []
    sources: list[dict[str, str]] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        url = item.get("url")
        if not isinstance(url, str) or not url.strip():
            continue
        title = item.get("title")
        sources.append({"title": title.strip() if isinstance(title, str) else url.strip(), "url": url.strip()})
        if len(sources) >= limit:
            break
    return sources


@dataclass
class ResearchBackend:
    """SEARCH: asks the model for a sourced synthesis of the query."""

    client: LLMClient
    temperature: float = 0.2

    async def __call__(self, arg: str, reason: str) -> SearchResult | None:
        if not self.client.enabled:
            raise RuntimeError("SEARCH module is unavailable")
        response = await self.client.request_json_object(
            system_prompt=_RESEARCH_PROMPT,
            user_payload={"query": arg, "reason": reason},
            temperature=self.temperature,
            json_schema=_RESEARCH_SCHEMA,
            schema_name="research_synthesis",
        )
        if not response:
            return None
        synthesis = response.get("synthesis")
        if not isinstance(synthesis, str):
            return None
        return SearchResult(synthesis=synthesis.strip(), sources=_clean_sources(response.get("sources")))


@dataclass
class ImageBackend:
    """VISUALIZE: renders the prompt through the images API."""

    client: LLMClient
    size: str = "1024x1024"

    async def __call__(self, arg: str, reason: str) -> ImageResult | None:
        if not self.client.enabled:
            raise RuntimeError("VISUALIZE module is unavailable")
        image_b64 = await self.client.generate_image(arg, size=self.size)
        if image_b64 is None:
            LOGGER.info("image backend returned nothing for %r", arg[:80])
            return None
        return ImageResult(image_b64=image_b64, caption=arg)
