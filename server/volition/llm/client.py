from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from json import JSONDecodeError, JSONDecoder
from typing import Any

from openai import AsyncOpenAI


def _is_enabled(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class LLMClient:
    enabled: bool
    base_url: str
    model: str
    api_key: str | None
    image_model: str = "gpt-image-1"
    timeout_sec: float = 30.0
    max_output_tokens: int = 600
    max_retries: int = 0
    debug: bool = False
    _sdk_client: AsyncOpenAI | None = None
    _json_schema_supported: bool = True

    @classmethod
    def from_env(cls) -> "LLMClient":
        enabled = _is_enabled(os.getenv("LLM_ENABLED", "0"))
        base_url = os.getenv("LLM_BASE_URL", "https://api.openai.com/v1").strip()
        model = os.getenv("LLM_MODEL", "").strip()
        image_model = os.getenv("LLM_IMAGE_MODEL", "gpt-image-1").strip() or "gpt-image-1"
        api_key = os.getenv("LLM_API_KEY", "").strip() or None

        try:
            timeout_sec = float(os.getenv("LLM_TIMEOUT_SEC", "30"))
        except ValueError:
            timeout_sec = 30.0
        timeout_sec = max(1.0, min(timeout_sec, 180.0))

        try:
            max_output_tokens = int(os.getenv("LLM_MAX_OUTPUT_TOKENS", "600"))
        except ValueError:
            max_output_tokens = 600
        max_output_tokens = max(64, min(max_output_tokens, 9000))

        try:
            max_retries = int(os.getenv("LLM_MAX_RETRIES", "0"))
        except ValueError:
            max_retries = 0
        max_retries = max(0, min(max_retries, 5))

        debug = _is_enabled(os.getenv("LLM_DEBUG", "0"))

        return cls(
            enabled=enabled and bool(base_url) and bool(model) and bool(api_key),
            base_url=base_url.rstrip("/"),
            model=model,
            api_key=api_key,
            image_model=image_model,
            timeout_sec=timeout_sec,
            max_output_tokens=max_output_tokens,
            max_retries=max_retries,
            debug=debug,
        )

    async def request_json_object(
        self,
        *,
        system_prompt: str,
        user_payload: dict[str, Any],
        temperature: float = 0.2,
        json_schema: dict[str, Any] | None = None,
        schema_name: str = "cortex_decision",
        minimum_output_tokens: int = 0,
    ) -> dict[str, Any] | None:
        """Ask for one JSON object: responses API with a schema, then json_object, then chat.completions."""
        if not self.enabled:
            return None

        max_tokens = max(64, min(max(self.max_output_tokens, int(minimum_output_tokens)), 9000))
        schema = None
        if json_schema is not None and self._json_schema_supported:
            schema = {"name": schema_name, "strict": True, "schema": self._strict_schema(json_schema)}

        kwargs = {
            "system_prompt": system_prompt,
            "user_payload": user_payload,
            "temperature": max(0.0, min(float(temperature), 1.0)),
            "max_tokens": max_tokens,
        }
        response = None
        if schema is not None:
            response = await self._responses_create(schema=schema, **kwargs)
        if response is None:
            self._debug("LLM responses fallback: retry with json_object format")
            response = await self._responses_create(schema=None, **kwargs)
        if response is None:
            self._debug("LLM responses fallback: try chat.completions")
            response = await self._chat_completions_create(schema=schema, **kwargs)
        if response is None:
            return None

        content = self._message_text(response)
        if not content:
            self._debug("LLM response has no assistant text content")
            return None
        parsed = self._extract_json_object(content)
        if parsed is None:
            self._debug(f"LLM returned non-JSON text prefix: {content[:280]!r}")
        return parsed

    async def generate_image(self, prompt: str, size: str = "1024x1024") -> str | None:
        """Return a base64 encoded image, or None when the provider gives nothing back."""
        if not self.enabled:
            return None
        try:
            response = await self._get_sdk_client().images.generate(
                model=self.image_model,
                prompt=prompt,
                size=size,
                n=1,
            )
        except Exception as exc:
            self._debug(f"LLM images error type={type(exc).__name__} detail={exc!r}")
            return None

        data = getattr(response, "data", None) or []
        if not data:
            return None
        b64 = getattr(data[0], "b64_json", None)
        return b64 if isinstance(b64, str) and b64 else None

    def _get_sdk_client(self) -> AsyncOpenAI:
        if self._sdk_client is None:
            self._sdk_client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout_sec,
                max_retries=self.max_retries,
            )
        return self._sdk_client

    async def _responses_create(
        self,
        *,
        system_prompt: str,
        user_payload: dict[str, Any],
        temperature: float,
        max_tokens: int,
        schema: dict[str, Any] | None,
    ) -> Any | None:
        text_format = {"type": "json_schema", **schema} if schema else {"type": "json_object"}
        user_text = json.dumps(user_payload, ensure_ascii=False)
        try:
            return await self._get_sdk_client().responses.create(
                model=self.model,
                input=f"{system_prompt}\n\nUSER_CONTEXT_JSON:\n{user_text}",
                temperature=temperature,
                max_output_tokens=max_tokens,
                text={"format": text_format},
            )
        except Exception as exc:
            self._note_failure("responses", schema, exc)
            return None

    async def _chat_completions_create(
        self,
        *,
        system_prompt: str,
        user_payload: dict[str, Any],
        temperature: float,
        max_tokens: int,
        schema: dict[str, Any] | None,
    ) -> Any | None:
        response_format = {"type": "json_schema", "json_schema": schema} if schema else {"type": "json_object"}
        try:
            return await self._get_sdk_client().chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": json.dumps(user_payload, ensure_ascii=False)},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
                response_format=response_format,
            )
        except Exception as exc:
            self._note_failure("chat.completions", schema, exc)
            return None

    def _note_failure(self, api: str, schema: dict[str, Any] | None, exc: Exception) -> None:
        msg = str(exc).lower()
        rejected_schema = ("response_format" in msg or "text.format" in msg) and (
            "invalid schema" in msg or ("json_schema" in msg and "required" in msg)
        )
        if schema is not None and rejected_schema:
            self._json_schema_supported = False
            self._debug(f"LLM provider rejected json_schema in {api}; disabled for next requests")
        self._debug(f"LLM {api} error type={type(exc).__name__} detail={exc!r}")

    def _debug(self, message: str) -> None:
        if self.debug:
            logging.getLogger("volition.llm.client").warning(message)

    def _message_text(self, response: Any) -> str | None:
        output_text = getattr(response, "output_text", None)
        if isinstance(output_text, str) and output_text.strip():
            return output_text.strip()
        choices = getattr(response, "choices", None) or []
        if not choices:
            return None
        content = getattr(getattr(choices[0], "message", None), "content", None)
        if isinstance(content, str) and content.strip():
            return content.strip()
        return None

    def _extract_json_object(self, content: str) -> dict[str, Any] | None:
        normalized = content.strip()
        if normalized.startswith("```"):
            lines = [line for line in normalized.splitlines() if not line.strip().startswith("```")]
            normalized = "\n".join(lines).strip()

        try:
            parsed = json.loads(normalized)
            return parsed if isinstance(parsed, dict) else None
        except JSONDecodeError:
            pass

        start = normalized.find("{")
        if start < 0:
            return None
        try:
            parsed, _idx = JSONDecoder().raw_decode(normalized[start:])
        except JSONDecodeError as exc:
            self._debug(f"JSON decode failed msg={exc.msg!r} pos={exc.pos} prefix={normalized[:180]!r}")
            return None
        return parsed if isinstance(parsed, dict) else None

    def _strict_schema(self, node: Any) -> Any:
        # strict mode wants every property required and no defaults
        if isinstance(node, list):
            return [self._strict_schema(item) for item in node]
        if not isinstance(node, dict):
            return node

        normalized = {key: self._strict_schema(value) for key, value in node.items() if key != "default"}
        props = normalized.get("properties")
        if normalized.get("type") == "object" and isinstance(props, dict):
            normalized["required"] = list(props.keys())
            normalized.setdefault("additionalProperties", False)
        return normalized
