"""
LLM capability + structured-output extractor.

Every stage of the itinerary pipeline goes through ``extract()``:

  1. submit the prompt (one litellm round-trip, no retries here)
  2. trim code fences the model wrapped around its JSON
  3. ``json.loads``
  4. validate against the pydantic shape the prompt asked for

Failures at any step come back as a ``ParseError`` value rather than an
exception, so the caller decides whether the stage is fatal or degradable.
"""

from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Optional, Type, TypeVar, Union

import litellm
from pydantic import TypeAdapter, ValidationError

from errors import CompletionError, JSONParseError, ParseError, SchemaError

logger = logging.getLogger(__name__)

# Silence litellm's own verbose logging
litellm.suppress_debug_info = True
# Drop params unsupported by the active model (e.g. temperature on gpt-5)
litellm.drop_params = True

T = TypeVar("T")

_LLM_DEFAULTS = {
    "openai":    "gpt-4o-mini",
    "gemini":    "gemini-2.0-flash",
    "anthropic": "claude-sonnet-4-5",
}

_FENCE_OPEN = re.compile(r"^```(?:json)?[ \t]*\n?", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\n?[ \t]*```$")

_JSON_SYSTEM = "Always respond with valid JSON only. No markdown fences, no extra text."


def _llm_name() -> str:
    """Return the litellm model string (provider/model format)."""
    provider = os.getenv("LLM_PROVIDER", "openai").lower().strip()
    if provider not in _LLM_DEFAULTS:
        provider = "openai"
    model = os.getenv("LLM_MODEL", _LLM_DEFAULTS[provider])
    if provider == "openai":
        return model  # litellm uses bare model name for OpenAI
    return f"{provider}/{model}"


class LLMClient:
    """``complete(prompt, max_tokens) -> text`` over litellm."""

    def __init__(self, model: Optional[str] = None, temperature: float = 0.7):
        self._model = model
        self.temperature = temperature

    @property
    def model(self) -> str:
        return self._model or _llm_name()

    async def complete(
        self,
        prompt: str,
        max_tokens: int = 2000,
        system: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        response = await litellm.acompletion(
            model=self.model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=self.temperature if temperature is None else temperature,
        )
        return response.choices[0].message.content or ""


def strip_fences(text: str) -> str:
    """Trim a leading ```/```json marker and a trailing ``` marker."""
    cleaned = (text or "").strip()
    cleaned = _FENCE_OPEN.sub("", cleaned, count=1)
    cleaned = _FENCE_CLOSE.sub("", cleaned, count=1)
    return cleaned.strip()


def parse_json(text: str) -> Union[Any, JSONParseError]:
    cleaned = strip_fences(text)
    try:
        return json.loads(cleaned)
    except (json.JSONDecodeError, TypeError) as exc:
        return JSONParseError(f"invalid JSON: {exc}", raw=text)


def validate(data: Any, shape: Any, raw: str = "") -> Union[Any, SchemaError]:
    """Validate parsed JSON against a pydantic model or typing construct."""
    try:
        return TypeAdapter(shape).validate_python(data)
    except ValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in exc.errors()[:5]
        )
        return SchemaError(f"schema mismatch: {errors}", raw=raw)


async def extract(
    llm,
    prompt: str,
    shape: Union[Type[T], Any],
    *,
    max_tokens: int = 2000,
    temperature: Optional[float] = None,
    system: str = _JSON_SYSTEM,
) -> Union[T, ParseError]:
    """Run one LLM call and return ``shape`` or a ``ParseError`` describing why not."""
    try:
        raw = await llm.complete(prompt, max_tokens=max_tokens, system=system,
                                 temperature=temperature)
    except Exception as exc:
        logger.warning("LLM completion failed: %s", exc)
        return CompletionError(f"completion failed: {exc}")

    result = parse_json(raw)
    if not isinstance(result, ParseError):
        result = validate(result, shape, raw=raw)
    if isinstance(result, ParseError):
        logger.debug("Rejected LLM output (%s): %.500s", result.kind, raw)
    return result


def unwrap_list(data: Any) -> list:
    """The item list, also when the model wrapped it as {"items": [...]}."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for value in data.values():
            if isinstance(value, list):
                return value
    return []
