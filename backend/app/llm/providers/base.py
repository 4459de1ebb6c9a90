"""
Model Provider Contract

Every AI backend is wrapped in a :class:`ModelProvider`.  Adapters only
implement :meth:`ModelProvider._complete` (one vendor round trip) and
:meth:`ModelProvider._translate_error`; the higher-level operations the
orchestrator calls are built once, here, on top of
:meth:`ModelProvider.generate_completion`:

* ``generate_code(prompt, language)``
* ``analyze_data_requirements(query, schema)``
* ``interpret_results(results, query, user_level)``

Each call returns a :class:`Completion` carrying the token usage so the
caller can account cost per stage.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Optional

from pydantic import BaseModel

from backend.app.errors import (
    AuthenticationError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitError,
)
from backend.app.llm import prompts
from backend.app.llm.model_catalog import ModelSpec, Vendor, get_spec, models_for_vendor

logger = logging.getLogger(__name__)


class Completion(BaseModel):
    """Text returned by one provider call plus its token usage."""

    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    parsed: Optional[dict[str, Any]] = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


_CODE_FENCE_RE = re.compile(r"```[ \t]*([A-Za-z]*)[ \t]*\n(.*?)\n?```", re.DOTALL)


def extract_code(text: str) -> str:
    """Return the first fenced code block in *text*, or *text* itself."""
    match = _CODE_FENCE_RE.search(text)
    if match:
        return match.group(2).strip()
    return text.strip()


def extract_json(text: str) -> Any | None:
    """Extract a JSON object or array from LLM output (handles code fences)."""

    # Try: direct JSON parse
    try:
        return json.loads(text.strip())
    except (json.JSONDecodeError, ValueError):
        pass

    # Try: extract from code fence
    match = re.search(r"```(?:json)?\s*([\[{].*?[\]}])\s*```", text, re.DOTALL)
    if match:
        try:
            return json.loads(match.group(1))
        except (json.JSONDecodeError, ValueError):
            pass

    # Try: outermost braces, then brackets
    for opener, closer in (("{", "}"), ("[", "]")):
        first = text.find(opener)
        last = text.rfind(closer)
        if first >= 0 and last > first:
            try:
                return json.loads(text[first : last + 1])
            except (json.JSONDecodeError, ValueError):
                continue

    return None


def estimate_tokens(text: str) -> int:
    """Rough whitespace-based token estimate for backends that report none."""
    return int(len(text.split()) * 1.3)


class ModelProvider(ABC):
    """Uniform interface over one vendor's models.

    Parameters
    ----------
    model : str | None
        Model ID from the catalog.  Defaults to ``default_model``.
    default_temperature : float
        Temperature used when the caller does not specify one.
    """

    vendor: Vendor
    default_model: str

    def __init__(self, model: str | None = None, default_temperature: float = 0.7) -> None:
        self.model = model or self.default_model
        self.default_temperature = default_temperature

    # ── Static metadata ──────────────────────────────────────────

    @property
    def spec(self) -> ModelSpec:
        spec = get_spec(self.model)
        if spec is None:
            raise ProviderError(f"Model '{self.model}' is not in the catalog.")
        return spec

    @property
    def available_models(self) -> list[str]:
        return models_for_vendor(self.vendor)

    @property
    def max_context_length(self) -> int:
        return self.spec.context_length

    @property
    def cost_per_1k_tokens(self) -> dict[str, float]:
        return {"input": self.spec.input_cost_per_1k, "output": self.spec.output_cost_per_1k}

    @property
    def supports_streaming(self) -> bool:
        return self.spec.supports_streaming

    @property
    def supports_function_calling(self) -> bool:
        return self.spec.supports_function_calling

    @property
    def supports_vision(self) -> bool:
        return self.spec.supports_vision

    # ── Vendor hooks ─────────────────────────────────────────────

    @abstractmethod
    def _complete(
        self,
        prompt: str,
        *,
        system: str,
        temperature: float,
        max_tokens: int,
    ) -> Completion:
        """Perform one vendor round trip."""

    def _translate_error(self, exc: Exception) -> ProviderError:
        """Map an arbitrary SDK exception onto the provider error taxonomy."""
        message = str(exc) or type(exc).__name__
        lowered = message.lower()
        if "rate limit" in lowered:
            return RateLimitError(message)
        if "api key" in lowered or "authentication" in lowered:
            return AuthenticationError(message)
        if "timeout" in lowered or "timed out" in lowered:
            return ProviderTimeoutError(message)
        return ProviderError(message)

    # ── Core completion ──────────────────────────────────────────

    def generate_completion(
        self,
        prompt: str,
        *,
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int = 4000,
    ) -> Completion:
        """Send a single-turn prompt and return the reply with usage."""
        try:
            completion = self._complete(
                prompt,
                system=system or "You are a helpful data science assistant.",
                temperature=self.default_temperature if temperature is None else temperature,
                max_tokens=max_tokens,
            )
        except ProviderError:
            raise
        except Exception as exc:
            error = self._translate_error(exc)
            logger.error(
                "AI provider error (%s, model=%s): %s",
                type(self).__name__, self.model, error,
            )
            raise error from exc

        logger.debug(
            "%s completion: %d in / %d out tokens.",
            self.model, completion.input_tokens, completion.output_tokens,
        )
        return completion

    # ── Shared higher-level operations ───────────────────────────

    def generate_code(self, prompt: str, language: str = "python") -> Completion:
        """Generate code for *prompt*; ``content`` holds the bare code."""
        completion = self.generate_completion(
            prompts.CODE_GENERATION_PROMPT.format(language=language, task=prompt),
            system=prompts.CODE_GENERATION_SYSTEM.format(language=language),
            temperature=0.3,
        )
        return completion.model_copy(update={"content": extract_code(completion.content)})

    def analyze_data_requirements(self, query: str, schema: dict[str, Any]) -> Completion:
        """Map *query* onto *schema*; ``parsed`` holds the requirements dict."""
        completion = self.generate_completion(
            prompts.REQUIREMENTS_PROMPT.format(
                query=query,
                schema_json=json.dumps(schema, indent=2, default=str),
            ),
            system=prompts.REQUIREMENTS_SYSTEM,
            temperature=0.2,
        )
        parsed = extract_json(completion.content)
        if not isinstance(parsed, dict):
            logger.warning("Requirements response from %s was not a JSON object.", self.model)
            parsed = {"notes": completion.content.strip()}
        return completion.model_copy(update={"parsed": parsed})

    def interpret_results(
        self,
        results: Any,
        query: str,
        user_level: str = "beginner",
    ) -> Completion:
        """Explain *results* in natural language for a reader of *user_level*."""
        system = prompts.INTERPRETATION_SYSTEM.format(user_level=user_level)
        guidance = prompts.USER_LEVEL_GUIDANCE.get(user_level)
        if guidance:
            system = f"{system}\n{guidance}"
        completion = self.generate_completion(
            prompts.INTERPRETATION_PROMPT.format(
                query=query,
                results_json=json.dumps(results, indent=2, default=str),
                user_level=user_level,
            ),
            system=system,
            temperature=0.4,
        )
        return completion.model_copy(update={"content": completion.content.strip()})
