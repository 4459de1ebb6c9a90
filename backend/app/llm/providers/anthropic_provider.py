"""
Anthropic Provider

Adapter over the ``anthropic`` messages API.  Catalog IDs such as
``claude-3-opus`` are mapped onto dated API model names; the API key is
read by the SDK from ``ANTHROPIC_API_KEY``.
"""

from __future__ import annotations

import logging

import anthropic

from backend.app.errors import (
    AuthenticationError,
    ModelUnavailableError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitError,
)
from backend.app.llm.model_catalog import Vendor
from backend.app.llm.providers.base import Completion, ModelProvider

logger = logging.getLogger(__name__)

# Catalog ID → API model name
MODEL_MAP = {
    "claude-3-opus": "claude-3-opus-20240229",
    "claude-3-sonnet": "claude-3-sonnet-20240229",
    "claude-3-haiku": "claude-3-haiku-20240307",
}


class AnthropicProvider(ModelProvider):
    vendor = Vendor.ANTHROPIC
    default_model = "claude-3-sonnet"

    def __init__(
        self,
        model: str | None = None,
        default_temperature: float = 0.7,
        client: anthropic.Anthropic | None = None,
    ) -> None:
        super().__init__(model, default_temperature)
        self.api_model = MODEL_MAP.get(self.model, self.model)
        self._client = client or anthropic.Anthropic()

    def _complete(self, prompt, *, system, temperature, max_tokens) -> Completion:
        response = self._client.messages.create(
            model=self.api_model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
            messages=[{"role": "user", "content": prompt}],
        )
        text = "".join(
            block.text for block in response.content if getattr(block, "type", "text") == "text"
        )
        return Completion(
            content=text,
            model=self.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )

    def _translate_error(self, exc: Exception) -> ProviderError:
        if isinstance(exc, anthropic.RateLimitError):
            return RateLimitError(str(exc))
        if isinstance(exc, anthropic.AuthenticationError):
            return AuthenticationError(str(exc))
        if isinstance(exc, anthropic.APITimeoutError):
            return ProviderTimeoutError(str(exc))
        if isinstance(exc, anthropic.NotFoundError):
            return ModelUnavailableError(str(exc))
        return super()._translate_error(exc)
