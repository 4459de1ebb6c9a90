"""
OpenAI Provider

Adapter over the ``openai`` chat-completions API.  The API key is read
by the SDK from ``OPENAI_API_KEY``.
"""

from __future__ import annotations

import logging

import openai
from openai import OpenAI

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


class OpenAIProvider(ModelProvider):
    vendor = Vendor.OPENAI
    default_model = "gpt-3.5-turbo"

    def __init__(
        self,
        model: str | None = None,
        default_temperature: float = 0.7,
        client: OpenAI | None = None,
    ) -> None:
        super().__init__(model, default_temperature)
        self._client = client or OpenAI()

    def _complete(self, prompt, *, system, temperature, max_tokens) -> Completion:
        response = self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        usage = response.usage
        return Completion(
            content=response.choices[0].message.content or "",
            model=self.model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )

    def _translate_error(self, exc: Exception) -> ProviderError:
        if isinstance(exc, openai.RateLimitError):
            return RateLimitError(str(exc))
        if isinstance(exc, openai.AuthenticationError):
            return AuthenticationError(str(exc))
        if isinstance(exc, openai.APITimeoutError):
            return ProviderTimeoutError(str(exc))
        if isinstance(exc, openai.NotFoundError):
            return ModelUnavailableError(str(exc))
        return super()._translate_error(exc)
