"""
Ollama Provider

Adapter over a local or self-hosted Ollama server for the open-weight
models in the catalog (Llama 3, Mixtral).  Catalog IDs are mapped onto
Ollama model tags.
"""

from __future__ import annotations

import logging
from typing import Any

import ollama

from backend.app.llm.model_catalog import Vendor
from backend.app.llm.providers.base import Completion, ModelProvider, estimate_tokens

logger = logging.getLogger(__name__)

# Catalog ID → Ollama tag
MODEL_TAGS = {
    "llama3-8b": "llama3:8b",
    "llama3-70b": "llama3:70b",
    "mixtral-8x7b": "mixtral:8x7b",
}


class OllamaProvider(ModelProvider):
    """Thin wrapper over the Ollama chat API.

    Parameters
    ----------
    model : str | None
        Catalog ID.  Defaults to ``llama3-8b``.
    host : str | None
        Ollama server URL.  ``None`` uses the ``ollama`` module defaults
        (``OLLAMA_HOST`` or ``http://localhost:11434``).
    """

    vendor = Vendor.OLLAMA
    default_model = "llama3-8b"

    def __init__(
        self,
        model: str | None = None,
        default_temperature: float = 0.3,
        host: str | None = None,
    ) -> None:
        super().__init__(model, default_temperature)
        self.tag = MODEL_TAGS.get(self.model, self.model)
        self._client: Any = ollama.Client(host=host) if host else ollama

    def _complete(self, prompt, *, system, temperature, max_tokens) -> Completion:
        response = self._client.chat(
            model=self.tag,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            options={"temperature": temperature, "num_predict": max_tokens},
        )
        content = response.message.content or ""
        # Older servers omit the eval counters.
        input_tokens = getattr(response, "prompt_eval_count", None)
        output_tokens = getattr(response, "eval_count", None)
        return Completion(
            content=content,
            model=self.model,
            input_tokens=input_tokens if isinstance(input_tokens, int) else estimate_tokens(system + prompt),
            output_tokens=output_tokens if isinstance(output_tokens, int) else estimate_tokens(content),
        )
