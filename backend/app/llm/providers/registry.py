"""
Provider Registry

Resolves a catalog model ID to a ready adapter by looking up the
model's vendor in a small vendor → adapter table.  Adapters are created
lazily and shared per model.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from backend.app.config import PlatformSettings
from backend.app.errors import ModelUnavailableError
from backend.app.llm.model_catalog import Vendor, get_spec
from backend.app.llm.providers.anthropic_provider import AnthropicProvider
from backend.app.llm.providers.base import ModelProvider
from backend.app.llm.providers.ollama_provider import OllamaProvider
from backend.app.llm.providers.openai_provider import OpenAIProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Vendor capability table plus a per-model adapter cache."""

    def __init__(self, settings: Optional[PlatformSettings] = None) -> None:
        self._settings = settings or PlatformSettings()
        self._factories: dict[Vendor, Callable[[str], ModelProvider]] = {
            Vendor.OPENAI: lambda model: OpenAIProvider(model=model),
            Vendor.ANTHROPIC: lambda model: AnthropicProvider(model=model),
            Vendor.OLLAMA: lambda model: OllamaProvider(
                model=model, host=self._settings.ollama_host,
            ),
        }
        self._providers: dict[str, ModelProvider] = {}
        self._lock = threading.Lock()

    def register(self, vendor: Vendor, factory: Callable[[str], ModelProvider]) -> None:
        """Plug in (or replace) the adapter used for *vendor*."""
        with self._lock:
            self._factories[vendor] = factory
            self._providers = {
                m: p for m, p in self._providers.items() if p.vendor != vendor
            }

    def supports(self, model_id: str) -> bool:
        spec = get_spec(model_id)
        return spec is not None and spec.vendor in self._factories

    def get(self, model_id: str) -> ModelProvider:
        """Return the adapter for *model_id* or raise ``ModelUnavailableError``."""
        with self._lock:
            provider = self._providers.get(model_id)
            if provider is not None:
                return provider

            spec = get_spec(model_id)
            if spec is None:
                raise ModelUnavailableError(f"Unknown model '{model_id}'.")
            factory = self._factories.get(spec.vendor)
            if factory is None:
                raise ModelUnavailableError(
                    f"No adapter is configured for {spec.vendor.value} model '{model_id}'."
                )
            try:
                provider = factory(model_id)
            except Exception as exc:
                # e.g. missing API key in the environment
                raise ModelUnavailableError(
                    f"Could not initialise adapter for '{model_id}': {exc}"
                ) from exc
            self._providers[model_id] = provider
            logger.info("Created %s adapter for model '%s'.", type(provider).__name__, model_id)
            return provider

    __call__ = get
