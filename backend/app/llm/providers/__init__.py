"""AI model provider adapters."""

from backend.app.llm.providers.base import Completion, ModelProvider
from backend.app.llm.providers.registry import ProviderRegistry

__all__ = ["Completion", "ModelProvider", "ProviderRegistry"]
