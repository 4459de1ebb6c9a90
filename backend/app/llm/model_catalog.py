"""
Model Catalog

Static metadata for every model the platform knows about: owning
vendor, context window, price per 1k tokens and capability flags.

The catalog is the single lookup table behind three decisions:

* which adapter serves a model (``vendor``),
* what a call will cost (``input_cost_per_1k`` / ``output_cost_per_1k``),
* which models a subscription tier unlocks (``TIER_MODELS``).

Models with no published price fall back to ``DEFAULT_COST_PER_1K``.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel

from backend.app.schema.directory_schema import SubscriptionTier


class Vendor(str, Enum):
    OPENAI    = "openai"
    ANTHROPIC = "anthropic"
    OLLAMA    = "ollama"
    GOOGLE    = "google"
    COHERE    = "cohere"


class ModelSpec(BaseModel):
    """Static description of one model."""

    model_id: str
    vendor: Vendor
    context_length: int
    input_cost_per_1k: float
    output_cost_per_1k: float
    supports_streaming: bool = True
    supports_function_calling: bool = False
    supports_vision: bool = False

    model_config = {"frozen": True}

    @property
    def combined_cost_per_1k(self) -> float:
        return self.input_cost_per_1k + self.output_cost_per_1k


# Price used when a vendor publishes none for a model.
DEFAULT_COST_PER_1K = {"input": 0.001, "output": 0.002}


def _spec(model_id: str, vendor: Vendor, context_length: int, **kwargs) -> ModelSpec:
    kwargs.setdefault("input_cost_per_1k", DEFAULT_COST_PER_1K["input"])
    kwargs.setdefault("output_cost_per_1k", DEFAULT_COST_PER_1K["output"])
    return ModelSpec(model_id=model_id, vendor=vendor, context_length=context_length, **kwargs)


# ── Catalog ──────────────────────────────────────────────────────────────
MODEL_CATALOG: dict[str, ModelSpec] = {
    spec.model_id: spec
    for spec in (
        # OpenAI
        _spec("gpt-4-turbo", Vendor.OPENAI, 128_000,
              input_cost_per_1k=0.01, output_cost_per_1k=0.03,
              supports_function_calling=True, supports_vision=True),
        _spec("gpt-4", Vendor.OPENAI, 8_192,
              input_cost_per_1k=0.03, output_cost_per_1k=0.06,
              supports_function_calling=True),
        _spec("gpt-3.5-turbo", Vendor.OPENAI, 16_385,
              input_cost_per_1k=0.0005, output_cost_per_1k=0.0015,
              supports_function_calling=True),
        # Anthropic
        _spec("claude-3-opus", Vendor.ANTHROPIC, 200_000,
              input_cost_per_1k=0.015, output_cost_per_1k=0.075,
              supports_function_calling=True, supports_vision=True),
        _spec("claude-3-sonnet", Vendor.ANTHROPIC, 200_000,
              input_cost_per_1k=0.003, output_cost_per_1k=0.015,
              supports_function_calling=True, supports_vision=True),
        _spec("claude-3-haiku", Vendor.ANTHROPIC, 200_000,
              input_cost_per_1k=0.00025, output_cost_per_1k=0.00125,
              supports_function_calling=True, supports_vision=True),
        # Self-hosted open-weight models served through Ollama
        _spec("llama3-8b", Vendor.OLLAMA, 8_192),
        _spec("llama3-70b", Vendor.OLLAMA, 8_192),
        _spec("mixtral-8x7b", Vendor.OLLAMA, 32_768),
        # Listed for entitlement and pricing; no adapter ships for these yet
        _spec("gemini-pro", Vendor.GOOGLE, 32_760, supports_function_calling=True),
        _spec("gemini-ultra", Vendor.GOOGLE, 32_760,
              supports_function_calling=True, supports_vision=True),
        _spec("command-r-plus", Vendor.COHERE, 128_000, supports_function_calling=True),
    )
}


# ── Entitlements ─────────────────────────────────────────────────────────
_FREE_MODELS = ("gpt-3.5-turbo", "mixtral-8x7b", "llama3-8b")
_PROFESSIONAL_MODELS = (
    "gpt-3.5-turbo", "gpt-4", "claude-3-sonnet", "mixtral-8x7b", "llama3-70b",
)
_ENTERPRISE_MODELS = (
    "gpt-3.5-turbo", "gpt-4", "gpt-4-turbo", "claude-3-opus", "claude-3-sonnet",
    "gemini-pro", "gemini-ultra", "command-r-plus", "mixtral-8x7b", "llama3-70b",
)

TIER_MODELS: dict[SubscriptionTier, tuple[str, ...]] = {
    SubscriptionTier.FREE: _FREE_MODELS,
    SubscriptionTier.PROFESSIONAL: _PROFESSIONAL_MODELS,
    SubscriptionTier.ENTERPRISE: _ENTERPRISE_MODELS,
    SubscriptionTier.CUSTOM: _ENTERPRISE_MODELS,
}


def get_spec(model_id: str) -> ModelSpec | None:
    return MODEL_CATALOG.get(model_id)


def cost_per_1k(model_id: str) -> dict[str, float]:
    """Return ``{"input": ..., "output": ...}`` prices for *model_id*."""
    spec = MODEL_CATALOG.get(model_id)
    if spec is None:
        return dict(DEFAULT_COST_PER_1K)
    return {"input": spec.input_cost_per_1k, "output": spec.output_cost_per_1k}


def models_for_tier(tier: SubscriptionTier | str | None) -> tuple[str, ...]:
    """Models unlocked by a subscription tier (unknown tiers get the baseline)."""
    try:
        return TIER_MODELS[SubscriptionTier(tier)]
    except ValueError:
        return ("gpt-3.5-turbo",)


def models_for_vendor(vendor: Vendor) -> list[str]:
    return [m for m, spec in MODEL_CATALOG.items() if spec.vendor == vendor]
