"""
Model Selection Schema

Inputs and outputs of the model selector: per-call constraints, cost
estimates and the recommendation payload served by
``GET /api/models/recommendations``.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class TokenEstimate(BaseModel):
    input: int = Field(1000, ge=0)
    output: int = Field(2000, ge=0)


class SelectionConstraints(BaseModel):
    """Caller-supplied limits for one selection."""

    preferred_model: Optional[str] = None
    max_cost: Optional[float] = Field(None, gt=0)
    estimated_tokens: TokenEstimate = Field(default_factory=TokenEstimate)


class CostEstimate(BaseModel):
    model: str
    input_cost: float
    output_cost: float
    total_cost: float


class ModelRecommendation(BaseModel):
    model: str
    reason: str
    estimated_cost: CostEstimate


class RecommendationResponse(BaseModel):
    task: str
    available_models: list[str]
    recommendations: list[ModelRecommendation]
