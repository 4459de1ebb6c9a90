"""
Directory Schema

Organisations, users and datasets as seen by the analysis core.  These
records are owned by the surrounding application; the core only reads
them to validate submissions, resolve entitlements and find a dataset's
schema and location.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class SubscriptionTier(str, Enum):
    FREE         = "free"
    PROFESSIONAL = "professional"
    ENTERPRISE   = "enterprise"
    CUSTOM       = "custom"


class TechnicalLevel(str, Enum):
    """How technical the interpretation should be."""

    BEGINNER     = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED     = "advanced"
    EXPERT       = "expert"


class OrganizationSettings(BaseModel):
    allowed_models: list[str] = Field(
        default_factory=list,
        description="Model allow-list.  Empty means no restriction.",
    )
    cache_enabled: bool = True
    cache_budget_mb: Optional[float] = Field(
        None, gt=0, description="Overrides the platform-wide cache budget."
    )


class Organization(BaseModel):
    id: int
    name: str
    settings: OrganizationSettings = Field(default_factory=OrganizationSettings)


class User(BaseModel):
    id: int
    organization_id: int
    email: Optional[str] = None
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    technical_level: TechnicalLevel = TechnicalLevel.BEGINNER


class Dataset(BaseModel):
    id: int
    organization_id: int
    name: str
    description: str = ""
    location: Optional[str] = Field(
        None, description="Path or URI the sandbox mounts read-only."
    )
    schema_metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Cached schema, e.g. {'tables': {'orders': ['region', 'amount']}}.",
    )
