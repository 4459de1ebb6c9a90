"""
Cache Schema

Models for the content-addressed analysis result cache.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


class QueryCacheEntry(BaseModel):
    """Memoised result for a (normalised query, dataset) pair."""

    query_hash: str = Field(..., description="sha256 of normalised query + dataset id.")
    query_text: str
    dataset_id: int
    organization_id: int
    result: dict[str, Any]
    size_bytes: int
    access_count: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_accessed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class PopularQuery(BaseModel):
    query_text: str
    access_count: int


class CacheStatistics(BaseModel):
    """Per-organisation cache statistics."""

    organization_id: int
    total_entries: int = 0
    active_entries: int = 0
    expired_entries: int = 0
    total_size_mb: float = 0.0
    hit_rate: float = Field(0.0, description="Hits as a percentage of lookups.")
    popular_queries: list[PopularQuery] = Field(default_factory=list)
    cache_enabled: bool = True


class CacheActionResponse(BaseModel):
    message: str = ""
    affected_entries: int = 0
