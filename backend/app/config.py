"""
Platform Settings

Every tunable policy constant (cache budgets, expiry thresholds,
sandbox limits, worker count, fallback model) lives on a single
settings object that is passed explicitly into the cache, the model
selector, the sandbox executors and the orchestrator.

Values are read from the environment (prefix ``ANALYSIS_``) or a
``.env`` file, e.g. ``ANALYSIS_STEP_TIMEOUT_SECONDS=120``.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

MEGABYTE = 1024 * 1024


class PlatformSettings(BaseSettings):
    """Configuration for the analysis orchestration platform."""

    # Result cache
    cache_enabled: bool = True
    max_cache_entry_bytes: int = Field(10 * MEGABYTE, ge=1)
    org_cache_budget_mb: float = Field(1000, gt=0)
    cache_eviction_target: float = Field(0.8, gt=0, le=1)
    cache_ttl_large_rows: int = 10_000
    cache_ttl_medium_rows: int = 1_000
    cache_ttl_large_hours: float = 6
    cache_ttl_medium_hours: float = 12
    cache_ttl_default_hours: float = 24
    cache_sweep_interval_seconds: float = Field(900, gt=0)

    # Pipeline
    step_timeout_seconds: float = Field(60, gt=0)
    worker_count: int = Field(4, ge=1)
    baseline_model: str = "gpt-3.5-turbo"
    dedupe_in_flight: bool = False

    # Sandbox
    sandbox_backend: Literal["process", "container"] = "container"
    # Process backend only: "none" runs code unconfined and is meant for local development.
    sandbox_isolation: Literal["bwrap", "none"] = "bwrap"
    sandbox_memory_mb: int = 512
    sandbox_cpu_seconds: int = 60
    sandbox_max_processes: int = 50
    sandbox_max_output_bytes: int = 10 * MEGABYTE
    sandbox_image: str = "analysis-sandbox"

    # Providers / directory
    ollama_host: Optional[str] = None
    directory_seed_path: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="ANALYSIS_", env_file=".env", extra="ignore"
    )

    @property
    def org_cache_budget_bytes(self) -> int:
        return int(self.org_cache_budget_mb * MEGABYTE)
