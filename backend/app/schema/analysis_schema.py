"""
Analysis Schema

Pydantic models for the natural-language analysis pipeline.

An analysis request captures one user question bound to one dataset
and moves through five ordered stages:

    1. Intent analysis        - what kind of question is this?
    2. Requirements analysis  - which tables / columns / filters?
    3. Plan generation        - ordered list of code steps
    4. Step execution         - generate, validate and sandbox-run each step
    5. Interpretation         - natural-language synthesis of the results

Structured payloads (intent, requirements, plan) are validated at the
boundary where LLM output is parsed, so the orchestrator only ever
handles typed objects.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from backend.app.schema.sandbox_schema import FileRef


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Enums
class AnalysisStatus(str, Enum):
    """Lifecycle status of an analysis request."""

    PENDING                = "pending"
    ANALYZING              = "analyzing"
    GENERATING_CODE        = "generating_code"
    EXECUTING              = "executing"
    INTERPRETING_RESULTS   = "interpreting_results"
    COMPLETED              = "completed"
    FAILED                 = "failed"
    REQUIRES_CLARIFICATION = "requires_clarification"


IN_PROGRESS_STATUSES = frozenset({
    AnalysisStatus.ANALYZING,
    AnalysisStatus.GENERATING_CODE,
    AnalysisStatus.EXECUTING,
    AnalysisStatus.INTERPRETING_RESULTS,
})

# Fixed status → progress mapping reported by ``get_status``.
PROGRESS_BY_STATUS: dict[AnalysisStatus, int] = {
    AnalysisStatus.PENDING: 0,
    AnalysisStatus.ANALYZING: 20,
    AnalysisStatus.GENERATING_CODE: 40,
    AnalysisStatus.EXECUTING: 60,
    AnalysisStatus.INTERPRETING_RESULTS: 80,
    AnalysisStatus.COMPLETED: 100,
    AnalysisStatus.FAILED: 0,
    AnalysisStatus.REQUIRES_CLARIFICATION: 0,
}


class StepStatus(str, Enum):
    """Execution status of a single generated-code step."""

    PENDING    = "pending"
    GENERATING = "generating"
    VALIDATING = "validating"
    EXECUTING  = "executing"
    COMPLETED  = "completed"
    FAILED     = "failed"
    TIMEOUT    = "timeout"


TERMINAL_STEP_STATUSES = frozenset({
    StepStatus.COMPLETED,
    StepStatus.FAILED,
    StepStatus.TIMEOUT,
})


class StepType(str, Enum):
    DATA_EXPLORATION     = "data_exploration"
    DATA_CLEANING        = "data_cleaning"
    STATISTICAL_ANALYSIS = "statistical_analysis"
    VISUALIZATION        = "visualization"
    MACHINE_LEARNING     = "machine_learning"
    FEATURE_ENGINEERING  = "feature_engineering"
    MODEL_EVALUATION     = "model_evaluation"
    CUSTOM_COMPUTATION   = "custom_computation"


# Short names LLMs tend to use in plans.
_STEP_TYPE_ALIASES = {
    "exploration": StepType.DATA_EXPLORATION,
    "explore": StepType.DATA_EXPLORATION,
    "cleaning": StepType.DATA_CLEANING,
    "statistical": StepType.STATISTICAL_ANALYSIS,
    "statistics": StepType.STATISTICAL_ANALYSIS,
    "analysis": StepType.STATISTICAL_ANALYSIS,
    "ml": StepType.MACHINE_LEARNING,
    "chart": StepType.VISUALIZATION,
    "plot": StepType.VISUALIZATION,
    "features": StepType.FEATURE_ENGINEERING,
    "evaluation": StepType.MODEL_EVALUATION,
}


class CodeLanguage(str, Enum):
    """Allow-list of languages the sandbox can run."""

    PYTHON = "python"
    R      = "r"
    SQL    = "sql"


class TaskType(str, Enum):
    """Pipeline task used to pick a model."""

    INTENT_ANALYSIS       = "intent_analysis"
    CODE_GENERATION       = "code_generation"
    SQL_GENERATION        = "sql_generation"
    DATA_EXPLORATION      = "data_exploration"
    RESULT_INTERPRETATION = "result_interpretation"
    VISUALIZATION         = "visualization"
    MACHINE_LEARNING      = "machine_learning"


# Structured stage outputs
class AnalyzedIntent(BaseModel):
    """Result of the intent-analysis stage."""

    query_type: str = "descriptive"
    main_objective: str = ""
    required_analysis_types: list[str] = Field(default_factory=list)
    identified_entities: list[str] = Field(default_factory=list)
    complexity_score: int = Field(5, ge=1, le=10)
    estimated_steps: Optional[int] = None
    needs_clarification: bool = False
    clarification_needed: Optional[str] = None
    suggested_approach: str = ""

    model_config = {"extra": "ignore"}

    @field_validator("complexity_score", mode="before")
    @classmethod
    def _clamp_complexity(cls, value: Any) -> int:
        try:
            score = round(float(value))
        except (TypeError, ValueError):
            return 5
        return max(1, min(10, score))

    @field_validator("required_analysis_types", "identified_entities", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [str(v) for v in value]


class DataRequirements(BaseModel):
    """Result of the requirements stage: what data the plan needs."""

    analysis_type: Optional[str] = None
    tables_needed: list[str] = Field(default_factory=list)
    columns_needed: list[str] = Field(default_factory=list)
    filters_applied: list[str] = Field(default_factory=list)
    suggested_steps: list[str] = Field(default_factory=list)
    notes: Optional[str] = None

    model_config = {"extra": "ignore"}

    @field_validator("columns_needed", mode="before")
    @classmethod
    def _flatten_columns(cls, value: Any) -> list[str]:
        # Accept {"orders": ["region", "amount"]} as well as a flat list.
        if value is None:
            return []
        if isinstance(value, dict):
            return [
                f"{table}.{col}"
                for table, cols in value.items()
                for col in (cols if isinstance(cols, list) else [cols])
            ]
        if isinstance(value, str):
            return [value]
        return [str(v) for v in value]

    @field_validator("tables_needed", "filters_applied", "suggested_steps", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, (str, dict)):
            value = [value]
        return [v if isinstance(v, str) else str(v) for v in value]


class StepDescriptor(BaseModel):
    """One entry of a generated analysis plan."""

    type: StepType = StepType.CUSTOM_COMPUTATION
    language: CodeLanguage = CodeLanguage.PYTHON
    description: str = ""

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, value: Any) -> StepType:
        if isinstance(value, StepType):
            return value
        key = re.sub(r"[\s\-]+", "_", str(value or "").strip().lower())
        try:
            return StepType(key)
        except ValueError:
            return _STEP_TYPE_ALIASES.get(key, StepType.CUSTOM_COMPUTATION)

    @field_validator("language", mode="before")
    @classmethod
    def _normalise_language(cls, value: Any) -> Any:
        if isinstance(value, CodeLanguage):
            return value
        if value is None or value == "":
            return CodeLanguage.PYTHON
        return str(value).strip().lower()


class AnalysisPlan(BaseModel):
    steps: list[StepDescriptor] = Field(..., min_length=1)


# Usage / audit metadata
class StageUsage(BaseModel):
    """Tokens and cost spent by one AI call."""

    stage: str
    task: TaskType
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0


class UsageMetadata(BaseModel):
    """Accumulated token / cost / model-selection record for a request."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_cost: float = 0.0
    selected_models: dict[str, str] = Field(
        default_factory=dict,
        description="Task (or step key) → model name chosen for it.",
    )
    stages: list[StageUsage] = Field(default_factory=list)
    cache_hit: bool = False
    cancelled: bool = False
    retry_count: int = 0
    # Bumped by cancel and retry; a run started under an older value is stale.
    run_generation: int = 0

    def record(self, usage: StageUsage) -> None:
        self.stages.append(usage)
        self.input_tokens += usage.input_tokens
        self.output_tokens += usage.output_tokens
        self.total_cost += usage.cost


class AnalysisOptions(BaseModel):
    """Per-request options supplied by the caller."""

    preferred_model: Optional[str] = None
    max_cost: Optional[float] = Field(None, gt=0)
    skip_cache: bool = False


# Entities
class ResourceUsage(BaseModel):
    wall_time_ms: Optional[int] = None
    cpu_time_ms: Optional[int] = None
    max_rss_mb: Optional[float] = None


# Base memory (MB) a sandbox step is expected to need, scaled by step type.
_BASE_STEP_MEMORY_MB = 512
_STEP_MEMORY_MULTIPLIER = {
    StepType.MACHINE_LEARNING: 4,
    StepType.DATA_EXPLORATION: 2,
    StepType.FEATURE_ENGINEERING: 2,
    StepType.VISUALIZATION: 1.5,
}


class ExecutionStep(BaseModel):
    """One generated-and-run code unit within a request's plan."""

    id: str
    request_id: str
    sequence_number: int = Field(..., ge=1)
    step_type: StepType
    language: CodeLanguage
    description: str = ""
    status: StepStatus = StepStatus.PENDING
    generated_code: Optional[str] = None
    model_used: Optional[str] = None
    result_data: Optional[dict[str, Any]] = None
    artifacts: list[FileRef] = Field(default_factory=list)
    resource_usage: ResourceUsage = Field(default_factory=ResourceUsage)
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def estimated_memory_mb(self) -> float:
        return _BASE_STEP_MEMORY_MB * _STEP_MEMORY_MULTIPLIER.get(self.step_type, 1)


class AnalysisRequest(BaseModel):
    """A user's natural-language question bound to one dataset."""

    id: str = Field(..., description="Unique request identifier (UUID).")
    query: str
    dataset_id: int
    organization_id: int
    user_id: int
    status: AnalysisStatus = AnalysisStatus.PENDING
    options: AnalysisOptions = Field(default_factory=AnalysisOptions)
    analyzed_intent: Optional[AnalyzedIntent] = None
    complexity_score: Optional[int] = Field(None, ge=1, le=10)
    data_requirements: Optional[DataRequirements] = None
    final_result: Optional[dict[str, Any]] = None
    plan: Optional[AnalysisPlan] = None
    error_message: Optional[str] = None
    clarification_question: Optional[str] = None
    metadata: UsageMetadata = Field(default_factory=UsageMetadata)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"validate_assignment": True}


# API request / response models
class AnalysisSubmitRequest(BaseModel):
    """Payload to submit a new analysis."""

    query: str = Field(
        ...,
        description="Natural-language question (10–5000 characters).",
        examples=["What is the average order value by region?"],
    )
    dataset_id: int
    organization_id: int
    user_id: int
    options: AnalysisOptions = Field(default_factory=AnalysisOptions)


class StepView(BaseModel):
    """Lightweight view of an execution step for status polling."""

    sequence_number: int
    step_type: StepType
    language: CodeLanguage
    description: str
    status: StepStatus
    error_message: Optional[str] = None
    duration_seconds: Optional[float] = None


class StatusReport(BaseModel):
    """Response for ``GET /api/analysis/{id}``."""

    request_id: str
    status: AnalysisStatus
    progress_percent: int
    current_step_description: Optional[str] = None
    steps: list[StepView] = Field(default_factory=list)
    error_message: Optional[str] = None
    clarification_question: Optional[str] = None
    complexity_score: Optional[int] = None
    total_steps: Optional[int] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class AnalysisActionResponse(BaseModel):
    """Generic response after submit / cancel / retry."""

    request_id: str
    status: AnalysisStatus
    message: str = ""


class AnalysisResultResponse(BaseModel):
    request_id: str
    status: AnalysisStatus
    final_result: Optional[dict[str, Any]] = None
    metadata: UsageMetadata
