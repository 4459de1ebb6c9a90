"""
Model Selector

Chooses a model for every AI call of the analysis pipeline.

Selection is a static task → {primary, fallbacks} matrix filtered by a
per-user availability set:

    available = models unlocked by the user's subscription tier
              ∩ the organisation's allow-list (empty list = no restriction)

Order of preference for a task:

1. the caller's preferred model, if available;
2. the task's primary model, if available and under the cost ceiling;
3. each fallback in order, same conditions;
4. the cheapest available model;
5. the configured baseline model.

The selector never raises: an entitlement bug must not stall the
pipeline, so the worst case is the baseline model.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Iterable, Optional

from backend.app.config import PlatformSettings
from backend.app.llm.model_catalog import cost_per_1k, models_for_tier
from backend.app.schema.analysis_schema import TaskType
from backend.app.schema.directory_schema import Organization, User
from backend.app.schema.model_schema import (
    CostEstimate,
    ModelRecommendation,
    SelectionConstraints,
    TokenEstimate,
)

logger = logging.getLogger(__name__)


# ── Policy tables ────────────────────────────────────────────────────────

# task → (primary, fallbacks)
TASK_MODEL_MATRIX: dict[TaskType, tuple[str, tuple[str, ...]]] = {
    TaskType.INTENT_ANALYSIS: ("claude-3-sonnet", ("gpt-4", "claude-3-haiku")),
    TaskType.CODE_GENERATION: ("claude-3-opus", ("gpt-4-turbo", "claude-3-sonnet")),
    TaskType.SQL_GENERATION: ("gpt-4", ("claude-3-sonnet", "gpt-3.5-turbo")),
    TaskType.DATA_EXPLORATION: ("claude-3-sonnet", ("gpt-4", "gemini-pro")),
    TaskType.RESULT_INTERPRETATION: ("claude-3-opus", ("gpt-4", "claude-3-sonnet")),
    TaskType.VISUALIZATION: ("gpt-4-turbo", ("claude-3-sonnet", "gemini-pro")),
    TaskType.MACHINE_LEARNING: ("claude-3-opus", ("gpt-4", "gemini-ultra")),
}
DEFAULT_TASK_MODELS = ("gpt-3.5-turbo", ("claude-3-haiku", "mixtral-8x7b"))

ECONOMICAL_MODELS = ("gpt-3.5-turbo", "claude-3-haiku", "mixtral-8x7b", "llama3-8b")
BALANCED_MODELS = ("claude-3-sonnet", "gpt-4", "gemini-pro", "llama3-70b")
POWERFUL_MODELS = ("claude-3-opus", "gpt-4-turbo", "gemini-ultra", "command-r-plus")

# Keyword heuristics used for query-level recommendations.
_TASK_KEYWORDS: tuple[tuple[re.Pattern[str], TaskType], ...] = (
    (re.compile(r"predict|forecast|classify|cluster"), TaskType.MACHINE_LEARNING),
    (re.compile(r"chart|graph|plot|visuali"), TaskType.VISUALIZATION),
    (re.compile(r"sql|query|database"), TaskType.SQL_GENERATION),
    (re.compile(r"explain|interpret|mean"), TaskType.RESULT_INTERPRETATION),
)


def task_for_query(query: str) -> TaskType:
    """Guess the dominant pipeline task from the wording of *query*."""
    text = query.lower()
    for pattern, task in _TASK_KEYWORDS:
        if pattern.search(text):
            return task
    return TaskType.DATA_EXPLORATION


def estimate_cost(model: str, tokens: TokenEstimate | None = None) -> CostEstimate:
    """Price *tokens* for *model* using its per-1k-token rates."""
    tokens = tokens or TokenEstimate()
    prices = cost_per_1k(model)
    input_cost = tokens.input / 1000.0 * prices["input"]
    output_cost = tokens.output / 1000.0 * prices["output"]
    return CostEstimate(
        model=model,
        input_cost=input_cost,
        output_cost=output_cost,
        total_cost=input_cost + output_cost,
    )


class ModelSelector:
    """Per-request model chooser bound to one user and organisation.

    Parameters
    ----------
    user : User
        Supplies the subscription tier.
    organization : Organization | None
        Supplies the optional model allow-list.
    settings : PlatformSettings | None
        Supplies the baseline model.
    is_supported : callable | None
        Extra filter, typically "an adapter exists for this model".
    """

    def __init__(
        self,
        user: User,
        organization: Optional[Organization] = None,
        settings: Optional[PlatformSettings] = None,
        is_supported: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self._settings = settings or PlatformSettings()
        self._available = self._determine_available(user, organization, is_supported)

    @staticmethod
    def _determine_available(
        user: User,
        organization: Optional[Organization],
        is_supported: Optional[Callable[[str], bool]],
    ) -> list[str]:
        available = list(models_for_tier(user.subscription_tier))
        allowed = organization.settings.allowed_models if organization else []
        if allowed:
            available = [m for m in available if m in allowed]
        if is_supported is not None:
            available = [m for m in available if is_supported(m)]
        return available

    @property
    def available_models(self) -> list[str]:
        return list(self._available)

    def is_available(self, model: str) -> bool:
        return model in self._available

    # ── Selection ────────────────────────────────────────────────

    def select_for_task(
        self,
        task: TaskType | str,
        constraints: SelectionConstraints | None = None,
    ) -> str:
        """Return the model to use for *task* under *constraints*."""
        constraints = constraints or SelectionConstraints()
        try:
            primary, fallbacks = TASK_MODEL_MATRIX[TaskType(task)]
        except ValueError:
            primary, fallbacks = DEFAULT_TASK_MODELS

        preferred = constraints.preferred_model
        if preferred and self.is_available(preferred):
            return self._chosen(task, preferred, "preferred")

        for model in (primary, *fallbacks):
            if self.is_available(model) and not self._exceeds_cost(model, constraints):
                return self._chosen(task, model, "matrix")

        return self._chosen(task, self._cheapest_available(), "cheapest")

    def select_by_complexity(
        self,
        score: int,
        constraints: SelectionConstraints | None = None,
    ) -> str:
        """Bucket a 1-10 complexity score into economical/balanced/powerful."""
        if score <= 3:
            tiers = (ECONOMICAL_MODELS,)
        elif score <= 6:
            tiers = (BALANCED_MODELS, ECONOMICAL_MODELS)
        else:
            tiers = (POWERFUL_MODELS, BALANCED_MODELS, ECONOMICAL_MODELS)

        for candidates in tiers:
            model = self._first_eligible(candidates, constraints)
            if model is not None:
                return self._chosen(f"complexity {score}", model, "tier")
        return self._chosen(f"complexity {score}", self._cheapest_available(), "cheapest")

    def estimate_cost(self, model: str, tokens: TokenEstimate | None = None) -> CostEstimate:
        return estimate_cost(model, tokens)

    def recommend_models(
        self,
        query: str,
        tokens: TokenEstimate | None = None,
    ) -> list[ModelRecommendation]:
        """Task-appropriate model plus cheaper and stronger alternatives."""
        tokens = tokens or TokenEstimate()
        task = task_for_query(query)
        primary = self.select_for_task(task, SelectionConstraints(estimated_tokens=tokens))
        recommendations = [
            ModelRecommendation(
                model=primary,
                reason=f"Best for {task.value.replace('_', ' ')}",
                estimated_cost=estimate_cost(primary, tokens),
            )
        ]

        economical = self.select_by_complexity(1)
        if economical != primary:
            recommendations.append(ModelRecommendation(
                model=economical,
                reason="Cost-effective option",
                estimated_cost=estimate_cost(economical, tokens),
            ))

        premium = self.select_by_complexity(10)
        if premium not in (primary, economical) and self.is_available(premium):
            recommendations.append(ModelRecommendation(
                model=premium,
                reason="Maximum capability",
                estimated_cost=estimate_cost(premium, tokens),
            ))
        return recommendations

    # ── Helpers ──────────────────────────────────────────────────

    def _exceeds_cost(self, model: str, constraints: SelectionConstraints | None) -> bool:
        if constraints is None or constraints.max_cost is None:
            return False
        estimate = estimate_cost(model, constraints.estimated_tokens)
        return estimate.total_cost > constraints.max_cost

    def _first_eligible(
        self,
        candidates: Iterable[str],
        constraints: SelectionConstraints | None,
    ) -> Optional[str]:
        for model in candidates:
            if self.is_available(model) and not self._exceeds_cost(model, constraints):
                return model
        return None

    def _cheapest_available(self) -> str:
        if not self._available:
            logger.warning(
                "No model available for this user; using baseline '%s'.",
                self._settings.baseline_model,
            )
            return self._settings.baseline_model
        return min(
            self._available,
            key=lambda m: sum(cost_per_1k(m).values()),
        )

    @staticmethod
    def _chosen(task: TaskType | str, model: str, how: str) -> str:
        label = task.value if isinstance(task, TaskType) else task
        logger.info("Selected model '%s' for %s (%s).", model, label, how)
        return model
