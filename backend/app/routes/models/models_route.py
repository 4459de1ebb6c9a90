"""
Model Recommendation Routes

GET /api/models/recommendations?user_id=1&query=...

Returns the model the selector would pick for the query's task plus a
cheaper and a stronger alternative, each with an estimated cost.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query

from backend.app.errors import NotFoundError
from backend.app.llm.model_selector import task_for_query
from backend.app.schema.model_schema import RecommendationResponse
from backend.app.services import AnalysisPlatform

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/models", tags=["models"])


@router.get("/recommendations", response_model=RecommendationResponse)
def get_recommendations(
    user_id: int,
    query: str = Query(..., min_length=1),
) -> RecommendationResponse:
    orchestrator = AnalysisPlatform.get_instance().orchestrator
    try:
        user = orchestrator.directory.get_user(user_id)
        selector = orchestrator.selector_for(user)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))

    return RecommendationResponse(
        task=task_for_query(query).value,
        available_models=selector.available_models,
        recommendations=selector.recommend_models(query),
    )
