"""
Cache API Routes

Endpoints
---------
GET   /api/cache/organizations/{org_id}/statistics   - per-organisation statistics
POST  /api/cache/datasets/{dataset_id}/invalidate    - expire a dataset's entries
POST  /api/cache/sweep                               - run one maintenance pass now
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException

from backend.app.errors import NotFoundError
from backend.app.schema.cache_schema import CacheActionResponse, CacheStatistics
from backend.app.services import AnalysisPlatform

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cache", tags=["cache"])


@router.get("/organizations/{org_id}/statistics", response_model=CacheStatistics)
def get_cache_statistics(org_id: int) -> CacheStatistics:
    platform = AnalysisPlatform.get_instance()
    try:
        platform.directory.get_organization(org_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return platform.orchestrator.cache_statistics(org_id)


@router.post("/datasets/{dataset_id}/invalidate", response_model=CacheActionResponse)
def invalidate_dataset(dataset_id: int) -> CacheActionResponse:
    """Expire every cached result computed against *dataset_id*."""
    affected = AnalysisPlatform.get_instance().orchestrator.invalidate_dataset_cache(dataset_id)
    return CacheActionResponse(
        message=f"Invalidated {affected} cache entries for dataset {dataset_id}.",
        affected_entries=affected,
    )


@router.post("/sweep", response_model=CacheActionResponse)
def sweep_cache() -> CacheActionResponse:
    try:
        counts = AnalysisPlatform.get_instance().maintenance.run_once()
    except Exception as exc:
        logger.exception("Cache sweep failed: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))
    return CacheActionResponse(
        message=f"{counts['swept']} expired, {counts['evicted']} evicted.",
        affected_entries=counts["swept"] + counts["evicted"],
    )
