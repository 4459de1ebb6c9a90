"""
Analysis API Routes

Endpoints for submitting natural-language analyses and following them
through the pipeline.

Submitting returns immediately with the request id and ``pending``
status; a background worker runs the pipeline.  The frontend polls
``GET /api/analysis/{request_id}`` until the status is terminal, then
fetches ``/result``.

Endpoints
---------
POST  /api/analysis                       - submit a new analysis
GET   /api/analysis/{request_id}          - status, progress and steps
GET   /api/analysis/{request_id}/result   - final result (completed only)
POST  /api/analysis/{request_id}/cancel   - cancel while analyzing / generating
POST  /api/analysis/{request_id}/retry    - retry a failed / clarification request
"""

from __future__ import annotations

import logging
from typing import Callable

from fastapi import APIRouter, HTTPException

from backend.app.errors import (
    NotFoundError,
    ResultNotReadyError,
    StateTransitionError,
    ValidationError,
)
from backend.app.schema.analysis_schema import (
    AnalysisActionResponse,
    AnalysisResultResponse,
    AnalysisSubmitRequest,
    StatusReport,
)
from backend.app.services import AnalysisPlatform

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/analysis", tags=["analysis"])


def _orchestrator():
    return AnalysisPlatform.get_instance().orchestrator


def _call(action: str, request_id: str, fn: Callable):
    """Run *fn* and translate platform errors into HTTP errors."""
    try:
        return fn()
    except NotFoundError:
        raise HTTPException(status_code=404, detail=f"Analysis '{request_id}' not found.")
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except (StateTransitionError, ResultNotReadyError) as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except Exception as exc:
        logger.exception("Failed to %s analysis %s: %s", action, request_id, exc)
        raise HTTPException(status_code=500, detail=str(exc))


@router.post("", response_model=AnalysisActionResponse, status_code=202)
def submit_analysis(body: AnalysisSubmitRequest) -> AnalysisActionResponse:
    """Queue a new analysis for background execution."""
    try:
        request = _orchestrator().submit(
            body.query,
            body.dataset_id,
            body.organization_id,
            body.user_id,
            options=body.options,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except Exception as exc:
        logger.exception("Failed to submit analysis: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))
    return AnalysisActionResponse(
        request_id=request.id,
        status=request.status,
        message="Analysis queued.",
    )


@router.get("/{request_id}", response_model=StatusReport)
def get_analysis_status(request_id: str) -> StatusReport:
    """Latest durable status of an analysis."""
    return _call("read", request_id, lambda: _orchestrator().get_status(request_id))


@router.get("/{request_id}/result", response_model=AnalysisResultResponse)
def get_analysis_result(request_id: str) -> AnalysisResultResponse:
    request = _call("read the result of", request_id,
                    lambda: _orchestrator().get_result(request_id))
    return AnalysisResultResponse(
        request_id=request.id,
        status=request.status,
        final_result=request.final_result,
        metadata=request.metadata,
    )


@router.post("/{request_id}/cancel", response_model=AnalysisActionResponse)
def cancel_analysis(request_id: str) -> AnalysisActionResponse:
    request = _call("cancel", request_id, lambda: _orchestrator().cancel(request_id))
    return AnalysisActionResponse(
        request_id=request.id,
        status=request.status,
        message=request.error_message or "Analysis cancelled.",
    )


@router.post("/{request_id}/retry", response_model=AnalysisActionResponse)
def retry_analysis(request_id: str) -> AnalysisActionResponse:
    """Send a failed or clarification-pending analysis back to the queue."""
    request = _call("retry", request_id, lambda: _orchestrator().retry(request_id))
    return AnalysisActionResponse(
        request_id=request.id,
        status=request.status,
        message=f"Retry #{request.metadata.retry_count} queued.",
    )
