"""
Analysis State Machine

Explicit transition table for :class:`AnalysisRequest` status.  Every
status change in the platform goes through :func:`apply_transition`,
which rejects illegal moves with :class:`StateTransitionError` and
leaves the request untouched.

::

    pending ─start_analysis─▶ analyzing ─generate_code─▶ generating_code
        ─execute_code─▶ executing ─interpret_results─▶ interpreting_results
        ─complete─▶ completed

    (any in-progress)  ─fail─────────────────▶ failed
    (pending / in-progress) ─request_clarification─▶ requires_clarification
    analyzing / generating_code ─cancel─▶ failed
    failed / requires_clarification ─retry─▶ pending
    pending ─complete_from_cache─▶ completed
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum

from backend.app.errors import StateTransitionError
from backend.app.schema.analysis_schema import (
    IN_PROGRESS_STATUSES,
    AnalysisRequest,
    AnalysisStatus,
)

logger = logging.getLogger(__name__)


class Trigger(str, Enum):
    START_ANALYSIS        = "start_analysis"
    GENERATE_CODE         = "generate_code"
    EXECUTE_CODE          = "execute_code"
    INTERPRET_RESULTS     = "interpret_results"
    COMPLETE              = "complete"
    COMPLETE_FROM_CACHE   = "complete_from_cache"
    FAIL                  = "fail"
    REQUEST_CLARIFICATION = "request_clarification"
    CANCEL                = "cancel"
    RETRY                 = "retry"


# trigger → (allowed source states, target state)
TRANSITIONS: dict[Trigger, tuple[frozenset[AnalysisStatus], AnalysisStatus]] = {
    Trigger.START_ANALYSIS: (
        frozenset({AnalysisStatus.PENDING}), AnalysisStatus.ANALYZING,
    ),
    Trigger.GENERATE_CODE: (
        frozenset({AnalysisStatus.ANALYZING}), AnalysisStatus.GENERATING_CODE,
    ),
    Trigger.EXECUTE_CODE: (
        frozenset({AnalysisStatus.GENERATING_CODE}), AnalysisStatus.EXECUTING,
    ),
    Trigger.INTERPRET_RESULTS: (
        frozenset({AnalysisStatus.EXECUTING}), AnalysisStatus.INTERPRETING_RESULTS,
    ),
    Trigger.COMPLETE: (
        frozenset({AnalysisStatus.INTERPRETING_RESULTS}), AnalysisStatus.COMPLETED,
    ),
    Trigger.COMPLETE_FROM_CACHE: (
        frozenset({AnalysisStatus.PENDING}), AnalysisStatus.COMPLETED,
    ),
    Trigger.FAIL: (
        IN_PROGRESS_STATUSES, AnalysisStatus.FAILED,
    ),
    Trigger.REQUEST_CLARIFICATION: (
        IN_PROGRESS_STATUSES | {AnalysisStatus.PENDING},
        AnalysisStatus.REQUIRES_CLARIFICATION,
    ),
    Trigger.CANCEL: (
        frozenset({AnalysisStatus.ANALYZING, AnalysisStatus.GENERATING_CODE}),
        AnalysisStatus.FAILED,
    ),
    Trigger.RETRY: (
        frozenset({AnalysisStatus.FAILED, AnalysisStatus.REQUIRES_CLARIFICATION}),
        AnalysisStatus.PENDING,
    ),
}


def can_transition(status: AnalysisStatus, trigger: Trigger) -> bool:
    """Return ``True`` if *trigger* is allowed from *status*."""
    sources, _ = TRANSITIONS[trigger]
    return status in sources


def target_of(trigger: Trigger) -> AnalysisStatus:
    return TRANSITIONS[trigger][1]


def apply_transition(request: AnalysisRequest, trigger: Trigger) -> AnalysisStatus:
    """Move *request* along *trigger* or raise :class:`StateTransitionError`.

    Only ``status`` and the lifecycle timestamps are touched; callers
    persist the request afterwards.
    """
    current = request.status
    if not can_transition(current, trigger):
        raise StateTransitionError(current.value, trigger.value)

    target = target_of(trigger)
    now = datetime.now(timezone.utc)
    request.status = target
    request.updated_at = now

    if trigger == Trigger.START_ANALYSIS:
        request.started_at = now
    elif target in (AnalysisStatus.COMPLETED, AnalysisStatus.FAILED):
        request.completed_at = now
    elif trigger == Trigger.RETRY:
        request.started_at = None
        request.completed_at = None

    logger.info(
        "Analysis %s: %s --%s--> %s",
        request.id, current.value, trigger.value, target.value,
    )
    return target
