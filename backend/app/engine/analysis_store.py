"""
Analysis Store - In-Memory Persistence Layer

Thread-safe store for analysis requests and their execution steps.
All data lives in Python dicts keyed by request ID and is lost when the
process exits.

The orchestrator calls :meth:`AnalysisStore.save` after every state
transition, so whatever is stored is always the latest durable state.
In a production system this would be backed by a real database.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Optional

from backend.app.schema.analysis_schema import (
    IN_PROGRESS_STATUSES,
    AnalysisRequest,
    AnalysisStatus,
    ExecutionStep,
)

logger = logging.getLogger(__name__)


class AnalysisStore:
    """Thread-safe in-memory store for requests and steps."""

    def __init__(self) -> None:
        self._requests: dict[str, AnalysisRequest] = {}
        self._steps: dict[str, list[ExecutionStep]] = {}
        self._rw_lock = threading.RLock()

    # Requests

    def save(self, request: AnalysisRequest) -> AnalysisRequest:
        """Insert or update a request."""
        with self._rw_lock:
            request.updated_at = datetime.now(timezone.utc)
            self._requests[request.id] = request
            logger.debug("Analysis %s saved (status=%s).", request.id, request.status.value)
        return request

    def get(self, request_id: str) -> Optional[AnalysisRequest]:
        """Retrieve a request by ID, or ``None`` if not found."""
        with self._rw_lock:
            return self._requests.get(request_id)

    def delete(self, request_id: str) -> bool:
        """Delete a request and its steps.  Returns ``True`` if it existed."""
        with self._rw_lock:
            self._steps.pop(request_id, None)
            return self._requests.pop(request_id, None) is not None

    def list_by_status(self, *statuses: AnalysisStatus) -> list[AnalysisRequest]:
        with self._rw_lock:
            return [r for r in self._requests.values() if r.status in statuses]

    def list_in_progress(self) -> list[AnalysisRequest]:
        return self.list_by_status(*IN_PROGRESS_STATUSES)

    def count(self) -> int:
        with self._rw_lock:
            return len(self._requests)

    # Steps

    def add_step(self, step: ExecutionStep) -> ExecutionStep:
        """Append a step; sequence numbers must be unique and increasing."""
        with self._rw_lock:
            steps = self._steps.setdefault(step.request_id, [])
            if steps and step.sequence_number <= steps[-1].sequence_number:
                raise ValueError(
                    f"Step sequence {step.sequence_number} is not after "
                    f"{steps[-1].sequence_number} for analysis {step.request_id}."
                )
            steps.append(step)
        return step

    def save_step(self, step: ExecutionStep) -> ExecutionStep:
        """Persist in-place mutations of a step (kept for symmetry with ``save``)."""
        with self._rw_lock:
            steps = self._steps.get(step.request_id, [])
            for idx, existing in enumerate(steps):
                if existing.id == step.id:
                    steps[idx] = step
                    break
            else:
                raise KeyError(f"Step '{step.id}' not found.")
        return step

    def get_steps(self, request_id: str) -> list[ExecutionStep]:
        """Return the steps of a request ordered by sequence number."""
        with self._rw_lock:
            return list(self._steps.get(request_id, []))

    def clear_steps(self, request_id: str) -> int:
        with self._rw_lock:
            return len(self._steps.pop(request_id, []))

    def reset(self) -> None:
        """Clear everything.  Intended for test teardown."""
        with self._rw_lock:
            self._requests.clear()
            self._steps.clear()
            logger.info("Analysis store reset.")
