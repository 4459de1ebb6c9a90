"""
Tests for the background analysis job queue.
"""

from __future__ import annotations

import threading

import pytest

from backend.app.engine.job_queue import AnalysisJobQueue
from backend.app.engine.orchestrator import AnalysisOrchestrator
from backend.app.schema.analysis_schema import AnalysisStatus
from backend.app.services import AnalysisPlatform
from backend.tests.fakes import DATASET_ID, ORG_ID, QUERY, USER_ID


class TestAnalysisJobQueue:
    def test_processes_every_request(self):
        seen: list[str] = []
        lock = threading.Lock()

        def handler(request_id: str) -> None:
            with lock:
                seen.append(request_id)

        queue = AnalysisJobQueue(handler, worker_count=3)
        queue.start()
        for i in range(10):
            queue.enqueue(f"req-{i}")
        queue.join()
        queue.shutdown()

        assert sorted(seen) == sorted(f"req-{i}" for i in range(10))
        assert queue.running is False

    def test_worker_survives_handler_errors(self):
        seen: list[str] = []

        def handler(request_id: str) -> None:
            if request_id == "bad":
                raise RuntimeError("boom")
            seen.append(request_id)

        queue = AnalysisJobQueue(handler, worker_count=1)
        queue.start()
        queue.enqueue("bad")
        queue.enqueue("good")
        queue.join()
        queue.shutdown()

        assert seen == ["good"]

    def test_start_without_handler(self):
        with pytest.raises(RuntimeError, match="no handler"):
            AnalysisJobQueue().start()

    def test_start_is_idempotent(self):
        queue = AnalysisJobQueue(lambda _id: None, worker_count=2)
        queue.start()
        threads = list(queue._threads)
        queue.start()
        assert queue._threads == threads
        queue.shutdown()

    def test_pending_counts_waiting_requests(self):
        queue = AnalysisJobQueue(lambda _id: None)
        queue.enqueue("a")
        queue.enqueue("b")
        assert queue.pending() == 2
        assert queue.running is False


class TestPlatformDispatch:
    def test_submitted_request_runs_on_a_worker(self, settings, directory, cache, provider, sandbox):
        orchestrator = AnalysisOrchestrator(
            settings,
            directory=directory,
            cache=cache,
            provider_factory=lambda model: provider,
            sandbox=sandbox,
        )
        platform = AnalysisPlatform(settings=settings, directory=directory, orchestrator=orchestrator)
        orchestrator.dispatcher = platform.queue.enqueue
        platform.start()
        try:
            request = orchestrator.submit(QUERY, DATASET_ID, ORG_ID, USER_ID)
            platform.queue.join()
            assert orchestrator.get_status(request.id).status == AnalysisStatus.COMPLETED
        finally:
            platform.stop()
