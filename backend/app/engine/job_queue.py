"""
Analysis Job Queue

Fixed pool of daemon worker threads consuming analysis request IDs from
a queue.  ``submit`` enqueues the ID and returns immediately; a worker
later calls the orchestrator's ``run`` for it, one request end-to-end
per worker.

The frontend polls ``GET /api/analysis/{id}`` until the request
reaches a terminal status.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)

_STOP = object()


class AnalysisJobQueue:
    """Thread pool fed by a FIFO of request IDs.

    Parameters
    ----------
    handler : callable
        ``(request_id) -> None``, typically ``AnalysisOrchestrator.run``.
        Exceptions are logged; the worker keeps running.
    worker_count : int
        Number of daemon threads started by :meth:`start`.
    """

    def __init__(
        self,
        handler: Optional[Callable[[str], None]] = None,
        worker_count: int = 4,
    ) -> None:
        self.handler = handler
        self.worker_count = worker_count
        self._queue: queue.Queue = queue.Queue()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def pending(self) -> int:
        return self._queue.qsize()

    # ── Lifecycle ────────────────────────────────────────────────

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            if self.handler is None:
                raise RuntimeError("Job queue has no handler.")
            self._threads = [
                threading.Thread(
                    target=self._worker, name=f"analysis-worker-{i}", daemon=True,
                )
                for i in range(self.worker_count)
            ]
            for thread in self._threads:
                thread.start()
        logger.info("Analysis job queue started with %d worker(s).", self.worker_count)

    def shutdown(self, wait: bool = True, timeout: float = 10.0) -> None:
        """Stop the workers once the queued requests have been taken."""
        with self._lock:
            threads, self._threads = self._threads, []
            for _ in threads:
                self._queue.put(_STOP)
        if wait:
            for thread in threads:
                thread.join(timeout)
        logger.info("Analysis job queue stopped.")

    # ── Work ─────────────────────────────────────────────────────

    def enqueue(self, request_id: str) -> None:
        self._queue.put(request_id)
        logger.info("Analysis %s enqueued (%d waiting).", request_id, self._queue.qsize())

    def join(self) -> None:
        """Block until every enqueued request has been processed."""
        self._queue.join()

    def _worker(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self.handler(item)
            except Exception as exc:
                logger.exception("Analysis %s crashed its worker: %s", item, exc)
            finally:
                self._queue.task_done()
