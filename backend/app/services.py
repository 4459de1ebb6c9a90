"""
Analysis Services

Wires the long-lived collaborators (settings, directory, cache,
orchestrator, job queue, cache maintenance) into one object shared by
every route.  Routes reach it through :meth:`AnalysisPlatform.get_instance`.
"""

from __future__ import annotations

import logging
from typing import Optional

from backend.app.config import PlatformSettings
from backend.app.engine.cache_maintenance import CacheMaintenance
from backend.app.engine.directory import EntityDirectory
from backend.app.engine.job_queue import AnalysisJobQueue
from backend.app.engine.orchestrator import AnalysisOrchestrator
from backend.app.engine.result_cache import ResultCache

logger = logging.getLogger(__name__)


class AnalysisPlatform:
    """Process-wide container for the analysis services."""

    _instance: Optional["AnalysisPlatform"] = None

    def __init__(
        self,
        settings: Optional[PlatformSettings] = None,
        directory: Optional[EntityDirectory] = None,
        orchestrator: Optional[AnalysisOrchestrator] = None,
    ) -> None:
        self.settings = settings or PlatformSettings()
        self.directory = directory or EntityDirectory()
        if self.settings.directory_seed_path and directory is None:
            self.directory.load_seed(self.settings.directory_seed_path)

        self.queue = AnalysisJobQueue(worker_count=self.settings.worker_count)
        if orchestrator is None:
            orchestrator = AnalysisOrchestrator(
                self.settings,
                directory=self.directory,
                cache=ResultCache(self.settings, self.directory),
                dispatcher=self.queue.enqueue,
            )
        self.orchestrator = orchestrator
        self.queue.handler = self.orchestrator.run
        self.maintenance = CacheMaintenance(self.orchestrator.cache)

    @classmethod
    def get_instance(cls, **kwargs) -> "AnalysisPlatform":
        """Return (and optionally create) the shared singleton."""
        if cls._instance is None:
            cls._instance = cls(**kwargs)
        return cls._instance

    def start(self) -> None:
        self.queue.start()
        self.maintenance.start()
        logger.info("Analysis platform started.")

    def stop(self) -> None:
        self.maintenance.stop()
        self.orchestrator.shutdown()
        self.queue.shutdown(wait=False)
        logger.info("Analysis platform stopped.")
