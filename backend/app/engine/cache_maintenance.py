"""
Cache Maintenance

Background daemon thread that periodically sweeps expired cache
entries and enforces every organisation's byte budget.  Started and
stopped by the application lifespan.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from backend.app.engine.result_cache import ResultCache

logger = logging.getLogger(__name__)


class CacheMaintenance:
    """Runs :meth:`run_once` every ``interval_seconds`` until stopped."""

    def __init__(self, cache: ResultCache, interval_seconds: float | None = None) -> None:
        self._cache = cache
        self.interval_seconds = interval_seconds or cache.settings.cache_sweep_interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> dict[str, int]:
        """One maintenance pass.  Returns counts for logging and tests."""
        swept = self._cache.sweep()
        evicted = 0
        for org_id in sorted(self._cache.organization_ids()):
            evicted += self._cache.enforce_budget(org_id)
        return {"swept": swept, "evicted": evicted}

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="cache-maintenance", daemon=True,
        )
        self._thread.start()
        logger.info("Cache maintenance started (every %.0fs).", self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Cache maintenance stopped.")

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                counts = self.run_once()
                logger.info(
                    "Cache maintenance: %d swept, %d evicted.",
                    counts["swept"], counts["evicted"],
                )
            except Exception as exc:
                logger.exception("Cache maintenance pass failed: %s", exc)
