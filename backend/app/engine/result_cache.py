"""
Result Cache

Content-addressed cache of final analysis results keyed by
``sha256(lower(trim(query)) + ":" + dataset_id)``.

Policy
------
* **Expiry** is fixed at write time and shrinks as results grow:
  more than ``cache_ttl_large_rows`` rows → ``cache_ttl_large_hours``,
  more than ``cache_ttl_medium_rows`` → ``cache_ttl_medium_hours``,
  otherwise ``cache_ttl_default_hours`` (6h / 12h / 24h by default).
* **Budget**: every organisation owns a byte budget.  A store that
  would push the organisation over it first evicts entries in ascending
  ``(last_accessed_at, access_count)`` order until usage, new entry
  included, is at most ``cache_eviction_target`` of the budget.
* **Best effort**: every error is logged and swallowed; a cache
  failure never fails the analysis that triggered it.

Concurrency
-----------
Entries live in a dict guarded by one re-entrant lock.  Stores for the
same organisation are additionally serialised by a per-organisation
lock so the budget check, the evictions and the write happen as one
unit.  ``sweep`` re-checks expiry inside the lock, so an entry refreshed
by a concurrent lookup is never deleted.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from collections import defaultdict
from copy import deepcopy
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from backend.app.config import MEGABYTE, PlatformSettings
from backend.app.engine.directory import EntityDirectory
from backend.app.errors import CacheError
from backend.app.schema.cache_schema import CacheStatistics, PopularQuery, QueryCacheEntry

logger = logging.getLogger(__name__)


def normalize_query(query: str) -> str:
    return query.strip().lower()


def cache_key(query: str, dataset_id: int) -> str:
    """Deterministic key for a (query, dataset) pair."""
    payload = f"{normalize_query(query)}:{dataset_id}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def serialized_size(result: Any) -> int:
    """Byte size of the JSON serialisation of *result*."""
    return len(json.dumps(result, default=str, sort_keys=True).encode("utf-8"))


def row_count(result: dict[str, Any]) -> int:
    """Best-effort row-count signal used by the expiry policy."""
    if isinstance(result.get("row_count"), int):
        return result["row_count"]
    rows = (result.get("data") or {}).get("rows") if isinstance(result.get("data"), dict) else None
    if isinstance(rows, int):
        return rows
    if isinstance(rows, list):
        return len(rows)
    return 0


class ResultCache:
    """In-memory result cache with expiry and per-organisation LRU budget."""

    def __init__(
        self,
        settings: Optional[PlatformSettings] = None,
        directory: Optional[EntityDirectory] = None,
    ) -> None:
        self.settings = settings or PlatformSettings()
        self._directory = directory
        self._entries: dict[str, QueryCacheEntry] = {}
        self._lock = threading.RLock()
        self._org_locks: dict[int, threading.Lock] = defaultdict(threading.Lock)
        self._hits: dict[int, int] = defaultdict(int)
        self._misses: dict[int, int] = defaultdict(int)

    # ── Policy helpers ───────────────────────────────────────────

    def is_enabled(self, org_id: int | None = None) -> bool:
        """Global switch, then the organisation's own setting."""
        if not self.settings.cache_enabled:
            return False
        if org_id is None or self._directory is None:
            return True
        try:
            return self._directory.get_organization(org_id).settings.cache_enabled
        except KeyError:
            return True

    def budget_bytes(self, org_id: int) -> int:
        if self._directory is not None:
            try:
                override = self._directory.get_organization(org_id).settings.cache_budget_mb
            except KeyError:
                override = None
            if override:
                return int(override * MEGABYTE)
        return self.settings.org_cache_budget_bytes

    def expiry_for(self, result: dict[str, Any], now: datetime) -> datetime:
        """Larger results expire sooner."""
        rows = row_count(result)
        s = self.settings
        if rows > s.cache_ttl_large_rows:
            hours = s.cache_ttl_large_hours
        elif rows > s.cache_ttl_medium_rows:
            hours = s.cache_ttl_medium_hours
        else:
            hours = s.cache_ttl_default_hours
        return now + timedelta(hours=hours)

    def is_cacheable(self, result: Any, size: int | None = None) -> bool:
        if not isinstance(result, dict) or not result:
            return False
        if result.get("error"):
            return False
        size = serialized_size(result) if size is None else size
        return size <= self.settings.max_cache_entry_bytes

    # ── Contract ─────────────────────────────────────────────────

    def lookup(
        self,
        query: str,
        dataset_id: int,
        org_id: int,
    ) -> tuple[Optional[dict[str, Any]], bool]:
        """Return ``(result, True)`` on a hit, ``(None, False)`` otherwise."""
        if not self.is_enabled(org_id):
            return None, False
        key = cache_key(query, dataset_id)
        now = datetime.now(timezone.utc)
        try:
            with self._lock:
                entry = self._entries.get(key)
                if entry is None or entry.organization_id != org_id or entry.is_expired(now):
                    self._misses[org_id] += 1
                    logger.info("Cache MISS for query: %s", query[:100])
                    return None, False
                entry.access_count += 1
                entry.last_accessed_at = now
                self._hits[org_id] += 1
                result = deepcopy(entry.result)
        except Exception as exc:
            logger.error("Cache lookup failed: %s", CacheError(str(exc)))
            return None, False
        logger.info("Cache HIT for query: %s", query[:100])
        return result, True

    def store(
        self,
        query: str,
        dataset_id: int,
        org_id: int,
        result: dict[str, Any],
        meta: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Write *result*; returns ``True`` if it was cached."""
        try:
            if not self.is_enabled(org_id):
                return False
            size = serialized_size(result)
            if not self.is_cacheable(result, size):
                logger.info("Result for query '%s' is not cacheable.", query[:100])
                return False

            key = cache_key(query, dataset_id)
            now = datetime.now(timezone.utc)
            with self._org_locks[org_id], self._lock:
                self._make_room(org_id, size, replacing=key)
                self._entries[key] = QueryCacheEntry(
                    query_hash=key,
                    query_text=query,
                    dataset_id=dataset_id,
                    organization_id=org_id,
                    result=deepcopy(result),
                    size_bytes=size,
                    created_at=now,
                    last_accessed_at=now,
                    expires_at=self.expiry_for(result, now),
                    metadata=dict(meta or {}, cached_at=now.isoformat()),
                )
            logger.info("Cached result for query '%s' (%d bytes).", query[:100], size)
            return True
        except Exception as exc:
            logger.error("Failed to cache query result: %s", CacheError(str(exc)))
            return False

    def invalidate(self, dataset_id: int) -> int:
        """Expire every entry of *dataset_id* immediately."""
        now = datetime.now(timezone.utc)
        try:
            with self._lock:
                affected = [e for e in self._entries.values() if e.dataset_id == dataset_id]
                for entry in affected:
                    entry.expires_at = now
        except Exception as exc:
            logger.error("Cache invalidation failed: %s", CacheError(str(exc)))
            return 0
        logger.info("Invalidated %d cache entries for dataset %s.", len(affected), dataset_id)
        return len(affected)

    def sweep(self) -> int:
        """Delete expired entries; returns how many were removed."""
        removed = 0
        try:
            with self._lock:
                now = datetime.now(timezone.utc)
                for key in [k for k, e in self._entries.items() if e.is_expired(now)]:
                    # Still expired under the lock: delete.
                    if self._entries[key].is_expired(now):
                        del self._entries[key]
                        removed += 1
        except Exception as exc:
            logger.error("Cache sweep failed: %s", CacheError(str(exc)))
        logger.info("Cache sweep removed %d expired entries.", removed)
        return removed

    # ── Supplementary operations ─────────────────────────────────

    def enforce_budget(self, org_id: int) -> int:
        """Evict down to the eviction target if *org_id* is over budget."""
        try:
            with self._org_locks[org_id], self._lock:
                if self.usage_bytes(org_id) <= self.budget_bytes(org_id):
                    return 0
                return self._make_room(org_id, 0)
        except Exception as exc:
            logger.error("Cache budget enforcement failed: %s", CacheError(str(exc)))
            return 0

    def usage_bytes(self, org_id: int) -> int:
        with self._lock:
            return sum(e.size_bytes for e in self._entries.values() if e.organization_id == org_id)

    def statistics(self, org_id: int) -> CacheStatistics:
        now = datetime.now(timezone.utc)
        with self._lock:
            entries = [e for e in self._entries.values() if e.organization_id == org_id]
            active = [e for e in entries if not e.is_expired(now)]
            hits, misses = self._hits[org_id], self._misses[org_id]
        popular = sorted(active, key=lambda e: e.access_count, reverse=True)[:10]
        lookups = hits + misses
        return CacheStatistics(
            organization_id=org_id,
            total_entries=len(entries),
            active_entries=len(active),
            expired_entries=len(entries) - len(active),
            total_size_mb=round(sum(e.size_bytes for e in entries) / MEGABYTE, 2),
            hit_rate=round(hits / lookups * 100, 2) if lookups else 0.0,
            popular_queries=[
                PopularQuery(query_text=e.query_text, access_count=e.access_count) for e in popular
            ],
            cache_enabled=self.is_enabled(org_id),
        )

    def get_entry(self, query: str, dataset_id: int) -> Optional[QueryCacheEntry]:
        with self._lock:
            return self._entries.get(cache_key(query, dataset_id))

    def organization_ids(self) -> set[int]:
        with self._lock:
            return {e.organization_id for e in self._entries.values()}

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits.clear()
            self._misses.clear()

    # ── Internals ────────────────────────────────────────────────

    def _make_room(self, org_id: int, incoming: int, replacing: str | None = None) -> int:
        """Evict LRU entries of *org_id*; caller holds both locks."""
        budget = self.budget_bytes(org_id)
        candidates = [
            e for e in self._entries.values()
            if e.organization_id == org_id and e.query_hash != replacing
        ]
        usage = sum(e.size_bytes for e in candidates)
        if usage + incoming <= budget:
            return 0

        target = budget * self.settings.cache_eviction_target
        evicted = 0
        for entry in sorted(candidates, key=lambda e: (e.last_accessed_at, e.access_count)):
            if usage + incoming <= target:
                break
            del self._entries[entry.query_hash]
            usage -= entry.size_bytes
            evicted += 1
        logger.info(
            "Evicted %d cache entries for organization %s (usage now %d / %d bytes).",
            evicted, org_id, usage + incoming, budget,
        )
        return evicted
