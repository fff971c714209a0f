"""
Metadata Cache

Keeps project, section and label lookups for the length of one CLI run so
that presenting each task does not refetch static metadata.

Entries expire after a TTL and are invalidated per kind whenever a mutation
could have changed the underlying collection.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .todoist import RemoteResult


class CacheKind(Enum):
    PROJECTS = 'projects'
    SECTIONS = 'sections'
    LABELS = 'labels'


@dataclass
class CacheEntry:
    value: Any
    fetched_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.fetched_at <= self.ttl


class MetadataCache:
    """TTL cache over RemoteResult-returning fetch functions, one entry per kind"""

    def __init__(
        self,
        ttl_seconds: float = 300,
        ttl_overrides: Optional[Dict[str, float]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.logger = logging.getLogger("TriageManager.Cache")
        self.ttl_seconds = ttl_seconds
        self.ttl_overrides = {CacheKind(kind): ttl for kind, ttl in (ttl_overrides or {}).items()}
        self._clock = clock
        self._entries: Dict[CacheKind, CacheEntry] = {}

    def ttl_for(self, kind: CacheKind) -> float:
        return self.ttl_overrides.get(kind, self.ttl_seconds)

    def get_or_fetch(self, kind: CacheKind, fetch_fn: Callable[[], RemoteResult]) -> RemoteResult:
        """
        Return the cached value for `kind`, fetching it when missing or stale

        Failed fetches are returned as-is and leave the cache untouched.
        """
        now = self._clock()
        entry = self._entries.get(kind)
        if entry is not None and entry.is_fresh(now):
            self.logger.debug(f"Cache hit: {kind.value}")
            return RemoteResult(success=True, data=entry.value)

        self.logger.debug(f"Cache miss: {kind.value}")
        result = fetch_fn()
        if result.success:
            self._entries[kind] = CacheEntry(value=result.data, fetched_at=self._clock(), ttl=self.ttl_for(kind))
        return result

    def invalidate(self, kind: CacheKind) -> None:
        if self._entries.pop(kind, None) is not None:
            self.logger.info(f"Invalidated cached {kind.value}")

    def clear(self) -> None:
        """Manual refresh: drop every entry"""
        self._entries.clear()
        self.logger.info("Metadata cache cleared")

    def __contains__(self, kind: CacheKind) -> bool:
        entry = self._entries.get(kind)
        return entry is not None and entry.is_fresh(self._clock())
