"""
Usage counters of the layered cache.

A hit is served either straight from the memory tier or by hydrating the
pack file that holds the entry. Invalidations and drops are counted per
reason so a build log can tell an edited source file apart from a stale
etag or a damaged pack.

Classes:
    InvalidationReason: Why a valid-looking entry was discarded
    DropReason: Why an entry was lost to an I/O or serialization problem
    CacheStatistics: Thread-safe counters
"""

from __future__ import annotations

import threading
from collections import Counter
from enum import Enum
from typing import Any


class InvalidationReason(str, Enum):
    ETAG = "etag"
    DEPENDENCIES = "dependencies"
    FILE_CHANGED = "file_changed"


class DropReason(str, Enum):
    UNREADABLE = "unreadable"
    UNWRITABLE = "unwritable"
    MISSING_FROM_PACK = "missing_from_pack"


class CacheStatistics:
    """
    Counters of one :class:`~buildstash.cache.manager.LayeredCache`.

    Updated from the build threads and from the persistence timer thread,
    so every update takes the statistics lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.memory_hits = 0
        self.pack_hits = 0
        self.misses = 0
        self.evictions = 0
        self.invalidations: Counter[str] = Counter()
        self.drops: Counter[str] = Counter()
        self.flushes = 0
        self.packs_written = 0
        self.packs_kept = 0
        self.bytes_written = 0
        self.last_flush_ms = 0.0

    @property
    def hits(self) -> int:
        return self.memory_hits + self.pack_hits

    def record_hit(self, hydrated: bool = False) -> None:
        """Count a hit; ``hydrated`` when the entry had to be read from its pack."""
        with self._lock:
            if hydrated:
                self.pack_hits += 1
            else:
                self.memory_hits += 1

    def record_miss(self) -> None:
        with self._lock:
            self.misses += 1

    def record_invalidation(self, reason: InvalidationReason, count: int = 1) -> None:
        with self._lock:
            self.invalidations[reason.value] += count

    def record_drop(self, reason: DropReason, count: int = 1) -> None:
        with self._lock:
            self.drops[reason.value] += count

    def record_eviction(self, count: int) -> None:
        """Entries removed by the retention window."""
        with self._lock:
            self.evictions += count

    def record_flush(self, packs_written: int, packs_kept: int, bytes_written: int, elapsed_ms: float) -> None:
        with self._lock:
            self.flushes += 1
            self.packs_written += packs_written
            self.packs_kept += packs_kept
            self.bytes_written += bytes_written
            self.last_flush_ms = elapsed_ms

    def hit_rate(self) -> float:
        """Fraction of lookups answered from the cache, 0.0 when there were none."""
        with self._lock:
            total = self.hits + self.misses
            return self.hits / total if total else 0.0

    def get_stats_dict(self, additional_stats: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        All counters as a plain dictionary.

        ``invalidations`` and ``drops`` are totals; the per-reason counts are
        under ``invalidations_by_reason`` and ``drops_by_reason``.
        """
        hit_rate = self.hit_rate()
        with self._lock:
            stats = {
                "hits": self.hits,
                "memory_hits": self.memory_hits,
                "pack_hits": self.pack_hits,
                "misses": self.misses,
                "hit_rate": hit_rate,
                "invalidations": sum(self.invalidations.values()),
                "invalidations_by_reason": dict(self.invalidations),
                "drops": sum(self.drops.values()),
                "drops_by_reason": dict(self.drops),
                "evictions": self.evictions,
                "flushes": self.flushes,
                "packs_written": self.packs_written,
                "packs_kept": self.packs_kept,
                "bytes_written": self.bytes_written,
                "last_flush_ms": self.last_flush_ms,
            }
        if additional_stats:
            stats.update(additional_stats)
        return stats
