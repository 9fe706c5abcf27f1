"""
Cache package for buildstash.

Layered (memory + pack file) storage of build artifacts with deferred,
batched persistence.

Public API:
    LayeredCache: Main cache interface
    CacheEntry: Cache entry data structure
    CacheStatistics: Hit, invalidation, drop and flush counters
    CacheBackend: Abstract base for memory tiers
    MemoryCache: In-memory tier
    PackStore: Pack-file tier
    PersistenceScheduler: Idle-debounced flush trigger
    plan_packs: Pack partitioning
"""

from .backends import CacheBackend, MemoryCache, PackStore
from .cleanup import DEFAULT_MAX_AGE, CacheCleanup
from .dependencies import DependencyTracker
from .manager import LayeredCache
from .models import CacheEntry, CacheIndex, PackInfo
from .scheduler import (
    MAX_PACK_ENTRIES,
    MIN_PACK_BYTES,
    PackCandidate,
    PackPlan,
    PersistenceScheduler,
    plan_packs,
)
from .statistics import CacheStatistics, DropReason, InvalidationReason

__all__ = [
    "DEFAULT_MAX_AGE",
    "MAX_PACK_ENTRIES",
    "MIN_PACK_BYTES",
    "CacheBackend",
    "CacheCleanup",
    "CacheEntry",
    "CacheIndex",
    "CacheStatistics",
    "DependencyTracker",
    "DropReason",
    "InvalidationReason",
    "LayeredCache",
    "MemoryCache",
    "PackCandidate",
    "PackInfo",
    "PackPlan",
    "PackStore",
    "PersistenceScheduler",
    "plan_packs",
]
