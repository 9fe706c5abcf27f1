"""
Layered cache for buildstash build artifacts.

This module provides the main cache interface: an in-memory tier that the
build reads and writes synchronously, backed by a pack-file tier that is
only written when the cache is persisted.

Classes:
    LayeredCache: Main cache management interface

Features:
    - Etag-gated reads; a stale entry is never returned
    - Whole-pack hydration on the first miss for a key stored on disk
    - Writes land in memory and mark the entry dirty
    - At most one in-flight computation per key
    - Dependency tracking for watch-mode invalidation
    - Retention GC and pack planning at persist time
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from pathlib import Path
from typing import Any

from ..serialization import SerializerRegistry
from ..snapshot.models import Snapshot
from ..utils.error_handling import (
    CacheError,
    CacheIOError,
    ErrorCategory,
    ErrorCollector,
    ErrorSeverity,
)
from ..utils.logging_config import get_logger
from .backends import CacheBackend, MemoryCache, PackStore
from .cleanup import DEFAULT_MAX_AGE, CacheCleanup
from .dependencies import DependencyTracker
from .models import CacheEntry, CacheIndex, PackInfo
from .scheduler import MAX_PACK_ENTRIES, MIN_PACK_BYTES, PackCandidate, PackPlan, plan_packs
from .statistics import CacheStatistics, DropReason, InvalidationReason

logger = get_logger()


class LayeredCache:
    """
    Two-tier key to artifact store.

    The memory tier is always at least as fresh as the disk tier for every
    key written in the current session. The disk tier is written only by
    :meth:`persist`.

    Args:
        store: Pack store of the persistent tier; None for a memory-only cache
        memory: Memory tier (defaults to an unbounded MemoryCache)
        version: Cache version recorded in the index
        name: Cache namespace name recorded in the index
        max_age: Retention window in seconds
        min_pack_bytes: Size minimum of a pack file
        max_pack_entries: Entry cap of a pack file
        errors: Collector receiving every dropped entry and failed write
        clock: Time source
    """

    def __init__(
        self,
        store: PackStore | None = None,
        memory: CacheBackend | None = None,
        registry: SerializerRegistry | None = None,
        version: str = "",
        name: str = "default",
        max_age: float = DEFAULT_MAX_AGE,
        min_pack_bytes: int = MIN_PACK_BYTES,
        max_pack_entries: int = MAX_PACK_ENTRIES,
        errors: ErrorCollector | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        if store is not None and registry is not None:
            store.registry = registry
        self.memory = memory or MemoryCache()
        self.version = version
        self.name = name
        self.min_pack_bytes = min_pack_bytes
        self.max_pack_entries = max_pack_entries
        self.errors = errors or ErrorCollector()
        self.clock = clock

        self.cleanup = CacheCleanup(max_age)
        self.statistics = CacheStatistics()
        self.tracker = DependencyTracker()

        self._lock = threading.RLock()
        self._flush_lock = threading.Lock()
        self._packs: dict[str, PackInfo] = {}
        self._key_to_pack: dict[str, str] = {}
        self._loaded_packs: set[str] = set()
        self._touched_packs: set[str] = set()
        self._index_record: Any = None
        self._changed = False
        self._inflight: dict[tuple[str, str], Future[Any]] = {}
        self._listeners: list[Callable[[], None]] = []

    @property
    def persistent(self) -> bool:
        return self.store is not None

    @property
    def has_changes(self) -> bool:
        return self._changed

    def add_listener(self, listener: Callable[[], None]) -> None:
        """Register a callback invoked after every write."""
        self._listeners.append(listener)

    def load_index(self, index: CacheIndex) -> None:
        """Adopt the pack table of a validated index; packs load lazily."""
        with self._lock:
            self._packs = {pack_id: PackInfo(pack_id, dict(info.entries), info.size_bytes)
                           for pack_id, info in index.packs.items()}
            self._key_to_pack = {
                key: pack_id for pack_id, info in self._packs.items() for key in info.entries
            }
            self._loaded_packs.clear()
            self._touched_packs.clear()
        logger.debug(f"Cache index adopted: {len(self._packs)} packs, {len(self._key_to_pack)} entries")

    def set_index_record(self, record: Any, changed: bool = True) -> None:
        """Set the session record persisted in the index body."""
        with self._lock:
            self._index_record = record
            if changed:
                self._changed = True

    def get(self, key: str, etag: str) -> CacheEntry | None:
        """
        Get a cache entry.

        Args:
            key: Cache key
            etag: Etag recomputed by the caller

        Returns:
            The entry if present and its etag matches, None otherwise. An
            entry with another etag is discarded.
        """
        entry = self.memory.get(key)
        hydrated = False
        if entry is None:
            entry = self._hydrate_for(key)
            hydrated = entry is not None
        if entry is None:
            self.statistics.record_miss()
            return None

        if entry.etag != etag:
            logger.log_entry_dropped(key, "etag mismatch")
            self.delete(key)
            self.statistics.record_invalidation(InvalidationReason.ETAG)
            self.statistics.record_miss()
            return None

        with self._lock:
            if not entry.used:
                self._changed = True
            entry.touch(self.clock())
        self.statistics.record_hit(hydrated)
        return entry

    def set(self, key: str, etag: str, payload: Any, snapshot: Snapshot | None = None) -> CacheEntry:
        """
        Store an artifact in the memory tier.

        The disk tier is not touched; the entry is written by the next
        :meth:`persist`.
        """
        now = self.clock()
        entry = CacheEntry(
            key=key,
            etag=etag,
            payload=payload,
            created_at=now,
            last_accessed=now,
            snapshot=snapshot,
            used=True,
            dirty=True,
        )
        with self._lock:
            self._detach_from_pack(key)
            self.memory.set(key, entry)
            self.tracker.remove_dependencies(key)
            if snapshot is not None:
                self.tracker.add_dependencies(key, snapshot.paths())
            self._changed = True
        self._notify()
        return entry

    def peek(self, key: str) -> CacheEntry | None:
        """Entry for ``key`` regardless of its etag, hydrating its pack if needed."""
        entry = self.memory.get(key)
        return entry if entry is not None else self._hydrate_for(key)

    def get_or_compute(
        self,
        key: str,
        etag: str,
        compute: Callable[[], Any],
        snapshot_factory: Callable[[], Snapshot | None] | None = None,
    ) -> Any:
        """
        Return the cached payload or compute, store and return it.

        Concurrent callers for the same key and etag wait for a single
        computation instead of running their own. A failing computation
        propagates to every waiting caller and stores nothing.
        """
        entry = self.get(key, etag)
        if entry is not None:
            return entry.payload

        with self._lock:
            future = self._inflight.get((key, etag))
            owner = future is None
            if owner:
                existing = self.memory.get(key)
                if existing is not None and existing.etag == etag:
                    return existing.payload
                future = Future()
                self._inflight[(key, etag)] = future

        if not owner:
            return future.result()

        try:
            value = compute()
            snapshot = snapshot_factory() if snapshot_factory is not None else None
            self.set(key, etag, value, snapshot)
            future.set_result(value)
            return value
        except BaseException as e:
            future.set_exception(e)
            raise
        finally:
            with self._lock:
                self._inflight.pop((key, etag), None)

    def delete(self, key: str) -> bool:
        with self._lock:
            in_memory = self.memory.delete(key)
            on_disk = self._detach_from_pack(key)
            self.tracker.remove_dependencies(key)
            if in_memory or on_disk:
                self._changed = True
        return in_memory or on_disk

    def invalidate_by_file(self, path: Path) -> int:
        """
        Invalidate all cache entries that depend on a path.

        Args:
            path: Path that changed

        Returns:
            Number of cache entries invalidated
        """
        dependent_keys = self.tracker.get_dependent_keys(Path(path))
        invalidated = sum(1 for key in dependent_keys if self.delete(key))
        if invalidated:
            self.statistics.record_invalidation(InvalidationReason.FILE_CHANGED, invalidated)
            logger.log_invalidation(f"{invalidated} entries", f"{path} changed")
        return invalidated

    def clear(self) -> None:
        """Drop every entry; the next persist empties the disk tier."""
        with self._lock:
            self.memory.clear()
            self.tracker.clear_all_dependencies()
            had_packs = bool(self._packs)
            self._packs.clear()
            self._key_to_pack.clear()
            self._loaded_packs.clear()
            self._touched_packs.clear()
            self._changed = True
        logger.info("Cache cleared" + (" (persisted packs will be replaced)" if had_packs else ""))

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(set(self.memory.keys()) | set(self._key_to_pack))

    def __len__(self) -> int:
        return len(self.keys())

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return self.memory.get(key) is not None or key in self._key_to_pack

    def persist(self, now: float | None = None, force: bool = False) -> bool:
        """
        Write dirty entries to the disk tier.

        Skipped if nothing changed since the last persist, unless ``force``.
        Runs retention GC, plans packs, writes new packs, replaces the index,
        then deletes the packs no longer referenced.

        Returns:
            True if an index was written
        """
        if self.store is None:
            return False

        with self._flush_lock:
            if not self._changed and not force:
                logger.debug("Cache persist skipped: nothing changed")
                return False

            start = time.perf_counter()
            now = self.clock() if now is None else now
            with self._lock:
                self._changed = False
                self._collect_garbage(now)
                plan = self._plan()
                for pack_id in plan.keep:
                    info = self._packs[pack_id]
                    for key in info.entries:
                        kept = self.memory.get(key)
                        if kept is not None:
                            info.entries[key] = kept.last_accessed
                old_locations = {e.key: (e.pack, e.dirty) for pack in plan.packs for e in pack}

            written: list[PackInfo] = []
            failed: list[CacheEntry] = []
            bytes_written = 0
            for pack in plan.packs:
                try:
                    result = self.store.write_pack(pack)
                except CacheIOError as e:
                    self._record(e)
                    failed.extend(pack)
                    continue
                for entry, error in result.dropped:
                    self._drop(entry.key, error, DropReason.UNWRITABLE)
                if not result.written:
                    self.store.delete_pack(result.info.pack_id)
                    continue
                written.append(result.info)
                bytes_written += result.info.size_bytes
                for entry in result.written:
                    entry.pack = result.info.pack_id
                    entry.dirty = False

            with self._lock:
                new_table = {pack_id: self._packs[pack_id] for pack_id in plan.keep}
                for info in written:
                    new_table[info.pack_id] = info
                # Entries that could not be written keep their old pack when it had one
                for entry in failed:
                    if entry.pack is not None and entry.pack in self._packs:
                        info = new_table.setdefault(entry.pack, PackInfo(entry.pack, {}, self._packs[entry.pack].size_bytes))
                        info.entries[entry.key] = entry.last_accessed

                try:
                    bytes_written += self.store.write_index(
                        self.version, self.name, new_table.values(), self._index_record
                    )
                except CacheError as e:
                    self._record(e)
                    for info in written:
                        self.store.delete_pack(info.pack_id)
                    for pack in plan.packs:
                        for entry in pack:
                            entry.pack, entry.dirty = old_locations[entry.key]
                    self._changed = True
                    return False

                self._packs = new_table
                self._key_to_pack = {
                    key: pack_id for pack_id, info in new_table.items() for key in info.entries
                }
                self._loaded_packs = {p for p in self._loaded_packs if p in new_table}
                self._loaded_packs.update(info.pack_id for info in written)
                self._touched_packs = {e.pack for e in failed if e.pack in new_table}
                if failed:
                    self._changed = True

            removed = self.store.remove_unreferenced(set(new_table))
            elapsed_ms = (time.perf_counter() - start) * 1000
            self.statistics.record_flush(len(written), len(plan.keep), bytes_written, elapsed_ms)
            logger.log_flush(
                len(written),
                len(self._key_to_pack),
                elapsed_ms,
                packs_kept=len(plan.keep),
                packs_removed=removed,
            )
            return True

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            entries = self.memory.entries()
            return self.statistics.get_stats_dict(
                {
                    "total_entries": len(set(self.memory.keys()) | set(self._key_to_pack)),
                    "total_size_bytes": sum(info.size_bytes for info in self._packs.values()),
                    "memory_entries": len(entries),
                    "dirty_entries": sum(1 for e in entries if e.dirty),
                    "packs": len(self._packs),
                    "loaded_packs": len(self._loaded_packs),
                    "tracked_paths": self.tracker.get_dependency_count(),
                    "errors": self.errors.get_summary()["total_errors"],
                    "retention": self.cleanup.get_status(),
                }
            )

    def stats(self) -> dict[str, Any]:
        return self.get_stats()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.error(f"Cache listener failed: {e}")

    def _record(self, error: CacheError) -> None:
        self.errors.add_error(error)
        logger.warning(error.message, category=error.category.value)

    def _drop(self, key: str, error: Exception, reason: DropReason) -> None:
        """Forget an entry that cannot be read or written."""
        message = error.message if isinstance(error, CacheError) else str(error)
        logger.log_entry_dropped(key, message, error_type=type(error).__name__)
        self.errors.add_error(error, context={"key": key})
        self.statistics.record_drop(reason)
        with self._lock:
            self.memory.delete(key)
            self._detach_from_pack(key)
            self.tracker.remove_dependencies(key)
            self._changed = True

    def _detach_from_pack(self, key: str) -> bool:
        pack_id = self._key_to_pack.pop(key, None)
        if pack_id is None:
            return False
        info = self._packs.get(pack_id)
        if info is not None:
            info.entries.pop(key, None)
        self._touched_packs.add(pack_id)
        return True

    def _hydrate_for(self, key: str) -> CacheEntry | None:
        with self._lock:
            pack_id = self._key_to_pack.get(key)
            if pack_id is None or pack_id in self._loaded_packs:
                return None
            self._load_pack(pack_id)
            return self.memory.get(key)

    def _disk_tier(self) -> PackStore:
        if self.store is None:
            raise CacheError(
                "Memory-only cache has no pack files",
                category=ErrorCategory.CONFIGURATION,
                severity=ErrorSeverity.HIGH,
            )
        return self.store

    def _load_pack(self, pack_id: str) -> None:
        """Hydrate every live entry of a pack into the memory tier."""
        store = self._disk_tier()
        info = self._packs[pack_id]
        self._loaded_packs.add(pack_id)
        try:
            load = store.read_pack(pack_id, set(info.entries))
        except CacheError as e:
            self._record(e)
            for key in list(info.entries):
                logger.log_entry_dropped(key, f"pack {pack_id} unreadable")
                self._detach_from_pack(key)
                self.statistics.record_drop(DropReason.UNREADABLE)
            self._changed = True
            return

        for error in load.errors:
            key = error.context.get("key")
            if key is not None:
                self._drop(key, error, DropReason.UNREADABLE)

        loaded = 0
        for entry in load.entries:
            if self._key_to_pack.get(entry.key) != pack_id or self.memory.get(entry.key) is not None:
                continue
            entry.last_accessed = max(entry.last_accessed, info.entries.get(entry.key, 0.0))
            self.memory.set(entry.key, entry)
            if entry.snapshot is not None:
                self.tracker.add_dependencies(entry.key, entry.snapshot.paths())
            loaded += 1

        # Keys listed in the index but absent from the pack file
        for key in [k for k, p in self._key_to_pack.items() if p == pack_id]:
            if self.memory.get(key) is None:
                logger.log_entry_dropped(key, f"missing from pack {pack_id}")
                self._detach_from_pack(key)
                self.statistics.record_drop(DropReason.MISSING_FROM_PACK)
                self._changed = True
        logger.debug(f"Hydrated {loaded} entries from pack {pack_id}")

    def _collect_garbage(self, now: float) -> None:
        unloaded = [info for pack_id, info in self._packs.items() if pack_id not in self._loaded_packs]
        expired_memory, expired_packs = self.cleanup.find_expired(self.memory.entries(), unloaded, now)
        for key in expired_memory:
            self.memory.delete(key)
            self._detach_from_pack(key)
            self.tracker.remove_dependencies(key)
        for keys in expired_packs.values():
            for key in keys:
                self._detach_from_pack(key)
        removed = len(expired_memory) + sum(len(keys) for keys in expired_packs.values())
        if removed:
            self.statistics.record_eviction(removed)
            logger.log_invalidation(f"{removed} entries", "retention window expired")

    def _measure_dirty(self) -> None:
        store = self._disk_tier()
        for entry in self.memory.entries():
            if not entry.size_bytes:
                try:
                    entry.size_bytes = store.measure(entry)
                except Exception as e:
                    self._drop(entry.key, e, DropReason.UNWRITABLE)

    def _candidates(self) -> list[PackCandidate]:
        members: dict[str, list[CacheEntry]] = {}
        for entry in self.memory.entries():
            if entry.pack is not None:
                members.setdefault(entry.pack, []).append(entry)

        candidates = []
        for pack_id, info in self._packs.items():
            if pack_id in self._touched_packs or not info.entries:
                continue
            if info.size_bytes < self.min_pack_bytes or len(info.entries) > self.max_pack_entries:
                continue
            if pack_id in self._loaded_packs:
                loaded = members.get(pack_id, [])
                flags = {entry.used for entry in loaded}
                if len(loaded) != len(info.entries) or len(flags) > 1 or any(e.dirty for e in loaded):
                    continue
                used = flags.pop() if flags else False
            else:
                used = False
            candidates.append(PackCandidate(pack_id, used, len(info.entries), info.size_bytes))
        return candidates

    def _plan(self) -> PackPlan:
        candidates = self._candidates()
        candidate_ids = {c.pack_id for c in candidates}
        for pack_id in list(self._packs):
            if pack_id not in candidate_ids and pack_id not in self._loaded_packs:
                self._load_pack(pack_id)
        self._measure_dirty()

        while True:
            loose = [
                entry
                for entry in self.memory.entries()
                if entry.pack is None or entry.pack not in candidate_ids
            ]
            plan = plan_packs(loose, candidates, self.min_pack_bytes, self.max_pack_entries)
            if not plan.release:
                return plan
            for pack_id in plan.release:
                if pack_id not in self._loaded_packs:
                    self._load_pack(pack_id)
                self._touched_packs.add(pack_id)
            candidates = [c for c in candidates if c.pack_id not in plan.release]
            candidate_ids = {c.pack_id for c in candidates}
            self._measure_dirty()
