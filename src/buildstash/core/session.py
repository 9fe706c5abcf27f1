"""
Cache session controller.

A :class:`CacheSession` owns one build process' use of the cache: it decides
at startup whether the persisted cache may be reused, serves and stores
build units and module resolution results during the build, and persists
the cache once the build has been idle long enough.

Classes:
    SessionState: States of a cache session
    SessionRecord: Validation data persisted in the index body
    CacheSession: The controller

State machine::

    UNINITIALIZED -> VALIDATING -> {COLD_BUILD, WARM_BUILD} -> RUNNING
    RUNNING -> IDLE -> PERSISTING -> {RUNNING, IDLE, EXITING}

Validation order at startup:
    1. no index file, unreadable index, or format/version mismatch: cold
    2. configured roots not covered by the recorded ones: cold
    3. recorded build-dependency snapshot changed: cold
    4. recorded resolve snapshot of a root changed: only that root is
       re-resolved; the build stays warm if its dependencies are unchanged

Example:
    >>> session = CacheSession(load_config("buildstash.toml"))
    >>> session.start()
    <SessionState.WARM_BUILD: 'warm_build'>
    >>> session.begin_build()
    >>> output = session.get_unit("src/app.py", etag)
    >>> if output is None:
    ...     output = compile_module("src/app.py")
    ...     session.store_unit("src/app.py", etag, output, DependencySet.of(["src/app.py"]))
    >>> session.build_finished()
    >>> session.wait_until_exit()
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ..cache.backends import PackStore
from ..cache.manager import LayeredCache
from ..cache.models import CacheEntry
from ..cache.scheduler import PersistenceScheduler
from ..cache.statistics import InvalidationReason
from ..resolver.build_dependencies import BuildDependencyResolver, ResolveResult
from ..resolver.loaders import ModuleLoader
from ..serialization import SerializerRegistry, serializable
from ..serialization.codec import FORMAT_VERSION
from ..snapshot.classifier import PathClassifier
from ..snapshot.engine import SnapshotComparison, SnapshotEngine
from ..snapshot.filesystem import FileSystemReader
from ..snapshot.models import DependencySet, Snapshot, SnapshotMode
from ..utils.error_handling import (
    CacheError,
    ErrorCollector,
    SnapshotMismatchError,
    VersionMismatchError,
)
from ..utils.file_watcher import FileWatcher
from ..utils.logging_config import get_logger
from .config import BuildCacheConfig

logger = get_logger()


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    VALIDATING = "validating"
    COLD_BUILD = "cold_build"
    WARM_BUILD = "warm_build"
    RUNNING = "running"
    IDLE = "idle"
    PERSISTING = "persisting"
    EXITING = "exiting"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.UNINITIALIZED: frozenset({SessionState.VALIDATING}),
    SessionState.VALIDATING: frozenset({SessionState.COLD_BUILD, SessionState.WARM_BUILD}),
    SessionState.COLD_BUILD: frozenset({SessionState.RUNNING, SessionState.PERSISTING}),
    SessionState.WARM_BUILD: frozenset({SessionState.RUNNING, SessionState.PERSISTING}),
    SessionState.RUNNING: frozenset({SessionState.IDLE, SessionState.PERSISTING}),
    SessionState.IDLE: frozenset({SessionState.RUNNING, SessionState.PERSISTING}),
    SessionState.PERSISTING: frozenset({SessionState.RUNNING, SessionState.IDLE, SessionState.EXITING}),
    SessionState.EXITING: frozenset(),
}


@serializable("buildstash.core.session", "SessionRecord")
@dataclass(slots=True)
class SessionRecord:
    """
    What the next session needs to validate this one's cache.

    ``resolved`` holds each root's dependency set, ``resolve_snapshots``
    each root's resolve inputs, ``build_snapshot`` the content of all
    resolved dependencies and ``unit_snapshot`` the cumulative snapshot of
    every stored build unit.
    """

    roots: list[str] = field(default_factory=list)
    resolved: dict[str, DependencySet] = field(default_factory=dict)
    resolve_snapshots: dict[str, Snapshot] = field(default_factory=dict)
    build_snapshot: Snapshot | None = None
    unit_snapshot: Snapshot | None = None

    def build_paths(self) -> set[Path]:
        paths: set[Path] = set()
        if self.build_snapshot is not None:
            paths |= self.build_snapshot.paths()
        for snapshot in self.resolve_snapshots.values():
            paths |= snapshot.paths()
        return paths


class CacheSession:
    """
    Drives one build process' use of the cache.

    Args:
        config: Cache configuration (validated here)
        registry: Serializer registry (defaults to the process-wide one); a
            custom registry must also hold the cache's own types
        fs: Filesystem reader for snapshots
        loader: Module loader for file build dependency roots (defaults to
            running them under an ExecutionTraceLoader)
        min_pack_bytes / max_pack_entries: Pack planning limits, passed to
            the LayeredCache when given
        clock: Time source

    Raises:
        ConfigurationError: If the configuration is invalid
    """

    def __init__(
        self,
        config: BuildCacheConfig | None = None,
        registry: SerializerRegistry | None = None,
        fs: FileSystemReader | None = None,
        loader: ModuleLoader | None = None,
        clock: Callable[[], float] = time.time,
        **cache_kwargs: Any,
    ) -> None:
        self.config = config or BuildCacheConfig()
        self.config.validate()
        self.clock = clock
        self.errors = ErrorCollector()

        self.classifier = PathClassifier(
            self.config.effective_managed_paths, self.config.snapshot.immutable_paths
        )
        self.engine = SnapshotEngine(fs=fs, classifier=self.classifier, clock=clock)
        self.resolver = BuildDependencyResolver(loader=loader, classifier=self.classifier)

        cache_options = self.config.cache
        self.store = PackStore(cache_options.namespace_dir, registry) if self.config.persistent else None
        self.cache = LayeredCache(
            store=self.store,
            registry=registry,
            version=cache_options.version,
            name=cache_options.name,
            max_age=cache_options.max_age,
            errors=self.errors,
            clock=clock,
            **cache_kwargs,
        )
        self.cache.add_listener(self._on_cache_write)

        self.scheduler: PersistenceScheduler | None = None
        if self.config.persistent:
            self.scheduler = PersistenceScheduler(
                self._on_idle_timeout,
                idle_timeout=cache_options.idle_timeout,
                idle_timeout_for_initial_store=cache_options.idle_timeout_for_initial_store,
            )

        self.record = SessionRecord()
        self.cold_reason: str | None = None
        self.changed_paths: frozenset[Path] = frozenset()
        self.watcher: FileWatcher | None = None

        self._lock = threading.RLock()
        self._state_changed = threading.Condition(self._lock)
        self._state = SessionState.UNINITIALIZED
        self._started_at = float("inf")

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_warm(self) -> bool:
        return self.cold_reason is None and self._state not in (
            SessionState.UNINITIALIZED,
            SessionState.VALIDATING,
        )

    def start(self) -> SessionState:
        """
        Validate the persisted cache and enter COLD_BUILD or WARM_BUILD.

        Never raises for cache problems; they only make the build cold.
        """
        with self._lock:
            self._transition(SessionState.VALIDATING)
            self._started_at = self.clock()

        reason = self._validate()
        if reason is None:
            logger.info(f"Cache session warm: {self.cache.name} ({len(self.cache)} entries)")
            with self._lock:
                self._transition(SessionState.WARM_BUILD)
        else:
            self.cold_reason = reason
            if self.config.persistent:
                logger.log_invalidation("cache", reason, cache_name=self.config.cache.name)
            self._start_cold()
            with self._lock:
                self._transition(SessionState.COLD_BUILD)
        return self._state

    def begin_build(self) -> None:
        """A build (or rebuild) started."""
        with self._lock:
            if self._state is not SessionState.RUNNING:
                self._transition(SessionState.RUNNING)
        if self.scheduler is not None:
            self.scheduler.notify_activity()

    def build_finished(self) -> None:
        """The build finished; arm the idle timer."""
        with self._lock:
            if self._state is not SessionState.IDLE:
                self._transition(SessionState.IDLE)
        if self.scheduler is not None:
            self.scheduler.notify_idle()

    def on_files_changed(self, paths: Iterable[Path | str]) -> int:
        """
        Handle changed paths reported by a watcher.

        Invalidates the units depending on the paths, resets the idle timer
        and moves an idle or persisting session back to RUNNING.

        Returns:
            Number of invalidated units
        """
        changed = [Path(p).resolve() for p in paths]
        invalidated = sum(self.cache.invalidate_by_file(path) for path in changed)

        build_paths = self.record.build_paths()
        touched = [path for path in changed if path in build_paths]
        if touched:
            logger.warning(
                f"{len(touched)} build dependencies changed; "
                "they are revalidated when the next session starts",
                paths=[str(p) for p in touched],
            )

        if self.scheduler is not None:
            self.scheduler.notify_activity()
        with self._lock:
            if self._state in (SessionState.IDLE, SessionState.PERSISTING):
                self._transition(SessionState.RUNNING)
        return invalidated

    def add_build_dependencies(self, roots: Iterable[str]) -> ResolveResult:
        """Resolve roots discovered at runtime and add them to the session record."""
        new_roots = [root for root in dict.fromkeys(roots) if root not in self.record.roots]
        result = self.resolver.resolve(new_roots)
        self._adopt(result)
        return result

    def get_unit(self, key: str, etag: str, default: Any = None) -> Any:
        """
        Payload of a cached unit.

        Returns ``default`` unless the etag matches and the unit's recorded
        dependencies are unchanged. A unit whose dependencies changed is
        dropped from the cache.
        """
        entry = self.cache.get(key, etag)
        if entry is None:
            return default
        if entry.snapshot is not None:
            changed: set[Path] = set()
            if entry.snapshot.started_at < self._started_at:
                changed = entry.snapshot.paths() & self.changed_paths
            if not changed:
                changed = set(self.engine.compare(entry.snapshot).changed)
            if changed:
                logger.log_invalidation(key, "dependencies changed", changed=sorted(str(p) for p in changed))
                self.cache.delete(key)
                self.cache.statistics.record_invalidation(InvalidationReason.DEPENDENCIES)
                return default
        return entry.payload

    def store_unit(
        self,
        key: str,
        etag: str,
        payload: Any,
        dependencies: DependencySet | None = None,
    ) -> CacheEntry:
        """Store a unit together with a snapshot of its dependencies."""
        return self._store(key, etag, payload, dependencies, self.config.snapshot.module)

    def get_resolution(self, request: str, etag: str, default: Any = None) -> Any:
        """Cached result of resolving ``request``, with the same rules as :meth:`get_unit`."""
        return self.get_unit(_resolution_key(request), etag, default)

    def store_resolution(
        self,
        request: str,
        etag: str,
        result: Any,
        dependencies: DependencySet | None = None,
    ) -> CacheEntry:
        """
        Store the result of resolving a module request.

        ``dependencies`` are the paths the resolution consulted, typically
        the file it found plus every candidate it probed without success.
        Their snapshot is captured in the ``snapshot.resolve`` mode. Results
        live apart from units, so a request and a unit may share a name.
        """
        return self._store(_resolution_key(request), etag, result, dependencies, self.config.snapshot.resolve)

    def validate_unit(self, key: str) -> SnapshotComparison | None:
        """
        Compare a unit's dependency snapshot with the filesystem.

        Returns:
            Every changed path of the unit, or None if the unit is unknown
            or has no snapshot
        """
        entry = self.cache.peek(key)
        if entry is None or entry.snapshot is None:
            return None
        return self.engine.compare(entry.snapshot, collect_all=True)

    def persist(self, force: bool = False) -> bool:
        """Persist the cache now; False if nothing was written."""
        with self._lock:
            self.cache.set_index_record(self.record, changed=False)
        try:
            return self.cache.persist(force=force)
        except Exception as e:
            self.errors.add_error(e)
            logger.error(f"Cache persistence failed: {e}")
            return False

    def start_watching(self, paths: Iterable[Path | str], **watcher_kwargs: Any) -> FileWatcher:
        """Watch ``paths`` and feed their changes to :meth:`on_files_changed`."""
        exclude = list(watcher_kwargs.pop("exclude", None) or [])
        exclude.append(f"{Path(self.config.cache.cache_dir).name}/")
        self.watcher = FileWatcher(paths, self.on_files_changed, exclude=exclude, **watcher_kwargs)
        self.watcher.start()
        return self.watcher

    def wait_until_exit(self, timeout: float | None = None) -> bool:
        """Block until the session reached EXITING; False on timeout."""
        with self._state_changed:
            return self._state_changed.wait_for(lambda: self._state is SessionState.EXITING, timeout)

    def shutdown(self) -> None:
        """Stop watching, persist synchronously and exit."""
        if self.watcher is not None:
            self.watcher.stop()
            self.watcher = None
        if self.scheduler is not None:
            self.scheduler.shutdown()
        with self._state_changed:
            # Let a flush started by the idle timer finish first
            self._state_changed.wait_for(lambda: self._state is not SessionState.PERSISTING)
            if self._state in (SessionState.UNINITIALIZED, SessionState.VALIDATING, SessionState.EXITING):
                return
            self._transition(SessionState.PERSISTING)
        try:
            self.persist()
        finally:
            with self._lock:
                self._transition(SessionState.EXITING)

    def stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "warm": self.is_warm,
            "cold_reason": self.cold_reason,
            "build_dependency_roots": list(self.record.roots),
            "persist_pending": self.scheduler.is_pending() if self.scheduler is not None else False,
            "cache": self.cache.get_stats(),
            "errors": self.errors.get_summary(),
        }

    def __enter__(self) -> CacheSession:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.shutdown()

    def _transition(self, new: SessionState) -> None:
        old = self._state
        if new not in _TRANSITIONS[old]:
            raise RuntimeError(f"Invalid cache session transition: {old.value} -> {new.value}")
        self._state = new
        logger.log_state_change(old.value, new.value)
        self._state_changed.notify_all()

    def _record(self, error: CacheError) -> None:
        self.errors.add_error(error)
        logger.warning(error.message, category=error.category.value)

    def _validate(self) -> str | None:
        """Reason the persisted cache cannot be used, or None if it can."""
        if self.store is None:
            return "memory cache"

        try:
            index = self.store.read_index()
        except CacheError as e:
            self._record(e)
            return "unreadable cache index"
        if index is None:
            return "no cache file"
        if index.format != FORMAT_VERSION:
            self._record(VersionMismatchError(str(FORMAT_VERSION), str(index.format), {"field": "format"}))
            return "cache format mismatch"
        if index.version != self.config.cache.version:
            self._record(VersionMismatchError(self.config.cache.version, index.version))
            return "version mismatch"

        try:
            record = self.store.read_index_record()
        except CacheError as e:
            self._record(e)
            return "unreadable session record"
        except Exception as e:
            self.errors.add_error(e)
            logger.warning(f"Cannot decode session record: {e}")
            return "unreadable session record"
        if not isinstance(record, SessionRecord):
            return "missing session record"

        roots = self.config.cache.build_dependency_roots()
        unknown = [root for root in roots if root not in record.roots]
        if unknown:
            logger.debug(f"Build dependency roots not recorded: {unknown}")
            return "build dependency roots changed"

        if record.build_snapshot is not None:
            comparison = self.engine.compare(record.build_snapshot)
            if not comparison.unchanged:
                self._record(SnapshotMismatchError("Build dependencies changed", set(comparison.changed)))
                return "build dependencies changed"

        record_changed = self._revalidate_resolution(record)
        if record_changed is None:
            return "build dependency resolution changed"

        if record.unit_snapshot is not None:
            self.changed_paths = self.engine.compare(record.unit_snapshot, collect_all=True).changed
            if self.changed_paths:
                logger.log_invalidation(
                    f"{len(self.changed_paths)} paths",
                    "changed since the last session",
                    paths=sorted(str(p) for p in self.changed_paths)[:20],
                )

        self.record = record
        self.cache.load_index(index)
        self.cache.set_index_record(record, changed=record_changed)
        return None

    def _revalidate_resolution(self, record: SessionRecord) -> bool | None:
        """
        Re-resolve the roots whose resolve snapshot changed.

        Returns:
            None if a root now resolves differently, otherwise whether the
            record was updated
        """
        changed_roots = [
            root
            for root in record.roots
            if root not in record.resolve_snapshots or not self.engine.check(record.resolve_snapshots[root])
        ]
        if not changed_roots:
            return False

        logger.debug(f"Re-resolving build dependency roots: {changed_roots}")
        result = self.resolver.resolve(changed_roots)
        for warning in result.warnings:
            self.errors.add_error(warning)
        for root in changed_roots:
            resolution = result.per_root[root]
            if resolution.dependencies != record.resolved.get(root):
                self._record(
                    SnapshotMismatchError(
                        f"Build dependency root {root} resolves differently",
                        set(record.resolve_snapshots[root].paths()) if root in record.resolve_snapshots else None,
                        {"root": root},
                    )
                )
                return None
            record.resolve_snapshots[root] = self.engine.capture(
                resolution.resolve_inputs, self.config.snapshot.resolve_build_dependencies
            )
        return True

    def _start_cold(self) -> None:
        self.cache.clear()
        self.record = SessionRecord()
        self.changed_paths = frozenset()
        if self.config.persistent:
            self._adopt(self.resolver.resolve(self.config.cache.build_dependency_roots()))

    def _adopt(self, result: ResolveResult) -> None:
        """Capture and record the snapshots of freshly resolved roots."""
        for warning in result.warnings:
            self.errors.add_error(warning)
        if not result.per_root:
            return

        snapshot = self.engine.capture(result.dependencies, self.config.snapshot.build_dependencies)
        resolve_snapshots = {
            root: self.engine.capture(resolution.resolve_inputs, self.config.snapshot.resolve_build_dependencies)
            for root, resolution in result.per_root.items()
        }
        with self._lock:
            record = self.record
            if record.build_snapshot is None:
                record.build_snapshot = snapshot
            else:
                record.build_snapshot.update(snapshot)
            for root, resolution in result.per_root.items():
                if root not in record.roots:
                    record.roots.append(root)
                record.resolved[root] = resolution.dependencies
                record.resolve_snapshots[root] = resolve_snapshots[root]
            self.cache.set_index_record(record)

    def _store(
        self,
        key: str,
        etag: str,
        payload: Any,
        dependencies: DependencySet | None,
        mode: SnapshotMode,
    ) -> CacheEntry:
        snapshot = None
        if dependencies is not None:
            snapshot = self.engine.capture(_absolute(dependencies), mode)
            with self._lock:
                if self.record.unit_snapshot is None:
                    self.record.unit_snapshot = Snapshot(snapshot.mode, snapshot.started_at)
                self.record.unit_snapshot.update(snapshot)
        return self.cache.set(key, etag, payload, snapshot)

    def _on_cache_write(self) -> None:
        if self._state is SessionState.IDLE and self.scheduler is not None:
            self.scheduler.notify_idle()

    def _on_idle_timeout(self) -> bool:
        with self._lock:
            if self._state is not SessionState.IDLE:
                return False
            self._transition(SessionState.PERSISTING)
        try:
            return self.persist()
        finally:
            with self._lock:
                # A file change during the flush already moved the session on
                if self._state is SessionState.PERSISTING:
                    self._transition(SessionState.IDLE if self.config.cache.watch else SessionState.EXITING)


def _resolution_key(request: str) -> str:
    return f"resolve:{request}"


def _absolute(dependencies: DependencySet) -> DependencySet:
    return DependencySet(
        {p.resolve() for p in dependencies.file_dependencies},
        {p.resolve() for p in dependencies.context_dependencies},
        {p.resolve() for p in dependencies.missing_dependencies},
    )
