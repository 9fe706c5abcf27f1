"""
Snapshot data models.

Classes:
    SnapshotMode: Which observations a snapshot records per path
    DependencySet: Files, directories and missing paths a unit of work depends on
    PathState: Observation of one file or directory
    ManagedState: Package identity of a path under a managed root
    Snapshot: Captured state of a dependency set, mergeable

All classes are registered on the process-wide serializer registry so
snapshots can be persisted inside cache files.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ..serialization import default_registry

REQUEST = "buildstash.snapshot.models"


class SnapshotMode(str, Enum):
    """Observations recorded per path."""

    TIMESTAMP = "timestamp"
    CONTENT_HASH = "hash"
    TIMESTAMP_AND_CONTENT_HASH = "timestamp+hash"

    @property
    def uses_timestamp(self) -> bool:
        return self is not SnapshotMode.CONTENT_HASH

    @property
    def uses_hash(self) -> bool:
        return self is not SnapshotMode.TIMESTAMP


@dataclass(slots=True)
class DependencySet:
    """
    Paths a unit of work depends on.

    ``missing_dependencies`` are paths that were probed but not found; their
    later creation must invalidate the unit.
    """

    file_dependencies: set[Path] = field(default_factory=set)
    context_dependencies: set[Path] = field(default_factory=set)
    missing_dependencies: set[Path] = field(default_factory=set)

    @classmethod
    def of(
        cls,
        files: Any = (),
        contexts: Any = (),
        missing: Any = (),
    ) -> DependencySet:
        return cls(
            {Path(p) for p in files},
            {Path(p) for p in contexts},
            {Path(p) for p in missing},
        )

    def add_file(self, path: Path | str) -> None:
        self.file_dependencies.add(Path(path))

    def add_context(self, path: Path | str) -> None:
        self.context_dependencies.add(Path(path))

    def add_missing(self, path: Path | str) -> None:
        self.missing_dependencies.add(Path(path))

    def update(self, other: DependencySet) -> None:
        self.file_dependencies |= other.file_dependencies
        self.context_dependencies |= other.context_dependencies
        self.missing_dependencies |= other.missing_dependencies

    def __or__(self, other: DependencySet) -> DependencySet:
        result = DependencySet()
        result.update(self)
        result.update(other)
        return result

    def all_paths(self) -> set[Path]:
        return self.file_dependencies | self.context_dependencies | self.missing_dependencies

    def is_empty(self) -> bool:
        return not (self.file_dependencies or self.context_dependencies or self.missing_dependencies)

    def __len__(self) -> int:
        return len(self.all_paths())


@dataclass(frozen=True, slots=True)
class PathState:
    """
    Observation of a file or directory listing.

    A state with neither ``mtime`` nor ``digest`` could not be read at
    capture time and always compares as changed.
    """

    observed_at: float
    mtime: float | None = None
    digest: str | None = None

    def order_key(self) -> tuple[float, str]:
        return (self.mtime if self.mtime is not None else -1.0, self.digest or "")


@dataclass(frozen=True, slots=True)
class ManagedState:
    observed_at: float
    identity: str


# Rank used to break ties between categories observed at the same instant.
_FILES, _CONTEXTS, _MISSING, _MANAGED = range(4)


@dataclass(slots=True)
class Snapshot:
    """
    Captured state of a dependency set.

    ``files`` and ``contexts`` hold per-path observations, ``missing`` the
    time each absent path was observed absent, ``managed`` the package
    identity of paths under managed roots. ``immutable`` paths are recorded
    but never verified.
    """

    mode: SnapshotMode
    started_at: float
    files: dict[Path, PathState] = field(default_factory=dict)
    contexts: dict[Path, PathState] = field(default_factory=dict)
    missing: dict[Path, float] = field(default_factory=dict)
    managed: dict[Path, ManagedState] = field(default_factory=dict)
    immutable: set[Path] = field(default_factory=set)

    def paths(self) -> set[Path]:
        return (
            set(self.files)
            | set(self.contexts)
            | set(self.missing)
            | set(self.managed)
            | self.immutable
        )

    def is_empty(self) -> bool:
        return not self.paths()

    def __len__(self) -> int:
        return len(self.paths())

    def _observations(self) -> dict[Path, tuple[float, int, tuple[Any, ...], Any]]:
        observations: dict[Path, tuple[float, int, tuple[Any, ...], Any]] = {}

        def offer(path: Path, candidate: tuple[float, int, tuple[Any, ...], Any]) -> None:
            current = observations.get(path)
            if current is None or candidate[:3] > current[:3]:
                observations[path] = candidate

        for path, state in self.files.items():
            offer(path, (state.observed_at, _FILES, state.order_key(), state))
        for path, state in self.contexts.items():
            offer(path, (state.observed_at, _CONTEXTS, state.order_key(), state))
        for path, observed_at in self.missing.items():
            offer(path, (observed_at, _MISSING, (), observed_at))
        for path, managed in self.managed.items():
            offer(path, (managed.observed_at, _MANAGED, (managed.identity,), managed))
        return observations

    def merge(self, other: Snapshot) -> Snapshot:
        """
        Merge two snapshots into a new one.

        The path sets are unioned. For a path observed by both, the most
        recent observation wins; observations made at the same instant are
        ordered by category and then by their recorded values so the result
        does not depend on merge order.
        """
        mode = self.mode if self.mode is other.mode else SnapshotMode.TIMESTAMP_AND_CONTENT_HASH
        merged = Snapshot(mode=mode, started_at=min(self.started_at, other.started_at))

        observations = self._observations()
        for path, candidate in other._observations().items():
            current = observations.get(path)
            if current is None or candidate[:3] > current[:3]:
                observations[path] = candidate

        for path, (_, category, _, state) in observations.items():
            if category == _FILES:
                merged.files[path] = state
            elif category == _CONTEXTS:
                merged.contexts[path] = state
            elif category == _MISSING:
                merged.missing[path] = state
            else:
                merged.managed[path] = state
        merged.immutable = self.immutable | other.immutable
        return merged

    def update(self, other: Snapshot) -> None:
        """Merge ``other`` into this snapshot in place, with the rules of :meth:`merge`."""
        if self.mode is not other.mode:
            self.mode = SnapshotMode.TIMESTAMP_AND_CONTENT_HASH
        self.started_at = min(self.started_at, other.started_at)
        for path, candidate in other._observations().items():
            current = self._observation_of(path)
            if current is not None and not candidate[:3] > current[:3]:
                continue
            self.files.pop(path, None)
            self.contexts.pop(path, None)
            self.missing.pop(path, None)
            self.managed.pop(path, None)
            category, state = candidate[1], candidate[3]
            if category == _FILES:
                self.files[path] = state
            elif category == _CONTEXTS:
                self.contexts[path] = state
            elif category == _MISSING:
                self.missing[path] = state
            else:
                self.managed[path] = state
        self.immutable |= other.immutable

    def _observation_of(self, path: Path) -> tuple[float, int, tuple[Any, ...], Any] | None:
        candidates = []
        if path in self.files:
            state = self.files[path]
            candidates.append((state.observed_at, _FILES, state.order_key(), state))
        if path in self.contexts:
            state = self.contexts[path]
            candidates.append((state.observed_at, _CONTEXTS, state.order_key(), state))
        if path in self.missing:
            observed_at = self.missing[path]
            candidates.append((observed_at, _MISSING, (), observed_at))
        if path in self.managed:
            managed = self.managed[path]
            candidates.append((managed.observed_at, _MANAGED, (managed.identity,), managed))
        if not candidates:
            return None
        return max(candidates, key=lambda c: c[:3])

    def subset(self, paths: set[Path]) -> Snapshot:
        """Snapshot restricted to ``paths``."""
        return Snapshot(
            mode=self.mode,
            started_at=self.started_at,
            files={p: s for p, s in self.files.items() if p in paths},
            contexts={p: s for p, s in self.contexts.items() if p in paths},
            missing={p: t for p, t in self.missing.items() if p in paths},
            managed={p: s for p, s in self.managed.items() if p in paths},
            immutable={p for p in self.immutable if p in paths},
        )


def merge_snapshots(*snapshots: Snapshot) -> Snapshot | None:
    result: Snapshot | None = None
    for snapshot in snapshots:
        result = snapshot if result is None else result.merge(snapshot)
    return result


default_registry.register_enum(SnapshotMode, REQUEST, "SnapshotMode")
default_registry.register_dataclass(DependencySet, REQUEST, "DependencySet")
default_registry.register_dataclass(PathState, REQUEST, "PathState")
default_registry.register_dataclass(ManagedState, REQUEST, "ManagedState")
default_registry.register_dataclass(Snapshot, REQUEST, "Snapshot")
