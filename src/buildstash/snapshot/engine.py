"""
Snapshot capture and comparison.

Classes:
    SnapshotComparison: Result of comparing a snapshot with the filesystem
    SnapshotEngine: Captures and compares snapshots

Comparison rules per recorded state:
    - mtime only: changed if the live mtime differs
    - digest only: changed if the live content digest differs
    - mtime and digest: unchanged if the live mtime is equal; otherwise the
      digest is recomputed and decides
    - neither: the path could not be read at capture time, always changed
    - missing: changed if the path now exists
    - managed: changed if the live package identity differs or is unknown
    - immutable: never changed

Directories (context dependencies) are compared by their listing: the
directory's own mtime and/or a digest of its sorted entry names.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from ..utils.helpers import sha256_bytes
from ..utils.logging_config import get_logger
from .classifier import PathClass, PathClassifier
from .filesystem import FileStat, FileSystemReader, LocalFileSystem
from .models import DependencySet, ManagedState, PathState, Snapshot, SnapshotMode

logger = get_logger()


@dataclass(frozen=True, slots=True)
class SnapshotComparison:
    changed: frozenset[Path] = frozenset()

    @property
    def unchanged(self) -> bool:
        return not self.changed


class _Changed(Exception):
    """Stops a short-circuiting comparison at the first difference."""


class SnapshotEngine:
    """
    Captures and compares snapshots of dependency sets.

    Args:
        fs: Filesystem reader (defaults to the local filesystem)
        classifier: Managed/immutable path classifier (defaults to one with
            no managed or immutable roots)
        clock: Source of observation timestamps
    """

    def __init__(
        self,
        fs: FileSystemReader | None = None,
        classifier: PathClassifier | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.fs = fs or LocalFileSystem()
        self.classifier = classifier or PathClassifier()
        self.clock = clock

    def capture(self, dependencies: DependencySet, mode: SnapshotMode) -> Snapshot:
        self.classifier.clear_cache()
        now = self.clock()
        snapshot = Snapshot(mode=mode, started_at=now)

        for path in dependencies.file_dependencies:
            if self._capture_special(snapshot, path, now):
                continue
            st = self._stat(path)
            if st is None:
                snapshot.missing[path] = now
            elif st.is_dir:
                snapshot.contexts[path] = self._listing_state(path, st, mode, now)
            else:
                snapshot.files[path] = self._file_state(path, st, mode, now)

        for path in dependencies.context_dependencies:
            if self._capture_special(snapshot, path, now):
                continue
            st = self._stat(path)
            if st is None:
                snapshot.missing[path] = now
            elif st.is_dir:
                snapshot.contexts[path] = self._listing_state(path, st, mode, now)
            else:
                snapshot.files[path] = self._file_state(path, st, mode, now)

        for path in dependencies.missing_dependencies:
            if path in snapshot.files or path in snapshot.contexts:
                continue
            st = self._stat(path)
            if st is None:
                snapshot.missing[path] = now
            elif st.is_dir:
                snapshot.contexts[path] = self._listing_state(path, st, mode, now)
            else:
                snapshot.files[path] = self._file_state(path, st, mode, now)

        return snapshot

    def compare(self, snapshot: Snapshot, *, collect_all: bool = False) -> SnapshotComparison:
        """
        Compare a snapshot with the live filesystem.

        Args:
            snapshot: Previously captured snapshot
            collect_all: Report every changed path instead of stopping at
                the first one

        Returns:
            SnapshotComparison listing the changed paths (at most one unless
            ``collect_all``)
        """
        self.classifier.clear_cache()
        changed: set[Path] = set()

        def report(path: Path) -> None:
            changed.add(path)
            if not collect_all:
                raise _Changed

        try:
            for path, state in snapshot.files.items():
                st = self._stat(path)
                if st is None or st.is_dir or self._file_changed(path, state, st):
                    report(path)
            for path, state in snapshot.contexts.items():
                st = self._stat(path)
                if st is None or not st.is_dir or self._listing_changed(path, state, st):
                    report(path)
            for path in snapshot.missing:
                if self._stat(path) is not None:
                    report(path)
            for path, managed in snapshot.managed.items():
                identity = self.classifier.package_identity(path)
                if identity is None or identity != managed.identity:
                    report(path)
        except _Changed:
            pass

        return SnapshotComparison(frozenset(changed))

    def check(self, snapshot: Snapshot) -> bool:
        """True if the snapshot still matches the filesystem."""
        return self.compare(snapshot).unchanged

    def _capture_special(self, snapshot: Snapshot, path: Path, now: float) -> bool:
        path_class = self.classifier.classify(path)
        if path_class is PathClass.IMMUTABLE:
            snapshot.immutable.add(path)
            return True
        if path_class is PathClass.MANAGED:
            identity = self.classifier.package_identity(path)
            if identity is not None:
                snapshot.managed[path] = ManagedState(observed_at=now, identity=identity)
                return True
            logger.debug(f"No package identity for managed path {path}, tracking it fully")
        return False

    def _stat(self, path: Path) -> FileStat | None:
        try:
            return self.fs.stat(path)
        except OSError as e:
            # Exists but cannot be inspected: an unreadable state
            logger.debug(f"Cannot stat {path}: {e}")
            return FileStat(mtime=float("nan"), size=-1, is_dir=False)

    def _digest(self, path: Path) -> str | None:
        try:
            return sha256_bytes(self.fs.read_bytes(path))
        except OSError as e:
            logger.debug(f"Cannot read {path}: {e}")
            return None

    def _listing_digest(self, path: Path) -> str | None:
        try:
            names = sorted(self.fs.listdir(path))
        except OSError as e:
            logger.debug(f"Cannot list {path}: {e}")
            return None
        return sha256_bytes("\n".join(names).encode("utf-8"))

    def _file_state(self, path: Path, st: FileStat, mode: SnapshotMode, now: float) -> PathState:
        if st.size < 0:
            return PathState(observed_at=now)
        mtime = st.mtime if mode.uses_timestamp else None
        digest = self._digest(path) if mode.uses_hash else None
        if mode.uses_hash and digest is None:
            return PathState(observed_at=now)
        return PathState(observed_at=now, mtime=mtime, digest=digest)

    def _listing_state(self, path: Path, st: FileStat, mode: SnapshotMode, now: float) -> PathState:
        mtime = st.mtime if mode.uses_timestamp else None
        digest = self._listing_digest(path) if mode.uses_hash else None
        if mode.uses_hash and digest is None:
            return PathState(observed_at=now)
        return PathState(observed_at=now, mtime=mtime, digest=digest)

    def _file_changed(self, path: Path, state: PathState, st: FileStat) -> bool:
        return self._state_changed(state, st, lambda: self._digest(path))

    def _listing_changed(self, path: Path, state: PathState, st: FileStat) -> bool:
        return self._state_changed(state, st, lambda: self._listing_digest(path))

    @staticmethod
    def _state_changed(state: PathState, st: FileStat, live_digest: Callable[[], str | None]) -> bool:
        if state.mtime is None and state.digest is None:
            return True
        if state.mtime is not None:
            if st.mtime == state.mtime:
                return False
            if state.digest is None:
                return True
        digest = live_digest()
        return digest is None or digest != state.digest
