"""
File dependency tracking for cache management.

Tracks which cache entries depend on which paths, so a file change reported
by the watcher invalidates exactly the dependent entries.

Classes:
    DependencyTracker: Manages path dependencies for cache entries

Features:
    - Thread-safe dependency tracking
    - Reverse index for O(1) removal of a key's dependencies
    - Prefix lookup for changed directories
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from pathlib import Path

from ..utils.helpers import is_path_under


class DependencyTracker:
    """
    Tracks path dependencies for cache entries.

    This class manages the mapping between paths and cache entries that
    depend on them, enabling efficient invalidation when files change.
    """

    def __init__(self) -> None:
        # path -> keys that depend on it
        self._path_dependencies: dict[Path, set[str]] = {}
        # key -> paths it depends on
        self._key_paths: dict[str, set[Path]] = {}
        self._dependency_lock = threading.RLock()

    def add_dependencies(self, cache_key: str, paths: Iterable[Path]) -> None:
        """
        Add path dependencies for a cache key.

        Args:
            cache_key: The cache key that depends on the paths
            paths: Paths the cache entry depends on
        """
        with self._dependency_lock:
            owned = self._key_paths.setdefault(cache_key, set())
            for path in paths:
                self._path_dependencies.setdefault(path, set()).add(cache_key)
                owned.add(path)

    def remove_dependencies(self, cache_key: str) -> None:
        with self._dependency_lock:
            for path in self._key_paths.pop(cache_key, ()):
                keys = self._path_dependencies.get(path)
                if keys is None:
                    continue
                keys.discard(cache_key)
                if not keys:
                    del self._path_dependencies[path]

    def get_dependent_keys(self, path: Path) -> set[str]:
        """
        Get all cache keys that depend on a path.

        A key depends on ``path`` if it recorded the path itself, or a path
        below it when ``path`` is a directory that changed as a whole.

        Args:
            path: Changed path

        Returns:
            Set of dependent cache keys
        """
        with self._dependency_lock:
            keys = set(self._path_dependencies.get(path, ()))
            for tracked, dependents in self._path_dependencies.items():
                if tracked != path and is_path_under(tracked, path):
                    keys |= dependents
            return keys

    def get_dependency_count(self) -> int:
        """Number of paths being tracked."""
        with self._dependency_lock:
            return len(self._path_dependencies)

    def clear_all_dependencies(self) -> None:
        with self._dependency_lock:
            self._path_dependencies.clear()
            self._key_paths.clear()

    def get_paths_with_dependencies(self) -> set[Path]:
        with self._dependency_lock:
            return set(self._path_dependencies)
