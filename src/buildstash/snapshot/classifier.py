"""
Managed and immutable path classification.

Paths below a *managed* root (for example ``site-packages``) are owned by a
package manager that only changes them together with the owning package's
version. Instead of tracking every file, the snapshot engine records the
package identity (``name@version``) read from the nearest manifest.

Paths below an *immutable* root (content-addressed stores, the interpreter's
standard library) never change and are not tracked at all.

Whenever no identity can be determined for a managed path the classifier
answers ``None`` and the engine falls back to full tracking.
"""

from __future__ import annotations

import importlib.metadata
import threading
from collections.abc import Iterable
from enum import Enum
from pathlib import Path

from ..utils.helpers import is_path_under, normalize_paths
from .manifests import find_manifest


class PathClass(str, Enum):
    MANAGED = "managed"
    IMMUTABLE = "immutable"
    TRACKED = "tracked"


class PathClassifier:
    """Classifies paths and resolves package identities for managed paths."""

    def __init__(
        self,
        managed_paths: Iterable[str | Path] = (),
        immutable_paths: Iterable[str | Path] = (),
    ) -> None:
        self.managed_paths = normalize_paths(managed_paths)
        self.immutable_paths = normalize_paths(immutable_paths)
        self._lock = threading.RLock()
        self._identities: dict[Path, str | None] = {}
        self._distribution_index: dict[Path, dict[str, tuple[str, str]]] = {}

    def classify(self, path: Path) -> PathClass:
        path = Path(path)
        for root in self.immutable_paths:
            if is_path_under(path, root):
                return PathClass.IMMUTABLE
        if self.managed_root(path) is not None:
            return PathClass.MANAGED
        return PathClass.TRACKED

    def managed_root(self, path: Path) -> Path | None:
        """Longest managed root containing ``path``."""
        best: Path | None = None
        for root in self.managed_paths:
            if path != root and is_path_under(path, root):
                if best is None or len(root.parts) > len(best.parts):
                    best = root
        return best

    def package_root(self, path: Path) -> Path | None:
        """Directory of the package that owns a managed path."""
        root = self.managed_root(path)
        if root is None:
            return None
        manifest = find_manifest(path if path.is_dir() else path.parent, stop=root)
        if manifest is not None:
            return manifest.path.parent
        first = path.relative_to(root).parts[0]
        return root / first

    def package_identity(self, path: Path) -> str | None:
        """
        ``name@version`` of the package owning a managed path.

        Looks for the nearest manifest between the path and its managed
        root first, then for an installed distribution owning the path's
        top-level entry below the root. Identities are memoised until
        :meth:`clear_cache`.
        """
        path = Path(path)
        root = self.managed_root(path)
        if root is None:
            return None

        start = path if path.is_dir() else path.parent
        with self._lock:
            if start in self._identities:
                return self._identities[start]

        manifest = find_manifest(start, stop=root)
        if manifest is not None:
            identity = manifest.identity
        else:
            first = path.relative_to(root).parts[0]
            owner = self._distributions(root).get(first)
            identity = f"{owner[0]}@{owner[1]}" if owner else None

        with self._lock:
            self._identities[start] = identity
        return identity

    def distribution_name(self, path: Path) -> str | None:
        """Name of the installed distribution owning a managed path."""
        root = self.managed_root(Path(path))
        if root is None:
            return None
        owner = self._distributions(root).get(Path(path).relative_to(root).parts[0])
        return owner[0] if owner else None

    def _distributions(self, root: Path) -> dict[str, tuple[str, str]]:
        with self._lock:
            index = self._distribution_index.get(root)
        if index is not None:
            return index

        index = {}
        for dist in importlib.metadata.distributions(path=[str(root)]):
            name = dist.metadata["Name"]
            if not name:
                continue
            for file in dist.files or ():
                if file.parts and file.parts[0] != "..":
                    index.setdefault(file.parts[0], (name, dist.version))

        with self._lock:
            self._distribution_index[root] = index
        return index

    def clear_cache(self) -> None:
        """Forget memoised identities so the next lookup reads manifests again."""
        with self._lock:
            self._identities.clear()
            self._distribution_index.clear()
