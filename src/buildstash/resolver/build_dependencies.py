"""
Build-dependency resolution.

Expands the configured build dependency roots into the files that affect
the build process itself.

A root ending in a path separator names a directory: the nearest package
manifest at or above it is read and the packages it declares are expanded
recursively through the installed distributions. Any other root names a
file: a :class:`~buildstash.resolver.loaders.ModuleLoader` reports the
files loading it touches, and the resolver follows them.

Touched paths are classified: paths under a managed root are replaced by the
directory of their owning package (whose snapshot records only the package
identity), immutable paths are dropped, everything else becomes a file
dependency.

Classes:
    RootResolution: Result for a single root
    ResolveResult: Result for a set of roots
    BuildDependencyResolver: Performs the expansion
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from ..snapshot.classifier import PathClass, PathClassifier
from ..snapshot.manifests import (
    distribution_manifest,
    distribution_paths,
    find_distribution,
    find_manifest,
    normalize_name,
)
from ..snapshot.models import DependencySet
from ..utils.error_handling import MissingBuildDependencyError
from ..utils.helpers import is_directory_root
from ..utils.logging_config import get_logger
from .loaders import ExecutionTraceLoader, LoaderError, ModuleLoader

logger = get_logger()


@dataclass(slots=True)
class RootResolution:
    """
    Resolution of one root.

    ``dependencies`` is the closure whose content matters to the build.
    ``resolve_inputs`` holds what decided the shape of that closure: the
    manifests read and the paths probed without success.
    """

    root: str
    dependencies: DependencySet = field(default_factory=DependencySet)
    resolve_inputs: DependencySet = field(default_factory=DependencySet)


@dataclass(slots=True)
class ResolveResult:
    per_root: dict[str, RootResolution] = field(default_factory=dict)
    warnings: list[MissingBuildDependencyError] = field(default_factory=list)

    @property
    def dependencies(self) -> DependencySet:
        result = DependencySet()
        for resolution in self.per_root.values():
            result.update(resolution.dependencies)
        return result

    @property
    def resolve_inputs(self) -> DependencySet:
        result = DependencySet()
        for resolution in self.per_root.values():
            result.update(resolution.resolve_inputs)
        return result


class _Walk:
    """Traversal state of one root."""

    def __init__(self, root: str) -> None:
        self.resolution = RootResolution(root)
        self.visited_files: set[Path] = set()
        self.visited_packages: set[str] = set()
        self.pending: list[Path] = []


class BuildDependencyResolver:
    """
    Expands build dependency roots into dependency sets.

    Args:
        loader: Module loader for file roots (defaults to ExecutionTraceLoader)
        classifier: Path classifier shared with the snapshot engine
    """

    def __init__(
        self,
        loader: ModuleLoader | None = None,
        classifier: PathClassifier | None = None,
    ) -> None:
        self.loader = loader or ExecutionTraceLoader()
        self.classifier = classifier or PathClassifier()

    def resolve(self, roots: Iterable[str]) -> ResolveResult:
        """
        Resolve every root independently.

        Resolution never raises for a bad root: it is recorded as a missing
        dependency and a :class:`MissingBuildDependencyError` warning.
        """
        result = ResolveResult()
        for root in dict.fromkeys(roots):
            walk = _Walk(root)
            try:
                if is_directory_root(root):
                    self._resolve_directory(walk, Path(root).expanduser().resolve())
                else:
                    self._resolve_file(walk, Path(root).expanduser().resolve())
            except MissingBuildDependencyError as e:
                logger.warning(e.message, root=root)
                result.warnings.append(e)
            result.per_root[root] = walk.resolution
        logger.debug(
            f"Resolved {len(result.per_root)} build dependency roots into "
            f"{len(result.dependencies)} paths"
        )
        return result

    def _resolve_directory(self, walk: _Walk, directory: Path) -> None:
        deps = walk.resolution.dependencies
        inputs = walk.resolution.resolve_inputs

        if not directory.is_dir():
            deps.add_missing(directory)
            inputs.add_missing(directory)
            raise MissingBuildDependencyError(walk.resolution.root, "directory does not exist")

        manifest = find_manifest(directory)
        if manifest is None:
            inputs.add_missing(directory / "pyproject.toml")
            raise MissingBuildDependencyError(walk.resolution.root, "no package manifest found")

        deps.add_file(manifest.path)
        inputs.add_file(manifest.path)
        for name in manifest.dependencies:
            self._expand_package(walk, name)

    def _resolve_file(self, walk: _Walk, path: Path) -> None:
        if not path.is_file():
            walk.resolution.dependencies.add_missing(path)
            walk.resolution.resolve_inputs.add_missing(path)
            raise MissingBuildDependencyError(walk.resolution.root, "file does not exist")

        walk.pending.append(path)
        while walk.pending:
            current = walk.pending.pop()
            if current in walk.visited_files:
                continue
            walk.visited_files.add(current)
            self._follow(walk, current, expand=current == path or not self.loader.is_transitive)

    def _follow(self, walk: _Walk, path: Path, expand: bool) -> None:
        deps = walk.resolution.dependencies
        path_class = self.classifier.classify(path)
        if path_class is PathClass.IMMUTABLE:
            return
        if path_class is PathClass.MANAGED:
            self._add_managed(walk, path)
            return

        deps.add_file(path)
        if not expand or path.suffix not in (".py", ".pyw"):
            return

        try:
            load = self.loader.load(path)
        except LoaderError as e:
            logger.warning(f"{e}; tracking the file without its imports", root=walk.resolution.root)
            return

        for missing in load.missing:
            deps.add_missing(missing)
            walk.resolution.resolve_inputs.add_missing(missing)
        for touched in load.order or sorted(load.touched):
            if touched not in walk.visited_files:
                walk.pending.append(touched)

    def _add_managed(self, walk: _Walk, path: Path) -> None:
        package_root = self.classifier.package_root(path)
        if package_root is None:
            walk.resolution.dependencies.add_file(path)
            return
        walk.resolution.dependencies.add_context(package_root)
        name = self.classifier.distribution_name(path)
        if name is not None:
            self._expand_package(walk, name)

    def _expand_package(self, walk: _Walk, name: str) -> None:
        """Add an installed distribution and, recursively, what it requires."""
        key = normalize_name(name)
        if key in walk.visited_packages:
            return
        walk.visited_packages.add(key)

        dist = find_distribution(name)
        if dist is None:
            logger.debug(f"Package {name!r} required by {walk.resolution.root} is not installed")
            return

        manifest = distribution_manifest(dist)
        walk.resolution.dependencies.add_file(manifest.path)
        walk.resolution.resolve_inputs.add_file(manifest.path)
        for owned in distribution_paths(dist):
            if self.classifier.classify(owned) is PathClass.IMMUTABLE:
                continue
            if owned.is_dir():
                walk.resolution.dependencies.add_context(owned)
            else:
                walk.resolution.dependencies.add_file(owned)
        for requirement in manifest.dependencies:
            self._expand_package(walk, requirement)
