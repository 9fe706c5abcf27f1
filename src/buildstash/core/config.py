"""
Configuration module for buildstash.

Defines the configuration consumed by the cache session: which cache tier
to use, what invalidates it, where it lives, how eagerly it is persisted and
which snapshot mode each kind of check uses.

Classes:
    CacheType: Memory-only or filesystem (layered) cache
    CacheOptions: The ``[cache]`` section
    SnapshotOptions: The ``[snapshot]`` section
    BuildCacheConfig: Complete configuration

Functions:
    load_config: Read a TOML configuration file
    default_managed_paths: Installation directories of Python packages
    default_immutable_paths: The interpreter's standard library

Example:
    ``buildstash.toml``::

        [cache]
        type = "filesystem"
        version = "v1"
        buildDependencies = { config = ["build.py"], tooling = ["./"] }
        idleTimeout = 30

        [snapshot]
        module = "hash"

    >>> config = load_config("buildstash.toml")
    >>> config.cache.version
    'v1'
"""

from __future__ import annotations

import os
import sysconfig
import tomllib
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any

from ..cache.cleanup import DEFAULT_MAX_AGE
from ..cache.scheduler import DEFAULT_IDLE_TIMEOUT, DEFAULT_IDLE_TIMEOUT_FOR_INITIAL_STORE
from ..snapshot.models import SnapshotMode
from ..utils.error_handling import ConfigurationError
from ..utils.helpers import is_directory_root


class CacheType(str, Enum):
    MEMORY = "memory"
    FILESYSTEM = "filesystem"


def default_managed_paths() -> list[str]:
    paths = {sysconfig.get_paths()["purelib"], sysconfig.get_paths()["platlib"]}
    return sorted(paths)


def default_immutable_paths() -> list[str]:
    paths = {sysconfig.get_paths()["stdlib"], sysconfig.get_paths()["platstdlib"]}
    return sorted(paths)


@dataclass(slots=True)
class CacheOptions:
    type: CacheType = CacheType.FILESYSTEM
    # name -> roots; a trailing separator marks a directory root
    build_dependencies: dict[str, list[str]] = field(default_factory=dict)
    version: str = ""
    name: str = "default"
    cache_dir: Path = Path(".buildstash-cache")
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    idle_timeout_for_initial_store: float = DEFAULT_IDLE_TIMEOUT_FOR_INITIAL_STORE
    max_age: float = DEFAULT_MAX_AGE
    # None = use snapshot.managed_paths; [] disables the managed optimisation
    managed_paths: list[str] | None = None
    watch: bool = False

    @property
    def namespace_dir(self) -> Path:
        return Path(self.cache_dir) / self.name

    def build_dependency_roots(self) -> list[str]:
        roots: dict[str, None] = {}
        for group in self.build_dependencies.values():
            for root in group:
                roots.setdefault(root, None)
        return list(roots)


@dataclass(slots=True)
class SnapshotOptions:
    managed_paths: list[str] = field(default_factory=default_managed_paths)
    immutable_paths: list[str] = field(default_factory=default_immutable_paths)
    # Results of module resolution
    resolve: SnapshotMode = SnapshotMode.TIMESTAMP
    # Cached build units
    module: SnapshotMode = SnapshotMode.TIMESTAMP
    # Resolution of the build dependency roots
    resolve_build_dependencies: SnapshotMode = SnapshotMode.TIMESTAMP_AND_CONTENT_HASH
    # Content of the build dependencies
    build_dependencies: SnapshotMode = SnapshotMode.TIMESTAMP_AND_CONTENT_HASH


@dataclass(slots=True)
class BuildCacheConfig:
    cache: CacheOptions = field(default_factory=CacheOptions)
    snapshot: SnapshotOptions = field(default_factory=SnapshotOptions)

    @property
    def effective_managed_paths(self) -> list[str]:
        if self.cache.managed_paths is not None:
            return list(self.cache.managed_paths)
        return list(self.snapshot.managed_paths)

    @property
    def persistent(self) -> bool:
        return self.cache.type is CacheType.FILESYSTEM

    def validate(self) -> None:
        """Validate the configuration and raise ConfigurationError on issues.

        Raises:
            ConfigurationError: If the configuration is invalid.
        """
        name = self.cache.name
        if not name or name in (".", "..") or "/" in name or "\\" in name:
            raise ConfigurationError(
                "Cache name must be a non-empty single path component",
                context={"field": "cache.name", "value": name},
            )

        for option in ("idle_timeout", "idle_timeout_for_initial_store"):
            value = getattr(self.cache, option)
            if value < 0:
                raise ConfigurationError(
                    f"{option} must be non-negative",
                    context={"field": f"cache.{option}", "value": value},
                )

        if self.cache.max_age <= 0:
            raise ConfigurationError(
                "Retention window must be positive",
                context={"field": "cache.max_age", "value": self.cache.max_age},
            )

        for group, roots in self.cache.build_dependencies.items():
            if not isinstance(roots, list) or not all(isinstance(r, str) and r for r in roots):
                raise ConfigurationError(
                    "Build dependencies must be lists of non-empty paths",
                    context={"field": f"cache.build_dependencies.{group}", "value": roots},
                )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BuildCacheConfig:
        """
        Build a configuration from a mapping with ``cache`` and ``snapshot``
        sections. Keys may be given in camelCase or snake_case.

        Raises:
            ConfigurationError: On unknown keys or invalid values
        """
        unknown = set(data) - {"cache", "snapshot"}
        if unknown:
            raise ConfigurationError(
                f"Unknown configuration sections: {', '.join(sorted(unknown))}",
                context={"sections": sorted(unknown)},
            )

        cache_values = _section(data.get("cache", {}), CacheOptions, "cache")
        snapshot_values = _section(data.get("snapshot", {}), SnapshotOptions, "snapshot")

        try:
            if "type" in cache_values:
                cache_values["type"] = CacheType(cache_values["type"])
            if "cache_dir" in cache_values:
                cache_values["cache_dir"] = Path(cache_values["cache_dir"])
            if "build_dependencies" in cache_values:
                cache_values["build_dependencies"] = {
                    str(group): roots for group, roots in cache_values["build_dependencies"].items()
                }
            for option in ("idle_timeout", "idle_timeout_for_initial_store", "max_age"):
                if option in cache_values:
                    cache_values[option] = float(cache_values[option])
            for option in ("resolve", "module", "resolve_build_dependencies", "build_dependencies"):
                if option in snapshot_values:
                    snapshot_values[option] = SnapshotMode(snapshot_values[option])
        except (ValueError, TypeError, AttributeError) as e:
            raise ConfigurationError(f"Invalid configuration value: {e}") from e

        config = cls(cache=CacheOptions(**cache_values), snapshot=SnapshotOptions(**snapshot_values))
        config.validate()
        return config


def _snake_case(name: str) -> str:
    return "".join(f"_{c.lower()}" if c.isupper() else c for c in name)


_ALIASES = {"cache_directory": "cache_dir"}


def _section(values: Any, cls: type, section: str) -> dict[str, Any]:
    if not isinstance(values, dict):
        raise ConfigurationError(f"[{section}] must be a table", context={"section": section})
    known = {f.name for f in fields(cls)}
    result: dict[str, Any] = {}
    for key, value in values.items():
        name = _snake_case(key)
        name = _ALIASES.get(name, name)
        if name not in known:
            raise ConfigurationError(
                f"Unknown option {section}.{key}",
                context={"field": f"{section}.{key}"},
            )
        result[name] = value
    return result


def load_config(path: Path | str) -> BuildCacheConfig:
    """
    Load a TOML configuration file.

    Relative ``cacheDirectory`` values and build dependency roots are
    resolved against the file's directory.

    Raises:
        ConfigurationError: If the file cannot be read or is invalid
    """
    path = Path(path)
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as e:
        raise ConfigurationError(f"Cannot read configuration {path}: {e}", context={"path": str(path)}) from e

    config = BuildCacheConfig.from_dict(data)
    base = path.parent.resolve()
    if not config.cache.cache_dir.is_absolute():
        config.cache.cache_dir = base / config.cache.cache_dir
    config.cache.build_dependencies = {
        group: [_anchor(root, base) for root in roots]
        for group, roots in config.cache.build_dependencies.items()
    }
    return config


def _anchor(root: str, base: Path) -> str:
    """Make a root absolute, keeping the trailing separator of directory roots."""
    if Path(root).expanduser().is_absolute():
        return root
    anchored = str(base / root)
    return anchored + os.sep if is_directory_root(root) else anchored
