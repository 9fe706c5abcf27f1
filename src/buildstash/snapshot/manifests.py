"""
Package manifest reading.

A manifest gives a package its identity (name and version) and lists the
packages it depends on. Supported manifests, in lookup order within one
directory:

    - ``pyproject.toml`` (``[project]`` table)
    - ``package.json``
    - ``PKG-INFO`` / ``METADATA`` (core metadata of a Python distribution)

Installed Python distributions are reached through ``importlib.metadata``.
"""

from __future__ import annotations

import importlib.metadata
import re
import tomllib
from dataclasses import dataclass, field
from email.parser import HeaderParser
from pathlib import Path

import orjson

MANIFEST_NAMES = ("pyproject.toml", "package.json", "PKG-INFO", "METADATA")

_REQUIREMENT_NAME = re.compile(r"^\s*([A-Za-z0-9](?:[A-Za-z0-9._-]*[A-Za-z0-9])?)")
_EXTRA_MARKER = re.compile(r"\bextra\s*==")


@dataclass(slots=True)
class Manifest:
    path: Path
    name: str | None
    version: str | None
    dependencies: list[str] = field(default_factory=list)

    @property
    def identity(self) -> str | None:
        if not self.name or not self.version:
            return None
        return f"{self.name}@{self.version}"


def normalize_name(name: str) -> str:
    """PEP 503 normalisation."""
    return re.sub(r"[-_.]+", "-", name).lower()


def requirement_name(requirement: str) -> str | None:
    """
    Name of a requirement string, or None when it only applies to an extra.

    Example:
        >>> requirement_name("requests[socks]>=2.0; python_version > '3.8'")
        'requests'
        >>> requirement_name("pytest; extra == 'test'") is None
        True
    """
    spec, _, marker = requirement.partition(";")
    if marker and _EXTRA_MARKER.search(marker):
        return None
    match = _REQUIREMENT_NAME.match(spec)
    return match.group(1) if match else None


def _names(requirements: list[str]) -> list[str]:
    names = []
    for requirement in requirements:
        name = requirement_name(requirement)
        if name:
            names.append(name)
    return names


def read_manifest(path: Path) -> Manifest | None:
    """Parse a manifest file. Unreadable or malformed manifests return None."""
    try:
        if path.name == "pyproject.toml":
            project = tomllib.loads(path.read_text(encoding="utf-8")).get("project", {})
            return Manifest(
                path=path,
                name=project.get("name"),
                version=project.get("version"),
                dependencies=_names(list(project.get("dependencies", []))),
            )
        if path.name == "package.json":
            data = orjson.loads(path.read_bytes())
            return Manifest(
                path=path,
                name=data.get("name"),
                version=data.get("version"),
                dependencies=list(data.get("dependencies", {}) or {}),
            )
        if path.name in ("PKG-INFO", "METADATA"):
            headers = HeaderParser().parsestr(path.read_text(encoding="utf-8"))
            return Manifest(
                path=path,
                name=headers.get("Name"),
                version=headers.get("Version"),
                dependencies=_names(headers.get_all("Requires-Dist") or []),
            )
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError, orjson.JSONDecodeError, AttributeError):
        return None
    return None


def find_manifest(start: Path, stop: Path | None = None) -> Manifest | None:
    """
    Nearest manifest in ``start`` or one of its ancestors.

    The search does not look at ``stop`` itself or anything above it. The
    first directory that contains a manifest decides, even if that manifest
    carries no version.
    """
    current = start
    while True:
        if stop is not None and current == stop:
            return None
        for name in MANIFEST_NAMES:
            candidate = current / name
            if candidate.is_file():
                return read_manifest(candidate)
        if current.parent == current:
            return None
        current = current.parent


def find_distribution(name: str) -> importlib.metadata.Distribution | None:
    try:
        return importlib.metadata.distribution(normalize_name(name))
    except importlib.metadata.PackageNotFoundError:
        return None


def distribution_manifest(dist: importlib.metadata.Distribution) -> Manifest:
    """Manifest of an installed distribution, located on disk where possible."""
    metadata_path = Path(str(dist.locate_file(""))) / "METADATA"
    for file in dist.files or ():
        if file.name in ("METADATA", "PKG-INFO") and file.parent.name.endswith((".dist-info", ".egg-info")):
            metadata_path = Path(str(dist.locate_file(file)))
            break
    return Manifest(
        path=metadata_path,
        name=dist.metadata["Name"],
        version=dist.version,
        dependencies=_names(dist.requires or []),
    )


def distribution_paths(dist: importlib.metadata.Distribution) -> set[Path]:
    """Top-level files and directories an installed distribution owns."""
    owned: set[Path] = set()
    for file in dist.files or ():
        if not file.parts or file.parts[0] == "..":
            continue
        owned.add(Path(str(dist.locate_file(file.parts[0]))))
    return owned
