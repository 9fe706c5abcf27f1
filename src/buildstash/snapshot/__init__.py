"""
Snapshot package for buildstash.

Captures the state of dependency sets (files, directory listings and
missing paths) and later decides whether any of it changed.

Public API:
    SnapshotEngine: Capture and compare snapshots
    SnapshotComparison: Changed-path result of a comparison
    Snapshot / DependencySet / SnapshotMode: Data models
    PathClassifier / PathClass: Managed and immutable path short-cuts
    LocalFileSystem / FileSystemReader: Filesystem access
"""

from __future__ import annotations

from .classifier import PathClass, PathClassifier
from .engine import SnapshotComparison, SnapshotEngine
from .filesystem import FileStat, FileSystemReader, LocalFileSystem
from .manifests import Manifest, find_manifest, read_manifest
from .models import (
    DependencySet,
    ManagedState,
    PathState,
    Snapshot,
    SnapshotMode,
    merge_snapshots,
)

__all__ = [
    "DependencySet",
    "FileStat",
    "FileSystemReader",
    "LocalFileSystem",
    "ManagedState",
    "Manifest",
    "PathClass",
    "PathClassifier",
    "PathState",
    "Snapshot",
    "SnapshotComparison",
    "SnapshotEngine",
    "SnapshotMode",
    "find_manifest",
    "merge_snapshots",
    "read_manifest",
]
