"""
Filesystem access used by the snapshot engine.

The engine only talks to a :class:`FileSystemReader`, so tests and build
tools with a virtual filesystem can substitute their own implementation.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(frozen=True, slots=True)
class FileStat:
    mtime: float
    size: int
    is_dir: bool


class FileSystemReader(Protocol):
    def stat(self, path: Path) -> FileStat | None:
        """Return the path's metadata, or None if it does not exist."""
        ...

    def read_bytes(self, path: Path) -> bytes: ...

    def listdir(self, path: Path) -> list[str]: ...


class LocalFileSystem:
    """FileSystemReader over the real filesystem."""

    def stat(self, path: Path) -> FileStat | None:
        try:
            st = os.stat(path)
        except (FileNotFoundError, NotADirectoryError):
            return None
        return FileStat(mtime=st.st_mtime, size=st.st_size, is_dir=os.path.isdir(path))

    def read_bytes(self, path: Path) -> bytes:
        return Path(path).read_bytes()

    def listdir(self, path: Path) -> list[str]:
        return os.listdir(path)
