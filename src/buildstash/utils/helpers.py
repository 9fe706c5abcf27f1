"""
Utility functions shared across buildstash.

Key Functions:
    Hashing:
        - sha256_bytes: Digest of in-memory data
        - file_sha256: Chunked digest of a file's content
        - compute_etag: Digest over every contributor of a cache entry

    Paths:
        - is_path_under: Containment test that does not touch the filesystem
        - is_directory_root: Whether a build dependency root names a directory
        - compile_patterns / matches_patterns: gitwildmatch matching used by
          the file watcher

    Files:
        - atomic_write_bytes: temp-file-then-rename write
"""

from __future__ import annotations

import hashlib
import os
import tempfile
from collections.abc import Iterable
from pathlib import Path

import pathspec


def sha256_bytes(data: bytes) -> str:
    """
    Compute SHA256 hash of byte data.

    Example:
        >>> sha256_bytes(b"")
        'e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855'
    """
    return hashlib.sha256(data).hexdigest()


def file_sha256(path: Path, chunk_size: int = 1024 * 1024) -> str | None:
    """
    Compute SHA256 hash of file content using chunked reading.

    Returns:
        Hexadecimal digest, or None if the file cannot be read
    """
    try:
        h = hashlib.sha256()
        with path.open("rb") as f:
            while True:
                chunk = f.read(chunk_size)
                if not chunk:
                    break
                h.update(chunk)
        return h.hexdigest()
    except OSError:
        return None


def compute_etag(*parts: object) -> str:
    """
    Compute an etag over every contributor that determined a payload.

    Parts are converted with ``str`` (bytes are used as-is) and separated so
    that ``("ab", "c")`` and ``("a", "bc")`` produce different etags.

    Example:
        >>> compute_etag("source-digest", "loader@1.2.0", {"minify": True}) == \\
        ...     compute_etag("source-digest", "loader@1.2.0", {"minify": True})
        True
    """
    h = hashlib.sha256()
    for part in parts:
        data = part if isinstance(part, bytes) else str(part).encode("utf-8")
        h.update(len(data).to_bytes(8, "big"))
        h.update(data)
    return h.hexdigest()


def is_path_under(path: Path, root: Path) -> bool:
    """Return True if ``path`` is ``root`` or lies below it (lexically)."""
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def is_directory_root(root: str) -> bool:
    """A build dependency root ending in a path separator names a directory."""
    return root.endswith("/") or root.endswith(os.sep)


def compile_patterns(patterns: Iterable[str] | None) -> pathspec.PathSpec | None:
    """Compile gitwildmatch patterns once for repeated matching; None if there are none."""
    lines = list(patterns or ())
    if not lines:
        return None
    return pathspec.PathSpec.from_lines("gitwildmatch", lines)


def matches_patterns(path: Path, patterns: pathspec.PathSpec | Iterable[str] | None) -> bool:
    """
    Return True if the given path matches any of the gitwildmatch patterns.

    ``patterns`` may be a spec from :func:`compile_patterns`; hot paths such
    as the file watcher's event filter pass one instead of raw patterns.
    """
    spec = patterns if isinstance(patterns, pathspec.PathSpec) else compile_patterns(patterns)
    if spec is None:
        return False
    return spec.match_file(str(Path(path).resolve()))


def normalize_paths(paths: Iterable[str | Path]) -> list[Path]:
    """Absolute, symlink-free paths with duplicates removed, order kept."""
    seen: dict[Path, None] = {}
    for p in paths:
        seen.setdefault(Path(p).expanduser().resolve(), None)
    return list(seen)


def atomic_write_bytes(target: Path, data: bytes) -> None:
    """
    Write ``data`` to ``target`` so readers never observe a partial file.

    The data goes to a temp file in the same directory, is fsynced, and then
    replaces ``target`` with ``os.replace``. On failure the temp file is
    removed and the exception propagates; ``target`` is left untouched.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".tmp_", suffix=target.suffix, dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise
