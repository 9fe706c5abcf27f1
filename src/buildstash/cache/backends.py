"""
Cache storage tiers for buildstash.

Classes:
    CacheBackend: Abstract base class for in-memory cache backends
    MemoryCache: In-memory tier with optional LRU eviction of clean entries
    PackStore: On-disk tier made of an index file and pack files

On-disk layout of a namespace directory::

    index.pack          header: format, version, name, pack table
                        body:   session record (snapshots, resolve records)
    pack-<id>.pack      header: format, version, pack id, entry frames
                        body:   serialized entries sharing one identity table

Every entry in a pack is framed by its token range and the identity table
size before and after it, so one entry that cannot be decoded is skipped
while the rest of the pack loads.

Features:
    - Thread-safe memory tier
    - Atomic (temp file + rename) writes of packs and index
    - Per-entry failure isolation on read and on write
"""

from __future__ import annotations

import secrets
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import orjson

from ..serialization import ObjectReader, ObjectWriter, SerializerRegistry
from ..serialization.codec import FORMAT_VERSION, decode_file, encode_file, read_header
from ..utils.error_handling import CacheError, CacheIOError, EntryCorruptError
from ..utils.helpers import atomic_write_bytes
from ..utils.logging_config import get_logger
from .models import CacheEntry, CacheIndex, PackInfo

logger = get_logger()

INDEX_FILE = "index.pack"
PACK_PREFIX = "pack-"
PACK_SUFFIX = ".pack"


class CacheBackend(ABC):
    """Abstract base class for in-memory cache backends."""

    @abstractmethod
    def get(self, key: str) -> CacheEntry | None:
        """Get a cache entry by key."""

    @abstractmethod
    def set(self, key: str, entry: CacheEntry) -> bool:
        """Set a cache entry."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a cache entry."""

    @abstractmethod
    def clear(self) -> None:
        """Clear all cache entries."""

    @abstractmethod
    def keys(self) -> list[str]:
        """Get all cache keys."""

    @abstractmethod
    def entries(self) -> list[CacheEntry]:
        """Get all cache entries."""

    @abstractmethod
    def size(self) -> int:
        """Get the number of cache entries."""


class MemoryCache(CacheBackend):
    """
    In-memory cache implementation with LRU eviction.

    Dirty entries (not yet persisted) are never evicted. ``max_size=0``
    disables eviction, which is what the layered cache uses: its memory tier
    must hold every entry that is going to be persisted.
    """

    def __init__(self, max_size: int = 0) -> None:
        self.max_size = max_size
        self.evictions = 0
        self._cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.RLock()

    def get(self, key: str) -> CacheEntry | None:
        with self._lock:
            entry = self._cache.get(key)
            if entry is not None:
                # Move to end (most recently used)
                self._cache.move_to_end(key)
            return entry

    def set(self, key: str, entry: CacheEntry) -> bool:
        with self._lock:
            self._cache.pop(key, None)
            if self.max_size and len(self._cache) >= self.max_size:
                self._evict_entries()
            self._cache[key] = entry
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._cache.keys())

    def entries(self) -> list[CacheEntry]:
        with self._lock:
            return list(self._cache.values())

    def size(self) -> int:
        return len(self._cache)

    def _evict_entries(self) -> None:
        """Evict least recently used clean entries until below the limit."""
        for key in list(self._cache):
            if len(self._cache) < self.max_size:
                break
            if not self._cache[key].dirty:
                del self._cache[key]
                self.evictions += 1


@dataclass(slots=True)
class PackLoad:
    """Entries read from one pack and the errors of the entries that were dropped."""

    entries: list[CacheEntry] = field(default_factory=list)
    errors: list[CacheError] = field(default_factory=list)


@dataclass(slots=True)
class PackWrite:
    """Result of writing one pack."""

    info: PackInfo
    written: list[CacheEntry] = field(default_factory=list)
    dropped: list[tuple[CacheEntry, Exception]] = field(default_factory=list)


class PackStore:
    """
    Persistent tier: one namespace directory of pack files and an index.

    Args:
        directory: Namespace directory (``<cache_dir>/<name>``)
        registry: Serializer registry for entry payloads
    """

    def __init__(self, directory: Path | str, registry: SerializerRegistry | None = None) -> None:
        self.directory = Path(directory)
        self.registry = registry
        self.index_path = self.directory / INDEX_FILE

    def pack_path(self, pack_id: str) -> Path:
        return self.directory / f"{PACK_PREFIX}{pack_id}{PACK_SUFFIX}"

    def exists(self) -> bool:
        return self.index_path.is_file()

    def read_index(self) -> CacheIndex | None:
        """
        Read the index header.

        Returns:
            The index, or None if there is no index file

        Raises:
            EntryCorruptError: If the header cannot be decoded
            CacheIOError: If the file exists but cannot be read
        """
        try:
            header = read_header(self.index_path)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheIOError(f"Cannot read cache index: {e}", self.index_path) from e

        try:
            return CacheIndex(
                format=int(header["format"]),
                version=str(header["version"]),
                name=str(header["name"]),
                written_at=float(header.get("written_at", 0.0)),
                packs={
                    str(pack_id): PackInfo.from_header(str(pack_id), data)
                    for pack_id, data in header.get("packs", {}).items()
                },
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise EntryCorruptError(f"Malformed cache index header: {e}", file_path=self.index_path) from e

    def read_index_record(self) -> Any:
        """Deserialize the body of the index file."""
        try:
            data = self.index_path.read_bytes()
        except OSError as e:
            raise CacheIOError(f"Cannot read cache index: {e}", self.index_path) from e
        _, tokens = decode_file(data, self.index_path)
        if not tokens:
            return None
        return ObjectReader(tokens, self.registry).read()

    def write_index(self, version: str, name: str, packs: Iterable[PackInfo], record: Any) -> int:
        """
        Atomically replace the index file.

        Returns:
            Number of bytes written

        Raises:
            CacheIOError: If the index cannot be written
            CacheError: If the record cannot be serialized
        """
        writer = ObjectWriter(self.registry)
        writer.write(record)
        header = {
            "format": FORMAT_VERSION,
            "version": version,
            "name": name,
            "written_at": time.time(),
            "packs": {info.pack_id: info.to_header() for info in packs},
        }
        data = encode_file(header, writer.tokens)
        try:
            atomic_write_bytes(self.index_path, data)
        except OSError as e:
            raise CacheIOError(f"Cannot write cache index: {e}", self.index_path) from e
        return len(data)

    def read_pack(self, pack_id: str, keys: set[str] | None = None) -> PackLoad:
        """
        Read every entry of a pack.

        Entries whose key is not in ``keys`` (when given) are read but not
        returned. An entry that fails to decode is skipped and reported.

        Raises:
            EntryCorruptError: If the pack as a whole cannot be decoded
            CacheIOError: If the pack cannot be read
        """
        path = self.pack_path(pack_id)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise CacheIOError(f"Cannot read cache pack {pack_id}: {e}", path) from e

        header, tokens = decode_file(data, path)
        frames = header.get("entries")
        if header.get("pack") != pack_id or not isinstance(frames, list):
            raise EntryCorruptError(f"Pack header does not describe pack {pack_id}", file_path=path)

        result = PackLoad()
        reader = ObjectReader(tokens, self.registry)
        for frame in frames:
            try:
                key, start, end, start_count, end_count = frame[:5]
            except (TypeError, ValueError) as e:
                raise EntryCorruptError(f"Malformed entry frame in pack {pack_id}", file_path=path) from e
            try:
                if reader.position != start or reader.object_count != start_count:
                    raise EntryCorruptError("Entry frame out of sync with stream", file_path=path, key=key)
                entry = reader.read()
                if not isinstance(entry, CacheEntry) or entry.key != key:
                    raise EntryCorruptError("Stream does not hold the framed entry", file_path=path, key=key)
                if reader.position != end:
                    raise EntryCorruptError("Entry length does not match its frame", file_path=path, key=key)
            except Exception as e:
                reader.skip_to(end, start_count, end_count)
                if isinstance(e, CacheError):
                    error = e
                else:
                    error = EntryCorruptError(f"Cannot deserialize entry: {e}", file_path=path, key=key)
                if error.context.get("key") is None:
                    error.context["key"] = key
                result.errors.append(error)
                continue

            entry.pack = pack_id
            entry.size_bytes = int(frame[5]) if len(frame) > 5 else 0
            if keys is None or entry.key in keys:
                result.entries.append(entry)
        return result

    def write_pack(self, entries: list[CacheEntry]) -> PackWrite:
        """
        Serialize ``entries`` into a new pack file with a fresh id.

        An entry that fails to serialize is rolled back out of the stream and
        reported in ``dropped``; the remaining entries are written.

        Raises:
            CacheIOError: If the pack cannot be written
        """
        pack_id = self.new_pack_id()
        writer = ObjectWriter(self.registry)
        frames: list[list[Any]] = []
        result = PackWrite(info=PackInfo(pack_id))

        for entry in entries:
            mark = writer.mark()
            start, start_count = mark
            try:
                writer.write(entry)
            except Exception as e:
                writer.rollback(mark)
                result.dropped.append((entry, e))
                continue
            end = len(writer.tokens)
            size = len(orjson.dumps(writer.tokens[start:end]))
            frames.append([entry.key, start, end, start_count, writer.object_count, size])
            result.written.append(entry)
            result.info.entries[entry.key] = entry.last_accessed

        header = {
            "format": FORMAT_VERSION,
            "pack": pack_id,
            "entries": frames,
        }
        data = encode_file(header, writer.tokens)
        path = self.pack_path(pack_id)
        try:
            atomic_write_bytes(path, data)
        except OSError as e:
            raise CacheIOError(f"Cannot write cache pack {pack_id}: {e}", path) from e
        # Logical size: what pack planning measures entries in
        result.info.size_bytes = sum(frame[5] for frame in frames)
        return result

    def measure(self, entry: CacheEntry) -> int:
        """Serialized size of an entry on its own (raises if it cannot be serialized)."""
        writer = ObjectWriter(self.registry)
        writer.write(entry)
        return len(orjson.dumps(writer.tokens))

    def new_pack_id(self) -> str:
        while True:
            pack_id = f"{time.time_ns():x}-{secrets.token_hex(4)}"
            if not self.pack_path(pack_id).exists():
                return pack_id

    def pack_ids(self) -> list[str]:
        """Ids of all pack files present in the directory."""
        if not self.directory.is_dir():
            return []
        return sorted(
            path.name[len(PACK_PREFIX) : -len(PACK_SUFFIX)]
            for path in self.directory.glob(f"{PACK_PREFIX}*{PACK_SUFFIX}")
        )

    def delete_pack(self, pack_id: str) -> bool:
        try:
            self.pack_path(pack_id).unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Cannot delete cache pack {pack_id}: {e}")
            return False

    def remove_unreferenced(self, referenced: set[str]) -> int:
        """Delete pack files the index no longer references."""
        removed = 0
        for pack_id in self.pack_ids():
            if pack_id not in referenced and self.delete_pack(pack_id):
                removed += 1
        for tmp in self.directory.glob(".tmp_*") if self.directory.is_dir() else ():
            try:
                tmp.unlink()
            except OSError:
                pass
        return removed

    def clear(self) -> None:
        """Delete the index and every pack of the namespace."""
        try:
            self.index_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise CacheIOError(f"Cannot delete cache index: {e}", self.index_path) from e
        self.remove_unreferenced(set())

    def disk_usage(self) -> int:
        if not self.directory.is_dir():
            return 0
        return sum(path.stat().st_size for path in self.directory.glob(f"*{PACK_SUFFIX}"))
