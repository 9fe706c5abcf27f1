"""
Cache data models for buildstash.

This module contains the core data structures used by the caching system,
including cache entries and pack metadata.

Classes:
    CacheEntry: A cached build artifact with its etag and snapshot
    CacheEntrySerializer: Persists the durable fields of a CacheEntry
    PackInfo: Index record of one pack file
    CacheIndex: Header of the index file

Features:
    - Etag-gated validity
    - Access tracking for retention and pack partitioning
    - Dirty tracking for deferred persistence
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..serialization import default_registry

if TYPE_CHECKING:
    from ..serialization import ObjectReader, ObjectWriter
    from ..snapshot.models import Snapshot

REQUEST = "buildstash.cache.models"


@dataclass(slots=True)
class CacheEntry:
    """
    A cached artifact.

    ``used``, ``dirty`` and ``pack`` describe the entry within the current
    session and are not persisted: entries loaded from disk start out unused
    and clean.
    """

    key: str
    etag: str
    payload: Any
    created_at: float
    last_accessed: float
    snapshot: Snapshot | None = None
    size_bytes: int = 0
    used: bool = False
    dirty: bool = False
    pack: str | None = None

    def touch(self, now: float | None = None) -> None:
        """Record an access in the current session."""
        self.last_accessed = time.time() if now is None else now
        self.used = True


class CacheEntrySerializer:
    def serialize(self, obj: CacheEntry, context: ObjectWriter) -> None:
        context.write(obj.key)
        context.write(obj.etag)
        context.write(obj.created_at)
        context.write(obj.last_accessed)
        context.write(obj.snapshot)
        context.write(obj.payload)

    def deserialize(self, context: ObjectReader) -> CacheEntry:
        key = context.read()
        etag = context.read()
        created_at = context.read()
        last_accessed = context.read()
        snapshot = context.read()
        payload = context.read()
        return CacheEntry(
            key=key,
            etag=etag,
            payload=payload,
            created_at=created_at,
            last_accessed=last_accessed,
            snapshot=snapshot,
        )


@dataclass(slots=True)
class PackInfo:
    """Index record of a pack file: member keys with their last access time."""

    pack_id: str
    entries: dict[str, float] = field(default_factory=dict)
    size_bytes: int = 0

    def to_header(self) -> dict[str, Any]:
        return {
            "entries": [[key, accessed] for key, accessed in self.entries.items()],
            "bytes": self.size_bytes,
        }

    @classmethod
    def from_header(cls, pack_id: str, data: dict[str, Any]) -> PackInfo:
        return cls(
            pack_id=pack_id,
            entries={str(key): float(accessed) for key, accessed in data.get("entries", [])},
            size_bytes=int(data.get("bytes", 0)),
        )


@dataclass(slots=True)
class CacheIndex:
    """Header of ``index.pack``."""

    format: int
    version: str
    name: str
    written_at: float
    packs: dict[str, PackInfo] = field(default_factory=dict)

    @property
    def entry_count(self) -> int:
        return sum(len(info.entries) for info in self.packs.values())


default_registry.register(CacheEntry, REQUEST, "CacheEntry", CacheEntrySerializer())
