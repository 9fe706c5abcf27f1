"""
Retention-based garbage collection.

Entries that were not accessed within the retention window are removed.
Retention is evaluated only when the cache is persisted, never in the
background, so an idle process does not lose entries while it is idle.

Classes:
    CacheCleanup: Decides which entries have outlived the retention window

Constants:
    DEFAULT_MAX_AGE: One month, in seconds
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from ..utils.logging_config import get_logger
from .models import CacheEntry, PackInfo

logger = get_logger()

DEFAULT_MAX_AGE = 30 * 24 * 60 * 60.0


class CacheCleanup:
    """
    Retention policy for cache entries.

    Args:
        max_age: Retention window in seconds; entries last accessed before
            ``now - max_age`` are expired
    """

    def __init__(self, max_age: float = DEFAULT_MAX_AGE) -> None:
        self.max_age = max_age
        self.last_run: float | None = None
        self.last_removed = 0

    def cutoff(self, now: float) -> float:
        return now - self.max_age

    def is_expired(self, last_accessed: float, now: float) -> bool:
        return last_accessed < self.cutoff(now)

    def find_expired(
        self,
        entries: Iterable[CacheEntry],
        packs: Iterable[PackInfo],
        now: float,
    ) -> tuple[list[str], dict[str, list[str]]]:
        """
        Find expired entries.

        Args:
            entries: Entries held in memory
            packs: Index records of packs that were not loaded into memory
            now: Time of the collection run

        Returns:
            Tuple of (expired in-memory keys, expired keys per unloaded pack)
        """
        cutoff = self.cutoff(now)
        expired_memory = [entry.key for entry in entries if entry.last_accessed < cutoff]
        expired_packs: dict[str, list[str]] = {}
        for info in packs:
            keys = [key for key, accessed in info.entries.items() if accessed < cutoff]
            if keys:
                expired_packs[info.pack_id] = keys

        self.last_run = now
        self.last_removed = len(expired_memory) + sum(len(keys) for keys in expired_packs.values())
        if self.last_removed:
            logger.debug(f"Retention: {self.last_removed} entries not accessed since {cutoff:.0f}")
        return expired_memory, expired_packs

    def get_status(self) -> dict[str, Any]:
        return {
            "max_age": self.max_age,
            "last_run": self.last_run,
            "last_removed": self.last_removed,
        }
