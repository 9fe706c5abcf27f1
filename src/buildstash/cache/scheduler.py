"""
Persistence scheduling and pack planning.

Classes:
    PersistenceScheduler: Idle-debounced flush trigger
    PackCandidate: Existing pack that may be kept without a rewrite
    PackPlan: Result of :func:`plan_packs`

Functions:
    plan_packs: Partition entries into pack files

Partitioning goals, in priority order:
    1. used and unused entries never share a pack
    2. packs hold at least ``min_pack_bytes`` unless their whole group is
       smaller than that
    3. no pack holds more than ``max_pack_entries`` entries

The entry cap is never exceeded. When it forces a cut, the tail of a group
may end up below the size minimum.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ..utils.logging_config import get_logger
from .models import CacheEntry

logger = get_logger()

MIN_PACK_BYTES = 1024 * 1024
MAX_PACK_ENTRIES = 50_000
DEFAULT_IDLE_TIMEOUT = 60.0
DEFAULT_IDLE_TIMEOUT_FOR_INITIAL_STORE = 0.0


@dataclass(frozen=True, slots=True)
class PackCandidate:
    pack_id: str
    used: bool
    entry_count: int
    size_bytes: int


@dataclass(slots=True)
class PackPlan:
    """
    ``keep`` lists packs left as they are. ``release`` lists kept candidates
    whose entries must be loaded and the plan recomputed without them; when
    it is non-empty ``packs`` is empty.
    """

    keep: list[str] = field(default_factory=list)
    release: list[str] = field(default_factory=list)
    packs: list[list[CacheEntry]] = field(default_factory=list)


def _chunk(entries: list[CacheEntry], min_pack_bytes: int, max_pack_entries: int) -> list[list[CacheEntry]]:
    chunks: list[list[CacheEntry]] = []
    current: list[CacheEntry] = []
    current_bytes = 0
    for entry in sorted(entries, key=lambda e: e.key):
        current.append(entry)
        current_bytes += entry.size_bytes
        if current_bytes >= min_pack_bytes or len(current) >= max_pack_entries:
            chunks.append(current)
            current, current_bytes = [], 0
    if current:
        if chunks and len(chunks[-1]) + len(current) <= max_pack_entries:
            chunks[-1].extend(current)
        else:
            chunks.append(current)
    return chunks


def plan_packs(
    loose: list[CacheEntry],
    candidates: list[PackCandidate],
    min_pack_bytes: int = MIN_PACK_BYTES,
    max_pack_entries: int = MAX_PACK_ENTRIES,
) -> PackPlan:
    """
    Decide which existing packs to keep and how to group the other entries.

    Args:
        loose: Entries that must be written (new, modified, or from packs
            that cannot be kept); ``size_bytes`` must be set
        candidates: Existing packs that are unchanged, homogeneous, within
            the entry cap and at least ``min_pack_bytes`` large
        min_pack_bytes: Size minimum of a pack
        max_pack_entries: Entry cap of a pack

    Returns:
        PackPlan
    """
    keep = {candidate.pack_id for candidate in candidates}
    release: list[str] = []

    for used in (True, False):
        group = [entry for entry in loose if entry.used is used]
        if not group or sum(entry.size_bytes for entry in group) >= min_pack_bytes:
            continue
        kept = [c for c in candidates if c.used is used and c.pack_id in keep]
        if kept:
            # Merge the small remainder with the smallest kept pack instead of
            # writing a pack below the size minimum
            smallest = min(kept, key=lambda c: (c.entry_count, c.size_bytes, c.pack_id))
            keep.discard(smallest.pack_id)
            release.append(smallest.pack_id)

    if release:
        return PackPlan(keep=sorted(keep), release=release)

    packs: list[list[CacheEntry]] = []
    for used in (True, False):
        group = [entry for entry in loose if entry.used is used]
        if group:
            packs.extend(_chunk(group, min_pack_bytes, max_pack_entries))
    return PackPlan(keep=sorted(keep), packs=packs)


class PersistenceScheduler:
    """
    Triggers a flush once the build has been idle for a while.

    The timer is an explicit :class:`threading.Timer` owned by the
    scheduler. ``notify_activity`` cancels it, ``notify_idle`` (re)arms it.
    The first flush after startup uses ``idle_timeout_for_initial_store``.

    Args:
        flush_callback: Called on the timer thread when the timeout elapses
        idle_timeout: Seconds of idleness before a flush
        idle_timeout_for_initial_store: Idle timeout of the first flush
    """

    def __init__(
        self,
        flush_callback: Callable[[], Any],
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        idle_timeout_for_initial_store: float = DEFAULT_IDLE_TIMEOUT_FOR_INITIAL_STORE,
    ) -> None:
        self.flush_callback = flush_callback
        self.idle_timeout = idle_timeout
        self.idle_timeout_for_initial_store = idle_timeout_for_initial_store
        self._timer: threading.Timer | None = None
        self._lock = threading.RLock()
        self._initial_store_done = False
        self._closed = False
        self._generation = 0

    @property
    def current_timeout(self) -> float:
        if self._initial_store_done:
            return self.idle_timeout
        return self.idle_timeout_for_initial_store

    def is_pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def notify_activity(self) -> None:
        """A build or file change started; cancel any pending flush."""
        with self._lock:
            self._cancel()

    def notify_idle(self) -> None:
        """The build went idle; (re)arm the flush timer."""
        with self._lock:
            if self._closed:
                return
            self._cancel()
            self._generation += 1
            generation = self._generation
            timeout = max(0.0, self.current_timeout)
            self._timer = threading.Timer(timeout, self._fire, args=(generation,))
            self._timer.daemon = True
            self._timer.name = "buildstash-persist"
            self._timer.start()
            logger.debug(f"Persistence scheduled in {timeout:.1f}s")

    def flush_now(self) -> Any:
        """Cancel the timer and flush on the calling thread."""
        with self._lock:
            self._cancel()
        return self._run()

    def shutdown(self) -> None:
        """Cancel the timer; no flush is triggered after this."""
        with self._lock:
            self._closed = True
            self._cancel()

    def _cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._generation += 1

    def _fire(self, generation: int) -> None:
        with self._lock:
            # A timer cancelled after it started waiting must not flush
            if generation != self._generation or self._closed:
                return
            self._timer = None
        try:
            self._run()
        except Exception as e:
            logger.error(f"Scheduled cache persistence failed: {e}")

    def _run(self) -> Any:
        result = self.flush_callback()
        with self._lock:
            self._initial_store_done = True
        return result
