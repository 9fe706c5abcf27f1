"""
File watching for watch-mode cache sessions.

Filesystem events are the only asynchronous trigger of a cache session:
they move it back to running, reset its idle timer and invalidate the cache
entries that depend on the changed paths.

Classes:
    EventType: Types of file system events
    FileEvent: A file system event
    ChangeProcessor: Debounces events into batches of changed paths
    CacheEventHandler: watchdog handler with include/exclude filtering
    FileWatcher: Watches directories and feeds a change handler

Features:
    - Uses the watchdog library for cross-platform file monitoring
    - Debounced batching so an editor's save burst becomes one change
    - gitwildmatch include/exclude patterns (pathspec)
    - Moves reported as a change of both the old and the new path

Example:
    >>> watcher = FileWatcher(["src"], change_handler=session.on_files_changed,
    ...                       exclude=[".buildstash-cache/"])
    >>> watcher.start()
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .helpers import compile_patterns, matches_patterns
from .logging_config import get_logger


class EventType(Enum):
    """Types of file system events."""

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    MOVED = "moved"


@dataclass
class FileEvent:
    """Represents a file system event with metadata."""

    path: Path
    event_type: EventType
    timestamp: float
    is_directory: bool = False
    old_path: Path | None = None  # For move events
    metadata: dict[str, Any] = field(default_factory=dict)

    def affected_paths(self) -> list[Path]:
        if self.old_path is not None:
            return [self.old_path, self.path]
        return [self.path]


class ChangeProcessor:
    """
    Batches file events and hands the changed paths to a handler.

    Events are collected until ``debounce_delay`` seconds pass without a new
    one, ``batch_size`` paths are pending, or ``max_batch_delay`` seconds
    passed since the last batch.
    """

    def __init__(
        self,
        handler: Callable[[list[Path]], Any],
        batch_size: int = 200,
        debounce_delay: float = 0.2,
        max_batch_delay: float = 2.0,
    ):
        self.handler = handler
        self.batch_size = batch_size
        self.debounce_delay = debounce_delay
        self.max_batch_delay = max_batch_delay
        self.logger = get_logger()

        self._pending_events: dict[Path, FileEvent] = {}
        self._processing_lock = threading.RLock()
        self._last_batch_time = time.time()
        self._debounce_timer: threading.Timer | None = None

        self.events_processed = 0
        self.batches_processed = 0

    def process_event(self, event: FileEvent) -> None:
        with self._processing_lock:
            # Latest event wins for each path
            self._pending_events[event.path] = event

            if self._debounce_timer:
                self._debounce_timer.cancel()
                self._debounce_timer = None

            should_process_now = (
                len(self._pending_events) >= self.batch_size
                or time.time() - self._last_batch_time >= self.max_batch_delay
            )

            if not should_process_now:
                self._debounce_timer = threading.Timer(self.debounce_delay, self._process_pending_events)
                self._debounce_timer.daemon = True
                self._debounce_timer.start()
                return

        self._process_pending_events()

    def _process_pending_events(self) -> None:
        with self._processing_lock:
            if not self._pending_events:
                return
            events = list(self._pending_events.values())
            self._pending_events.clear()
            self._last_batch_time = time.time()
            if self._debounce_timer:
                self._debounce_timer.cancel()
                self._debounce_timer = None

        paths: dict[Path, None] = {}
        for event in events:
            for path in event.affected_paths():
                paths.setdefault(path, None)

        try:
            self.handler(list(paths))
        except Exception as e:
            self.logger.error(f"Error handling {len(paths)} changed paths: {e}")

        self.events_processed += len(events)
        self.batches_processed += 1
        self.logger.debug(f"Processed {len(events)} file events")

    def flush_pending(self) -> None:
        """Force processing of all pending events."""
        self._process_pending_events()

    def cancel(self) -> None:
        with self._processing_lock:
            if self._debounce_timer:
                self._debounce_timer.cancel()
                self._debounce_timer = None
            self._pending_events.clear()

    def get_stats(self) -> dict[str, Any]:
        return {
            "events_processed": self.events_processed,
            "batches_processed": self.batches_processed,
            "pending_events": len(self._pending_events),
        }


class CacheEventHandler(FileSystemEventHandler):
    """watchdog event handler that filters events and forwards them to a ChangeProcessor."""

    def __init__(
        self,
        change_processor: ChangeProcessor,
        include: list[str] | None = None,
        exclude: list[str] | None = None,
    ):
        super().__init__()
        self.change_processor = change_processor
        self.include = include or []
        self.exclude = exclude or []
        self._include_spec = compile_patterns(self.include)
        self._exclude_spec = compile_patterns(self.exclude)

    def _should_process_path(self, path: Path) -> bool:
        if self._include_spec is not None and not matches_patterns(path, self._include_spec):
            return False
        if self._exclude_spec is not None and matches_patterns(path, self._exclude_spec):
            return False
        return True

    def _handle(self, event: FileSystemEvent, event_type: EventType) -> None:
        dest_path = getattr(event, "dest_path", "") if event_type is EventType.MOVED else ""
        path = Path(str(dest_path or event.src_path))
        old_path = Path(str(event.src_path)) if dest_path else None
        if not self._should_process_path(path) and (
            old_path is None or not self._should_process_path(old_path)
        ):
            return
        self.change_processor.process_event(
            FileEvent(
                path=path,
                event_type=event_type,
                timestamp=time.time(),
                is_directory=event.is_directory,
                old_path=old_path,
            )
        )

    def on_created(self, event: FileSystemEvent) -> None:
        self._handle(event, EventType.CREATED)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._handle(event, EventType.MODIFIED)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._handle(event, EventType.DELETED)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._handle(event, EventType.MOVED)


class FileWatcher:
    """
    Watches one or more directories and reports changed paths in batches.

    Args:
        paths: Directories to watch
        change_handler: Called with the list of changed paths of each batch
        include: gitwildmatch patterns a path must match (empty = all)
        exclude: gitwildmatch patterns that drop a path
        recursive: Whether to watch subdirectories
        **processor_kwargs: Passed to ChangeProcessor
    """

    def __init__(
        self,
        paths: Iterable[Path | str],
        change_handler: Callable[[list[Path]], Any],
        include: list[str] | None = None,
        exclude: list[str] | None = None,
        recursive: bool = True,
        **processor_kwargs: Any,
    ):
        self.paths = [Path(p).resolve() for p in paths]
        self.recursive = recursive
        self.logger = get_logger()
        self._change_processor = ChangeProcessor(change_handler, **processor_kwargs)
        self._event_handler = CacheEventHandler(self._change_processor, include, exclude)
        self._observer: Any = None
        self._is_watching = False

    @property
    def is_watching(self) -> bool:
        return self._is_watching

    def start(self) -> bool:
        """
        Start watching for file changes.

        Returns:
            True if watching started successfully, False otherwise
        """
        if self._is_watching:
            self.logger.warning("File watcher already running")
            return True

        observer = Observer()
        try:
            for path in self.paths:
                observer.schedule(self._event_handler, str(path), recursive=self.recursive)
            observer.start()
        except OSError as e:
            self.logger.error(f"Failed to start file watcher: {e}")
            return False

        self._observer = observer
        self._is_watching = True
        self.logger.info(f"Watching {len(self.paths)} paths (recursive={self.recursive})")
        return True

    def stop(self, timeout: float = 5.0) -> None:
        """Stop watching and deliver pending events."""
        if not self._is_watching or self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=timeout)
        self._observer = None
        self._is_watching = False
        self._change_processor.flush_pending()
        self.logger.info("File watcher stopped")

    def flush_pending(self) -> None:
        self._change_processor.flush_pending()

    def get_stats(self) -> dict[str, Any]:
        return {
            "is_watching": self._is_watching,
            "paths": [str(p) for p in self.paths],
            **self._change_processor.get_stats(),
        }

    def __enter__(self) -> FileWatcher:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()
