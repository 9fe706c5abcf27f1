"""
Utility functions and helper modules.

This module contains various utility functions and helper classes:
- Error taxonomy and error collection
- Logging configuration
- File watching for watch-mode sessions
- Hashing, path and atomic-write helpers
"""

from .error_handling import (
    CacheError,
    CacheIOError,
    ConfigurationError,
    EntryCorruptError,
    ErrorCollector,
    MissingBuildDependencyError,
    SnapshotMismatchError,
    UnregisteredTypeError,
    VersionMismatchError,
    create_error_report,
)
from .file_watcher import FileWatcher
from .helpers import atomic_write_bytes, compute_etag, file_sha256, sha256_bytes
from .logging_config import configure_logging, disable_logging, enable_debug_logging, get_logger

__all__ = [
    # Error handling
    "CacheError",
    "CacheIOError",
    "ConfigurationError",
    "EntryCorruptError",
    "MissingBuildDependencyError",
    "SnapshotMismatchError",
    "UnregisteredTypeError",
    "VersionMismatchError",
    "ErrorCollector",
    "create_error_report",
    # File watching
    "FileWatcher",
    # Helpers
    "atomic_write_bytes",
    "compute_etag",
    "file_sha256",
    "sha256_bytes",
    # Logging
    "configure_logging",
    "disable_logging",
    "enable_debug_logging",
    "get_logger",
]
