"""
Error taxonomy and reporting for buildstash.

The cache is a pure optimisation layer: none of the errors defined here is
allowed to abort a build. They are raised inside the cache machinery, caught
at the component boundary, logged, and recorded in an :class:`ErrorCollector`
so the build tool can report what was dropped or invalidated and why.

Error Categories:
    - VERSION: cache version or format mismatch, whole cache discarded
    - SNAPSHOT: recorded snapshot no longer matches the filesystem
    - CORRUPTION: a cache entry or cache file could not be decoded
    - SERIALIZATION: an object type has no registered serializer
    - DEPENDENCY: a build dependency root could not be resolved
    - IO: reading or writing a cache file failed
    - CONFIGURATION: invalid configuration

Classes:
    ErrorSeverity: Error severity levels
    ErrorCategory: Error classification categories
    ErrorInfo: Detailed error information container
    CacheError: Base exception for buildstash errors
    ErrorCollector: Batch error collection

Functions:
    create_error_report: Render a human-readable report
"""

from __future__ import annotations

import sys
import threading
import time
import traceback
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class ErrorSeverity(str, Enum):
    """Error severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Error categories for classification."""

    VERSION = "version"
    SNAPSHOT = "snapshot"
    CORRUPTION = "corruption"
    SERIALIZATION = "serialization"
    DEPENDENCY = "dependency"
    IO = "io"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


@dataclass
class ErrorInfo:
    """Detailed error information."""

    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    file_path: Path | None = None
    exception_type: str | None = None
    traceback_str: str | None = None
    timestamp: float = field(default_factory=time.time)
    context: dict[str, Any] = field(default_factory=dict)
    suggestions: list[str] = field(default_factory=list)


class CacheError(Exception):
    """Base exception for cache-related errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        file_path: Path | None = None,
        suggestions: list[str] | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message: str = message
        self.category: ErrorCategory = category
        self.severity: ErrorSeverity = severity
        self.file_path: Path | None = file_path
        self.suggestions: list[str] = suggestions or []
        self.context: dict[str, Any] = context or {}
        self.timestamp: float = time.time()


class VersionMismatchError(CacheError):
    """The persisted cache was written by another cache version."""

    def __init__(self, expected: str, found: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            f"Cache version mismatch: expected {expected!r}, found {found!r}",
            category=ErrorCategory.VERSION,
            severity=ErrorSeverity.LOW,
            context={"expected": expected, "found": found, **(context or {})},
        )
        self.expected = expected
        self.found = found


class SnapshotMismatchError(CacheError):
    """A recorded snapshot no longer matches the filesystem."""

    def __init__(
        self, message: str, changed: set[Path] | None = None, context: dict[str, Any] | None = None
    ) -> None:
        self.changed: set[Path] = set(changed or ())
        super().__init__(
            message,
            category=ErrorCategory.SNAPSHOT,
            severity=ErrorSeverity.LOW,
            context={"changed": sorted(str(p) for p in self.changed), **(context or {})},
        )


class EntryCorruptError(CacheError):
    """A cache entry or cache file could not be decoded."""

    def __init__(
        self,
        message: str,
        file_path: Path | None = None,
        key: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message,
            category=ErrorCategory.CORRUPTION,
            severity=ErrorSeverity.MEDIUM,
            file_path=file_path,
            suggestions=["Delete the cache directory if the problem persists"],
            context={"key": key, **(context or {})},
        )
        self.key = key


class UnregisteredTypeError(CacheError):
    """No serializer is registered for an object's type or a stream's type tag."""

    def __init__(self, type_name: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            f"No serializer registered for {type_name}",
            category=ErrorCategory.SERIALIZATION,
            severity=ErrorSeverity.MEDIUM,
            suggestions=[
                "Register a serializer with SerializerRegistry.register()",
                "Decorate dataclasses with @serializable",
            ],
            context={"type": type_name, **(context or {})},
        )
        self.type_name = type_name


class MissingBuildDependencyError(CacheError):
    """A configured build dependency root could not be resolved."""

    def __init__(self, root: str, reason: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            f"Build dependency {root!r} could not be resolved: {reason}",
            category=ErrorCategory.DEPENDENCY,
            severity=ErrorSeverity.LOW,
            file_path=Path(root),
            suggestions=["Check cache.buildDependencies for typos"],
            context={"root": root, **(context or {})},
        )
        self.root = root


class CacheIOError(CacheError):
    """Reading or writing a cache file failed."""

    def __init__(self, message: str, file_path: Path, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            category=ErrorCategory.IO,
            severity=ErrorSeverity.MEDIUM,
            file_path=file_path,
            suggestions=["Check free disk space and permissions of the cache directory"],
            context=context,
        )


class ConfigurationError(CacheError):
    """Configuration-related errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.HIGH,
            suggestions=[
                "Check configuration file syntax",
                "Verify all required settings",
            ],
            context=context,
        )


class ErrorCollector:
    """
    Collects cache errors during a session.

    Errors arrive from the build threads and from the persistence timer
    thread; the lists are only touched under the collector's lock.
    """

    def __init__(self, max_errors: int = 100) -> None:
        self.max_errors = max_errors
        self.errors: list[ErrorInfo] = []
        self.error_counts: dict[ErrorCategory, int] = {}
        self._lock = threading.Lock()

    def add_error(
        self,
        exception: Exception,
        category: ErrorCategory | None = None,
        severity: ErrorSeverity | None = None,
        file_path: Path | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Add an error to the collection."""
        if isinstance(exception, CacheError):
            error_category = exception.category
            error_severity = exception.severity
            error_file_path = exception.file_path or file_path
            error_suggestions = exception.suggestions
            error_context = {**exception.context, **(context or {})}
        else:
            error_category = category or self._classify_exception(exception)
            error_severity = severity or ErrorSeverity.MEDIUM
            error_file_path = file_path
            error_suggestions = []
            error_context = context or {}

        error_info = ErrorInfo(
            category=error_category,
            severity=error_severity,
            message=str(exception),
            file_path=error_file_path,
            exception_type=type(exception).__name__,
            traceback_str=traceback.format_exc() if sys.exc_info()[0] else None,
            context=error_context,
            suggestions=error_suggestions,
        )

        with self._lock:
            if len(self.errors) < self.max_errors:
                self.errors.append(error_info)
            self.error_counts[error_category] = self.error_counts.get(error_category, 0) + 1

    @staticmethod
    def _classify_exception(exception: Exception) -> ErrorCategory:
        if isinstance(exception, OSError):
            return ErrorCategory.IO
        if isinstance(exception, (ValueError, TypeError, KeyError, IndexError)):
            return ErrorCategory.CORRUPTION
        return ErrorCategory.UNKNOWN

    def get_errors(self) -> list[ErrorInfo]:
        with self._lock:
            return list(self.errors)

    def get_errors_by_category(self, category: ErrorCategory) -> list[ErrorInfo]:
        return [error for error in self.get_errors() if error.category == category]

    def get_errors_by_severity(self, severity: ErrorSeverity) -> list[ErrorInfo]:
        return [error for error in self.get_errors() if error.severity == severity]

    def get_summary(self) -> dict[str, Any]:
        """Get error summary statistics."""
        with self._lock:
            errors = list(self.errors)
            counts = dict(self.error_counts)
        return {
            "total_errors": sum(counts.values()),
            "by_category": {category.value: count for category, count in counts.items()},
            "by_severity": {
                severity.value: sum(1 for error in errors if error.severity == severity)
                for severity in ErrorSeverity
            },
        }

    def clear(self) -> None:
        with self._lock:
            self.errors.clear()
            self.error_counts.clear()


def create_error_report(error_collector: ErrorCollector) -> str:
    """Create a human-readable error report."""
    errors = error_collector.get_errors()
    if not errors:
        return "No cache errors occurred."

    summary = error_collector.get_summary()
    report = ["Cache Error Report", "=" * 50, ""]
    report.append(f"Total errors: {summary['total_errors']}")
    report.append("")

    report.append("Errors by category:")
    for category, count in summary["by_category"].items():
        report.append(f"  {category}: {count}")
    report.append("")

    report.append("Details:")
    for error in errors:
        report.append(f"  - [{error.category.value}] {error.message}")
        if error.file_path:
            report.append(f"    File: {error.file_path}")
        if error.suggestions:
            report.append(f"    Suggestions: {', '.join(error.suggestions)}")

    return "\n".join(report)
