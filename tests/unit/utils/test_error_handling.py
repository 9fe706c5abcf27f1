"""Tests for buildstash.utils.error_handling module."""

from __future__ import annotations

import threading
from pathlib import Path

from buildstash.utils.error_handling import (
    CacheIOError,
    ConfigurationError,
    EntryCorruptError,
    ErrorCategory,
    ErrorCollector,
    ErrorSeverity,
    MissingBuildDependencyError,
    SnapshotMismatchError,
    UnregisteredTypeError,
    VersionMismatchError,
    create_error_report,
)


class TestErrorTypes:
    """Categories and context of the cache errors."""

    def test_version_mismatch(self):
        error = VersionMismatchError("v2", "v1")
        assert error.category is ErrorCategory.VERSION
        assert error.context == {"expected": "v2", "found": "v1"}
        assert "v2" in str(error)

    def test_snapshot_mismatch_lists_paths(self):
        error = SnapshotMismatchError("changed", {Path("/b"), Path("/a")})
        assert error.context["changed"] == ["/a", "/b"]
        assert error.category is ErrorCategory.SNAPSHOT

    def test_entry_corrupt(self):
        error = EntryCorruptError("bad frame", file_path=Path("/c/pack-1.pack"), key="app")
        assert error.key == "app"
        assert error.context["key"] == "app"
        assert error.suggestions

    def test_unregistered_type(self):
        error = UnregisteredTypeError("socket.socket")
        assert error.type_name == "socket.socket"
        assert error.category is ErrorCategory.SERIALIZATION

    def test_missing_build_dependency(self):
        error = MissingBuildDependencyError("tools/", "directory does not exist")
        assert error.root == "tools/"
        assert error.severity is ErrorSeverity.LOW

    def test_io_and_configuration(self):
        assert CacheIOError("disk full", Path("/c")).category is ErrorCategory.IO
        assert ConfigurationError("bad").severity is ErrorSeverity.HIGH


class TestErrorCollector:
    """Collecting and summarising errors."""

    def test_empty(self):
        collector = ErrorCollector()
        assert collector.get_summary()["total_errors"] == 0
        assert create_error_report(collector) == "No cache errors occurred."

    def test_cache_errors_keep_their_category(self):
        collector = ErrorCollector()
        collector.add_error(EntryCorruptError("bad", key="a"), context={"pack": "p1"})
        (info,) = collector.errors
        assert info.category is ErrorCategory.CORRUPTION
        assert info.context == {"key": "a", "pack": "p1"}
        assert info.exception_type == "EntryCorruptError"

    def test_plain_exceptions_classified(self):
        collector = ErrorCollector()
        collector.add_error(PermissionError("denied"))
        collector.add_error(ValueError("bad value"))
        collector.add_error(RuntimeError("other"))
        summary = collector.get_summary()
        assert summary["by_category"] == {"io": 1, "corruption": 1, "unknown": 1}
        assert summary["by_severity"]["medium"] == 3

    def test_max_errors_caps_details_not_counts(self):
        collector = ErrorCollector(max_errors=2)
        for i in range(5):
            collector.add_error(VersionMismatchError("a", str(i)))
        assert len(collector.errors) == 2
        assert collector.get_summary()["total_errors"] == 5

    def test_filters_and_clear(self):
        collector = ErrorCollector()
        collector.add_error(VersionMismatchError("a", "b"))
        collector.add_error(ConfigurationError("bad"))
        assert len(collector.get_errors_by_category(ErrorCategory.VERSION)) == 1
        assert len(collector.get_errors_by_severity(ErrorSeverity.HIGH)) == 1
        collector.clear()
        assert collector.get_summary()["total_errors"] == 0

    def test_concurrent_add_error(self):
        collector = ErrorCollector(max_errors=1000)
        start = threading.Barrier(8)

        def report_errors(worker: int) -> None:
            start.wait()
            for i in range(100):
                collector.add_error(CacheIOError(f"write {worker}/{i} failed", Path("/cache/pack")))

        threads = [threading.Thread(target=report_errors, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(collector.get_errors()) == 800
        assert collector.get_summary()["by_category"] == {"io": 800}

    def test_report(self):
        collector = ErrorCollector()
        collector.add_error(EntryCorruptError("bad frame", key="a"))
        report = create_error_report(collector)
        assert "Total errors: 1" in report
        assert "corruption: 1" in report
