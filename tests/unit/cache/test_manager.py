"""Tests for buildstash.cache.manager module (LayeredCache)."""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from buildstash.cache.backends import PackStore
from buildstash.cache.dependencies import DependencyTracker
from buildstash.cache.manager import LayeredCache
from buildstash.cache.models import CacheIndex, PackInfo
from buildstash.snapshot.models import PathState, Snapshot, SnapshotMode
from buildstash.utils.error_handling import CacheError, CacheIOError


@pytest.fixture
def cache_dir(tmp_path):
    return tmp_path / "cache" / "default"


@pytest.fixture
def make_cache(cache_dir, clock):
    def factory(**kwargs) -> LayeredCache:
        options = {"store": PackStore(cache_dir), "version": "v1", "clock": clock, "min_pack_bytes": 1}
        options.update(kwargs)
        return LayeredCache(**options)

    return factory


def reopen(cache: LayeredCache, **kwargs) -> LayeredCache:
    """A new cache on the same directory, as the next process would see it."""
    store = PackStore(cache.store.directory)
    options = {"store": store, "version": cache.version, "clock": cache.clock, "min_pack_bytes": 1}
    options.update(kwargs)
    fresh = LayeredCache(**options)
    index = store.read_index()
    if index is not None:
        fresh.load_index(index)
    return fresh


def _snapshot(*paths: str) -> Snapshot:
    return Snapshot(
        mode=SnapshotMode.TIMESTAMP,
        started_at=1.0,
        files={Path(p): PathState(1.0, mtime=1.0) for p in paths},
    )


# ---------------------------------------------------------------------------
# Reads and writes
# ---------------------------------------------------------------------------


class TestGetSet:
    """Memory tier behaviour."""

    def test_set_then_get(self, make_cache):
        cache = make_cache()
        cache.set("a", "e1", {"code": "x"})
        entry = cache.get("a", "e1")
        assert entry.payload == {"code": "x"}
        assert cache.statistics.memory_hits == 1
        assert cache.statistics.pack_hits == 0

    def test_miss(self, make_cache):
        cache = make_cache()
        assert cache.get("a", "e1") is None
        assert cache.get_stats()["misses"] == 1

    def test_etag_mismatch_discards_entry(self, make_cache):
        cache = make_cache()
        cache.set("a", "e1", "old")
        assert cache.get("a", "e2") is None
        assert "a" not in cache
        assert cache.get("a", "e1") is None
        stats = cache.get_stats()
        assert stats["invalidations"] == 1
        assert stats["invalidations_by_reason"] == {"etag": 1}

    def test_overwrite(self, make_cache):
        cache = make_cache()
        cache.set("a", "e1", "first")
        cache.set("a", "e2", "second")
        assert cache.get("a", "e2").payload == "second"
        assert len(cache) == 1

    def test_set_marks_dirty(self, make_cache):
        cache = make_cache()
        entry = cache.set("a", "e1", 1)
        assert entry.dirty and entry.used
        assert cache.has_changes

    def test_delete_keys_clear(self, make_cache):
        cache = make_cache()
        cache.set("b", "e", 1)
        cache.set("a", "e", 2)
        assert cache.keys() == ["a", "b"]
        assert cache.delete("a")
        assert not cache.delete("a")
        cache.clear()
        assert len(cache) == 0

    def test_peek_ignores_etag(self, make_cache):
        cache = make_cache()
        cache.set("a", "e1", 1)
        assert cache.peek("a").etag == "e1"
        assert cache.get_stats()["hits"] == 0

    def test_listener_called_on_write(self, make_cache):
        cache = make_cache()
        calls = []
        cache.add_listener(lambda: calls.append(1))
        cache.set("a", "e", 1)
        assert calls == [1]

    def test_failing_listener_does_not_break_writes(self, make_cache):
        cache = make_cache()

        def broken():
            raise RuntimeError("listener bug")

        cache.add_listener(broken)
        cache.set("a", "e", 1)
        assert "a" in cache


class TestInvalidation:
    """Dependency-based invalidation."""

    def test_invalidate_by_file(self, make_cache):
        cache = make_cache()
        cache.set("app", "e", 1, _snapshot("/src/app.py", "/src/util.py"))
        cache.set("other", "e", 2, _snapshot("/src/other.py"))
        assert cache.invalidate_by_file(Path("/src/util.py")) == 1
        assert "app" not in cache
        assert "other" in cache
        assert cache.get_stats()["invalidations_by_reason"] == {"file_changed": 1}

    def test_invalidate_by_directory(self, make_cache):
        cache = make_cache()
        cache.set("app", "e", 1, _snapshot("/src/pkg/app.py"))
        assert cache.invalidate_by_file(Path("/src/pkg")) == 1

    def test_unrelated_path(self, make_cache):
        cache = make_cache()
        cache.set("app", "e", 1, _snapshot("/src/app.py"))
        assert cache.invalidate_by_file(Path("/elsewhere.py")) == 0

    def test_tracker_cleaned_on_delete(self, make_cache):
        cache = make_cache()
        cache.set("app", "e", 1, _snapshot("/src/app.py"))
        cache.delete("app")
        assert cache.tracker.get_dependency_count() == 0


class TestDependencyTracker:
    """Path to key bookkeeping."""

    def test_add_and_remove(self):
        tracker = DependencyTracker()
        tracker.add_dependencies("k1", [Path("/a"), Path("/b")])
        tracker.add_dependencies("k2", [Path("/b")])
        assert tracker.get_dependent_keys(Path("/b")) == {"k1", "k2"}
        tracker.remove_dependencies("k1")
        assert tracker.get_dependent_keys(Path("/a")) == set()
        assert tracker.get_paths_with_dependencies() == {Path("/b")}


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestPersist:
    """Writing and reloading the disk tier."""

    def test_memory_only_cache_never_persists(self, clock):
        cache = LayeredCache(store=None, clock=clock)
        cache.set("a", "e", 1)
        assert not cache.persist()
        assert not cache.persistent

    def test_memory_only_cache_rejects_a_pack_table(self, clock):
        cache = LayeredCache(store=None, clock=clock)
        cache.load_index(
            CacheIndex(format=1, version="", name="default", written_at=1.0, packs={"p1": PackInfo("p1", {"a": 1.0}, 10)})
        )
        with pytest.raises(CacheError, match="no pack files"):
            cache.get("a", "e")

    def test_persist_and_reload(self, make_cache):
        cache = make_cache()
        cache.set("a", "e1", {"n": 1}, _snapshot("/src/a.py"))
        cache.set("b", "e2", [1, 2])
        assert cache.persist()

        reloaded = reopen(cache)
        assert len(reloaded) == 2
        assert reloaded.get_stats()["loaded_packs"] == 0
        entry = reloaded.get("a", "e1")
        assert entry.payload == {"n": 1}
        assert entry.snapshot.paths() == {Path("/src/a.py")}
        assert reloaded.get_stats()["loaded_packs"] == 1
        assert reloaded.tracker.get_dependent_keys(Path("/src/a.py")) == {"a"}
        stats = reloaded.get_stats()
        assert stats["pack_hits"] == 1
        assert stats["memory_hits"] == 0
        reloaded.get("b", "e2")
        assert reloaded.get_stats()["memory_hits"] == 1

    def test_entries_clean_after_persist(self, make_cache):
        cache = make_cache()
        cache.set("a", "e", 1)
        cache.persist()
        stats = cache.get_stats()
        assert stats["dirty_entries"] == 0
        assert stats["packs"] == 1
        assert stats["flushes"] == 1

    def test_skip_when_unchanged(self, make_cache):
        cache = make_cache()
        cache.set("a", "e", 1)
        assert cache.persist()
        assert not cache.persist()
        assert cache.persist(force=True)

    def test_index_record_persisted(self, make_cache, cache_dir):
        cache = make_cache()
        cache.set_index_record({"roots": ["build.py"]})
        cache.persist()
        assert PackStore(cache_dir).read_index_record() == {"roots": ["build.py"]}

    def test_unchanged_pack_not_rewritten(self, make_cache, cache_dir):
        cache = make_cache()
        cache.set("a", "e", "x" * 200)
        cache.persist()
        store = PackStore(cache_dir)
        (first_pack,) = store.pack_ids()
        first_bytes = store.pack_path(first_pack).read_bytes()

        reloaded = reopen(cache)
        reloaded.set("c", "e", "z" * 200)
        assert reloaded.persist()

        assert first_pack in store.pack_ids()
        assert store.pack_path(first_pack).read_bytes() == first_bytes
        assert len(store.pack_ids()) == 2
        assert reloaded.get_stats()["loaded_packs"] == 1
        assert reloaded.get_stats()["packs_kept"] == 1
        assert reloaded.get_stats()["packs_written"] == 1
        assert reopen(cache).keys() == ["a", "c"]

    def test_deleted_entry_gone_after_reload(self, make_cache):
        cache = make_cache()
        cache.set("a", "e", 1)
        cache.set("b", "e", 2)
        cache.persist()

        reloaded = reopen(cache)
        assert reloaded.delete("a")
        reloaded.persist()
        assert reopen(cache).keys() == ["b"]

    def test_clear_empties_disk_tier(self, make_cache, cache_dir):
        cache = make_cache()
        cache.set("a", "e", 1)
        cache.persist()
        reloaded = reopen(cache)
        reloaded.clear()
        reloaded.persist()
        assert PackStore(cache_dir).pack_ids() == []
        assert len(reopen(cache)) == 0

    def test_used_and_unused_entries_split(self, make_cache, cache_dir):
        cache = make_cache()
        for key in ("a", "b", "c", "d"):
            cache.set(key, "e", key * 100)
        cache.persist()

        reloaded = reopen(cache, min_pack_bytes=1_000_000)
        reloaded.get("a", "e")
        reloaded.set("new", "e", "n" * 100)
        reloaded.persist(force=True)

        store = PackStore(cache_dir)
        groups = sorted(sorted(info.entries) for info in store.read_index().packs.values())
        assert groups == [["a", "new"], ["b", "c", "d"]]

    def test_failed_pack_write_is_retried(self, make_cache, monkeypatch):
        cache = make_cache(max_pack_entries=1)
        for key in ("a", "b", "c"):
            cache.set(key, "e", key * 100)
        write_pack = cache.store.write_pack
        failures: list[str] = []

        def write_pack_failing_once(entries):
            if not failures and any(entry.key == "b" for entry in entries):
                failures.append("b")
                raise CacheIOError("No space left on device", cache.store.directory)
            return write_pack(entries)

        monkeypatch.setattr(cache.store, "write_pack", write_pack_failing_once)
        assert cache.persist()
        assert failures == ["b"]
        assert reopen(cache).keys() == ["a", "c"]
        assert cache.peek("b").dirty
        assert cache.has_changes
        assert cache.errors.get_summary()["total_errors"] == 1

        assert cache.persist()
        assert not cache.peek("b").dirty
        reloaded = reopen(cache)
        assert reloaded.keys() == ["a", "b", "c"]
        assert reloaded.get("b", "e").payload == "b" * 100

    def test_unserializable_payload_dropped(self, make_cache):
        cache = make_cache()
        cache.set("ok", "e", 1)
        cache.set("bad", "e", object())
        assert cache.persist()
        assert "bad" not in cache
        assert cache.get_stats()["drops"] == 1
        assert cache.errors.get_summary()["total_errors"] == 1
        assert cache.get_stats()["drops_by_reason"] == {"unwritable": 1}
        assert reopen(cache).keys() == ["ok"]


class TestCorruptEntries:
    """One bad entry never costs the others."""

    def test_corrupt_entry_isolated(self, make_cache, fragile_type):
        cache = make_cache()
        cache.set("good", "e", fragile_type("ok"))
        cache.set("bad", "e", fragile_type("boom"))
        cache.set("also-good", "e", fragile_type("fine"))
        cache.persist()

        reloaded = reopen(cache)
        assert reloaded.get("good", "e").payload == fragile_type("ok")
        assert reloaded.get("bad", "e") is None
        assert reloaded.get("also-good", "e").payload == fragile_type("fine")
        stats = reloaded.get_stats()
        assert stats["drops"] == 1
        assert stats["errors"] == 1
        assert stats["drops_by_reason"] == {"unreadable": 1}

    def test_missing_pack_file(self, make_cache, cache_dir):
        cache = make_cache()
        cache.set("a", "e", 1)
        cache.persist()
        store = PackStore(cache_dir)
        for pack_id in store.pack_ids():
            store.pack_path(pack_id).unlink()

        reloaded = reopen(cache)
        assert reloaded.get("a", "e") is None
        assert reloaded.get_stats()["drops_by_reason"] == {"unreadable": 1}


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------


class TestRetention:
    """Garbage collection at persist time."""

    def test_boundary(self, make_cache, clock):
        cache = make_cache(max_age=100.0)
        cache.set("edge", "e", 1)
        created = clock.now
        assert cache.persist(now=created + 100.0, force=True)
        assert "edge" in cache
        assert cache.persist(now=created + 100.5, force=True)
        assert "edge" not in cache
        assert cache.get_stats()["evictions"] == 1

    def test_access_renews_retention(self, make_cache, clock):
        cache = make_cache(max_age=100.0)
        cache.set("a", "e", 1)
        cache.set("b", "e", 2)
        clock.advance(80.0)
        cache.get("a", "e")
        clock.advance(50.0)
        cache.persist(force=True)
        assert cache.keys() == ["a"]

    def test_expired_entries_of_unloaded_packs(self, make_cache, clock):
        cache = make_cache(max_age=100.0)
        cache.set("a", "e", 1)
        cache.persist()

        reloaded = reopen(cache, max_age=100.0)
        clock.advance(500.0)
        reloaded.set("fresh", "e", 2)
        reloaded.persist()
        assert reopen(cache).keys() == ["fresh"]

    def test_idle_process_keeps_entries(self, make_cache, clock):
        cache = make_cache(max_age=100.0)
        cache.set("a", "e", 1)
        clock.advance(1000.0)
        assert "a" in cache


# ---------------------------------------------------------------------------
# get_or_compute
# ---------------------------------------------------------------------------


class TestGetOrCompute:
    """Single-flight computation."""

    def test_computes_once_then_hits(self, make_cache):
        cache = make_cache()
        calls = []
        for _ in range(3):
            value = cache.get_or_compute("k", "e", lambda: calls.append(1) or "v")
            assert value == "v"
        assert calls == [1]

    def test_concurrent_callers_share_one_computation(self, make_cache):
        cache = make_cache()
        started = threading.Event()
        release = threading.Event()
        calls = []
        results = []

        def compute():
            calls.append(1)
            started.set()
            release.wait(5.0)
            return "artifact"

        def worker():
            results.append(cache.get_or_compute("k", "e", compute))

        threads = [threading.Thread(target=worker) for _ in range(5)]
        threads[0].start()
        assert started.wait(5.0)
        for thread in threads[1:]:
            thread.start()
        time.sleep(0.1)
        release.set()
        for thread in threads:
            thread.join(5.0)

        assert calls == [1]
        assert results == ["artifact"] * 5

    def test_failure_propagates_and_stores_nothing(self, make_cache):
        cache = make_cache()

        def compute():
            raise RuntimeError("loader crashed")

        with pytest.raises(RuntimeError):
            cache.get_or_compute("k", "e", compute)
        assert "k" not in cache
        assert cache.get_or_compute("k", "e", lambda: "recovered") == "recovered"

    def test_snapshot_factory(self, make_cache):
        cache = make_cache()
        cache.get_or_compute("k", "e", lambda: 1, snapshot_factory=lambda: _snapshot("/src/k.py"))
        assert cache.tracker.get_dependent_keys(Path("/src/k.py")) == {"k"}
