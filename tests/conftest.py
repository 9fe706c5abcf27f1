"""
Shared test fixtures and utilities for buildstash tests.

Provides an in-memory filesystem for deterministic snapshot tests, a
manually advanced clock, a serializable type that can be made to fail on
load, and helpers to lay out small build projects on disk.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import pytest

from buildstash.core.config import BuildCacheConfig, CacheOptions, SnapshotOptions
from buildstash.serialization import register
from buildstash.snapshot.filesystem import FileStat
from buildstash.utils.logging_config import disable_logging

BUILD_SCRIPT = """\
import helpers
from settings import OPTIONS

def build():
    return helpers.compile(OPTIONS)
"""

HELPERS_MODULE = """\
import settings

def compile(options):
    return sorted(options)
"""

SETTINGS_MODULE = """\
OPTIONS = {"minify": True}
"""


@dataclass
class Fragile:
    """Payload type whose deserializer fails for the value ``"boom"``."""

    value: str


class FragileSerializer:
    def serialize(self, obj: Fragile, context) -> None:
        context.write(obj.value)

    def deserialize(self, context) -> Fragile:
        value = context.read()
        if value == "boom":
            raise ValueError("cannot rebuild boom")
        return Fragile(value)


register(Fragile, "conftest", "Fragile", FragileSerializer())


class FakeClock:
    """Clock advanced by hand."""

    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeFileSystem:
    """In-memory FileSystemReader with explicit modification times."""

    def __init__(self) -> None:
        self.files: dict[Path, tuple[bytes, float]] = {}
        self.dirs: dict[Path, float] = {}
        self.unreadable: set[Path] = set()
        self.reads = 0

    def write(self, path: str | Path, data: bytes, mtime: float) -> Path:
        path = Path(path)
        self.files[path] = (data, mtime)
        return path

    def mkdir(self, path: str | Path, mtime: float) -> Path:
        path = Path(path)
        self.dirs[path] = mtime
        return path

    def remove(self, path: str | Path) -> None:
        self.files.pop(Path(path), None)
        self.dirs.pop(Path(path), None)

    def stat(self, path: Path) -> FileStat | None:
        if path in self.unreadable:
            raise PermissionError(f"permission denied: {path}")
        if path in self.dirs:
            return FileStat(mtime=self.dirs[path], size=0, is_dir=True)
        if path in self.files:
            data, mtime = self.files[path]
            return FileStat(mtime=mtime, size=len(data), is_dir=False)
        return None

    def read_bytes(self, path: Path) -> bytes:
        if path in self.unreadable or path not in self.files:
            raise FileNotFoundError(str(path))
        self.reads += 1
        return self.files[path][0]

    def listdir(self, path: Path) -> list[str]:
        if path not in self.dirs:
            raise FileNotFoundError(str(path))
        return [p.name for p in (*self.files, *self.dirs) if p.parent == path]


def write_project(root: Path) -> dict[str, Path]:
    """Lay out a build script importing two local modules."""
    root.mkdir(parents=True, exist_ok=True)
    files = {
        "build": root / "build.py",
        "helpers": root / "helpers.py",
        "settings": root / "settings.py",
    }
    files["build"].write_text(BUILD_SCRIPT)
    files["helpers"].write_text(HELPERS_MODULE)
    files["settings"].write_text(SETTINGS_MODULE)
    return files


def bump_mtime(path: Path, seconds: float = 10.0) -> None:
    """Move a file's mtime forward so timestamp snapshots notice a rewrite."""
    st = path.stat()
    os.utime(path, (st.st_atime + seconds, st.st_mtime + seconds))


def make_config(tmp_path: Path, **cache_options) -> BuildCacheConfig:
    """Filesystem cache config rooted in ``tmp_path`` with no managed or immutable roots."""
    options = {"cache_dir": tmp_path / "cache", "idle_timeout": 0.0}
    options.update(cache_options)
    return BuildCacheConfig(
        cache=CacheOptions(**options),
        snapshot=SnapshotOptions(managed_paths=[], immutable_paths=[]),
    )


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep cache warnings out of the test output."""
    disable_logging()
    yield


@pytest.fixture
def fake_fs():
    return FakeFileSystem()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fragile_type():
    return Fragile


@pytest.fixture
def project(tmp_path):
    """A small build project: build.py importing helpers.py and settings.py."""
    return write_project(tmp_path / "project")


@pytest.fixture
def bump():
    return bump_mtime


@pytest.fixture
def config_factory(tmp_path):
    def factory(**cache_options) -> BuildCacheConfig:
        return make_config(tmp_path, **cache_options)

    return factory


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests that may take longer to run")
