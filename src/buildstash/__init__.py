"""
buildstash: Persistent, content-aware build cache for Python build tools.

A build tool hands buildstash the units of work it can skip (compiled
modules, processed assets, resolution results) together with the files
each one read. buildstash keeps them in memory during the build, writes
them to pack files once the build goes idle, and on the next start decides
whether the persisted cache can still be trusted.

Key Features:
    - **Snapshots**: timestamp, content hash, or both, per kind of check
    - **Missing dependencies**: creating a probed path invalidates its users
    - **Managed paths**: installed packages are tracked by name and version
    - **Build dependencies**: tooling and config files invalidate everything
    - **Layered store**: memory tier plus lazily hydrated pack files
    - **Deferred persistence**: idle-debounced, atomic, used/unused split
    - **Explicit serialization**: registry of per-type serializers with
      shared-identity preservation

Main Classes:
    CacheSession: Validates, serves, stores and persists a build's cache
    BuildCacheConfig: Configuration of a session
    LayeredCache: The two-tier key to artifact store
    SnapshotEngine: Captures and compares snapshots
    BuildDependencyResolver: Expands build dependency roots
    SerializerRegistry: Type tag to serializer registry

Example Usage:
    >>> from buildstash import CacheSession, load_config, DependencySet, compute_etag
    >>> session = CacheSession(load_config("buildstash.toml"))
    >>> session.start()
    >>> session.begin_build()
    >>> etag = compute_etag(source_bytes, compiler_version)
    >>> output = session.get_unit("src/app.py", etag)
    >>> if output is None:
    ...     output = compile_module(source_bytes)
    ...     session.store_unit("src/app.py", etag, output, DependencySet.of(["src/app.py"]))
    >>> session.build_finished()
    >>> session.shutdown()

    CLI usage:
        $ buildstash info --config buildstash.toml
        $ buildstash validate --config buildstash.toml --json
"""

from .cache import LayeredCache, PersistenceScheduler
from .core import BuildCacheConfig, CacheSession, CacheType, SessionState, load_config
from .resolver import BuildDependencyResolver, ExecutionTraceLoader, ImportGraphLoader
from .serialization import SerializerRegistry, default_registry, register, serializable
from .snapshot import DependencySet, PathClassifier, Snapshot, SnapshotEngine, SnapshotMode
from .utils.error_handling import (
    CacheError,
    CacheIOError,
    ConfigurationError,
    EntryCorruptError,
    MissingBuildDependencyError,
    SnapshotMismatchError,
    UnregisteredTypeError,
    VersionMismatchError,
)
from .utils.helpers import compute_etag
from .utils.logging_config import configure_logging, disable_logging, enable_debug_logging, get_logger

# Package metadata
__version__ = "0.1.0"
__license__ = "MIT"
__description__ = "Persistent, content-aware build cache"

# Public API
__all__ = [
    # Main classes
    "CacheSession",
    "SessionState",
    "BuildCacheConfig",
    "CacheType",
    "load_config",
    "LayeredCache",
    "PersistenceScheduler",
    "SnapshotEngine",
    "PathClassifier",
    "BuildDependencyResolver",
    "ImportGraphLoader",
    "ExecutionTraceLoader",
    # Data types
    "DependencySet",
    "Snapshot",
    "SnapshotMode",
    # Serialization
    "SerializerRegistry",
    "default_registry",
    "register",
    "serializable",
    # Utility functions
    "compute_etag",
    # Logging and configuration
    "configure_logging",
    "get_logger",
    "enable_debug_logging",
    "disable_logging",
    # Exception classes
    "CacheError",
    "CacheIOError",
    "ConfigurationError",
    "EntryCorruptError",
    "MissingBuildDependencyError",
    "SnapshotMismatchError",
    "UnregisteredTypeError",
    "VersionMismatchError",
    # Package metadata
    "__version__",
    "__license__",
    "__description__",
]
