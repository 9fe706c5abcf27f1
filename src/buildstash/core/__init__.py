"""
Core functionality for the buildstash package.

This module contains the pieces a build tool talks to:
- Configuration management
- The cache session controller and its state machine
"""

from .config import (
    BuildCacheConfig,
    CacheOptions,
    CacheType,
    SnapshotOptions,
    default_immutable_paths,
    default_managed_paths,
    load_config,
)
from .session import CacheSession, SessionRecord, SessionState

__all__ = [
    # Session
    "CacheSession",
    "SessionRecord",
    "SessionState",
    # Configuration
    "BuildCacheConfig",
    "CacheOptions",
    "CacheType",
    "SnapshotOptions",
    "default_immutable_paths",
    "default_managed_paths",
    "load_config",
]
