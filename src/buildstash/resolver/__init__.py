"""
Build-dependency resolver package for buildstash.

Public API:
    BuildDependencyResolver: Expands build dependency roots
    ResolveResult / RootResolution: Resolution results
    ModuleLoader: Loader protocol for file roots
    ImportGraphLoader: Static import following loader
    ExecutionTraceLoader: Execution tracing loader
"""

from __future__ import annotations

from .build_dependencies import BuildDependencyResolver, ResolveResult, RootResolution
from .loaders import (
    ExecutionTraceLoader,
    ImportGraphLoader,
    LoaderError,
    ModuleLoad,
    ModuleLoader,
)

__all__ = [
    "BuildDependencyResolver",
    "ExecutionTraceLoader",
    "ImportGraphLoader",
    "LoaderError",
    "ModuleLoad",
    "ModuleLoader",
    "ResolveResult",
    "RootResolution",
]
