"""
Command-line interface implementation.

This module provides the ``buildstash`` command:
- Inspection of the persisted index and its packs
- Startup validation without a build
- Retention GC and namespace clearing
"""

from .main import cli, main

__all__ = [
    "cli",
    "main",
]
