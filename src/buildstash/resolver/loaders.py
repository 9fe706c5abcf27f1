"""
Module loaders used to expand file build dependencies.

A loader answers one question: which files does loading this file touch?
The resolver does not know anything about the module system behind it.

Classes:
    ModuleLoad: Files touched and paths probed by loading one file
    ModuleLoader: Protocol implemented by all loaders
    ExecutionTraceLoader: Files actually loaded when running a file (default)
    ImportGraphLoader: Static import edges of a Python source file

Features:
    - No imports in the calling process
    - Unresolved local imports are reported as missing paths so their later
      creation invalidates the build
    - Execution tracing in a fresh interpreter with a timeout
"""

from __future__ import annotations

import ast
import importlib.machinery
import os
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import orjson

from ..utils.logging_config import get_logger

logger = get_logger()


class LoaderError(Exception):
    """A loader could not process a file."""


@dataclass(slots=True)
class ModuleLoad:
    touched: set[Path] = field(default_factory=set)
    missing: set[Path] = field(default_factory=set)
    # Touched files in load order, when the loader knows it
    order: list[Path] = field(default_factory=list)


class ModuleLoader(Protocol):
    # True if ``load`` already returns the transitive closure.
    is_transitive: bool

    def load(self, path: Path) -> ModuleLoad: ...


class ImportGraphLoader:
    """
    Follows the static ``import`` statements of a Python source file.

    Returns the direct edges only; the resolver recurses into the touched
    files. Modules are located with :class:`importlib.machinery.PathFinder`
    against the file's directory followed by ``sys.path``, which mirrors how
    the file is found when it is run as a script. Nothing is imported.
    """

    is_transitive = False

    def __init__(self, search_path: list[str] | None = None) -> None:
        self.search_path = list(search_path) if search_path is not None else list(sys.path)

    def load(self, path: Path) -> ModuleLoad:
        try:
            tree = ast.parse(path.read_bytes(), filename=str(path))
        except (OSError, SyntaxError, ValueError) as e:
            raise LoaderError(f"Cannot parse {path}: {e}") from e

        package = self._package_of(path)
        search_path = [str(path.parent)]
        if package:
            # Directory above the top-level package, for relative imports
            search_path.append(str(path.parents[len(package)]))
        search_path.extend(self.search_path)
        result = ModuleLoad()

        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                for alias in node.names:
                    self._add_module(alias.name, search_path, path.parent, result)
            elif isinstance(node, ast.ImportFrom):
                base = self._absolute_name(node, package)
                if base is None:
                    continue
                if base:
                    self._add_module(base, search_path, path.parent, result)
                for alias in node.names:
                    if alias.name != "*":
                        full = f"{base}.{alias.name}" if base else alias.name
                        # Attribute imports simply do not resolve as modules.
                        self._add_module(full, search_path, path.parent, result, probe=False)
        return result

    @staticmethod
    def _package_of(path: Path) -> list[str]:
        """Dotted package parts of the directory holding ``path``."""
        parts: list[str] = []
        current = path.parent
        while (current / "__init__.py").is_file():
            parts.insert(0, current.name)
            if current.parent == current:
                break
            current = current.parent
        return parts

    @staticmethod
    def _absolute_name(node: ast.ImportFrom, package: list[str]) -> str | None:
        if not node.level:
            return node.module or ""
        if node.level - 1 > len(package):
            return None
        parts = package[: len(package) - (node.level - 1)]
        if node.module:
            parts = [*parts, *node.module.split(".")]
        return ".".join(parts)

    def _add_module(
        self,
        name: str,
        search_path: list[str],
        local_dir: Path,
        result: ModuleLoad,
        probe: bool = True,
    ) -> None:
        top = name.split(".", 1)[0]
        if top in sys.builtin_module_names:
            return

        locations: list[str] | None = search_path
        resolved = []
        parts = name.split(".")
        for i in range(len(parts)):
            fullname = ".".join(parts[: i + 1])
            spec = importlib.machinery.PathFinder.find_spec(fullname, locations)
            if spec is None:
                break
            resolved.append(spec)
            locations = list(spec.submodule_search_locations or [])

        for found in resolved:
            if found.origin and found.has_location:
                result.touched.add(Path(found.origin))

        if not resolved and probe:
            # Creating either candidate next to the file would change resolution
            result.missing.add(local_dir / f"{top}.py")
            result.missing.add(local_dir / top / "__init__.py")


_TRACE_SCRIPT = """
import os, runpy, sys
target, output = sys.argv[1], sys.argv[2]
missing = []


class _NotFound:
    # Last on sys.meta_path: sees only names no other finder could locate
    @staticmethod
    def find_spec(name, path=None, target=None):
        missing.append(name)
        return None


baseline = set(sys.modules)
sys.meta_path.append(_NotFound)
sys.path[0] = os.path.dirname(target)
status = None
try:
    runpy.run_path(target, run_name="__main__")
except SystemExit as e:
    status = None if e.code in (None, 0) else "exit status %r" % (e.code,)
except BaseException as e:
    status = "%s: %s" % (type(e).__name__, e)
files = []
for name, module in list(sys.modules.items()):
    path = getattr(module, "__file__", None)
    if name not in baseline and isinstance(path, str):
        files.append(path)
import json
with open(output, "w") as f:
    json.dump({"files": files, "missing": missing, "error": status}, f)
"""


class ExecutionTraceLoader:
    """
    Runs a file in a fresh interpreter and reports every module file loaded.

    This captures exactly the code paths exercised by the current
    configuration, including conditional and dynamic imports, and is the
    resolver's default loader. The result is already transitive and lists
    the files in the order they were first imported. Top-level imports that
    failed are reported as missing paths next to the file. A run that raises
    still reports what was loaded up to that point, with a warning.
    """

    is_transitive = True

    def __init__(self, python: str | None = None, timeout: float = 60.0) -> None:
        self.python = python or sys.executable
        self.timeout = timeout

    def load(self, path: Path) -> ModuleLoad:
        fd, output = tempfile.mkstemp(prefix="buildstash-trace-", suffix=".json")
        os.close(fd)
        try:
            try:
                subprocess.run(
                    # -B: tracing must not leave bytecode next to the sources
                    [self.python, "-B", "-c", _TRACE_SCRIPT, str(path), output],
                    cwd=path.parent,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    timeout=self.timeout,
                    check=False,
                )
            except (OSError, subprocess.TimeoutExpired) as e:
                raise LoaderError(f"Cannot trace {path}: {e}") from e

            try:
                data = orjson.loads(Path(output).read_bytes())
            except (OSError, orjson.JSONDecodeError) as e:
                raise LoaderError(f"Trace of {path} produced no result: {e}") from e
        finally:
            try:
                os.unlink(output)
            except OSError:
                pass

        if data.get("error"):
            logger.warning(f"Build dependency {path} failed while tracing: {data['error']}")

        result = ModuleLoad(touched={path}, order=[path])
        for name in data.get("files", []):
            file = Path(name)
            if not file.is_absolute():
                file = path.parent / file
            if file not in result.touched and file.is_file():
                result.touched.add(file)
                result.order.append(file)
        for name in data.get("missing", []):
            if "." not in name:
                result.missing.add(path.parent / f"{name}.py")
                result.missing.add(path.parent / name / "__init__.py")
        return result
