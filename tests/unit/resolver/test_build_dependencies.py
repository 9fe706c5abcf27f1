"""Tests for buildstash.resolver module."""

from __future__ import annotations

from pathlib import Path

import pytest

from buildstash.resolver.build_dependencies import BuildDependencyResolver
from buildstash.resolver.loaders import ExecutionTraceLoader, ImportGraphLoader, LoaderError, ModuleLoad
from buildstash.snapshot.classifier import PathClassifier
from buildstash.utils.error_handling import MissingBuildDependencyError


@pytest.fixture
def resolver():
    return BuildDependencyResolver(loader=ImportGraphLoader(search_path=[]))


class StaticLoader:
    """Loader returning a fixed import graph."""

    is_transitive = False

    def __init__(self, graph: dict[Path, ModuleLoad]) -> None:
        self.graph = graph
        self.calls: list[Path] = []

    def load(self, path: Path) -> ModuleLoad:
        self.calls.append(path)
        if path not in self.graph:
            raise LoaderError(f"no graph for {path}")
        return self.graph[path]


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------


class TestImportGraphLoader:
    """Static import edges."""

    def test_local_imports(self, project):
        load = ImportGraphLoader(search_path=[]).load(project["build"])
        assert load.touched == {project["helpers"], project["settings"]}
        assert not load.missing

    def test_unresolved_import_probes_local_candidates(self, tmp_path):
        script = tmp_path / "build.py"
        script.write_text("import not_written_yet\n")
        load = ImportGraphLoader(search_path=[]).load(script)
        assert load.missing == {tmp_path / "not_written_yet.py", tmp_path / "not_written_yet" / "__init__.py"}

    def test_builtin_modules_ignored(self, tmp_path):
        script = tmp_path / "build.py"
        script.write_text("import sys\n")
        load = ImportGraphLoader(search_path=[]).load(script)
        assert not load.touched and not load.missing

    def test_relative_import_in_package(self, tmp_path):
        package = tmp_path / "tools"
        package.mkdir()
        (package / "__init__.py").write_text("")
        (package / "config.py").write_text("from . import shared\n")
        (package / "shared.py").write_text("")
        load = ImportGraphLoader(search_path=[]).load(package / "config.py")
        assert package / "shared.py" in load.touched

    def test_syntax_error(self, tmp_path):
        script = tmp_path / "broken.py"
        script.write_text("def (:\n")
        with pytest.raises(LoaderError):
            ImportGraphLoader(search_path=[]).load(script)


class TestExecutionTraceLoader:
    """Files loaded by actually running the build script."""

    def test_traces_local_imports(self, project):
        load = ExecutionTraceLoader().load(project["build"])
        assert load.touched == {project["build"], project["helpers"], project["settings"]}
        assert not load.missing

    def test_load_order(self, project):
        load = ExecutionTraceLoader().load(project["build"])
        assert load.order == [project["build"], project["helpers"], project["settings"]]

    def test_dynamic_import_is_captured(self, tmp_path):
        script = tmp_path / "build.py"
        script.write_text("import importlib\n\nTHEME = 'theme_' + 'dark'\nimportlib.import_module(THEME)\n")
        (tmp_path / "theme_dark.py").write_text("COLORS = ['black']\n")
        (tmp_path / "theme_light.py").write_text("COLORS = ['white']\n")

        load = ExecutionTraceLoader().load(script)
        assert tmp_path / "theme_dark.py" in load.touched
        assert tmp_path / "theme_light.py" not in load.touched
        # Static analysis cannot see the import at all
        assert tmp_path / "theme_dark.py" not in ImportGraphLoader(search_path=[]).load(script).touched

    def test_failed_optional_import_is_missing(self, tmp_path):
        script = tmp_path / "build.py"
        script.write_text("try:\n    import local_overrides\nexcept ImportError:\n    local_overrides = None\n")
        load = ExecutionTraceLoader().load(script)
        assert tmp_path / "local_overrides.py" in load.missing
        assert tmp_path / "local_overrides" / "__init__.py" in load.missing

    def test_failing_script_reports_what_it_loaded(self, tmp_path):
        script = tmp_path / "build.py"
        script.write_text("import helpers\nraise RuntimeError('bad config')\n")
        (tmp_path / "helpers.py").write_text("")
        load = ExecutionTraceLoader().load(script)
        assert load.touched == {script, tmp_path / "helpers.py"}

    def test_exit_status_is_not_an_error(self, tmp_path):
        script = tmp_path / "build.py"
        script.write_text("import sys\nimport helpers\nsys.exit(3)\n")
        (tmp_path / "helpers.py").write_text("")
        assert tmp_path / "helpers.py" in ExecutionTraceLoader().load(script).touched

    def test_no_bytecode_written(self, project):
        ExecutionTraceLoader().load(project["build"])
        assert not (project["build"].parent / "__pycache__").exists()

    def test_timeout(self, tmp_path):
        script = tmp_path / "build.py"
        script.write_text("import time\ntime.sleep(30)\n")
        with pytest.raises(LoaderError):
            ExecutionTraceLoader(timeout=0.5).load(script)

    def test_missing_interpreter(self, project, tmp_path):
        with pytest.raises(LoaderError):
            ExecutionTraceLoader(python=str(tmp_path / "no-python")).load(project["build"])

    def test_default_resolver_loader(self):
        assert isinstance(BuildDependencyResolver().loader, ExecutionTraceLoader)

    def test_resolver_does_not_recurse_into_traced_files(self, project):
        resolver = BuildDependencyResolver()
        calls: list[Path] = []
        load = resolver.loader.load

        def counting_load(path):
            calls.append(path)
            return load(path)

        resolver.loader.load = counting_load
        deps = resolver.resolve([str(project["build"])]).dependencies
        assert deps.file_dependencies == {project["build"], project["helpers"], project["settings"]}
        assert calls == [project["build"]]


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class TestFileRoots:
    """Roots naming a file."""

    def test_transitive_closure(self, resolver, project):
        result = resolver.resolve([str(project["build"])])
        deps = result.per_root[str(project["build"])].dependencies
        assert deps.file_dependencies == {project["build"], project["helpers"], project["settings"]}
        assert not result.warnings

    def test_import_cycle_terminates(self, tmp_path):
        a, b = tmp_path / "a.py", tmp_path / "b.py"
        a.write_text("import b\n")
        b.write_text("import a\n")
        resolver = BuildDependencyResolver(loader=ImportGraphLoader(search_path=[]))
        deps = resolver.resolve([str(a)]).dependencies
        assert deps.file_dependencies == {a, b}

    def test_missing_probes_become_resolve_inputs(self, resolver, tmp_path):
        script = tmp_path / "build.py"
        script.write_text("import plugin_hook\n")
        resolution = resolver.resolve([str(script)]).per_root[str(script)]
        assert tmp_path / "plugin_hook.py" in resolution.dependencies.missing_dependencies
        assert tmp_path / "plugin_hook.py" in resolution.resolve_inputs.missing_dependencies

    def test_missing_root_is_a_warning(self, resolver, tmp_path):
        root = str(tmp_path / "nope.py")
        result = resolver.resolve([root])
        assert len(result.warnings) == 1
        assert isinstance(result.warnings[0], MissingBuildDependencyError)
        assert result.warnings[0].root == root
        resolution = result.per_root[root]
        assert resolution.dependencies.missing_dependencies == {tmp_path / "nope.py"}
        assert resolution.resolve_inputs.missing_dependencies == {tmp_path / "nope.py"}

    def test_loader_failure_keeps_the_file(self, tmp_path):
        script = tmp_path / "build.py"
        script.write_text("")
        loader = StaticLoader({})
        deps = BuildDependencyResolver(loader=loader).resolve([str(script)]).dependencies
        assert deps.file_dependencies == {script}

    def test_immutable_files_dropped(self, tmp_path):
        script = tmp_path / "build.py"
        stdlib = tmp_path / "stdlib"
        stdlib.mkdir()
        script.write_text("")
        loader = StaticLoader(
            {script: ModuleLoad(touched={stdlib / "json.py"}), stdlib / "json.py": ModuleLoad()}
        )
        resolver = BuildDependencyResolver(
            loader=loader, classifier=PathClassifier(immutable_paths=[stdlib])
        )
        deps = resolver.resolve([str(script)]).dependencies
        assert deps.file_dependencies == {script}
        assert stdlib / "json.py" not in loader.calls

    def test_managed_files_become_package_context(self, tmp_path):
        site = (tmp_path / "site-packages").resolve()
        package = site / "minifier"
        package.mkdir(parents=True)
        (package / "pyproject.toml").write_text('[project]\nname = "minifier"\nversion = "0.4.0"\n')
        (package / "core.py").write_text("")
        script = tmp_path / "build.py"
        script.write_text("")
        loader = StaticLoader({script: ModuleLoad(touched={package / "core.py"})})
        resolver = BuildDependencyResolver(loader=loader, classifier=PathClassifier(managed_paths=[site]))
        deps = resolver.resolve([str(script)]).dependencies
        assert deps.context_dependencies == {package}
        assert package / "core.py" not in deps.file_dependencies

    def test_roots_resolve_independently(self, resolver, project, tmp_path):
        other = tmp_path / "other.py"
        other.write_text("")
        result = resolver.resolve([str(project["build"]), str(other)])
        assert result.per_root[str(other)].dependencies.file_dependencies == {other}
        assert len(result.dependencies.file_dependencies) == 4


class TestDirectoryRoots:
    """Roots naming a directory (trailing separator)."""

    def test_manifest_is_a_dependency(self, resolver, tmp_path):
        (tmp_path / "pyproject.toml").write_text(
            '[project]\nname = "site"\nversion = "1.0.0"\ndependencies = ["surely-not-installed-pkg"]\n'
        )
        root = f"{tmp_path}/"
        resolution = resolver.resolve([root]).per_root[root]
        assert resolution.dependencies.file_dependencies == {tmp_path / "pyproject.toml"}
        assert resolution.resolve_inputs.file_dependencies == {tmp_path / "pyproject.toml"}

    def test_manifest_found_in_parent(self, resolver, tmp_path):
        (tmp_path / "pyproject.toml").write_text('[project]\nname = "site"\nversion = "1.0.0"\n')
        sub = tmp_path / "tools"
        sub.mkdir()
        root = f"{sub}/"
        resolution = resolver.resolve([root]).per_root[root]
        assert resolution.dependencies.file_dependencies == {tmp_path / "pyproject.toml"}

    def test_no_manifest(self, resolver, tmp_path):
        empty = tmp_path / "empty"
        empty.mkdir()
        root = f"{empty}/"
        result = BuildDependencyResolver(loader=ImportGraphLoader(search_path=[])).resolve([root])
        if not result.warnings:
            pytest.skip("a manifest exists above the temporary directory")
        assert result.per_root[root].resolve_inputs.missing_dependencies == {empty / "pyproject.toml"}

    def test_missing_directory(self, resolver, tmp_path):
        root = f"{tmp_path / 'absent'}/"
        result = resolver.resolve([root])
        assert len(result.warnings) == 1
        assert result.per_root[root].dependencies.missing_dependencies == {tmp_path / "absent"}

    def test_installed_distribution_expanded(self, resolver, tmp_path):
        (tmp_path / "pyproject.toml").write_text(
            '[project]\nname = "site"\nversion = "1.0.0"\ndependencies = ["click"]\n'
        )
        root = f"{tmp_path}/"
        deps = resolver.resolve([root]).per_root[root].dependencies
        names = {path.name for path in deps.file_dependencies}
        assert "pyproject.toml" in names
        assert "METADATA" in names
