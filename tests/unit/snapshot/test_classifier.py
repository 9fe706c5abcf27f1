"""Tests for buildstash.snapshot.classifier and manifests modules."""

from __future__ import annotations

from pathlib import Path

import pytest

from buildstash.snapshot.classifier import PathClass, PathClassifier
from buildstash.snapshot.manifests import find_manifest, normalize_name, read_manifest, requirement_name


@pytest.fixture
def site(tmp_path):
    site = (tmp_path / "site-packages").resolve()
    package = site / "colorkit"
    (package / "themes").mkdir(parents=True)
    (package / "pyproject.toml").write_text(
        '[project]\nname = "colorkit"\nversion = "2.3.0"\n'
        'dependencies = ["rich>=13", "tomli; python_version < \'3.11\'", "pytest; extra == \'test\'"]\n'
    )
    (package / "__init__.py").write_text("")
    (package / "themes" / "dark.py").write_text("")
    return site


class TestClassify:
    """Managed, immutable and tracked paths."""

    def test_tracked_by_default(self):
        classifier = PathClassifier()
        assert classifier.classify(Path("/project/app.py")) is PathClass.TRACKED

    def test_immutable_wins_over_managed(self, tmp_path):
        root = tmp_path.resolve()
        classifier = PathClassifier(managed_paths=[root], immutable_paths=[root / "store"])
        assert classifier.classify(root / "store" / "x.py") is PathClass.IMMUTABLE
        assert classifier.classify(root / "other" / "x.py") is PathClass.MANAGED

    def test_managed_root_itself_is_not_managed(self, site):
        classifier = PathClassifier(managed_paths=[site])
        assert classifier.classify(site) is PathClass.TRACKED

    def test_longest_managed_root(self, site):
        nested = site / "colorkit"
        classifier = PathClassifier(managed_paths=[site, nested])
        assert classifier.managed_root(nested / "themes" / "dark.py") == nested

    def test_empty_managed_paths_disable_managed_tracking(self, site):
        classifier = PathClassifier(managed_paths=[])
        assert classifier.classify(site / "colorkit" / "__init__.py") is PathClass.TRACKED
        assert classifier.package_identity(site / "colorkit" / "__init__.py") is None


class TestPackageIdentity:
    """Identity lookup through manifests."""

    def test_identity_from_nearest_manifest(self, site):
        classifier = PathClassifier(managed_paths=[site])
        assert classifier.package_identity(site / "colorkit" / "themes" / "dark.py") == "colorkit@2.3.0"

    def test_package_root(self, site):
        classifier = PathClassifier(managed_paths=[site])
        assert classifier.package_root(site / "colorkit" / "themes" / "dark.py") == site / "colorkit"

    def test_identity_memoised_until_cleared(self, site):
        classifier = PathClassifier(managed_paths=[site])
        module = site / "colorkit" / "__init__.py"
        assert classifier.package_identity(module) == "colorkit@2.3.0"
        (site / "colorkit" / "pyproject.toml").write_text('[project]\nname = "colorkit"\nversion = "3.0.0"\n')
        assert classifier.package_identity(module) == "colorkit@2.3.0"
        classifier.clear_cache()
        assert classifier.package_identity(module) == "colorkit@3.0.0"

    def test_manifest_without_version_has_no_identity(self, site):
        (site / "colorkit" / "pyproject.toml").write_text('[project]\nname = "colorkit"\n')
        classifier = PathClassifier(managed_paths=[site])
        assert classifier.package_identity(site / "colorkit" / "__init__.py") is None


class TestManifests:
    """Manifest parsing helpers."""

    def test_read_pyproject(self, site):
        manifest = read_manifest(site / "colorkit" / "pyproject.toml")
        assert manifest.identity == "colorkit@2.3.0"
        assert manifest.dependencies == ["rich", "tomli"]

    def test_read_package_json(self, tmp_path):
        path = tmp_path / "package.json"
        path.write_text('{"name": "loader", "version": "1.0.0", "dependencies": {"acorn": "^8"}}')
        manifest = read_manifest(path)
        assert manifest.identity == "loader@1.0.0"
        assert manifest.dependencies == ["acorn"]

    def test_read_metadata(self, tmp_path):
        path = tmp_path / "METADATA"
        path.write_text("Metadata-Version: 2.1\nName: orjson\nVersion: 3.10.0\nRequires-Dist: typing-extensions\n")
        manifest = read_manifest(path)
        assert manifest.identity == "orjson@3.10.0"
        assert manifest.dependencies == ["typing-extensions"]

    def test_malformed_manifest(self, tmp_path):
        path = tmp_path / "pyproject.toml"
        path.write_text("[project\n")
        assert read_manifest(path) is None

    def test_find_manifest_walks_up_to_stop(self, site):
        start = site / "colorkit" / "themes"
        assert find_manifest(start, stop=site).name == "colorkit"
        assert find_manifest(start, stop=site / "colorkit") is None

    def test_requirement_name(self):
        assert requirement_name("requests[socks]>=2.0; python_version > '3.8'") == "requests"
        assert requirement_name("pytest; extra == 'test'") is None
        assert normalize_name("Typing_Extensions") == "typing-extensions"
