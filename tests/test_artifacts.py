"""
Tests for run-scoped artifact storage.
"""

import tarfile
from pathlib import Path

import pytest

from pipewright.artifacts import ArtifactStore
from pipewright.errors import ArtifactNotFound, ConfigurationError
from pipewright.snapshot import extract_snapshot


@pytest.fixture
def site(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    (root / "dist" / "assets").mkdir(parents=True)
    (root / "dist" / "index.html").write_text("<h1>v1</h1>\n")
    (root / "dist" / "assets" / "app.js").write_text("console.log(1);\n")
    return root


@pytest.fixture
def store(tmp_path: Path) -> ArtifactStore:
    return ArtifactStore(tmp_path / "artifacts")


class TestArtifactStore:
    """Tests for put/get/extract/discard."""

    def test_put_and_extract(self, store, site, tmp_path):
        artifact = store.put("run-1", "site", ["dist"], root=site)

        assert artifact.files == 2
        assert artifact.content_hash == store.put("run-2", "site", ["dist"], root=site).content_hash

        dest = tmp_path / "consumer"
        store.extract(store.get("run-1", "site"), dest)
        assert (dest / "dist" / "index.html").read_text() == "<h1>v1</h1>\n"
        assert (dest / "dist" / "assets" / "app.js").exists()

    def test_runs_are_isolated(self, store, site):
        store.put("run-1", "site", ["dist"], root=site)

        with pytest.raises(ArtifactNotFound):
            store.get("run-2", "site")

    def test_not_found_is_a_configuration_error(self, store):
        with pytest.raises(ConfigurationError, match="needs"):
            store.get("run-1", "missing")

    def test_same_content_same_hash(self, store, site):
        first = store.put("run-1", "site", ["dist"], root=site)
        second = store.put("run-2", "site", ["dist"], root=site)
        assert first.content_hash == second.content_hash

        (site / "dist" / "index.html").write_text("<h1>v2</h1>\n")
        third = store.put("run-3", "site", ["dist"], root=site)
        assert third.content_hash != first.content_hash

    def test_list(self, store, site):
        store.put("run-1", "site", ["dist"], root=site)
        store.put("run-1", "scripts", ["dist/assets"], root=site)

        assert [a.name for a in store.list("run-1")] == ["scripts", "site"]
        assert store.list("run-unknown") == []

    def test_discard_keeps_retained(self, store, site):
        store.put("run-1", "site", ["dist"], root=site)
        store.put("run-1", "report", ["dist/index.html"], root=site, retain=True)

        removed = store.discard_run("run-1")

        assert removed == ["site"]
        assert [a.name for a in store.list("run-1")] == ["report"]

    def test_discard_removes_run_directory(self, store, site):
        store.put("run-1", "site", ["dist"], root=site)

        store.discard_run("run-1")

        assert not (store.root / "run-1").exists()

    @pytest.mark.parametrize("name", ["../escape", "a/b", "", ".hidden"])
    def test_rejects_unsafe_names(self, store, site, name):
        with pytest.raises(ValueError, match="invalid artifact name"):
            store.put("run-1", name, ["dist"], root=site)


class TestExtractContainment:
    """Archives may only write inside the destination directory."""

    def archive_with(self, tmp_path: Path, member: str) -> Path:
        payload = tmp_path / "payload.txt"
        payload.write_text("owned\n")
        archive = tmp_path / "evil.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(str(payload), arcname=member)
        return archive

    @pytest.mark.parametrize("member", ["../outside.txt", "../site-sibling/x.txt"])
    def test_rejects_paths_outside_dest(self, tmp_path, member):
        dest = tmp_path / "site"
        archive = self.archive_with(tmp_path, member)

        with pytest.raises(ValueError, match="refusing to extract"):
            extract_snapshot(archive, dest)

        assert not (tmp_path / "site-sibling").exists()
        assert not (tmp_path / "outside.txt").exists()

    def test_nested_member_is_extracted(self, tmp_path):
        dest = tmp_path / "site"
        archive = self.archive_with(tmp_path, "assets/a.txt")

        assert extract_snapshot(archive, dest) == ["assets/a.txt"]
        assert (dest / "assets" / "a.txt").read_text() == "owned\n"
