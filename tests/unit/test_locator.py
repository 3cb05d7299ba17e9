"""
Unit tests for manifest location and canonical paths.
"""
import os

import pytest

from m2k.errors import PathResolutionError
from m2k.MODELS.pipeline import ManifestLocator
from m2k.MANIFEST.locator import (canonicalize, canonicalize_locator, discover_manifest, find_repository_root,
                                  locate_manifest, resolve_manifest_file)

NESTED = "subdirA/subdirB/m2k.yml"


@pytest.mark.parametrize("workdir, argument", [
    ("", NESTED),
    ("subdirA", "subdirB/m2k.yml"),
    ("subdirA/subdirB", "m2k.yml"),
    ("subdirA/subdirB", "../../subdirA/subdirB/m2k.yml"),
    ("subdirA/subdirB/../..", NESTED),
])
def test_same_file_same_identity_from_inside_repo(repo, workdir, argument):
    location = locate_manifest(os.path.join(str(repo), workdir), argument)
    assert location.canonical_path == NESTED


def test_same_identity_from_parent_of_repo(repo):
    location = locate_manifest(str(repo.parent), "shop/" + NESTED)
    assert location.canonical_path == NESTED
    assert location.locator.repo_root == os.path.realpath(str(repo))


def test_same_identity_with_absolute_path(repo, tmp_path):
    absolute = str(repo / "subdirA" / "subdirB" / "m2k.yml")
    for workdir in (repo, repo / "subdirA", tmp_path):
        assert locate_manifest(str(workdir), absolute).canonical_path == NESTED


def test_same_identity_through_symlink(repo, tmp_path):
    link = tmp_path / "link"
    link.symlink_to(repo, target_is_directory=True)
    assert locate_manifest(str(link), NESTED).canonical_path == NESTED


def test_default_manifest_has_empty_identity(repo):
    location = locate_manifest(str(repo), "")
    assert location.canonical_path == ""
    assert location.manifest_file == os.path.join(str(repo), "m2k.yml")

    explicit = locate_manifest(str(repo), "m2k.yml")
    assert explicit.canonical_path == "m2k.yml"
    assert explicit.canonical_path != location.canonical_path


def test_default_manifest_falls_back_to_repo_root(repo):
    location = locate_manifest(str(repo / "subdirA"), "")
    assert location.manifest_file == os.path.join(os.path.realpath(str(repo)), "m2k.yml")
    assert location.canonical_path == ""


def test_default_manifest_prefers_workdir(repo):
    location = locate_manifest(str(repo / "subdirA" / "subdirB"), "")
    assert location.manifest_file == str(repo / "subdirA" / "subdirB" / "m2k.yml")


def test_missing_manifest_raises(repo):
    with pytest.raises(PathResolutionError) as excinfo:
        locate_manifest(str(repo), "nope/m2k.yml")
    assert excinfo.value.path.endswith(os.path.join("nope", "m2k.yml"))


def test_directory_is_not_a_manifest(repo):
    with pytest.raises(PathResolutionError):
        canonicalize(str(repo), "subdirA", str(repo))


def test_path_escaping_repository_raises(repo, tmp_path):
    (tmp_path / "outside.yml").write_text("deploy: []\n")
    with pytest.raises(PathResolutionError):
        canonicalize(str(repo), "../outside.yml", str(repo))
    with pytest.raises(PathResolutionError):
        locate_manifest(str(repo), "../outside.yml")


def test_without_repository_is_relative_to_workdir(tmp_path):
    (tmp_path / "app").mkdir()
    (tmp_path / "app" / "m2k.yml").write_text("deploy: []\n")
    assert canonicalize(str(tmp_path), "app/m2k.yml", None) == "app/m2k.yml"


def test_uses_supplied_filesystem_view(tmp_path):
    repo_root = str(tmp_path)
    assert canonicalize(repo_root, "a/b/m2k.yml", repo_root, is_file=lambda p: True) == "a/b/m2k.yml"
    with pytest.raises(PathResolutionError):
        canonicalize(repo_root, "a/b/m2k.yml", repo_root, is_file=lambda p: False)


def test_find_repository_root(repo, tmp_path):
    assert find_repository_root(str(repo / "subdirA" / "subdirB")) == os.path.realpath(str(repo))
    assert find_repository_root(str(tmp_path)) is None


def test_git_file_marks_worktree(tmp_path):
    (tmp_path / "wt").mkdir()
    (tmp_path / "wt" / ".git").write_text("gitdir: /elsewhere\n")
    assert find_repository_root(str(tmp_path / "wt")) == os.path.realpath(str(tmp_path / "wt"))


def test_discover_manifest_order(tmp_path):
    assert discover_manifest(str(tmp_path)) is None
    (tmp_path / ".m2k").mkdir()
    (tmp_path / ".m2k" / "m2k.yml").write_text("")
    assert discover_manifest(str(tmp_path)).endswith(os.path.join(".m2k", "m2k.yml"))
    (tmp_path / "m2k.yaml").write_text("")
    assert discover_manifest(str(tmp_path)).endswith("m2k.yaml")


def test_resolve_manifest_file_without_default(tmp_path):
    assert resolve_manifest_file(str(tmp_path), "", None) is None


def test_canonicalize_locator(repo):
    locator = ManifestLocator(workdir=str(repo / "subdirA"), manifest_path="subdirB/m2k.yml", repo_root=str(repo))
    assert canonicalize_locator(locator) == NESTED
    assert canonicalize_locator(ManifestLocator(workdir=str(repo), repo_root=str(repo))) == ""
