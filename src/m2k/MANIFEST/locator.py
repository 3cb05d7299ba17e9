# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Locating manifests and computing their canonical, repository-relative path.

The canonical path is the identity a pipeline is stored under. It must come
out identical for the same physical file whatever directory the command was
run from and however the path was spelled.
"""
import os
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Callable, List, Optional

from ..errors import PathResolutionError
from ..MODELS.pipeline import ManifestLocator

DEFAULT_MANIFEST_NAMES: List[str] = ["m2k.yml", "m2k.yaml", os.path.join(".m2k", "m2k.yml")]


def find_repository_root(start: str) -> Optional[str]:
    """
    Walks up from `start` to the nearest directory holding a `.git` entry.

    A `.git` file (worktrees, submodules) counts as well as a directory.

    :param start: Directory to start from.
    :return: Absolute path of the repository root, or None outside a repository.
    """
    current = Path(os.path.realpath(start))
    for candidate in [current, *current.parents]:
        if (candidate / ".git").exists():
            return str(candidate)
    return None


def discover_manifest(directory: str) -> Optional[str]:
    """
    Finds the default manifest in a directory.

    :param directory: Directory to look in.
    :return: Absolute path of the first default manifest found, or None.
    """
    for name in DEFAULT_MANIFEST_NAMES:
        candidate = os.path.join(directory, name)
        if os.path.isfile(candidate):
            return os.path.abspath(candidate)
    return None


def _absolute(workdir: str, manifest_path: str) -> str:
    if os.path.isabs(manifest_path):
        return os.path.realpath(manifest_path)
    return os.path.realpath(os.path.join(workdir, manifest_path))


def canonicalize(workdir: str,
                 manifest_path: str,
                 repo_root: Optional[str],
                 is_file: Callable[[str], bool] = os.path.isfile) -> str:
    """
    Computes the canonical manifest path.

    :param workdir: Absolute directory the command was invoked from.
    :param manifest_path: The manifest argument as given: empty, relative or absolute.
    :param repo_root: Root of the enclosing repository, if any.
    :param is_file: Filesystem view used to check the manifest exists.
    :return: The path relative to `repo_root` with '/' separators, or relative
        to `workdir` when there is no repository. Empty when no manifest
        argument was given.
    :raises PathResolutionError: If the manifest is not a reachable file or
        lies outside the repository.
    """
    if not manifest_path:
        return ""

    resolved = _absolute(workdir, manifest_path)
    if not is_file(resolved):
        raise PathResolutionError(f"manifest '{manifest_path}' not found (resolved to {resolved})", resolved)

    anchor = os.path.realpath(repo_root) if repo_root else os.path.realpath(workdir)
    relative = os.path.relpath(resolved, anchor)

    if repo_root and (relative == os.pardir or relative.startswith(os.pardir + os.sep)):
        raise PathResolutionError(
            f"manifest '{manifest_path}' resolves to {resolved}, outside the repository at {anchor}",
            resolved,
        )

    return PurePath(relative).as_posix()


def canonicalize_locator(locator: ManifestLocator,
                         is_file: Callable[[str], bool] = os.path.isfile) -> str:
    """
    Same as `canonicalize`, taking a ManifestLocator.
    """
    return canonicalize(locator.workdir, locator.manifest_path, locator.repo_root, is_file)


def resolve_manifest_file(workdir: str, manifest_path: str, repo_root: Optional[str]) -> Optional[str]:
    """
    Returns the absolute manifest file to parse.

    An explicit path is resolved against `workdir`. Without one, the default
    manifest is looked up in `workdir` first and then at the repository root.

    :return: Absolute path, or None when no default manifest exists.
    :raises PathResolutionError: If an explicit path is not a file.
    """
    if manifest_path:
        resolved = _absolute(workdir, manifest_path)
        if not os.path.isfile(resolved):
            raise PathResolutionError(f"manifest '{manifest_path}' not found (resolved to {resolved})", resolved)
        return resolved

    found = discover_manifest(workdir)
    if found is None and repo_root:
        found = discover_manifest(repo_root)
    return found


@dataclass
class ManifestLocation:
    """
    A located manifest: the file to parse and the identity it is tracked under.
    """
    locator: ManifestLocator
    manifest_file: Optional[str]
    canonical_path: str


def locate_manifest(workdir: str, manifest_path: str = "") -> ManifestLocation:
    """
    Resolves the manifest for an invocation and computes its canonical path.

    The repository root is taken from the manifest's own location, so invoking
    from outside the repository still yields a repository-relative identity.
    A manifest outside any repository while the working directory is inside
    one is rejected as escaping that repository.

    :raises PathResolutionError: If the manifest cannot be resolved.
    """
    workdir = os.path.abspath(workdir)
    workdir_repo = find_repository_root(workdir)
    manifest_file = resolve_manifest_file(workdir, manifest_path, workdir_repo)

    repo_root = workdir_repo
    if manifest_path and manifest_file:
        repo_root = find_repository_root(os.path.dirname(manifest_file)) or workdir_repo

    locator = ManifestLocator(workdir=workdir, manifest_path=manifest_path, repo_root=repo_root)
    return ManifestLocation(
        locator=locator,
        manifest_file=manifest_file,
        canonical_path=canonicalize_locator(locator),
    )
