"""
Pipeline names derived from application names.
"""
import os
import re
from typing import Optional
from ..MODELS.manifest import Manifest
from ..RUNNERS.command_runner import CommandRunner
from ..UTILS.git import remote_url, repository_name

# Kubernetes object names are RFC 1123 labels: at most 63 characters
MAX_NAME_LENGTH = 63
RECORD_PREFIX = "m2k-git-"

_INVALID_CHARS = re.compile(r'[^a-z0-9-]+')
_REPEATED_DASHES = re.compile(r'-{2,}')


def translate_pipeline_name(name: str) -> str:
    """
    Sanitizes an application name into a valid resource name.

    'My_App.v2' -> 'my-app-v2'

    :raises ValueError: If nothing valid remains.
    """
    sanitized = _INVALID_CHARS.sub('-', name.strip().lower())
    sanitized = _REPEATED_DASHES.sub('-', sanitized).strip('-')
    sanitized = sanitized[:MAX_NAME_LENGTH].rstrip('-')
    if not sanitized:
        raise ValueError(f"'{name}' cannot be turned into a pipeline name")
    return sanitized


def record_name(pipeline_name: str) -> str:
    """
    Name of the cluster record holding a pipeline's state.
    """
    return f"{RECORD_PREFIX}{pipeline_name}"


def infer_app_name(manifest: Optional[Manifest],
                   repo_root: Optional[str],
                   workdir: str,
                   runner: Optional[CommandRunner] = None) -> str:
    """
    Picks the application name: the manifest's `name`, else the name of the
    repository's origin remote, else the repository (or working) directory name.
    """
    if manifest is not None and manifest.name:
        return manifest.name
    if repo_root:
        name = repository_name(remote_url(repo_root, runner))
        if name:
            return name
        return os.path.basename(os.path.normpath(repo_root))
    return os.path.basename(os.path.normpath(workdir))
