"""
Read-only queries against the git repository enclosing a manifest.
"""
import logging
from typing import Optional
from ..RUNNERS.command_runner import CommandRunner

logger = logging.getLogger(__name__)


def remote_url(repo_root: str, runner: Optional[CommandRunner] = None, remote: str = "origin") -> str:
    """
    URL of a remote, or an empty string when it is not configured or git is
    unavailable.
    """
    runner = runner or CommandRunner()
    result = runner.run(["git", "-C", repo_root, "remote", "get-url", remote])
    if not result.ok:
        logger.debug("No '%s' remote in %s: %s", remote, repo_root, result.output)
        return ""
    return result.stdout.strip()


def current_branch(repo_root: str, runner: Optional[CommandRunner] = None) -> str:
    """
    Checked-out branch name, or an empty string (detached HEAD, no commits).
    """
    runner = runner or CommandRunner()
    result = runner.run(["git", "-C", repo_root, "rev-parse", "--abbrev-ref", "HEAD"])
    branch = result.stdout.strip() if result.ok else ""
    return "" if branch == "HEAD" else branch


def repository_name(url: str) -> str:
    """
    Last path segment of a repository URL without its '.git' suffix.

    Handles https URLs as well as scp-like 'git@host:org/repo.git'.
    """
    url = url.strip().rstrip("/")
    if not url:
        return ""
    name = url.replace(":", "/").rsplit("/", 1)[-1]
    if name.endswith(".git"):
        name = name[:-len(".git")]
    return name
