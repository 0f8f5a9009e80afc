"""Repository fingerprinting with GitPython.

Executors snapshot the repository before and after an implementer attempt
to tell real work from a turn that only described a plan. Every helper here
fails open: a directory that is not a git repository, or a git command that
errors, yields a state marked ``status_check_failed`` instead of raising.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import git
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

logger = logging.getLogger(__name__)


@dataclass
class RepositoryState:
    """Fingerprint of a repository at one moment."""

    commit_hash: Optional[str] = None
    has_changes: bool = False
    status_output: str = ""
    diff_hash: str = ""
    status_check_failed: bool = False

    @classmethod
    def unavailable(cls) -> "RepositoryState":
        return cls(status_check_failed=True)


def _open_repo(cwd: Path) -> git.Repo:
    return git.Repo(cwd, search_parent_directories=True)


def get_git_root(cwd: Optional[Path] = None) -> Optional[Path]:
    """Return the working tree root containing ``cwd``, or None outside a repository."""
    try:
        repo = _open_repo(cwd or Path.cwd())
    except (InvalidGitRepositoryError, NoSuchPathError):
        return None
    if repo.working_tree_dir is None:
        return None
    return Path(repo.working_tree_dir)


def _untracked_signature(root: Path, status_output: str) -> list[str]:
    """Size and mtime of untracked files, so edits to them move the fingerprint."""
    entries = []
    for line in status_output.splitlines():
        if not line.startswith("?? "):
            continue
        rel = line[3:].strip().strip('"')
        path = root / rel
        try:
            stat = path.stat()
        except OSError:
            continue
        entries.append(f"{rel}:{stat.st_size}:{stat.st_mtime_ns}")
    return entries


def capture_repository_state(cwd: Optional[Path] = None) -> RepositoryState:
    """Capture the commit, porcelain status and a hash of uncommitted changes.

    Args:
        cwd: Directory inside the repository. Defaults to the current directory.

    Returns:
        RepositoryState; ``status_check_failed`` is set when git is unusable.
    """
    cwd = cwd or Path.cwd()
    try:
        repo = _open_repo(cwd)
        root = Path(repo.working_tree_dir or cwd)

        try:
            commit_hash: Optional[str] = repo.head.commit.hexsha
        except ValueError:
            # Fresh repository without commits
            commit_hash = None

        status_output = repo.git.status("--porcelain")
        diff_output = repo.git.diff("HEAD") if commit_hash else repo.git.diff("--cached")
    except (InvalidGitRepositoryError, NoSuchPathError, GitCommandError, ValueError) as exc:
        logger.debug(f"Repository state unavailable at {cwd}: {exc}")
        return RepositoryState.unavailable()

    digest = hashlib.sha256()
    digest.update(diff_output.encode("utf-8", errors="replace"))
    for entry in _untracked_signature(root, status_output):
        digest.update(b"\0")
        digest.update(entry.encode("utf-8", errors="replace"))

    return RepositoryState(
        commit_hash=commit_hash,
        has_changes=bool(status_output.strip()),
        status_output=status_output,
        diff_hash=digest.hexdigest(),
    )


def get_git_remote(cwd: Optional[Path] = None) -> Optional[str]:
    """URL of the ``origin`` remote (or the first remote), if any."""
    try:
        repo = _open_repo(cwd or Path.cwd())
        remotes = list(repo.remotes)
        if not remotes:
            return None
        remote = next((r for r in remotes if r.name == "origin"), remotes[0])
        return next(iter(remote.urls), None)
    except (InvalidGitRepositoryError, NoSuchPathError, GitCommandError, ValueError):
        return None
