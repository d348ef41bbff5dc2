# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Every other function builds on top of this one, so git is always
    invoked the same way and always yields text.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError if git exits non-zero.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path to the root of the enclosing Git repository."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd)


def current_branch(cwd: Optional[str | Path] = None) -> str:
    """
    Name of the checked-out branch.

    Returns "HEAD" when detached.
    """
    return _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)


def head_commit_message(cwd: Optional[str | Path] = None) -> str:
    return _git(["log", "-1", "--format=%B"], cwd)


def get_remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> Optional[str]:
    """URL of a remote, or None when the remote is not configured."""
    try:
        return _git(["remote", "get-url", remote], cwd) or None
    except subprocess.CalledProcessError:
        return None


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """
    Check whether the working tree has uncommitted changes.

    This includes:
    - modified files
    - staged files
    - untracked files
    """
    # Any porcelain output at all means the tree is not clean.
    return _git(["status", "--porcelain"], cwd) != ""


def uncommitted_files(cwd: Optional[str | Path] = None) -> List[str]:
    """Staged, unstaged and untracked paths, relative to the repo root."""
    files = set()
    for args in (
        ["diff", "--name-only"],
        ["diff", "--name-only", "--cached"],
        ["ls-files", "--others", "--exclude-standard"],
    ):
        out = _git(args, cwd)
        if out:
            files.update(out.splitlines())
    return sorted(files)


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Return a list of files changed between two Git references.

    File paths are returned relative to the repository root.

    Typical usage:
        base = merge_base("origin/main")
        files = changed_files(base)
    """
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd)
    if not out:
        return []
    return out.splitlines()


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """
    Return the merge-base (common ancestor) between HEAD and another ref:
    the point where the current branch diverged from it.
    """
    return _git(["merge-base", "HEAD", with_ref], cwd)


def tracked_files(cwd: Optional[str | Path] = None) -> List[str]:
    out = _git(["ls-files"], cwd)
    return out.splitlines() if out else []
