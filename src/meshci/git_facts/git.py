# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional, Sequence, Union

PathLike = Union[str, Path, None]


def _git(args: list[str], cwd: PathLike = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.
    A non-zero exit raises subprocess.CalledProcessError.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def git_dir(cwd: PathLike = None) -> Path:
    """The repository's .git directory (absolute)."""
    return Path(_git(["rev-parse", "--absolute-git-dir"], cwd))


def head_sha(cwd: PathLike = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd)


def head_message(cwd: PathLike = None) -> str:
    return _git(["log", "-1", "--format=%B"], cwd)


def current_branch(cwd: PathLike = None) -> str:
    return _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)


def is_dirty(cwd: PathLike = None) -> bool:
    """
    Check whether the working tree has uncommitted changes
    (modified, staged or untracked files).
    """
    return _git(["status", "--porcelain"], cwd) != ""


def latest_tag(pattern: str = "v*", cwd: PathLike = None) -> Optional[str]:
    """
    Most recent tag reachable from HEAD matching `pattern`, or None when the
    history has no such tag yet.
    """
    try:
        return _git(["describe", "--tags", "--abbrev=0", "--match", pattern], cwd) or None
    except subprocess.CalledProcessError:
        return None


def tag_exists(tag: str, cwd: PathLike = None) -> bool:
    return _git(["tag", "--list", tag], cwd) == tag


def log_messages(since: Optional[str] = None, cwd: PathLike = None) -> List[str]:
    """
    Full commit messages from `since` (exclusive) to HEAD, newest first.
    With since=None the whole history is returned.
    """
    rev = f"{since}..HEAD" if since else "HEAD"
    # NUL-separated so multi-line bodies survive
    out = _git(["log", "--format=%B%x00", rev], cwd)
    return [m.strip() for m in out.split("\x00") if m.strip()]


def config(key: str, value: str, cwd: PathLike = None) -> None:
    _git(["config", key, value], cwd)


def config_get(key: str, cwd: PathLike = None) -> Optional[str]:
    try:
        return _git(["config", "--get", key], cwd) or None
    except subprocess.CalledProcessError:
        return None


def add(paths: Sequence[str | Path], cwd: PathLike = None) -> None:
    _git(["add", "--", *[str(p) for p in paths]], cwd)


def commit(message: str, cwd: PathLike = None) -> str:
    """Commit the index and return the new HEAD sha."""
    _git(["commit", "-m", message], cwd)
    return head_sha(cwd)


def tag(name: str, message: str, cwd: PathLike = None) -> None:
    """Create an annotated tag on HEAD."""
    _git(["tag", "-a", name, "-m", message], cwd)


def delete_tag(name: str, cwd: PathLike = None) -> None:
    _git(["tag", "-d", name], cwd)


def reset(rev: str, cwd: PathLike = None) -> None:
    """Move HEAD (and the files it touched) back to `rev`, keeping unrelated local changes."""
    _git(["reset", "--keep", rev], cwd)


def push(remote: str, refs: Sequence[str], cwd: PathLike = None) -> None:
    _git(["push", remote, *refs], cwd)


def remote_url(remote: str = "origin", cwd: PathLike = None) -> str:
    return _git(["remote", "get-url", remote], cwd)
