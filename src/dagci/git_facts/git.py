# git.py
# Thin wrapper around the Git CLI.
# Every git invocation in dagci goes through _git() so the engine itself
# never shells out to git directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional, Tuple


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Run a git command and return its stdout, stripped.

    Raises subprocess.CalledProcessError on a nonzero exit and
    FileNotFoundError when git is not installed; callers decide whether
    that is fatal.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def _lines(out: str) -> List[str]:
    return [line for line in out.splitlines() if line]


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path of the repository containing `cwd`."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str | Path] = None) -> str:
    """Branch name of HEAD, or "" when detached."""
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return "" if name == "HEAD" else name


def current_actor(cwd: Optional[str | Path] = None) -> str:
    try:
        return _git(["config", "user.name"], cwd=cwd)
    except subprocess.CalledProcessError:
        return ""


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """True if there are modified, staged or untracked files."""
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def is_shallow(cwd: Optional[str | Path] = None) -> bool:
    return _git(["rev-parse", "--is-shallow-repository"], cwd=cwd) == "true"


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Common ancestor of HEAD and `with_ref`."""
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """Files changed between two refs, relative to the repository root."""
    return _lines(_git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd))


def revision_files(rev: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """Files touched by a single commit (works in shallow clones)."""
    return _lines(
        _git(["diff-tree", "--no-commit-id", "--name-only", "-r", "--root", rev], cwd=cwd)
    )


def working_tree_files(cwd: Optional[str | Path] = None) -> List[str]:
    """Unstaged, staged and untracked files."""
    files = set()
    files.update(_lines(_git(["diff", "--name-only"], cwd=cwd)))
    files.update(_lines(_git(["diff", "--name-only", "--cached"], cwd=cwd)))
    files.update(_lines(_git(["ls-files", "--others", "--exclude-standard"], cwd=cwd)))
    return sorted(files)


def collect_change_set(
    compare_ref: str = "origin/main",
    cwd: Optional[str | Path] = None,
) -> Tuple[Optional[str], List[str]]:
    """
    Returns (head_sha, changed_files).

    head_sha is None when the working tree is dirty; the change set is then
    the uncommitted files. On a clean tree the change set is the diff range
    from the merge-base with `compare_ref`, or just the HEAD commit in a
    shallow clone or when `compare_ref` cannot be resolved.
    """
    root = repo_root(cwd)

    if is_dirty(root):
        return None, working_tree_files(root)

    sha = head_sha(root)
    if is_shallow(root):
        return sha, revision_files("HEAD", root)

    try:
        base = merge_base(compare_ref, root)
    except subprocess.CalledProcessError:
        return sha, revision_files("HEAD", root)

    if base == sha:
        # HEAD is the compare ref itself, e.g. a push to main
        return sha, revision_files("HEAD", root)
    return sha, changed_files(base, "HEAD", root)
