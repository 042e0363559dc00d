"""Git worktrees for write-capable child sessions.

Functions raise RuntimeError on failure (not LoopdError), so the delegation
manager decides which error kind a git failure maps to.

Worktrees live under ``<repo>/.loopd/worktrees/s<parent>-c<index>`` on
branch ``loopd/<parent>/<index>-<profile>``.
"""

from __future__ import annotations

import contextlib
import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

log = logging.getLogger(__name__)

WORKTREE_DIRNAME = Path(".loopd") / "worktrees"
AUTO_COMMIT_NAME = "loopd"
AUTO_COMMIT_EMAIL = "loopd@localhost"
_NAME_RE = re.compile(r"^s(\d+)-c(\d+)$")


@dataclass(frozen=True)
class WorktreeInfo:
    path: str
    branch: str
    head: str
    parent_session_id: int
    child_index: int


def _git(args: list[str], cwd: str | Path, *, env: dict[str, str] | None = None) -> str:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            check=True,
            capture_output=True,
            text=True,
            env={**os.environ, **env} if env else None,
        )
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"git {args[0]} failed: {e.stderr.strip() or e.stdout.strip()}") from None
    except FileNotFoundError:
        raise RuntimeError("git is not installed") from None
    return result.stdout


def repo_root(path: str | Path) -> str:
    """Top-level directory of the repository containing *path*."""
    return _git(["rev-parse", "--show-toplevel"], path).strip()


def common_repo_root(path: str | Path) -> str:
    """Main checkout of the repository, even when *path* is inside a worktree."""
    common = _git(["rev-parse", "--path-format=absolute", "--git-common-dir"], path).strip()
    return str(Path(common).parent)


def head_sha(path: str | Path) -> str:
    return _git(["rev-parse", "HEAD"], path).strip()


def worktrees_root(repo: str | Path) -> Path:
    return Path(repo) / WORKTREE_DIRNAME


def worktree_path(repo: str | Path, parent_session_id: int, child_index: int) -> Path:
    return worktrees_root(repo) / f"s{parent_session_id}-c{child_index}"


def branch_name(parent_session_id: int, child_index: int, profile: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", profile.lower()).strip("-")[:30] or "child"
    return f"loopd/{parent_session_id}/{child_index}-{slug}"


def create_worktree(
    repo: str | Path,
    parent_session_id: int,
    child_index: int,
    profile: str,
    base: str = "HEAD",
) -> tuple[str, str]:
    """Create a fresh worktree and branch for a child.  Returns ``(branch, path)``.

    *base* is a revision; callers pass the parent workdir's HEAD so nested
    children start from their parent's work rather than the main checkout.
    """
    path = worktree_path(repo, parent_session_id, child_index)
    branch = branch_name(parent_session_id, child_index, profile)
    if path.exists():
        raise RuntimeError(f"worktree {path} already exists")
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    _ignore_loopd_dir(repo)
    _git(["worktree", "add", "-b", branch, str(path), base], repo)
    log.info("Created worktree %s on %s", path, branch)
    return branch, str(path)


def _ignore_loopd_dir(repo: str | Path) -> None:
    """Keep ``.loopd/`` out of ``git status`` without touching tracked files."""
    try:
        exclude = Path(_git(["rev-parse", "--path-format=absolute", "--git-path", "info/exclude"], repo).strip())
    except RuntimeError as exc:
        log.warning("Cannot locate info/exclude in %s: %s", repo, exc)
        return
    try:
        existing = exclude.read_text() if exclude.exists() else ""
        if "/.loopd/" not in existing.splitlines():
            exclude.parent.mkdir(parents=True, exist_ok=True)
            with open(exclude, "a", encoding="utf-8") as f:
                if existing and not existing.endswith("\n"):
                    f.write("\n")
                f.write("/.loopd/\n")
    except OSError as exc:
        log.warning("Cannot update %s: %s", exclude, exc)


def remove_worktree(repo: str | Path, path: str, branch: str) -> None:
    """Remove a worktree and its branch.  Best-effort, logs warnings on failure."""
    try:
        _git(["worktree", "remove", "--force", path], repo)
    except RuntimeError as exc:
        log.warning("Failed to remove worktree %s: %s", path, exc)
        shutil.rmtree(path, ignore_errors=True)
    if branch:
        try:
            _git(["branch", "-D", branch], repo)
        except RuntimeError as exc:
            log.warning("Failed to delete branch %s: %s", branch, exc)
    with contextlib.suppress(RuntimeError):
        _git(["worktree", "prune"], repo)


def list_worktrees(repo: str | Path) -> list[WorktreeInfo]:
    """Child worktrees of *repo* (the main checkout and foreign worktrees are skipped)."""
    root = worktrees_root(repo).resolve()
    out: list[WorktreeInfo] = []
    entry: dict[str, str] = {}
    for line in [*_git(["worktree", "list", "--porcelain"], repo).splitlines(), ""]:
        if line:
            key, _, value = line.partition(" ")
            entry[key] = value
            continue
        if not entry:
            continue
        path = Path(entry.get("worktree", ""))
        match = _NAME_RE.match(path.name)
        if match and path.parent.resolve() == root:
            out.append(
                WorktreeInfo(
                    path=str(path),
                    branch=entry.get("branch", "").removeprefix("refs/heads/"),
                    head=entry.get("HEAD", ""),
                    parent_session_id=int(match.group(1)),
                    child_index=int(match.group(2)),
                )
            )
        entry = {}
    return out


def is_dirty(path: str | Path) -> bool:
    return bool(_git(["status", "--porcelain"], path).strip())


def auto_commit(path: str | Path, message: str) -> str | None:
    """Commit everything left uncommitted in a worktree.  Returns the new SHA, or None if clean."""
    if not is_dirty(path):
        return None
    identity = {
        "GIT_AUTHOR_NAME": AUTO_COMMIT_NAME,
        "GIT_AUTHOR_EMAIL": AUTO_COMMIT_EMAIL,
        "GIT_COMMITTER_NAME": AUTO_COMMIT_NAME,
        "GIT_COMMITTER_EMAIL": AUTO_COMMIT_EMAIL,
    }
    _git(["add", "-A"], path)
    _git(["commit", "--no-verify", "-m", message], path, env=identity)
    return head_sha(path)


def diff(target: str | Path, branch: str) -> str:
    """Changes on *branch* since it forked from *target*'s HEAD."""
    return _git(["diff", f"HEAD...{branch}"], target)


def commits_ahead(target: str | Path, branch: str) -> int:
    return int(_git(["rev-list", "--count", f"HEAD..{branch}"], target).strip() or 0)


def merge_branch(target: str | Path, branch: str, message: str, *, squash: bool = False) -> str:
    """Merge *branch* into the checkout at *target*.  Returns the resulting HEAD SHA.

    A conflict aborts the merge, leaving *target* as it was, and raises
    RuntimeError.  Callers serialize merges into one repository.
    """
    if commits_ahead(target, branch) == 0:
        raise RuntimeError(f"branch '{branch}' has no commits ahead of {target}; nothing to merge")
    try:
        if squash:
            _git(["merge", "--squash", branch], target)
            _git(["commit", "--no-verify", "-m", message], target)
        else:
            _git(["merge", "--no-ff", branch, "-m", message], target)
    except RuntimeError as exc:
        with contextlib.suppress(RuntimeError):
            _git(["merge", "--abort"], target)
        with contextlib.suppress(RuntimeError):
            _git(["reset", "--merge"], target)
        raise RuntimeError(f"Merge of {branch} failed: {exc}") from None
    return head_sha(target)


def cleanup_worktrees(repo: str | Path, *, live_session_ids: set[int], remove_all: bool = False) -> list[str]:
    """Remove child worktrees whose parent session is no longer live.  Returns removed paths."""
    removed = []
    for wt in list_worktrees(repo):
        if not remove_all and wt.parent_session_id in live_session_ids:
            continue
        remove_worktree(repo, wt.path, wt.branch)
        removed.append(wt.path)
    return removed
