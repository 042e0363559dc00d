"""Tests for child worktree management (real git)."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from loopd import worktree

pytestmark = pytest.mark.slow


def _commit(path: Path, name: str, content: str) -> None:
    (path / name).write_text(content)
    subprocess.run(["git", "add", name], cwd=path, check=True)
    subprocess.run(["git", "commit", "-q", "-m", f"add {name}"], cwd=path, check=True)


def test_branch_name_slugifies_profile():
    assert worktree.branch_name(3, 1, "Fast Scout!") == "loopd/3/1-fast-scout"
    assert worktree.branch_name(3, 1, "???") == "loopd/3/1-child"


def test_create_and_list(git_repo: Path):
    branch, path = worktree.create_worktree(git_repo, 7, 1, "scout")
    assert branch == "loopd/7/1-scout"
    assert Path(path) == git_repo / ".loopd" / "worktrees" / "s7-c1"
    assert (Path(path) / "README.md").exists()
    infos = worktree.list_worktrees(git_repo)
    assert [(i.parent_session_id, i.child_index, i.branch) for i in infos] == [(7, 1, branch)]
    assert "/.loopd/" in (git_repo / ".git" / "info" / "exclude").read_text()
    assert not worktree.is_dirty(git_repo)


def test_create_twice_fails(git_repo: Path):
    worktree.create_worktree(git_repo, 1, 1, "a")
    with pytest.raises(RuntimeError, match="already exists"):
        worktree.create_worktree(git_repo, 1, 1, "a")


def test_common_repo_root_from_inside_worktree(git_repo: Path):
    _branch, path = worktree.create_worktree(git_repo, 1, 1, "a")
    assert Path(worktree.common_repo_root(path)).resolve() == git_repo.resolve()
    assert Path(worktree.repo_root(path)).resolve() == Path(path).resolve()


def test_auto_commit_and_merge(git_repo: Path):
    branch, path = worktree.create_worktree(git_repo, 2, 1, "dev")
    assert worktree.auto_commit(path, "nothing") is None
    (Path(path) / "feature.txt").write_text("new\n")
    sha = worktree.auto_commit(path, "loopd: spawn 1")
    assert sha
    assert "feature.txt" in worktree.diff(git_repo, branch)
    assert worktree.commits_ahead(git_repo, branch) == 1
    head = worktree.merge_branch(git_repo, branch, "merge spawn 1")
    assert head == worktree.head_sha(git_repo)
    assert (git_repo / "feature.txt").read_text() == "new\n"


def test_squash_merge(git_repo: Path):
    branch, path = worktree.create_worktree(git_repo, 2, 1, "dev")
    _commit(Path(path), "a.txt", "a")
    _commit(Path(path), "b.txt", "b")
    worktree.merge_branch(git_repo, branch, "squashed", squash=True)
    log = subprocess.run(["git", "log", "--format=%s"], cwd=git_repo, capture_output=True, text=True, check=True)
    assert log.stdout.splitlines()[0] == "squashed"
    assert (git_repo / "b.txt").exists()


def test_merge_with_nothing_ahead_fails(git_repo: Path):
    branch, _path = worktree.create_worktree(git_repo, 2, 1, "dev")
    with pytest.raises(RuntimeError, match="nothing to merge"):
        worktree.merge_branch(git_repo, branch, "m")


def test_merge_conflict_leaves_target_clean(git_repo: Path):
    branch, path = worktree.create_worktree(git_repo, 2, 1, "dev")
    _commit(Path(path), "README.md", "child\n")
    _commit(git_repo, "README.md", "parent\n")
    before = worktree.head_sha(git_repo)
    with pytest.raises(RuntimeError, match="Merge of"):
        worktree.merge_branch(git_repo, branch, "m")
    assert worktree.head_sha(git_repo) == before
    assert (git_repo / "README.md").read_text() == "parent\n"
    assert not worktree.is_dirty(git_repo)


def test_remove_worktree_deletes_branch(git_repo: Path):
    branch, path = worktree.create_worktree(git_repo, 4, 2, "qa")
    worktree.remove_worktree(git_repo, path, branch)
    assert not Path(path).exists()
    branches = subprocess.run(["git", "branch", "--list", branch], cwd=git_repo, capture_output=True, text=True, check=True)
    assert branches.stdout.strip() == ""


def test_cleanup_keeps_live_parents(git_repo: Path):
    worktree.create_worktree(git_repo, 1, 1, "a")
    _b, keep = worktree.create_worktree(git_repo, 2, 1, "b")
    removed = worktree.cleanup_worktrees(git_repo, live_session_ids={2})
    assert [Path(p).name for p in removed] == ["s1-c1"]
    assert Path(keep).exists()
    assert len(worktree.cleanup_worktrees(git_repo, live_session_ids={2}, remove_all=True)) == 1


def test_git_failure_is_runtime_error(tmp_path: Path):
    with pytest.raises(RuntimeError):
        worktree.head_sha(tmp_path)
