"""Shared test fixtures: every test gets its own data root."""

from __future__ import annotations

import shutil
import subprocess
import tempfile
from pathlib import Path

import pytest

from loopd import events


@pytest.fixture(autouse=True)
def loopd_home(monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point LOOPD_HOME at a per-test directory and scrub session env vars.

    The directory is short on purpose: session sockets live under it and
    unix socket paths are limited to ~100 bytes.
    """
    home = Path(tempfile.mkdtemp(prefix="ld-", dir="/tmp"))
    monkeypatch.setenv("LOOPD_HOME", str(home))
    for var in (
        "LOOPD_SESSION_ID",
        "LOOPD_PROJECT",
        "LOOPD_PROFILE",
        "LOOPD_PLAN_ID",
        "LOOPD_REDIS_URL",
        "LOOPD_PARENT_SESSION_ID",
    ):
        monkeypatch.delenv(var, raising=False)
    events.configure(None)
    yield home
    events.configure(None)
    shutil.rmtree(home, ignore_errors=True)


@pytest.fixture()
def git_repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """A fresh git repository with one commit and a local identity."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.com")
    repo = tmp_path / "repo"
    repo.mkdir()
    subprocess.run(["git", "init", "-q", "-b", "main"], cwd=repo, check=True)
    (repo / "README.md").write_text("hello\n")
    subprocess.run(["git", "add", "README.md"], cwd=repo, check=True)
    subprocess.run(["git", "commit", "-q", "-m", "init"], cwd=repo, check=True)
    return repo
