"""Delegation manager tests with a fake child launcher.

The launcher never starts a real daemon.  It writes the child's registry
entry and recording directly, so the spawn monitor finds a finished (or a
still-running) child exactly as it would after a real session.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any

import pytest

from loopd import registry
from loopd.broadcast import Broadcaster
from loopd.config import parse_config
from loopd.delegation import DelegationManager
from loopd.errors import LoopdError, SpawnDenied, SpawnQueueTimeout, WorktreeBusy
from loopd.recorder import Recorder
from loopd.store import init_project

TREE = {
    "max_parallel": 1,
    "profiles": [
        {"profile": "dev", "roles": ["developer", "reviewer"], "delegation": {"profiles": [{"profile": "scout"}]}},
        {"profile": "scout", "role": "scout"},
    ],
}


def _config(runtime: dict | None = None, max_instances: int = 0, tree: dict | None = None):
    return parse_config(
        {
            "profiles": [
                {"name": "lead", "agent": "claude"},
                {"name": "dev", "agent": "codex"},
                {"name": "scout", "agent": "claude", "max_instances": max_instances},
            ],
            "loops": [{"name": "main", "steps": [{"profile": "lead", "delegation": tree or TREE}, {"profile": "dev"}]}],
            "runtime": {"spawn_queue_timeout": 0.3, **(runtime or {})},
        }
    )


class FakeEngine:
    def __init__(self, loop) -> None:
        self.loop = loop
        self.step_index = 0
        self.cancelling = False

    @property
    def current_step(self):
        return self.loop.steps[self.step_index]


def _meta(kind: str, **payload: Any) -> bytes:
    return json.dumps({"kind": kind, **payload}).encode()


def _record_child(child_id: int, exit_code: int = 0, outcome: str = "max_cycles") -> None:
    # Runs in the launcher thread, so it writes the recording directly.
    rec = Recorder.for_session(child_id)
    rec.append("stdout", b"child says hi\n")
    rec.append("meta", _meta("turn_end", exit_code=exit_code, ok=exit_code == 0))
    rec.append("meta", _meta("session_end", status="stopped", outcome=outcome))
    rec.close()
    registry.publish({"id": child_id, "status": "stopped", "pid": 0, "exit_kind": outcome})


class FakeLauncher:
    """Records launch requests; children finish immediately unless *hang* is set."""

    def __init__(self, *, hang: bool = False, exit_code: int = 0, write_file: str = "") -> None:
        self.calls: list[dict[str, Any]] = []
        self.hang = hang
        self.exit_code = exit_code
        self.write_file = write_file
        self._next = 100

    def __call__(self, cfg, loop, **kwargs: Any) -> int:
        self._next += 1
        child_id = self._next
        self.calls.append({"loop": loop, **kwargs})
        if self.write_file:
            Path(kwargs["workdir"], self.write_file).write_text(f"from child {child_id}\n")
        if self.hang:
            registry.publish({"id": child_id, "status": "running", "pid": os.getpid(), "profile": loop.steps[0].profile})
        else:
            _record_child(child_id, self.exit_code)
        return child_id


def _manager(tmp_path: Path, launcher: FakeLauncher, *, workdir: Path | None = None, cfg=None):
    cfg = cfg or _config()
    repo = workdir or tmp_path
    store = init_project("demo", repo)
    bus = Broadcaster(Recorder(tmp_path / "parent.log"))
    engine = FakeEngine(cfg.find_loop("main"))
    mgr = DelegationManager(
        1,
        cfg,
        store,
        bus,
        engine,
        workdir=str(repo),
        profile_name="lead",
        launcher=launcher,
        project_name="demo",
    )
    return mgr, engine, bus


# -- Authorization (the manager needs a running loop for its broadcaster) --


@pytest.mark.asyncio
async def test_authorize_picks_first_role(tmp_path: Path):
    mgr, _engine, _bus = _manager(tmp_path, FakeLauncher())
    prof, node, role, delegation = mgr.authorize("DEV")
    assert prof.name == "dev"
    assert role == "developer"
    assert delegation.max_parallel == 1
    assert [c.profile for c in node.children] == ["scout"]


@pytest.mark.asyncio
async def test_authorize_explicit_role(tmp_path: Path):
    mgr, _engine, _bus = _manager(tmp_path, FakeLauncher())
    assert mgr.authorize("dev", "Reviewer")[2] == "Reviewer"
    with pytest.raises(SpawnDenied, match="not allowed"):
        mgr.authorize("dev", "manager")


@pytest.mark.asyncio
async def test_authorize_unknown_profile_lists_allowed(tmp_path: Path):
    mgr, _engine, _bus = _manager(tmp_path, FakeLauncher())
    with pytest.raises(SpawnDenied, match=r"allowed: dev, scout"):
        mgr.authorize("lead")


@pytest.mark.asyncio
async def test_authorize_nested_path(tmp_path: Path):
    mgr, _engine, _bus = _manager(tmp_path, FakeLauncher())
    assert mgr.authorize("scout", parent_path=["dev"])[0].name == "scout"
    with pytest.raises(SpawnDenied, match="not in the tree"):
        mgr.authorize("scout", parent_path=["nobody"])
    with pytest.raises(SpawnDenied):
        mgr.authorize("dev", parent_path=["dev"])


@pytest.mark.asyncio
async def test_authorize_without_tree_or_while_cancelling(tmp_path: Path):
    mgr, engine, _bus = _manager(tmp_path, FakeLauncher())
    engine.step_index = 1
    with pytest.raises(SpawnDenied, match="no delegation tree"):
        mgr.authorize("dev")
    engine.step_index = 0
    engine.cancelling = True
    with pytest.raises(SpawnDenied, match="cancelling"):
        mgr.authorize("dev")


# -- Spawning --


@pytest.mark.asyncio
async def test_read_only_spawn_completes(tmp_path: Path):
    launcher = FakeLauncher()
    mgr, _engine, _bus = _manager(tmp_path, launcher)
    row = await mgr.spawn("scout", "map the parser", wait=True)
    assert row["status"] == "completed"
    assert row["read_only"] is True  # scout cannot write code
    assert row["exit_code"] == 0
    assert "child says hi" in row["result"]
    assert row["child_session_id"] == 101
    assert row["worktree_path"] == ""
    call = launcher.calls[0]
    assert call["parent_session_id"] == 1
    assert call["spawn_id"] == row["id"]
    assert call["max_cycles"] == 1
    assert call["workdir"] == str(tmp_path)
    step = call["loop"].steps[0]
    assert step.instructions == "map the parser"
    assert step.turns == 1
    assert step.delegation is None


@pytest.mark.asyncio
async def test_child_inherits_subtree(tmp_path: Path):
    launcher = FakeLauncher()
    mgr, _engine, _bus = _manager(tmp_path, launcher)
    await mgr.spawn("dev", "fix it", read_only=True, wait=True)
    child_step = launcher.calls[0]["loop"].steps[0]
    assert [n.profile for n in child_step.delegation.profiles] == ["scout"]
    assert child_step.role == "developer"


@pytest.mark.asyncio
async def test_failed_child_marks_spawn_failed(tmp_path: Path):
    mgr, _engine, _bus = _manager(tmp_path, FakeLauncher(exit_code=4))
    row = await mgr.spawn("scout", "look around", wait=True)
    assert row["status"] == "failed"
    assert row["exit_code"] == 4


@pytest.mark.asyncio
async def test_empty_task_rejected(tmp_path: Path):
    mgr, _engine, _bus = _manager(tmp_path, FakeLauncher())
    with pytest.raises(LoopdError, match="needs a task"):
        await mgr.spawn("scout", "  ")


@pytest.mark.asyncio
async def test_status_and_ownership(tmp_path: Path):
    mgr, _engine, _bus = _manager(tmp_path, FakeLauncher())
    row = await mgr.spawn("scout", "a", wait=True)
    assert [r["id"] for r in mgr.status()] == [row["id"]]
    assert mgr.status(row["id"])[0]["task"] == "a"
    other = mgr.store.create_spawn(parent_session_id=99, task="not mine")
    with pytest.raises(LoopdError, match="does not belong"):
        mgr.status(other["id"])


@pytest.mark.asyncio
async def test_parallel_limit_times_out_queued_spawn(tmp_path: Path):
    launcher = FakeLauncher(hang=True)
    mgr, _engine, _bus = _manager(tmp_path, launcher)
    first = await mgr.spawn("scout", "long job")
    assert first["status"] == "running"
    with pytest.raises(SpawnQueueTimeout, match="max_parallel=1"):
        await mgr.spawn("scout", "second job")
    rows = mgr.status()
    assert rows[1]["status"] == "failed"
    assert rows[1]["result"].startswith("spawn_queue_timeout")
    assert len(launcher.calls) == 1
    await mgr.shutdown(grace=0.1)


@pytest.mark.asyncio
async def test_max_instances_counts_other_sessions(tmp_path: Path):
    registry.publish({"id": 50, "status": "running", "pid": os.getpid(), "profile": "scout"})
    launcher = FakeLauncher()
    mgr, _engine, _bus = _manager(tmp_path, launcher, cfg=_config(max_instances=1))
    with pytest.raises(SpawnQueueTimeout, match="max_instances=1"):
        await mgr.spawn("scout", "blocked")
    assert launcher.calls == []
    registry.retire(50, "stopped")
    row = await mgr.spawn("scout", "now free", wait=True)
    assert row["status"] == "completed"


NESTED_TREE = {
    "max_parallel": 3,
    "profiles": [
        {
            "profile": "dev",
            "delegation": {"max_parallel": 1, "profiles": [{"profile": "scout", "role": "scout"}]},
        },
        {"profile": "scout", "role": "scout", "max_instances": 1},
    ],
}


@pytest.mark.asyncio
async def test_nested_block_has_its_own_parallel_limit(tmp_path: Path):
    launcher = FakeLauncher(hang=True)
    mgr, _engine, _bus = _manager(tmp_path, launcher, cfg=_config(tree=NESTED_TREE))
    await mgr.spawn("scout", "under dev", parent_path=["dev"])
    with pytest.raises(SpawnQueueTimeout, match="max_parallel=1"):
        await mgr.spawn("scout", "second under dev", parent_path=["dev"])
    # The step-level block still has room.
    assert (await mgr.spawn("dev", "top level", read_only=True))["status"] == "running"
    await mgr.shutdown(grace=0.1)


@pytest.mark.asyncio
async def test_node_max_instances_overrides_profile(tmp_path: Path):
    registry.publish({"id": 50, "status": "running", "pid": os.getpid(), "profile": "scout"})
    launcher = FakeLauncher()
    mgr, _engine, _bus = _manager(tmp_path, launcher, cfg=_config(tree=NESTED_TREE))
    with pytest.raises(SpawnQueueTimeout, match="max_instances=1"):
        await mgr.spawn("scout", "blocked by the node limit")
    # The same profile reached through dev carries no node limit.
    row = await mgr.spawn("scout", "allowed", parent_path=["dev"], wait=True)
    assert row["status"] == "completed"


@pytest.mark.asyncio
async def test_child_keeps_nested_limit(tmp_path: Path):
    launcher = FakeLauncher()
    mgr, _engine, _bus = _manager(tmp_path, launcher, cfg=_config(tree=NESTED_TREE))
    await mgr.spawn("dev", "fix it", read_only=True, wait=True)
    child_delegation = launcher.calls[0]["loop"].steps[0].delegation
    assert child_delegation.max_parallel == 1
    assert [n.profile for n in child_delegation.profiles] == ["scout"]


@pytest.mark.asyncio
async def test_queued_spawn_starts_when_slot_frees(tmp_path: Path):
    launcher = FakeLauncher(hang=True)
    mgr, _engine, _bus = _manager(tmp_path, launcher, cfg=_config(runtime={"spawn_queue_timeout": 10}))
    first = await mgr.spawn("scout", "long job")
    second = asyncio.create_task(mgr.spawn("scout", "next job"))
    await asyncio.sleep(0.2)
    assert not second.done()
    # Finish the first child; its monitor frees the slot.
    launcher.hang = False
    _record_child(first["child_session_id"])
    row = await asyncio.wait_for(second, 10)
    assert row["status"] == "running"
    done = await mgr.wait([first["id"], row["id"]], timeout=10)
    assert [r["status"] for r in done] == ["completed", "completed"]
    await mgr.shutdown(grace=0.1)


@pytest.mark.asyncio
async def test_wait_timeout_returns_running_rows(tmp_path: Path):
    mgr, _engine, _bus = _manager(tmp_path, FakeLauncher(hang=True))
    row = await mgr.spawn("scout", "forever")
    rows = await mgr.wait([row["id"]], timeout=0.2)
    assert rows[0]["status"] == "running"
    await mgr.shutdown(grace=0.1)


@pytest.mark.asyncio
async def test_cancel_drops_queued_requests(tmp_path: Path):
    mgr, engine, _bus = _manager(tmp_path, FakeLauncher(hang=True), cfg=_config(runtime={"spawn_queue_timeout": 10}))
    await mgr.spawn("scout", "long job")
    queued = asyncio.create_task(mgr.spawn("scout", "queued job"))
    await asyncio.sleep(0.2)
    engine.cancelling = True
    await mgr.cancel_all()
    with pytest.raises(LoopdError) as exc:
        await asyncio.wait_for(queued, 5)
    assert exc.value.kind == "cancelled"
    await mgr.shutdown(grace=0.1)


# -- Worktrees, merge and reject --


@pytest.mark.slow
@pytest.mark.asyncio
async def test_writable_spawn_merge(tmp_path: Path, git_repo: Path):
    launcher = FakeLauncher(write_file="feature.txt")
    mgr, _engine, _bus = _manager(tmp_path, launcher, workdir=git_repo)
    row = await mgr.spawn("dev", "add a feature", wait=True)
    assert row["status"] == "completed"
    assert row["branch"] == f"loopd/1/{row['child_index']}-dev"
    assert Path(row["worktree_path"]).is_dir()
    assert launcher.calls[0]["workdir"] == row["worktree_path"]
    assert not (git_repo / "feature.txt").exists()

    assert "feature.txt" in await mgr.diff(row["id"])
    merged = await mgr.merge(row["id"])
    assert merged["status"] == "merged"
    assert merged["merge_commit"]
    assert (git_repo / "feature.txt").read_text().startswith("from child")
    assert not Path(row["worktree_path"]).exists()
    with pytest.raises(WorktreeBusy, match="already merged"):
        await mgr.merge(row["id"])


@pytest.mark.slow
@pytest.mark.asyncio
async def test_writable_spawn_reject(tmp_path: Path, git_repo: Path):
    mgr, _engine, _bus = _manager(tmp_path, FakeLauncher(write_file="junk.txt"), workdir=git_repo)
    row = await mgr.spawn("dev", "try something", wait=True)
    rejected = await mgr.reject(row["id"])
    assert rejected["status"] == "rejected"
    assert not Path(row["worktree_path"]).exists()
    assert not (git_repo / "junk.txt").exists()
    with pytest.raises(WorktreeBusy):
        await mgr.reject(row["id"])


@pytest.mark.asyncio
async def test_merge_refuses_read_only_and_running(tmp_path: Path):
    mgr, _engine, _bus = _manager(tmp_path, FakeLauncher(hang=True))
    row = await mgr.spawn("scout", "look")
    with pytest.raises(WorktreeBusy, match="still running"):
        await mgr.merge(row["id"])
    with pytest.raises(WorktreeBusy, match="no branch"):
        await mgr.diff(row["id"])
    await mgr.shutdown(grace=0.1)


@pytest.mark.asyncio
async def test_writable_spawn_outside_git_is_denied(tmp_path: Path):
    mgr, _engine, _bus = _manager(tmp_path, FakeLauncher())
    with pytest.raises(SpawnDenied, match="not a git repository"):
        await mgr.spawn("dev", "edit files")
    assert mgr.status()[0]["status"] == "failed"
